from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "FeathersJS Knowledge Service"
    environment: str = "development"
    log_config_path: Optional[Path] = None  # defaults to the packaged logging.yaml
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    enable_file_logging: bool = False
    enable_json_logs: bool = True

    # Corpus
    knowledge_base_path: Path = Field(
        default=Path("knowledge-base"),
        validation_alias="KNOWLEDGE_BASE_PATH",
    )
    docs_category: str = "chunks"

    # Embedding model (must match the scheme used to embed the corpus)
    embedding_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_pooling: Literal["mean", "cls"] = "mean"
    embedding_normalize: bool = True
    embedding_device: Optional[str] = None

    # Ranking
    search_backend: Literal["vector", "lexical"] = "vector"
    lexical_fallback_enabled: bool = True
    bm25_k1: float = 1.5
    bm25_b: float = 0.75
    search_min_score: float = 0.05
    explain_min_score: float = 0.1
    troubleshoot_min_score: float = 0.02  # error text is noisy, keep it looser than search
    troubleshoot_result_cap: int = 3
    alternatives_min_score: float = 0.1
    alternatives_fetch: int = 10
    alternatives_result_cap: int = 3

    # Result shaping
    default_version: str = "v6"
    default_search_limit: int = 10
    max_search_limit: int = 50
    overfetch_factor: int = 3
    dedup_per_source: int = 2
    default_token_budget: Optional[int] = None
    snippet_length: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator(
        "dedup_per_source", "troubleshoot_result_cap", "overfetch_factor", "max_search_limit",
        "alternatives_fetch", "alternatives_result_cap",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("default_token_budget")
    @classmethod
    def _budget_non_negative(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("default_token_budget must be >= 0")
        return value

    @property
    def embedding_scheme_id(self) -> str:
        norm = "norm" if self.embedding_normalize else "raw"
        return f"{self.embedding_model_name}:{self.embedding_pooling}:{norm}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
