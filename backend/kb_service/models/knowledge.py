from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from ..retrieval.tokenizer import tokenize


class DocVersion(str, Enum):
    v5 = "v5"
    v6 = "v6"
    both = "both"  # applies to every version


class VersionFilter(str, Enum):
    v5 = "v5"
    v6 = "v6"
    both = "both"
    all = "all"


KNOWN_VERSIONS = frozenset(v.value for v in DocVersion)

# Rough chars-per-token ratio used when a record carries no token estimate
CHARS_PER_TOKEN = 4


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class KnowledgeModel(BaseModel):
    """Base for every persisted corpus entry: immutable, tolerant of extra keys."""

    model_config = ConfigDict(frozen=True, extra="ignore")


class DocEntry(KnowledgeModel):
    id: str = Field(min_length=1)
    heading: str = Field(validation_alias=_alias("heading", "title"))
    content: str
    raw_content: str = Field(validation_alias=_alias("rawContent", "raw_content"))
    breadcrumb: str = ""
    version: str
    category: str = "uncategorized"
    tags: Tuple[str, ...] = ()
    sub_headings: Tuple[str, ...] = Field(default=(), validation_alias=_alias("subHeadings", "sub_headings"))
    tokens: Union[int, Tuple[str, ...], None] = None
    embedding: Optional[Tuple[float, ...]] = None
    embedding_model: Optional[str] = Field(
        default=None, validation_alias=_alias("embeddingModel", "embedding_model")
    )
    source_file: Optional[str] = Field(default=None, validation_alias=_alias("sourceFile", "source_file"))
    has_code: bool = Field(default=False, validation_alias=_alias("hasCode", "has_code"))
    code_languages: Tuple[str, ...] = Field(
        default=(), validation_alias=_alias("codeLanguages", "code_languages")
    )

    @model_validator(mode="before")
    @classmethod
    def _fill_content(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        content = data.get("content")
        raw = data.get("rawContent", data.get("raw_content"))
        if content is None and raw is None:
            raise ValueError("entry needs 'content' or 'rawContent'")
        if content is None or raw is None:
            data = dict(data)
            data["content"] = content if content is not None else raw
            data["rawContent"] = raw if raw is not None else content
            data.pop("raw_content", None)
        if data.get("category") is None:
            data = {**data, "category": "uncategorized"}
        return data

    @property
    def title(self) -> str:
        return self.heading

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @property
    def token_count(self) -> int:
        if isinstance(self.tokens, int):
            return max(self.tokens, 0)
        if isinstance(self.tokens, tuple):
            return len(self.tokens)
        return math.ceil(len(self.content) / CHARS_PER_TOKEN)

    @property
    def lexical_tokens(self) -> List[str]:
        if isinstance(self.tokens, tuple):
            return list(self.tokens)
        return tokenize(f"{self.heading} {self.content}")

    @property
    def dedup_key(self) -> str:
        return self.source_file or self.id


class ErrorPattern(KnowledgeModel):
    id: str = Field(min_length=1)
    pattern: str = ""
    cause: str = ""
    solution: str = ""
    example: str = ""
    version: str = DocVersion.both.value
    category: str = "general"
    tags: Tuple[str, ...] = ()
    embedding: Optional[Tuple[float, ...]] = None
    embedding_model: Optional[str] = Field(
        default=None, validation_alias=_alias("embeddingModel", "embedding_model")
    )

    @model_validator(mode="before")
    @classmethod
    def _default_version(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("version"):
            return {**data, "version": DocVersion.both.value}
        return data

    @property
    def heading(self) -> str:
        return self.cause or self.id


class CodeSnippet(KnowledgeModel):
    id: str = Field(min_length=1)
    type: str
    use_case: str = Field(default="", validation_alias=_alias("useCase", "use_case"))
    code: str
    explanation: str = ""
    version: str = DocVersion.both.value
    language: str = "typescript"
    filename: Optional[str] = None
    tags: Tuple[str, ...] = ()
    embedding: Optional[Tuple[float, ...]] = None
    embedding_model: Optional[str] = Field(
        default=None, validation_alias=_alias("embeddingModel", "embedding_model")
    )

    @model_validator(mode="before")
    @classmethod
    def _default_version(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("version"):
            return {**data, "version": DocVersion.both.value}
        return data


class BestPractice(KnowledgeModel):
    id: str = Field(min_length=1)
    topic: str
    rule: str
    rationale: str = ""
    good_example: str = Field(default="", validation_alias=_alias("goodExample", "good_example"))
    bad_example: str = Field(default="", validation_alias=_alias("badExample", "bad_example"))
    version: str = DocVersion.both.value
    tags: Tuple[str, ...] = ()


class TemplateFragment(KnowledgeModel):
    id: str = Field(min_length=1)
    name: str
    code: str
    imports: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    feature_flags: Tuple[str, ...] = Field(default=(), validation_alias=_alias("featureFlags", "feature_flags"))
    version: str = DocVersion.both.value
    description: Optional[str] = None
    language: Optional[str] = None
    tags: Tuple[str, ...] = ()
    embedding: Optional[Tuple[float, ...]] = None
    embedding_model: Optional[str] = Field(
        default=None, validation_alias=_alias("embeddingModel", "embedding_model")
    )


@dataclass
class KnowledgeIndex:
    """Docs grouped by category plus the side collections; never has missing keys."""

    by_category: Dict[str, List[DocEntry]] = field(default_factory=dict)
    templates: List[TemplateFragment] = field(default_factory=list)
    snippets: List[CodeSnippet] = field(default_factory=list)
    patterns: List[ErrorPattern] = field(default_factory=list)
    best_practices: List[BestPractice] = field(default_factory=list)


_V = TypeVar("_V")


def parse_version_filter(value: Any, default: Union[str, VersionFilter] = VersionFilter.v6) -> VersionFilter:
    """Coerce caller input to a VersionFilter, falling back to ``default``."""
    if isinstance(value, VersionFilter):
        return value
    if isinstance(value, str):
        try:
            return VersionFilter(value.strip().lower())
        except ValueError:
            pass
    return VersionFilter(default)


def matches_version(record_version: Optional[str], version_filter: VersionFilter) -> bool:
    if version_filter is VersionFilter.all:
        return True
    if record_version not in KNOWN_VERSIONS:
        return False
    if version_filter is VersionFilter.both:
        return True
    return record_version == version_filter.value or record_version == DocVersion.both.value


def filter_by_version(records: Iterable[_V], version_filter: Union[str, VersionFilter]) -> List[_V]:
    """
    Keep the records visible under ``version_filter``.

    - ``all``   -> every record, including unrecognised version tags
    - ``both``  -> every record with a recognised tag
    - ``v5``/``v6`` -> that version plus records tagged ``both``
    """
    vf = version_filter if isinstance(version_filter, VersionFilter) else VersionFilter(version_filter)
    return [r for r in records if matches_version(getattr(r, "version", None), vf)]
