from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from functools import lru_cache
from typing import Any, Callable, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

try:
    from sentence_transformers.sentence_transformer.modules import Normalize, Pooling, Transformer
except ImportError:  # releases before the modules package moved
    from sentence_transformers.models import Normalize, Pooling, Transformer

from ..core.config import Settings, get_settings
from ..retrieval.types import EmbeddingUnavailableError


ModelFactory = Callable[[Settings], Any]


def build_sentence_transformer(settings: Settings) -> SentenceTransformer:
    """
    Assemble the query encoder from explicit modules.

    Pooling and normalisation are spelled out instead of taken from the
    model card so they are guaranteed to match the scheme the corpus was
    embedded with (``settings.embedding_scheme_id``).
    """
    word_embedding = Transformer(settings.embedding_model_name)
    pooling = Pooling(
        word_embedding.get_word_embedding_dimension(),
        pooling_mode=settings.embedding_pooling,
    )
    modules: List[Any] = [word_embedding, pooling]
    if settings.embedding_normalize:
        modules.append(Normalize())
    return SentenceTransformer(modules=modules, device=settings.embedding_device)


class EmbeddingEngine:
    """
    Process-wide query embedder with a lazily loaded model.

    At most one load runs at a time: the first caller publishes a Future and
    loads, every concurrent caller waits on that same Future and sees the same
    model or the same EmbeddingUnavailableError. A failed load clears the
    in-flight marker so a later call can try again.

    The pooling mode and normalisation flag MUST match the settings that
    produced the stored corpus embeddings. A mismatch does not fail; it just
    makes every similarity score worse.
    """

    def __init__(self, settings: Optional[Settings] = None, model_factory: Optional[ModelFactory] = None):
        self.settings = settings or get_settings()
        self.logger = logging.getLogger("kb_service.services.embedding")
        self._model_factory = model_factory or build_sentence_transformer
        self._model: Any = None
        self._init_future: Optional[Future] = None
        self._lock = threading.Lock()
        self._dimension: Optional[int] = None

    @property
    def scheme_id(self) -> str:
        return self.settings.embedding_scheme_id

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _ensure_model(self) -> Any:
        model = self._model
        if model is not None:
            return model

        with self._lock:
            if self._model is not None:
                return self._model
            future = self._init_future
            owner = future is None
            if owner:
                future = Future()
                self._init_future = future

        if not owner:
            return future.result()

        model_name = self.settings.embedding_model_name
        start = time.perf_counter()
        try:
            model = self._model_factory(self.settings)
        except Exception as exc:
            error = EmbeddingUnavailableError(f"Failed to load embedding model {model_name!r}: {exc}")
            with self._lock:
                self._init_future = None
            future.set_exception(error)
            self.logger.error(
                "Embedding model failed to load",
                extra={"model": model_name, "error": str(exc)},
            )
            raise error from exc

        with self._lock:
            self._model = model
        future.set_result(model)
        self.logger.info(
            "Embedding model loaded",
            extra={
                "model": model_name,
                "pooling": self.settings.embedding_pooling,
                "normalize": self.settings.embedding_normalize,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return model

    def warm_up(self) -> None:
        """Load the model ahead of the first query."""
        self._ensure_model()

    def embed(self, text: str) -> np.ndarray:
        """
        Embed ``text`` into a 1-D float32 vector.

        Raises:
            EmbeddingUnavailableError: If the model cannot be loaded
        """
        model = self._ensure_model()
        start = time.perf_counter()
        vector = model.encode(text.strip(), convert_to_numpy=True, show_progress_bar=False)
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self._dimension is None:
            self._dimension = int(vector.shape[0])
        self.logger.debug(
            "Embedded query",
            extra={"dimension": int(vector.shape[0]), "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
        )
        return vector


@lru_cache(maxsize=1)
def get_embedding_engine() -> EmbeddingEngine:
    return EmbeddingEngine(get_settings())
