"""
Semantic ranking over pre-embedded corpus records.

The query is embedded with the shared EmbeddingEngine and compared with every
candidate's stored vector. Both sides are L2-normalised, so the dot product
is the cosine similarity without the per-candidate norm and division.

Candidates without an embedding are skipped, so a partially embedded corpus
still works. Candidates tagged with a different embedding scheme are skipped
too: their vectors live in another space and would score as noise.
"""

import logging
import threading
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .types import EmbeddedRecord, RankedHit, RetrievalCancelledError, rescale_to_top


logger = logging.getLogger(__name__)


class QueryEmbedder(Protocol):
    """What the ranker needs from the embedding engine."""

    @property
    def scheme_id(self) -> str: ...

    def embed(self, text: str) -> np.ndarray: ...


class VectorRanker:
    """
    Dot-product ranker over candidate records.

    Example:
        >>> ranker = VectorRanker(get_embedding_engine())
        >>> hits = ranker.search("register a service", docs, limit=5, min_score=0.05)
        >>> hits[0].score
        1.0
    """

    def __init__(self, embedder: QueryEmbedder) -> None:
        self._embedder = embedder

    @property
    def embedder(self) -> QueryEmbedder:
        return self._embedder

    def search(
        self,
        query: str,
        candidates: Sequence[EmbeddedRecord],
        limit: int = 10,
        min_score: float = 0.05,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RankedHit]:
        """
        Rank ``candidates`` against ``query``.

        Args:
            query: Free-text query
            candidates: Records to score (already filtered by version etc.)
            limit: Maximum number of hits to return
            min_score: Raw similarity floor, applied before sorting
            cancel_event: Checked before the model is invoked

        Returns:
            Hits sorted by descending score (ties keep candidate order),
            sliced to ``limit`` and rescaled so the first hit is 1.0

        Raises:
            RetrievalCancelledError: If ``cancel_event`` is set
            EmbeddingUnavailableError: If the model cannot be loaded
        """
        if not query or not query.strip():
            return []
        if not candidates or limit <= 0:
            return []

        if cancel_event is not None and cancel_event.is_set():
            raise RetrievalCancelledError("search cancelled before query embedding")

        query_vector = np.asarray(self._embedder.embed(query), dtype=np.float32).reshape(-1)
        scheme_id = self._embedder.scheme_id

        scored: List[Tuple[int, float]] = []
        positions: List[int] = []
        vectors: List[np.ndarray] = []
        foreign_scheme = 0
        mismatched = 0

        for position, record in enumerate(candidates):
            embedding = record.embedding
            if not embedding:
                continue
            if record.embedding_model and record.embedding_model != scheme_id:
                foreign_scheme += 1
                continue
            vector = np.asarray(embedding, dtype=np.float32)
            if vector.shape != query_vector.shape:
                # Partially migrated corpus: compare as zero, never crash
                mismatched += 1
                scored.append((position, 0.0))
                continue
            positions.append(position)
            vectors.append(vector)

        if vectors:
            similarities = np.stack(vectors) @ query_vector
            scored.extend(zip(positions, (float(s) for s in similarities)))

        if foreign_scheme:
            logger.debug(
                "Skipped candidates embedded with another scheme",
                extra={"count": foreign_scheme, "scheme": scheme_id},
            )
        if mismatched:
            logger.warning(
                "Embedding dimension mismatch, scored as zero similarity",
                extra={"count": mismatched, "query_dimension": int(query_vector.shape[0])},
            )

        scored.sort(key=lambda item: item[0])
        hits = [
            RankedHit(id=candidates[position].id, score=score, position=position)
            for position, score in scored
            if score >= min_score
        ]
        hits.sort(key=lambda h: h.score, reverse=True)

        return rescale_to_top(hits[:limit])
