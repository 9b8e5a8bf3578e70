"""
Shared result types for the rankers.
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class RankedHit:
    """A scored candidate id. ``position`` is the index in the candidate list."""
    id: str
    score: float
    position: int = 0


class EmbeddedRecord(Protocol):
    """Anything the vector ranker can score."""

    @property
    def id(self) -> str: ...

    @property
    def embedding(self) -> Optional[Sequence[float]]: ...

    @property
    def embedding_model(self) -> Optional[str]: ...


def rescale_to_top(hits: List[RankedHit], precision: int = 6) -> List[RankedHit]:
    """
    Rescale scores so the first (best) hit is exactly 1.0.

    ``hits`` must already be sorted descending. When the top score is <= 0
    the list is returned unchanged.
    """
    if not hits:
        return hits

    top = hits[0].score
    if top <= 0:
        return hits

    rescaled = [
        replace(hit, score=max(0.0, round(hit.score / top, precision)))
        for hit in hits
    ]
    rescaled[0] = replace(rescaled[0], score=1.0)
    return rescaled


class RetrievalCancelledError(RuntimeError):
    """The caller aborted the request before model inference started."""


class EmbeddingUnavailableError(RuntimeError):
    """The embedding model could not be initialised. The next call retries."""
