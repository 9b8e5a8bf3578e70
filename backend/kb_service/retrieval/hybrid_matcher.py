"""
Error troubleshooting matcher.

Three ordered stages, stopping at the first that produces a match:

1. ``pattern``  - case-insensitive regex of each known error against the
   user's error text; the longest matching pattern wins (more specific).
2. ``semantic`` - vector ranking of the same candidates, with a looser
   score floor than general search because error text is noisy.
3. ``fallback`` - a generic checklist that echoes the error text back.

The pattern stage is cheap and synchronous. The semantic stage is the only
one that runs model inference, so cancellation is checked right before it.
"""

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Optional, Sequence

from .types import EmbeddingUnavailableError, RetrievalCancelledError
from .vector_search import VectorRanker

if TYPE_CHECKING:
    from ..models.knowledge import ErrorPattern


logger = logging.getLogger(__name__)

DEFAULT_RESULT_CAP = 3
DEFAULT_MIN_SCORE = 0.02

FALLBACK_STEPS = (
    "Check the full stack trace.",
    "Verify authentication setup.",
    "Validate request schema.",
    "Ensure services are registered.",
    "Confirm database connectivity.",
    "Enable debug logging.",
)


class MatchKind(str, Enum):
    PATTERN = "pattern"
    SEMANTIC = "semantic"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TroubleshootMatch:
    """Outcome of :meth:`HybridMatcher.match`."""
    kind: MatchKind
    error_text: str
    record: Optional["ErrorPattern"] = None
    confidence: Optional[float] = None
    guidance: Optional[str] = None

    def render(self) -> str:
        """Human-readable troubleshooting text."""
        if self.record is None:
            return self.guidance or build_fallback_guidance(self.error_text)

        parts = [
            f"Category: {self.record.category}",
            f"Error ID: {self.record.id}",
        ]
        if self.kind is MatchKind.SEMANTIC and self.confidence is not None:
            parts.append(f"Confidence: {self.confidence:.2f}")
        parts += [
            "",
            "Cause:",
            self.record.cause,
            "",
            "Solution:",
            self.record.solution,
        ]
        if self.record.example:
            parts += ["", "Example:", self.record.example]
        return "\n".join(parts)


def build_fallback_guidance(error_text: str) -> str:
    steps = "\n".join(f"- {step}" for step in FALLBACK_STEPS)
    return (
        "Unknown error.\n\n"
        "General Troubleshooting Steps:\n"
        f"{steps}\n\n"
        "Error Received:\n"
        f"{error_text}"
    )


@lru_cache(maxsize=512)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


class HybridMatcher:
    """
    Pattern-first, semantic-second matcher for error records.

    Args:
        semantic_ranker: Vector ranker for stage 2 (None disables the stage)
        result_cap: Number of semantic hits requested from the ranker
        min_score: Raw similarity floor for semantic hits
    """

    def __init__(
        self,
        semantic_ranker: Optional[VectorRanker] = None,
        result_cap: int = DEFAULT_RESULT_CAP,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> None:
        self._semantic_ranker = semantic_ranker
        self._result_cap = result_cap
        self._min_score = min_score

    def match(
        self,
        error_message: str,
        candidates: Sequence["ErrorPattern"],
        stack_trace: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TroubleshootMatch:
        """
        Diagnose ``error_message`` against ``candidates``.

        Raises:
            RetrievalCancelledError: If ``cancel_event`` is set before the
                semantic stage
        """
        combined = f"{error_message} {stack_trace or ''}".strip()

        record = self._pattern_stage(combined, candidates)
        if record is not None:
            return TroubleshootMatch(
                kind=MatchKind.PATTERN,
                error_text=error_message,
                record=record,
                confidence=1.0,
            )

        if cancel_event is not None and cancel_event.is_set():
            raise RetrievalCancelledError("troubleshoot cancelled before semantic stage")

        semantic = self._semantic_stage(error_message, combined, candidates, cancel_event)
        if semantic is not None:
            return semantic

        return TroubleshootMatch(
            kind=MatchKind.FALLBACK,
            error_text=error_message,
            guidance=build_fallback_guidance(error_message),
        )

    def _pattern_stage(self, text: str, candidates: Sequence["ErrorPattern"]) -> Optional["ErrorPattern"]:
        best: Optional["ErrorPattern"] = None
        for candidate in candidates:
            pattern = candidate.pattern
            if not pattern:
                continue
            try:
                compiled = _compile(pattern)
            except re.error as e:
                logger.warning(
                    f"Skipping invalid error pattern: {e}",
                    extra={"record_id": candidate.id, "pattern": pattern},
                )
                continue
            if not compiled.search(text):
                continue
            # Longer pattern = more specific; first one wins on ties
            if best is None or len(pattern) > len(best.pattern):
                best = candidate
        return best

    def _semantic_stage(
        self,
        error_message: str,
        text: str,
        candidates: Sequence["ErrorPattern"],
        cancel_event: Optional[threading.Event],
    ) -> Optional[TroubleshootMatch]:
        if self._semantic_ranker is None:
            return None
        if not any(candidate.embedding for candidate in candidates):
            logger.debug("No embedded error records, skipping semantic stage")
            return None

        try:
            hits = self._semantic_ranker.search(
                text,
                candidates,
                limit=self._result_cap,
                min_score=self._min_score,
                cancel_event=cancel_event,
            )
        except EmbeddingUnavailableError as e:
            logger.warning(f"Semantic stage unavailable, using fallback guidance: {e}")
            return None

        if not hits:
            return None

        top = hits[0]
        return TroubleshootMatch(
            kind=MatchKind.SEMANTIC,
            error_text=error_message,
            record=candidates[top.position],
            confidence=top.score,
        )
