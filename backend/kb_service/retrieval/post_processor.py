"""
Post-ranking result shaping: per-source dedup, token budget and limit.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from .types import RankedHit

if TYPE_CHECKING:
    from ..models.knowledge import DocEntry


logger = logging.getLogger(__name__)


@dataclass
class ProcessedResults:
    """Admitted ``(hit, record)`` pairs in rank order and their token total."""
    items: List[Tuple[RankedHit, "DocEntry"]] = field(default_factory=list)
    total_tokens: int = 0

    def __len__(self) -> int:
        return len(self.items)


class ResultPostProcessor:
    """
    Turn an over-fetched hit list into the final result set.

    Hits are walked in rank order. A hit is admitted while its source has
    fewer than ``per_source_cap`` admitted hits; when a token budget is set,
    the first hit that would push the running total over the budget ends the
    walk (smaller hits further down are not considered).

    Each hit is joined to its record through ``hit.position``, the index in
    the candidate list it was ranked from, so records sharing an id stay
    distinct.
    """

    def process(
        self,
        hits: Sequence[RankedHit],
        candidates: Sequence["DocEntry"],
        limit: int,
        per_source_cap: int = 2,
        token_budget: Optional[int] = None,
    ) -> ProcessedResults:
        result = ProcessedResults()
        if limit <= 0:
            return result

        per_source: Dict[str, int] = defaultdict(int)
        dropped = 0

        for hit in hits:
            if len(result.items) >= limit:
                break

            if not 0 <= hit.position < len(candidates):
                dropped += 1
                continue
            record = candidates[hit.position]

            key = record.dedup_key
            if per_source[key] >= per_source_cap:
                continue

            tokens = record.token_count
            if token_budget is not None and result.total_tokens + tokens > token_budget:
                logger.debug(
                    "Token budget reached",
                    extra={"budget": token_budget, "total_tokens": result.total_tokens, "next_tokens": tokens},
                )
                break

            per_source[key] += 1
            result.items.append((hit, record))
            result.total_tokens += tokens

        if dropped:
            logger.debug("Dropped hits outside the candidate list", extra={"count": dropped})

        return result
