"""
BM25 lexical ranking for keyword-based search.

This is the legacy ranking path and the degraded-mode fallback when the
embedding model cannot be loaded. It builds on rank_bm25's ``BM25`` base
class for corpus statistics and overrides the idf and scoring steps:

    idf(t)      = ln(1 + (N - df(t) + 0.5) / (df(t) + 0.5))
    score(d, q) = sum_t idf(t) * tf*(k1+1) / (tf + k1*(1 - b + b*|d|/avgdl))

The ``1 +`` inside the log keeps idf positive for terms present in most
documents, unlike ``BM25Okapi`` which floors them with an epsilon.

CRITICAL: queries are tokenized with tokenize() from tokenizer.py, the
same function used to produce indexed token lists.
"""

import logging
import math
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from rank_bm25 import BM25

from .tokenizer import tokenize
from .types import RankedHit, rescale_to_top

if TYPE_CHECKING:
    from ..models.knowledge import DocEntry


logger = logging.getLogger(__name__)

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75


class LengthNormalizedBM25(BM25):
    """rank_bm25 corpus model with the ``ln(1 + ...)`` idf variant."""

    def __init__(self, corpus: List[List[str]], k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        self.k1 = k1
        self.b = b
        super().__init__(corpus)

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))

    def get_scores(self, query: List[str]) -> np.ndarray:
        score = np.zeros(self.corpus_size)
        doc_len = np.array(self.doc_len, dtype=float)
        for term in query:
            idf = self.idf.get(term)
            if idf is None:
                # Term not in corpus, contributes nothing
                continue
            q_freq = np.array([doc.get(term, 0) for doc in self.doc_freqs], dtype=float)
            denom = q_freq + self.k1 * (1 - self.b + self.b * doc_len / self.avgdl)
            score += idf * np.divide(
                q_freq * (self.k1 + 1),
                denom,
                out=np.zeros_like(q_freq),
                where=denom > 0,
            )
        return score


class LexicalRanker:
    """
    BM25 ranker over ``(id, tokens)`` pairs.

    Re-indexing fully replaces the previous index; there is no incremental
    update.

    Example:
        >>> ranker = LexicalRanker()
        >>> ranker.index([
        ...     ("a", ["feathers", "service", "create"]),
        ...     ("b", ["feathers", "hooks"]),
        ... ])
        >>> hits = ranker.search("feathers service")
        >>> [h.id for h in hits], hits[0].score
        (['a', 'b'], 1.0)
    """

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        """
        Initialize the ranker.

        Args:
            k1: Term-frequency saturation (default 1.5)
            b: Length-normalization strength (default 0.75)
        """
        self.k1 = k1
        self.b = b
        self._index: Optional[LengthNormalizedBM25] = None
        self._doc_ids: List[str] = []
        self._indexed = False

    @property
    def is_indexed(self) -> bool:
        """Check if ``index()`` has been called."""
        return self._indexed

    @property
    def document_count(self) -> int:
        """Return the number of indexed documents."""
        return len(self._doc_ids)

    def index(self, documents: Iterable[Tuple[str, Sequence[str]]]) -> None:
        """
        Build the index from ``(id, tokens)`` pairs.

        An empty corpus is valid; searches against it return no hits.
        """
        pairs = [(doc_id, list(tokens)) for doc_id, tokens in documents]
        self._doc_ids = [doc_id for doc_id, _ in pairs]
        corpus = [tokens for _, tokens in pairs]
        # rank_bm25 divides by the corpus size, so an empty corpus has no model
        self._index = LengthNormalizedBM25(corpus, k1=self.k1, b=self.b) if corpus else None
        self._indexed = True
        logger.debug("Built BM25 index", extra={"documents": len(pairs)})

    def index_records(self, records: Iterable["DocEntry"]) -> None:
        """Index corpus records by their precomputed (or derived) token lists."""
        self.index((record.id, record.lexical_tokens) for record in records)

    def search(self, query: str, limit: int = 10) -> List[RankedHit]:
        """
        Rank indexed documents against ``query``.

        Args:
            query: Free-text query
            limit: Maximum number of hits to return

        Returns:
            Hits with score > 0, descending, top hit rescaled to exactly 1.0

        Raises:
            RuntimeError: If no index has been built
        """
        if not self._indexed:
            raise RuntimeError("No index has been built. Call index() first.")

        if self._index is None or limit <= 0:
            return []

        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        scores = self._index.get_scores(query_tokens)

        hits = [
            RankedHit(id=self._doc_ids[i], score=float(score), position=i)
            for i, score in enumerate(scores)
            if score > 0
        ]
        # list.sort is stable, so equal scores keep corpus order
        hits.sort(key=lambda h: h.score, reverse=True)

        return rescale_to_top(hits[:limit])

    def clear(self) -> None:
        """Clear the index and all stored data."""
        self._index = None
        self._doc_ids = []
        self._indexed = False
