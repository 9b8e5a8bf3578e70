"""
Retrieval module for documentation search.

Contains:
- Unified tokenizer for BM25 indexing and querying
- BM25 lexical ranker
- Vector ranker over pre-embedded records
- Pattern-first hybrid matcher for error troubleshooting
- Result post-processing (dedup cap, token budget)
"""

from .tokenizer import (
    tokenize,
    STOPWORDS,
)
from .types import (
    RankedHit,
    EmbeddedRecord,
    EmbeddingUnavailableError,
    RetrievalCancelledError,
    rescale_to_top,
)
from .bm25_service import (
    LexicalRanker,
    LengthNormalizedBM25,
)
from .vector_search import (
    VectorRanker,
    QueryEmbedder,
)
from .hybrid_matcher import (
    HybridMatcher,
    MatchKind,
    TroubleshootMatch,
    build_fallback_guidance,
)
from .post_processor import (
    ResultPostProcessor,
    ProcessedResults,
)

__all__ = [
    "tokenize",
    "STOPWORDS",
    "RankedHit",
    "EmbeddedRecord",
    "EmbeddingUnavailableError",
    "RetrievalCancelledError",
    "rescale_to_top",
    "LexicalRanker",
    "LengthNormalizedBM25",
    "VectorRanker",
    "QueryEmbedder",
    "HybridMatcher",
    "MatchKind",
    "TroubleshootMatch",
    "build_fallback_guidance",
    "ResultPostProcessor",
    "ProcessedResults",
]
