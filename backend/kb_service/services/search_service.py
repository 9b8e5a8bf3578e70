from __future__ import annotations

import logging
import math
import re
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..logging_utils import (
    SEARCH_DEGRADED,
    SEARCH_DURATION,
    SEARCH_REQUESTS,
    operation_context,
)
from ..models.knowledge import (
    BestPractice,
    CodeSnippet,
    DocEntry,
    ErrorPattern,
    TemplateFragment,
    VersionFilter,
    filter_by_version,
    parse_version_filter,
)
from ..repositories.knowledge_store import KnowledgeStore
from ..retrieval.bm25_service import LexicalRanker
from ..retrieval.hybrid_matcher import HybridMatcher, TroubleshootMatch
from ..retrieval.post_processor import ResultPostProcessor
from ..retrieval.tokenizer import tokenize
from ..retrieval.types import EmbeddingUnavailableError, RankedHit
from ..retrieval.vector_search import VectorRanker
from .embedding_service import EmbeddingEngine, get_embedding_engine


class SearchUnavailableError(RuntimeError):
    """Vector search is down and the lexical fallback is disabled."""


class ScoredResult(BaseModel):
    id: str
    heading: str
    version: str
    category: str
    score: float
    snippet: str
    breadcrumb: str = ""
    source_file: Optional[str] = None
    tokens: int = 0


class SearchResponse(BaseModel):
    query: str
    version: str
    results: List[ScoredResult] = Field(default_factory=list)
    total_tokens: int = 0
    degraded: bool = False


class ConceptExplanation(BaseModel):
    concept: str
    best: Optional[ScoredResult] = None
    related: List[ScoredResult] = Field(default_factory=list)
    degraded: bool = False

    def render(self) -> str:
        if self.best is None:
            return f'Concept "{self.concept}" not found in documentation.'
        parts = [f"Concept: {self.best.heading}", f"Version: {self.best.version}", "", "Definition:", self.best.snippet]
        if self.related:
            parts += ["", "Related Concepts:"]
            parts += [f"- {r.heading}" for r in self.related]
        return "\n".join(parts)


class HookExample(BaseModel):
    snippet_id: str
    hook_type: str
    use_case: str
    version: str
    code: str
    explanation: str = ""
    language: str = "typescript"
    relevance_score: Optional[float] = None


class Alternative(BaseModel):
    id: str
    title: str
    code: str
    tradeoffs: str
    when_to_use: str
    score: Optional[float] = None

    def render(self, number: int) -> str:
        parts = [f"Alternative {number}: {self.title}"]
        if self.score is not None:
            parts.append(f"Relevance: {self.score * 100:.1f}%")
        parts += ["", "Code:", self.code, "", "Tradeoffs:", self.tradeoffs, "", "When to use:", self.when_to_use]
        return "\n".join(parts)


class AlternativesResponse(BaseModel):
    pattern: str
    context: Optional[str] = None
    alternatives: List[Alternative] = Field(default_factory=list)
    used_fallback: bool = False
    degraded: bool = False

    def render(self) -> str:
        if not self.pattern:
            return "Please provide a pattern to search for alternatives."
        body = ("\n\n" + "=" * 80 + "\n\n").join(
            alt.render(i) for i, alt in enumerate(self.alternatives, start=1)
        )
        if self.used_fallback:
            return f'No specific alternatives found for "{self.pattern}". Here are some common patterns:\n\n{body}'
        return body


FALLBACK_ALTERNATIVES: Tuple[Alternative, ...] = (
    Alternative(
        id="fallback-1",
        title="Hook-based approach",
        code=(
            "// Around hook example\n"
            "export const wrapLogic = async (context, next) => {\n"
            "  // Pre-processing logic\n"
            "  await next();\n"
            "  // Post-processing logic\n"
            "};"
        ),
        tradeoffs=(
            "Centralizes cross-cutting logic and keeps services clean, but can become hard "
            "to trace when many hooks are chained together."
        ),
        when_to_use=(
            "Use when behavior should run consistently across multiple service methods "
            "(e.g., logging, validation, authorization)."
        ),
    ),
    Alternative(
        id="fallback-2",
        title="Service method approach",
        code=(
            "// Service class with explicit logic\n"
            "class MyService {\n"
            "  async create(data, params) {\n"
            "    const validated = this.validateData(data);\n"
            "    return this.saveToDatabase(validated);\n"
            "  }\n"
            "}"
        ),
        tradeoffs=(
            "Keeps behavior explicit and easy to trace, but may lead to code duplication "
            "across services."
        ),
        when_to_use=(
            "Use when behavior is service-specific and needs clear method-level ownership "
            "without cross-cutting concerns."
        ),
    ),
    Alternative(
        id="fallback-3",
        title="Schema-based validation",
        code=(
            "// Schema validation with resolvers\n"
            "import { resolve } from '@feathersjs/schema';\n"
            "\n"
            "export const myDataResolver = resolve({\n"
            "  email: async (value) => value.toLowerCase(),\n"
            "  createdAt: async () => new Date()\n"
            "});"
        ),
        tradeoffs=(
            "Provides type safety and automatic validation, but requires learning the schema "
            "system and may be overkill for simple cases."
        ),
        when_to_use=(
            "Use when you need robust data validation, type safety and automatic "
            "serialization."
        ),
    ),
)

_FENCED_CODE = re.compile(r"```[\w-]*\n(.*?)```", re.DOTALL)
_CODE_HINTS = tuple(
    re.compile(p)
    for p in (
        r"\bfunction\b", r"\bconst\b", r"\blet\b", r"\bvar\b", r"\basync\b",
        r"\bawait\b", r"\bexport\b", r"\bimport\b", r"=>", r"\{[\s\S]*\}",
    )
)
# Plain content longer than this is prose even when it mentions code
_MAX_INLINE_CODE = 500

_HOOK_TYPE_USES = {
    "before": "Use when you need to validate or transform data before a service method executes.",
    "after": "Use when you need to transform results or trigger side effects after a service method completes.",
    "error": "Use when you need to handle or transform errors before they reach the client.",
}

_CATEGORY_TRADEOFFS = {
    "hooks": "Centralizes cross-cutting concerns but can become complex when many hooks are chained.",
    "services": "Keeps logic explicit in service methods but may lead to code duplication across services.",
}


def build_snippet(content: str, query: str, length: int = 300) -> str:
    """
    Cut a ``length``-character window of ``content`` around the first place
    any query token occurs (or the start). Whitespace is collapsed and cut
    edges get an ellipsis.
    """
    text = " ".join((content or "").split())
    if len(text) <= length:
        return text

    lowered = text.lower()
    found = [pos for pos in (lowered.find(token) for token in tokenize(query)) if pos >= 0]
    anchor = min(found) if found else 0

    start = max(0, anchor - length // 3)
    end = min(len(text), start + length)
    start = max(0, end - length)

    snippet = text[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def extract_code(record: Any) -> str:
    """A record's ``code``, else its first fenced block, else short code-like content."""
    code = getattr(record, "code", None)
    if isinstance(code, str) and code:
        return code

    content = getattr(record, "raw_content", None) or getattr(record, "content", None) or ""
    match = _FENCED_CODE.search(content)
    if match and match.group(1).strip():
        return match.group(1).strip()
    if len(content) < _MAX_INLINE_CODE and any(hint.search(content) for hint in _CODE_HINTS):
        return content
    return ""


def _alternative_title(record: Any) -> str:
    if isinstance(record, TemplateFragment):
        return record.name
    if isinstance(record, CodeSnippet):
        return record.use_case or record.id
    return getattr(record, "heading", None) or record.id


def _tradeoffs(record: Any) -> str:
    if isinstance(record, TemplateFragment):
        return "Provides comprehensive scaffolding but may include features you need to customize or remove."
    if isinstance(record, CodeSnippet):
        return "Focused and lightweight but requires manual integration into your application structure."
    return _CATEGORY_TRADEOFFS.get(
        getattr(record, "category", ""),
        "Standard approach with balanced tradeoffs between flexibility and complexity.",
    )


def _when_to_use(record: Any, title: str) -> str:
    if isinstance(record, CodeSnippet):
        if record.use_case:
            return f"Use when you need: {record.use_case}"
        if record.type in _HOOK_TYPE_USES:
            return _HOOK_TYPE_USES[record.type]
    tags = getattr(record, "tags", ())
    if tags:
        return f"Use for: {', '.join(tags)}"
    return f"Use when implementing: {title.lower()}"


class KnowledgeService:
    """Retrieval operations over the knowledge base: search, troubleshoot, explain."""

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        engine: Optional[EmbeddingEngine] = None,
        settings: Optional[Settings] = None,
        post_processor: Optional[ResultPostProcessor] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or KnowledgeStore(settings=self.settings)
        if engine is None:
            engine = get_embedding_engine() if settings is None else EmbeddingEngine(self.settings)
        self.engine = engine
        self.vector_ranker = VectorRanker(self.engine)
        self.post_processor = post_processor or ResultPostProcessor()
        self.matcher = HybridMatcher(
            self.vector_ranker,
            result_cap=self.settings.troubleshoot_result_cap,
            min_score=self.settings.troubleshoot_min_score,
        )
        self.logger = logging.getLogger("kb_service.services.search")
        # version filter -> (source list, filtered candidates, ranker)
        self._lexical_cache: Dict[str, Tuple[List[DocEntry], List[DocEntry], LexicalRanker]] = {}
        self._lexical_lock = threading.Lock()

    # --- Public API -----------------------------------------------------

    def search_docs(
        self,
        query: str,
        version: Optional[str] = None,
        limit: Optional[int] = None,
        token_budget: Optional[int] = None,
        min_score: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> SearchResponse:
        """
        Rank the docs collection against ``query``.

        Raises:
            SearchUnavailableError: If the embedding model is unavailable and
                the lexical fallback is disabled
        """
        version_filter = parse_version_filter(version, default=self.settings.default_version)
        with operation_context("search_docs", version_filter.value, request_id):
            query = (query or "").strip()
            limit = self._normalize_limit(limit)
            if token_budget is None:
                token_budget = self.settings.default_token_budget

            if not query:
                return SearchResponse(query=query, version=version_filter.value)

            with SEARCH_DURATION.labels(operation="search_docs").time():
                start = time.perf_counter()
                docs = self.store.load(self.settings.docs_category)
                candidates = filter_by_version(docs, version_filter)
                fetch = limit * self.settings.overfetch_factor
                score_floor = self.settings.search_min_score if min_score is None else min_score

                hits, candidates, backend, degraded = self._rank_docs(
                    query, docs, candidates, version_filter, fetch, score_floor
                )
                unique_hits = self._drop_duplicate_records(hits, candidates)

                processed = self.post_processor.process(
                    unique_hits,
                    candidates,
                    limit=limit,
                    per_source_cap=self.settings.dedup_per_source,
                    token_budget=token_budget,
                )

                results = [
                    ScoredResult(
                        id=record.id,
                        heading=record.heading,
                        version=record.version,
                        category=record.category,
                        score=hit.score,
                        snippet=build_snippet(record.raw_content, query, self.settings.snippet_length),
                        breadcrumb=record.breadcrumb,
                        source_file=record.source_file,
                        tokens=record.token_count,
                    )
                    for hit, record in processed.items
                ]

            SEARCH_REQUESTS.labels(operation="search_docs", backend=backend).inc()
            self.logger.info(
                "Search completed",
                extra={
                    "backend": backend,
                    "degraded": degraded,
                    "candidates": len(candidates),
                    "hits": len(hits),
                    "results": len(results),
                    "total_tokens": processed.total_tokens,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            return SearchResponse(
                query=query,
                version=version_filter.value,
                results=results,
                total_tokens=processed.total_tokens,
                degraded=degraded,
            )

    def troubleshoot(
        self,
        error_message: str,
        version: Optional[str] = None,
        stack_trace: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        request_id: Optional[str] = None,
    ) -> TroubleshootMatch:
        """
        Diagnose an error message against the known error patterns.

        Raises:
            RetrievalCancelledError: If ``cancel_event`` is set before the
                semantic stage
        """
        version_filter = parse_version_filter(version, default=self.settings.default_version)
        with operation_context("troubleshoot", version_filter.value, request_id):
            with SEARCH_DURATION.labels(operation="troubleshoot").time():
                patterns: List[ErrorPattern] = filter_by_version(self.store.load("errors"), version_filter)
                match = self.matcher.match(
                    error_message or "",
                    patterns,
                    stack_trace=stack_trace,
                    cancel_event=cancel_event,
                )

            SEARCH_REQUESTS.labels(operation="troubleshoot", backend=match.kind.value).inc()
            self.logger.info(
                "Troubleshoot completed",
                extra={
                    "match_kind": match.kind.value,
                    "record_id": match.record.id if match.record is not None else None,
                    "candidates": len(patterns),
                },
            )
            return match

    def explain_concept(self, concept: str, request_id: Optional[str] = None) -> ConceptExplanation:
        with operation_context("explain_concept", VersionFilter.all.value, request_id):
            concept = (concept or "").strip()
            if not concept:
                return ConceptExplanation(concept=concept)

            response = self.search_docs(
                concept,
                version=VersionFilter.all.value,
                limit=5,
                min_score=self.settings.explain_min_score,
            )
            if not response.results:
                return ConceptExplanation(concept=concept, degraded=response.degraded)
            return ConceptExplanation(
                concept=concept,
                best=response.results[0],
                related=response.results[1:],
                degraded=response.degraded,
            )

    def get_hook_example(
        self,
        hook_type: str,
        use_case: Optional[str] = None,
        version: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Optional[HookExample]:
        """Pick the hook snippet closest to ``use_case``, or the first one of that type."""
        version_filter = parse_version_filter(version, default=self.settings.default_version)
        with operation_context("get_hook_example", version_filter.value, request_id):
            snippets: List[CodeSnippet] = [
                s for s in filter_by_version(self.store.load("snippets"), version_filter)
                if s.type == hook_type
            ]
            if not snippets:
                self.logger.info("No hook examples found", extra={"hook_type": hook_type})
                return None

            selected = snippets[0]
            relevance: Optional[float] = None
            backend = "first"
            if use_case and use_case.strip():
                try:
                    hits = self.vector_ranker.search(
                        use_case, snippets, limit=1, min_score=self.settings.search_min_score
                    )
                except EmbeddingUnavailableError as e:
                    SEARCH_DEGRADED.labels(operation="get_hook_example").inc()
                    self.logger.warning(f"Embedding model unavailable, returning first hook example: {e}")
                else:
                    backend = "vector"
                    if hits:
                        selected = snippets[hits[0].position]
                        relevance = hits[0].score

            SEARCH_REQUESTS.labels(operation="get_hook_example", backend=backend).inc()
            return HookExample(
                snippet_id=selected.id,
                hook_type=selected.type,
                use_case=selected.use_case,
                version=selected.version or version_filter.value,
                code=selected.code,
                explanation=selected.explanation,
                language=selected.language or "typescript",
                relevance_score=relevance,
            )

    def get_best_practices(
        self,
        topic: str,
        context: Optional[str] = None,
        limit: int = 3,
        request_id: Optional[str] = None,
    ) -> List[BestPractice]:
        """Practices for ``topic``, the ones mentioning ``context`` first."""
        # Practices are not version-scoped
        with operation_context("get_best_practices", VersionFilter.all.value, request_id):
            practices: List[BestPractice] = self.store.load("best-practices", topic)
            if not practices:
                practices = [p for p in self.store.load("best-practices") if p.topic == topic]

            ranked = rank_by_context(practices, context) if context else list(practices)
            SEARCH_REQUESTS.labels(operation="get_best_practices", backend="keyword").inc()
            return ranked[:max(limit, 0)]

    def suggest_alternatives(
        self,
        pattern: str,
        context: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AlternativesResponse:
        """
        Find implementation alternatives for ``pattern`` among templates,
        snippets and docs.

        Only hits that carry code become alternatives. They are deduplicated
        by title (case-insensitive, first and therefore best-scored wins) and
        capped at ``alternatives_result_cap``. When nothing qualifies, or the
        embedding model is unavailable, a fixed set of common patterns is
        returned instead.
        """
        with operation_context("suggest_alternatives", VersionFilter.all.value, request_id):
            pattern = (pattern or "").strip()
            context = (context or "").strip() or None
            if not pattern:
                return AlternativesResponse(pattern=pattern, context=context)

            query = f"{pattern} {context}" if context else pattern
            sources: List[Any] = [
                *self.store.load("templates"),
                *self.store.load("snippets"),
                *self.store.load(self.settings.docs_category),
            ]

            try:
                with SEARCH_DURATION.labels(operation="suggest_alternatives").time():
                    hits = self.vector_ranker.search(
                        query,
                        sources,
                        limit=self.settings.alternatives_fetch,
                        min_score=self.settings.alternatives_min_score,
                    )
            except EmbeddingUnavailableError as e:
                SEARCH_DEGRADED.labels(operation="suggest_alternatives").inc()
                self.logger.warning(f"Embedding model unavailable, returning common alternatives: {e}")
                return self._fallback_alternatives(pattern, context, degraded=True)

            alternatives: List[Alternative] = []
            seen: Set[str] = set()
            for hit in hits:
                record = sources[hit.position]
                code = extract_code(record)
                if not code:
                    continue
                title = _alternative_title(record)
                key = title.lower().strip()
                if key in seen:
                    continue
                seen.add(key)
                alternatives.append(
                    Alternative(
                        id=record.id,
                        title=title,
                        code=code,
                        tradeoffs=_tradeoffs(record),
                        when_to_use=_when_to_use(record, title),
                        score=hit.score,
                    )
                )
                if len(alternatives) >= self.settings.alternatives_result_cap:
                    break

            if not alternatives:
                return self._fallback_alternatives(pattern, context)

            SEARCH_REQUESTS.labels(operation="suggest_alternatives", backend="vector").inc()
            self.logger.info(
                "Alternatives found",
                extra={"sources": len(sources), "hits": len(hits), "alternatives": len(alternatives)},
            )
            return AlternativesResponse(pattern=pattern, context=context, alternatives=alternatives)

    # --- Internal helpers -----------------------------------------------

    def _normalize_limit(self, limit: Optional[int]) -> int:
        if isinstance(limit, bool) or not isinstance(limit, (int, float)):
            return self.settings.default_search_limit
        if not math.isfinite(limit) or limit <= 0:
            return self.settings.default_search_limit
        return max(1, min(int(limit), self.settings.max_search_limit))

    def _fallback_alternatives(
        self, pattern: str, context: Optional[str], degraded: bool = False
    ) -> AlternativesResponse:
        SEARCH_REQUESTS.labels(operation="suggest_alternatives", backend="fallback").inc()
        self.logger.info("No alternatives found, using common patterns", extra={"degraded": degraded})
        return AlternativesResponse(
            pattern=pattern,
            context=context,
            alternatives=list(FALLBACK_ALTERNATIVES),
            used_fallback=True,
            degraded=degraded,
        )

    @staticmethod
    def _drop_duplicate_records(hits: Sequence[RankedHit], candidates: Sequence[DocEntry]) -> List[RankedHit]:
        # Ids may repeat across version trees; only the same id from the same source is a duplicate
        seen: Set[Tuple[str, Optional[str]]] = set()
        unique: List[RankedHit] = []
        for hit in hits:
            record = candidates[hit.position]
            key = (record.id, record.source_file)
            if key in seen:
                continue
            seen.add(key)
            unique.append(hit)
        return unique

    def _rank_docs(
        self,
        query: str,
        docs: List[DocEntry],
        candidates: List[DocEntry],
        version_filter: VersionFilter,
        fetch: int,
        min_score: float,
    ) -> Tuple[List[RankedHit], List[DocEntry], str, bool]:
        if self.settings.search_backend == "lexical":
            hits, candidates = self._lexical_search(query, docs, version_filter, fetch)
            return hits, candidates, "lexical", False

        try:
            hits = self.vector_ranker.search(query, candidates, limit=fetch, min_score=min_score)
            return hits, candidates, "vector", False
        except EmbeddingUnavailableError as e:
            if not self.settings.lexical_fallback_enabled:
                self.logger.error(f"Embedding model unavailable and lexical fallback disabled: {e}")
                raise SearchUnavailableError("search temporarily unavailable") from e
            SEARCH_DEGRADED.labels(operation="search_docs").inc()
            self.logger.warning(f"Embedding model unavailable, falling back to lexical search: {e}")

        hits, candidates = self._lexical_search(query, docs, version_filter, fetch)
        return hits, candidates, "lexical", True

    def _lexical_search(
        self,
        query: str,
        docs: List[DocEntry],
        version_filter: VersionFilter,
        fetch: int,
    ) -> Tuple[List[RankedHit], List[DocEntry]]:
        key = version_filter.value
        with self._lexical_lock:
            cached = self._lexical_cache.get(key)
            # The store hands back the same list until its cache is cleared
            if cached is None or cached[0] is not docs:
                candidates = filter_by_version(docs, version_filter)
                ranker = LexicalRanker(k1=self.settings.bm25_k1, b=self.settings.bm25_b)
                ranker.index_records(candidates)
                cached = (docs, candidates, ranker)
                self._lexical_cache[key] = cached
        _, candidates, ranker = cached
        return ranker.search(query, limit=fetch), candidates


def rank_by_context(practices: Sequence[BestPractice], context: str) -> List[BestPractice]:
    """Order by keyword overlap: rule +3, rationale +2, a tag named in context +2."""
    needle = context.lower()

    def score(practice: BestPractice) -> int:
        total = 0
        if needle in practice.rule.lower():
            total += 3
        if needle in practice.rationale.lower():
            total += 2
        if any(tag and tag.lower() in needle for tag in practice.tags):
            total += 2
        return total

    return sorted(practices, key=score, reverse=True)
