import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Type

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..logging_utils import CORPUS_LOAD_ERRORS
from ..models.knowledge import (
    BestPractice,
    CodeSnippet,
    DocEntry,
    ErrorPattern,
    KnowledgeIndex,
    KnowledgeModel,
    TemplateFragment,
)


CATEGORY_MODELS: Dict[str, Type[KnowledgeModel]] = {
    "docs": DocEntry,
    "chunks": DocEntry,
    "errors": ErrorPattern,
    "snippets": CodeSnippet,
    "best-practices": BestPractice,
    "templates": TemplateFragment,
}


class KnowledgeStore:
    """
    Read-only, cached access to the knowledge-base JSON tree.

    Layout: ``<root>/<category>/**/*.json``, each file a JSON array of
    entries. Loaded lists are cached by reference, so two loads of the same
    key return the identical list until ``clear_cache()``. Callers must not
    mutate returned lists.
    """

    def __init__(self, root: Optional[Path] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.root = Path(root) if root is not None else Path(self.settings.knowledge_base_path)
        self.logger = logging.getLogger("kb_service.repositories.knowledge_store")
        self._cache: Dict[str, List[Any]] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @property
    def docs_category(self) -> str:
        return self.settings.docs_category

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def load(self, category: str, file: Optional[str] = None) -> List[Any]:
        """
        Load a whole category, or one ``<file>.json`` inside it.

        Unknown categories and missing files return ``[]``; nothing raises.
        A ``file`` that resolves outside the category folder is rejected.
        """
        key = f"{category}/{file}" if file else category
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        # One reader per key; concurrent callers wait and reuse its result
        with self._lock_for(key):
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            folder = self.root / category
            if not folder.is_dir():
                self.logger.debug("Category not found", extra={"category": category, "path": str(folder)})
                return []

            if file:
                path = (folder / f"{file}.json").resolve()
                if not path.is_relative_to(folder.resolve()):
                    self.logger.warning(
                        "Rejected corpus file outside its category",
                        extra={"category": category, "file": file},
                    )
                    return []
                if not path.is_file():
                    self.logger.debug("Corpus file not found", extra={"category": category, "path": str(path)})
                    return []
                records = self._read_file(path, category)
            else:
                records = []
                for path in self._walk(folder):
                    records.extend(self._read_file(path, category))

            self._check_dimensions(records, category)

            with self._guard:
                self._cache[key] = records
            self.logger.info("Loaded corpus collection", extra={"key": key, "records": len(records)})
            return records

    def _walk(self, folder: Path) -> Iterator[Path]:
        for entry in sorted(folder.iterdir(), key=lambda p: p.name):
            if entry.name.startswith("."):
                continue
            if entry.is_dir():
                yield from self._walk(entry)
            elif entry.is_file() and entry.suffix == ".json":
                yield entry

    def _read_file(self, path: Path, category: str) -> List[Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            self._file_error(path, category, f"unreadable: {e}")
            return []

        if not isinstance(payload, list):
            self._file_error(path, category, f"expected a JSON array, got {type(payload).__name__}")
            return []

        model = CATEGORY_MODELS.get(category, DocEntry)
        records: List[Any] = []
        for position, entry in enumerate(payload):
            try:
                records.append(model.model_validate(entry))
            except ValidationError as e:
                CORPUS_LOAD_ERRORS.labels(category=category).inc()
                self.logger.warning(
                    "Skipping malformed corpus entry",
                    extra={
                        "path": str(path),
                        "position": position,
                        "errors": e.error_count(),
                    },
                )
        return records

    def _file_error(self, path: Path, category: str, reason: str) -> None:
        CORPUS_LOAD_ERRORS.labels(category=category).inc()
        self.logger.warning(
            "Skipping corpus file",
            extra={"path": str(path), "category": category, "reason": reason},
        )

    def _check_dimensions(self, records: List[Any], category: str) -> None:
        expected: Optional[int] = None
        for record in records:
            embedding = getattr(record, "embedding", None)
            if not embedding:
                continue
            if expected is None:
                expected = len(embedding)
            elif len(embedding) != expected:
                self.logger.warning(
                    "Embedding dimension differs from collection",
                    extra={
                        "category": category,
                        "record_id": record.id,
                        "dimension": len(embedding),
                        "expected": expected,
                    },
                )

    def clear_cache(self) -> None:
        """Drop every cached collection; the next load re-reads from disk."""
        with self._guard:
            self._cache.clear()
        self.logger.info("Corpus cache cleared")

    def preload(self) -> None:
        """Eagerly load the docs collection and templates."""
        docs = self.load(self.docs_category)
        templates = self.load("templates")
        self.logger.info(
            "Preloaded knowledge base",
            extra={"docs": len(docs), "templates": len(templates)},
        )

    def build_index(self) -> KnowledgeIndex:
        """Group docs by category and collect the side collections."""
        by_category: Dict[str, List[DocEntry]] = {}
        for doc in self.load(self.docs_category):
            by_category.setdefault(doc.category or "uncategorized", []).append(doc)

        return KnowledgeIndex(
            by_category=by_category,
            templates=list(self.load("templates")),
            snippets=list(self.load("snippets")),
            patterns=list(self.load("errors")),
            best_practices=list(self.load("best-practices")),
        )
