from __future__ import annotations

import contextvars
import json
import logging
import logging.config
import re
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, TypeVar

import yaml
from prometheus_client import REGISTRY, Counter, Histogram

from .core.config import Settings

_DEFAULT_CONTEXT = "-"
_REQUEST_ID = contextvars.ContextVar("request_id", default=_DEFAULT_CONTEXT)
_TOOL = contextvars.ContextVar("tool", default=_DEFAULT_CONTEXT)
_VERSION = contextvars.ContextVar("version", default=_DEFAULT_CONTEXT)

_C = TypeVar("_C")


def _register_metric(factory: Callable[..., _C], name: str, *args: Any, **kwargs: Any) -> _C:
    try:
        return factory(name, *args, registry=REGISTRY, **kwargs)
    except ValueError:
        # Already registered (module re-import under a second name, test reloads)
        collectors = getattr(REGISTRY, "_names_to_collectors", {})
        existing = collectors.get(name) or collectors.get(f"{name}_total")
        if existing:
            return existing  # type: ignore[return-value]
        raise


LOG_ERROR_COUNTER = _register_metric(
    Counter,
    "log_errors_total",
    "Total log statements at error level or above",
    ["module", "level"],
)

SEARCH_REQUESTS = _register_metric(
    Counter,
    "kb_search_requests_total",
    "Retrieval operations served",
    ["operation", "backend"],
)

SEARCH_DEGRADED = _register_metric(
    Counter,
    "kb_search_degraded_total",
    "Retrieval operations served without the embedding model",
    ["operation"],
)

SEARCH_DURATION = _register_metric(
    Histogram,
    "kb_search_duration_seconds",
    "Retrieval operation latency",
    ["operation"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, float("inf")),
)

CORPUS_LOAD_ERRORS = _register_metric(
    Counter,
    "kb_corpus_load_errors_total",
    "Corpus files or entries skipped during load",
    ["category"],
)


def clear_context() -> None:
    _REQUEST_ID.set(_DEFAULT_CONTEXT)
    _TOOL.set(_DEFAULT_CONTEXT)
    _VERSION.set(_DEFAULT_CONTEXT)


def current_context() -> Dict[str, str]:
    return {
        "request_id": _REQUEST_ID.get(),
        "tool": _TOOL.get(),
        "version": _VERSION.get(),
    }


@contextmanager
def operation_context(
    tool: str,
    version: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Iterator[Dict[str, str]]:
    """
    Bind request, tool and version for the duration of one operation.

    A nested operation keeps the enclosing request id unless it is given its
    own; a top-level one without an id gets a fresh uuid. On exit every value
    is restored to what it was on entry, including when the body raises.
    """
    if not request_id:
        inherited = _REQUEST_ID.get()
        request_id = inherited if inherited != _DEFAULT_CONTEXT else uuid.uuid4().hex

    tokens = (
        (_REQUEST_ID, _REQUEST_ID.set(request_id)),
        (_TOOL, _TOOL.set(tool or _DEFAULT_CONTEXT)),
        (_VERSION, _VERSION.set(version or _DEFAULT_CONTEXT)),
    )
    try:
        yield current_context()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    """Inject contextvars into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = _REQUEST_ID.get()
        record.tool = _TOOL.get()
        record.version = _VERSION.get()
        record.error_code = getattr(record, "error_code", "")
        return True


class PIIRedactingFilter(logging.Filter):
    """Filter that removes common PII tokens such as emails or API keys."""

    _PATTERNS: Iterable[re.Pattern[str]] = (
        re.compile(r"sk-[a-zA-Z0-9]{10,}", re.IGNORECASE),
        re.compile(r"hf_[a-zA-Z0-9]{10,}"),
        re.compile(r"bearer [a-z0-9\._\-]{10,}", re.IGNORECASE),
        re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    )
    _REPLACEMENT = "[REDACTED]"

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.msg = self._scrub(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(arg) for arg in record.args)
        return True

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            redacted = value
            for pattern in self._PATTERNS:
                redacted = pattern.sub(self._REPLACEMENT, redacted)
            return redacted
        if isinstance(value, dict):
            return {k: self._scrub(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._scrub(item) for item in value]
        return value


class PrometheusErrorHandler(logging.Handler):
    """A logging handler that increments a Prometheus counter on errors."""

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            LOG_ERROR_COUNTER.labels(module=record.name, level=record.levelname).inc()
        except Exception:  # pragma: no cover - never raise from logging
            pass


class JsonFormatter(logging.Formatter):
    """Render records with :func:`serialize_log_record`."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        return serialize_log_record(record)


def setup_logging(settings: Settings) -> None:
    """Load logging.yaml and configure handlers per environment."""

    config_path = settings.log_config_path or Path(__file__).with_name("logging.yaml")
    if not config_path.exists():
        raise FileNotFoundError(f"Logging configuration not found at {config_path}")

    with config_path.open("r", encoding="utf-8") as fp:
        config: Dict[str, Any] = yaml.safe_load(fp)

    file_handler = config.get("handlers", {}).get("file")
    if file_handler:
        if settings.enable_file_logging:
            log_dir = settings.log_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler["filename"] = str(log_dir / "kb_service.log")
        else:
            # dictConfig opens every declared handler, so drop the unused one
            config["handlers"].pop("file")

    env = settings.environment.lower()

    app_handlers: list[str]
    if env == "development":
        app_handlers = ["console", "error_metrics"]
        config["root"]["handlers"] = ["console"]
    else:
        app_handlers = ["json", "error_metrics"]
        if settings.enable_file_logging:
            app_handlers.append("file")
        config["root"]["handlers"] = ["json"]

    config.setdefault("loggers", {})
    config["loggers"]["kb_service"] = {
        "handlers": app_handlers,
        "level": settings.log_level.upper(),
        "propagate": False,
    }

    for handler_name in ("console", "json"):
        handler = config.get("handlers", {}).get(handler_name)
        if handler:
            handler["level"] = settings.log_level.upper()

    if not settings.enable_json_logs and "json" in config["handlers"]:
        # fallback to console handler only
        app_handlers = ["console", "error_metrics"]
        config["root"]["handlers"] = ["console"]
        config["loggers"]["kb_service"]["handlers"] = app_handlers

    logging.config.dictConfig(config)


def serialize_log_record(record: logging.LogRecord) -> str:
    payload = {
        "timestamp": record.created,
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "context": current_context(),
    }
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(payload, ensure_ascii=False)


__all__ = [
    "clear_context",
    "operation_context",
    "ContextFilter",
    "PIIRedactingFilter",
    "PrometheusErrorHandler",
    "JsonFormatter",
    "setup_logging",
    "current_context",
    "SEARCH_REQUESTS",
    "SEARCH_DEGRADED",
    "SEARCH_DURATION",
    "CORPUS_LOAD_ERRORS",
]
