import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
Tests for context-bound logging, PII redaction and the error metric handler.
"""

import json
import logging
import logging.handlers

import pytest
from prometheus_client import REGISTRY

from kb_service.core.config import Settings
from kb_service.logging_utils import (
    ContextFilter,
    JsonFormatter,
    PIIRedactingFilter,
    PrometheusErrorHandler,
    clear_context,
    current_context,
    operation_context,
    setup_logging,
)


def make_record(msg, *args, level=logging.INFO, name="kb_service.test"):
    return logging.LogRecord(name, level, __file__, 1, msg, args, None)


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def restore_logging():
    logger = logging.getLogger("kb_service")
    root = logging.getLogger()
    saved = (logger.handlers[:], logger.level, logger.propagate, root.handlers[:], root.level)
    yield
    logger.handlers[:], logger.level, logger.propagate = saved[0], saved[1], saved[2]
    root.handlers[:] = saved[3]
    root.setLevel(saved[4])


class TestContext:

    def test_defaults(self):
        assert current_context() == {"request_id": "-", "tool": "-", "version": "-"}

    def test_operation_binds_and_restores(self):
        with operation_context("search_docs", "v6", request_id="req-1") as bound:
            assert bound == {"request_id": "req-1", "tool": "search_docs", "version": "v6"}
            assert current_context() == bound
        assert current_context() == {"request_id": "-", "tool": "-", "version": "-"}

    def test_generates_request_id(self):
        with operation_context("troubleshoot") as bound:
            assert bound["request_id"] != "-"
            assert bound["version"] == "-"

    def test_nested_operation_keeps_request_id(self):
        with operation_context("explain_concept", "all", request_id="req-2"):
            with operation_context("search_docs", "all") as inner:
                assert inner["request_id"] == "req-2"
                assert inner["tool"] == "search_docs"
            assert current_context()["tool"] == "explain_concept"

    def test_restores_after_error(self):
        with pytest.raises(ValueError):
            with operation_context("search_docs", "v5"):
                raise ValueError("boom")
        assert current_context()["version"] == "-"

    def test_clear_context(self):
        with operation_context("search_docs", "v6"):
            clear_context()
            assert current_context() == {"request_id": "-", "tool": "-", "version": "-"}

    def test_context_filter_injects_fields(self):
        with operation_context("explain_concept", request_id="req-3"):
            record = make_record("hello")
            assert ContextFilter().filter(record) is True
        assert record.tool == "explain_concept"
        assert record.request_id == "req-3"
        assert record.version == "-"


class TestRedaction:

    @pytest.mark.parametrize(
        "secret",
        [
            "sk-abcdefghijklmnop",
            "hf_abcdefghijklmnop",
            "Bearer abcdefghijklmnop",
            "dev@example.com",
        ],
    )
    def test_scrubs_message(self, secret):
        record = make_record(f"token {secret} leaked")
        PIIRedactingFilter().filter(record)
        assert secret not in record.getMessage()
        assert "[REDACTED]" in record.getMessage()

    def test_scrubs_args(self):
        record = make_record("user %s", "dev@example.com")
        PIIRedactingFilter().filter(record)
        assert record.getMessage() == "user [REDACTED]"


class TestHandlers:

    def test_error_handler_counts(self):
        labels = {"module": "kb_service.test", "level": "ERROR"}
        before = REGISTRY.get_sample_value("log_errors_total", labels) or 0.0
        PrometheusErrorHandler().emit(make_record("boom", level=logging.ERROR))
        assert REGISTRY.get_sample_value("log_errors_total", labels) == before + 1

    def test_json_formatter(self):
        with operation_context("search_docs", "v5"):
            payload = json.loads(JsonFormatter().format(make_record("loaded %d", 3)))
        assert payload["message"] == "loaded 3"
        assert payload["logger"] == "kb_service.test"
        assert payload["context"]["version"] == "v5"


class TestSetupLogging:

    def test_development_uses_console(self, restore_logging):
        setup_logging(Settings(environment="development", log_level="DEBUG"))
        logger = logging.getLogger("kb_service")
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert any(isinstance(h, PrometheusErrorHandler) for h in logger.handlers)
        assert not any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers)

    def test_production_uses_json(self, restore_logging):
        setup_logging(Settings(environment="production"))
        logger = logging.getLogger("kb_service")
        assert any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers)

    def test_file_logging(self, restore_logging, tmp_path):
        setup_logging(Settings(environment="production", enable_file_logging=True, log_dir=tmp_path / "logs"))
        logger = logging.getLogger("kb_service")
        assert (tmp_path / "logs").is_dir()
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers)
        for handler in logger.handlers:
            handler.close()

    def test_missing_config_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            setup_logging(Settings(log_config_path=tmp_path / "missing.yaml"))
