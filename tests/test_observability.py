"""Tests for the observability module."""
import logging
from pathlib import Path

import pytest

from codemind import observability
from codemind.config import CodemindConfig
from codemind.exceptions import ConfigurationError, ErrorCode, NoteNotFoundError
from codemind.observability import (
    MetricsCollector,
    configure_logging,
    is_logging_configured,
    metrics,
    resolve_log_level,
    timed_operation,
    traced,
)
from codemind.services.note_store import NoteStore


@pytest.fixture
def isolated_logging(monkeypatch):
    """Undo handler, level and configured-flag changes to the codemind logger."""
    logger = logging.getLogger("codemind")
    handlers = list(logger.handlers)
    level = logger.level
    monkeypatch.setattr(observability, "_logging_configured", False)
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


class TestMetricsCollector:
    """Tests for in-memory metrics."""

    def test_record_and_summarize(self):
        collector = MetricsCollector()
        collector.record_operation("search", 2.0, True)
        collector.record_operation("search", 4.0, False, error="boom")
        data = collector.get_metrics()["search"]
        assert data["count"] == 2
        assert data["error_count"] == 1
        assert data["avg_duration_ms"] == 3.0
        assert data["last_error"] == "boom"
        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["operations_tracked"] == ["search"]

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("save", 1.0, True)
        collector.reset()
        assert collector.get_metrics() == {}
        assert collector.get_summary()["overall_success_rate"] == 1.0


class TestTracing:
    """Tests for timed_operation and traced."""

    def setup_method(self):
        metrics.reset()

    def test_timed_operation_records_failure(self):
        with pytest.raises(RuntimeError):
            with timed_operation("explode", note_id="cm.abc123"):
                raise RuntimeError("boom")
        data = metrics.get_metrics()["explode"]
        assert data["error_count"] == 1
        assert data["last_error"] == "RuntimeError: boom"

    def test_engine_failure_logged_with_code(self, caplog):
        caplog.set_level(logging.WARNING, logger="codemind.observability")
        with pytest.raises(NoteNotFoundError):
            with timed_operation("get_note", note_id="cm.zzz999"):
                raise NoteNotFoundError("cm.zzz999")
        assert metrics.get_metrics()["get_note"]["last_error"].startswith("NOTE_NOT_FOUND")
        [record] = caplog.records
        assert record.levelno == logging.WARNING
        assert "get_note failed" in record.getMessage()
        assert "note_id=cm.zzz999" in record.getMessage()

    def test_traced_records_success(self):
        @traced("list_things")
        def list_things():
            return [1, 2, 3]

        assert list_things() == [1, 2, 3]
        assert metrics.get_metrics()["list_things"]["success_count"] == 1

    def test_store_operations_are_traced(self, store):
        store.search("parser")
        store.add_note("src/app.py", "traced")
        recorded = metrics.get_metrics()
        assert recorded["search"]["count"] == 1
        assert recorded["add_note"]["count"] == 1

    def test_trace_context_names_file_and_note(self, store, caplog):
        caplog.set_level(logging.DEBUG, logger="codemind.observability")
        store.update_note_with_affected("cm.abc123", "Entry point wiring")
        messages = [record.getMessage() for record in caplog.records]
        assert any("file=codemind.md note_id=cm.abc123" in m for m in messages)
        assert any("note_id=cm.abc123 affected=1" in m for m in messages)

    def test_trace_falls_back_to_first_text_argument(self, store, caplog):
        caplog.set_level(logging.DEBUG, logger="codemind.observability")
        store.search("parser")
        messages = [record.getMessage() for record in caplog.records]
        assert any("file=codemind.md arg=parser" in m for m in messages)
        assert any("result_count=" in m for m in messages)


class TestConfigureLogging:
    """Tests for logging setup."""

    def test_creates_log_file(self, tmp_path, isolated_logging):
        log_dir = configure_logging(tmp_path / "logs", console=False)
        logging.getLogger("codemind.tests").info("hello log")
        for handler in isolated_logging.handlers:
            handler.flush()
        assert (log_dir / "codemind.log").exists()
        assert "hello log" in (log_dir / "codemind.log").read_text(encoding="utf-8")
        assert is_logging_configured()

    def test_level_names(self, tmp_path, isolated_logging):
        configure_logging(tmp_path / "logs", level="debug", console=False)
        assert isolated_logging.level == logging.DEBUG
        assert resolve_log_level("Warning") == logging.WARNING
        assert resolve_log_level(logging.ERROR) == logging.ERROR

    def test_unknown_level_name(self, tmp_path, isolated_logging):
        with pytest.raises(ConfigurationError) as exc_info:
            configure_logging(tmp_path / "logs", level="LOUD", console=False)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID
        assert exc_info.value.config_key == "log_level"
        assert not is_logging_configured()

    def test_store_sets_up_configured_log_dir(self, tmp_path, isolated_logging):
        cfg = CodemindConfig(
            base_dir=tmp_path, log_dir=Path("logs"), log_level="DEBUG", auto_save=False
        )
        NoteStore(config=cfg)
        assert is_logging_configured()
        assert isolated_logging.level == logging.DEBUG
        assert (tmp_path / "logs" / "codemind.log").exists()

    def test_store_without_log_dir_leaves_logging_alone(self, tmp_path, isolated_logging):
        NoteStore(config=CodemindConfig(base_dir=tmp_path, log_dir=None, auto_save=False))
        assert not is_logging_configured()
