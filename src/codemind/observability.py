"""Observability utilities for the Code-Mind note engine.

Provides logging configuration with rotation, in-memory timing metrics
and operation tracing for the Store's public operations.
"""
import functools
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from codemind.exceptions import CodemindError, ConfigurationError
from codemind.ids import NOTE_ID_PATTERN

logger = logging.getLogger(__name__)

# Default log directory (can be overridden via configure_logging)
DEFAULT_LOG_DIR = Path.home() / ".codemind" / "logs"

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Type variable for decorators
F = TypeVar("F", bound=Callable[..., Any])

# Global flag to track if logging has been configured
_logging_configured = False


def resolve_log_level(level: Union[int, str]) -> int:
    """Turn a level name like ``"debug"`` into its numeric value."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ConfigurationError(f"Unknown log level: {level}", config_key="log_level")
    return value


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5 MB per file
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Attaches a rotating file handler to the ``codemind`` logger hierarchy,
    so every module logger (``codemind.storage.note_parser`` and so on)
    is captured.

    Args:
        log_dir: Directory for log files. Defaults to ~/.codemind/logs/
        level: Logging level or level name such as "DEBUG" (default: INFO)
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of rotated files to keep
        console: Also log to console (default: True)

    Returns:
        Path to the log directory

    Raises:
        ConfigurationError: If ``level`` is not a known level name.
    """
    global _logging_configured

    level = resolve_log_level(level)
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger("codemind")
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = log_path / "codemind.log"
    if not any(
        isinstance(h, RotatingFileHandler)
        and Path(h.baseFilename) == log_file.resolve()
        for h in root_logger.handlers
    ):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _logging_configured = True
    root_logger.info(
        f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)"
    )

    return log_path


def is_logging_configured() -> bool:
    """Check if file logging has been configured."""
    return _logging_configured


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class MetricsCollector:
    """In-memory metrics for engine operations.

    Collects timing and success/failure counts for each operation type
    (add_note, search, save, ...). Nothing is persisted.
    """

    def __init__(self):
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record metrics for an operation.

        Args:
            operation: The operation name (e.g., 'add_note', 'search')
            duration_ms: Duration in milliseconds
            success: Whether the operation succeeded
            error: Error message if the operation failed
        """
        with self._lock:
            m = self._metrics[operation]
            m.count += 1
            m.total_duration_ms += duration_ms
            m.min_duration_ms = min(m.min_duration_ms, duration_ms)
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)

            if success:
                m.success_count += 1
            else:
                m.error_count += 1
                m.last_error = error
                m.last_error_time = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Get a snapshot of all metrics keyed by operation name."""
        with self._lock:
            result = {}
            for op, m in self._metrics.items():
                avg_duration = m.total_duration_ms / m.count if m.count > 0 else 0
                min_dur = m.min_duration_ms if m.min_duration_ms != float("inf") else 0
                result[op] = {
                    "count": m.count,
                    "success_count": m.success_count,
                    "error_count": m.error_count,
                    "success_rate": m.success_count / m.count if m.count > 0 else 0,
                    "avg_duration_ms": round(avg_duration, 2),
                    "min_duration_ms": round(min_dur, 2),
                    "max_duration_ms": round(m.max_duration_ms, 2),
                    "last_error": m.last_error,
                    "last_error_time": (
                        m.last_error_time.isoformat() if m.last_error_time else None
                    ),
                }
            return result

    def get_summary(self) -> Dict[str, Any]:
        """Get aggregate statistics across all operations."""
        with self._lock:
            total_ops = sum(m.count for m in self._metrics.values())
            total_success = sum(m.success_count for m in self._metrics.values())
            total_errors = sum(m.error_count for m in self._metrics.values())

            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": total_ops,
                "total_success": total_success,
                "total_errors": total_errors,
                "overall_success_rate": (
                    total_success / total_ops if total_ops > 0 else 1.0
                ),
                "operations_tracked": list(self._metrics.keys()),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)


# Global metrics collector instance
metrics = MetricsCollector()


def _format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items())


def _describe_error(error: Exception) -> str:
    if isinstance(error, CodemindError):
        return f"{error.code.name}: {error.message}"
    return f"{type(error).__name__}: {error}"


@contextmanager
def timed_operation(operation: str, **context):
    """Time one engine operation and record it in ``metrics``.

    Yields a dict the caller may fill with outcome details, which are
    appended to the completion log line. Failures are logged at WARNING
    with their error code and re-raised.

    Example:
        with timed_operation('search', query='parser') as outcome:
            results = store.search('parser')
            outcome['result_count'] = len(results)
    """
    trace_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    outcome: Dict[str, Any] = {}
    label = _format_fields(context)
    logger.debug(f"[{trace_id}] {operation} {label}".rstrip())

    try:
        yield outcome
    except Exception as e:
        elapsed_ms = (time.perf_counter() - started) * 1000
        reason = _describe_error(e)
        metrics.record_operation(operation, elapsed_ms, False, reason)
        logger.warning(
            f"[{trace_id}] {operation} failed after {elapsed_ms:.2f}ms: {reason} {label}".rstrip()
        )
        raise

    elapsed_ms = (time.perf_counter() - started) * 1000
    metrics.record_operation(operation, elapsed_ms, True)
    logger.debug(
        f"[{trace_id}] {operation} done in {elapsed_ms:.2f}ms {_format_fields(outcome)}".rstrip()
    )


def _note_id_argument(args: tuple, kwargs: Dict[str, Any]) -> Optional[str]:
    """First argument that is a note ID, keyword arguments first."""
    for value in list(kwargs.values()) + list(args):
        if isinstance(value, str) and NOTE_ID_PATTERN.match(value):
            return value
    return None


def _describe_result(result: Any) -> Dict[str, Any]:
    # update_note_with_affected returns (note, affected IDs)
    if isinstance(result, tuple) and len(result) == 2 and isinstance(result[1], list):
        return {"note_id": getattr(result[0], "id", None), "affected": len(result[1])}
    if isinstance(result, (list, dict, set)):
        return {"result_count": len(result)}
    note_id = getattr(result, "id", None)
    if isinstance(note_id, str):
        return {"note_id": note_id}
    return {}


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Trace a Store method through ``timed_operation``.

    The log context names the notes file of the bound store and the first
    note ID among the arguments (or the first string argument when there
    is none). The outcome names the returned note, or counts the returned
    items or affected IDs.
    """

    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context: Dict[str, Any] = {}
            path = getattr(args[0], "path", None) if args else None
            if isinstance(path, Path):
                context["file"] = path.name
            note_id = _note_id_argument(args[1:], kwargs)
            if note_id is not None:
                context["note_id"] = note_id
            else:
                text = next((a for a in args[1:] if isinstance(a, str)), None)
                if text is not None:
                    context["arg"] = text[:50]

            with timed_operation(op_name, **context) as outcome:
                result = func(*args, **kwargs)
                outcome.update(_describe_result(result))
                return result

        return wrapper  # type: ignore

    return decorator
