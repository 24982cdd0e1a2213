"""Logging setup and in-process operation metrics.

Every service call runs inside ``timed_operation``, which feeds the
shared ``metrics`` collector reported by the ns_status tool.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Root of the package logger hierarchy
ROOT_LOGGER_NAME = "noteshare"


def configure_logging(
    log_dir: Union[str, Path],
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``noteshare`` logger hierarchy to ``<log_dir>/noteshare.log``.

    The file rolls over at ``max_bytes`` and keeps ``backup_count`` old
    copies. Calling this again for the same directory adds no handlers.

    Returns:
        Path to the active log file.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "noteshare.log"

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    def attach(handler: logging.Handler) -> None:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    file_handlers = [h for h in package_logger.handlers if isinstance(h, RotatingFileHandler)]
    if not any(Path(h.baseFilename).resolve() == log_file.resolve() for h in file_handlers):
        attach(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if console and not has_console:
        attach(logging.StreamHandler())

    package_logger.info(f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})")
    return log_file


@dataclass
class OperationStats:
    """Running call totals for one operation name."""

    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    last_failure: Optional[str] = None

    def add(self, duration_ms: float, error: Optional[str]) -> None:
        self.calls += 1
        self.total_ms += duration_ms
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        if error is not None:
            self.failures += 1
            self.last_failure = error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "mean_ms": round(self.total_ms / self.calls, 2) if self.calls else 0.0,
            "slowest_ms": round(self.slowest_ms, 2),
            "last_failure": self.last_failure,
        }


class MetricsCollector:
    """In-memory call counts and timings keyed by operation name.

    Shared by every thread of the process; ``ns_status`` reports it.
    """

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._lock = Lock()
        self._started = time.monotonic()

    def record_operation(
        self, operation: str, duration_ms: float, error: Optional[str] = None
    ) -> None:
        """Count one call; a non-None ``error`` marks it failed."""
        with self._lock:
            self._stats.setdefault(operation, OperationStats()).add(duration_ms, error)

    def operation_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Process totals plus the per-operation breakdown."""
        operations = self.operation_stats()
        calls = sum(op["calls"] for op in operations.values())
        failures = sum(op["failures"] for op in operations.values())
        return {
            "uptime_seconds": round(time.monotonic() - self._started, 1),
            "calls": calls,
            "failures": failures,
            "operations": operations,
        }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = time.monotonic()


# Process-wide collector used by timed_operation
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log its start and end at DEBUG, and record it in ``metrics``.

    The yielded dict carries a short correlation id. Callers may add
    result fields such as ``result_count``; setting ``error`` marks the
    call failed even when the block returns normally.
    """
    op: Dict[str, Any] = {"correlation_id": uuid.uuid4().hex[:8]}
    tag = op["correlation_id"]
    fields = " ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{tag}] {operation} begin {fields}".rstrip())
    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield op
    except Exception as e:
        error = str(e) or type(e).__name__
        raise
    finally:
        if error is None and op.get("error"):
            error = str(op["error"])
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error)
        extra = " ".join(
            f"{k}={v}" for k, v in op.items() if k not in ("correlation_id", "error")
        )
        outcome = "ok" if error is None else f"failed ({error})"
        logger.debug(f"[{tag}] {operation} {outcome} in {elapsed_ms:.2f}ms {extra}".rstrip())
