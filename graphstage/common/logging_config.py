"""
Structured JSON logging bound to the session being staged or queried.

Provides:
- JSON log lines for aggregation
- The current access id on every record
- Keyword-argument structured fields
- Operation timing
"""

import json
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

# Access id of the session currently being staged or queried
access_id_ctx: ContextVar[Optional[str]] = ContextVar("access_id", default=None)


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        access_id = access_id_ctx.get()
        if access_id:
            log_data["access_id"] = access_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)

        return json.dumps(log_data, default=str)


class SessionLogger:
    """
    Logger accepting structured fields as keyword arguments.

    Usage:
        logger = get_structured_logger(__name__)
        logger.info("Staged tables", table_count=3, total_rows=42)
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _log(self, level: int, msg: str, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(level, msg, extra={"extra_fields": kwargs}, stacklevel=3)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, **kwargs)


class PerformanceTracker:
    """
    Context manager logging the duration of an operation.

    Usage:
        with PerformanceTracker("stage", logger, table_count=3):
            ...
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger,
        log_level: int = logging.INFO,
        **extra_fields: Any,
    ):
        self.operation = operation
        self.logger = logger
        self.log_level = log_level
        self.extra_fields = extra_fields
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self) -> "PerformanceTracker":
        self.start_time = time.perf_counter()
        self.logger.debug(
            f"Starting operation: {self.operation}",
            extra={"extra_fields": {"operation": self.operation, **self.extra_fields}},
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        extra = {
            "operation": self.operation,
            "duration_ms": self.duration_ms,
            **self.extra_fields,
        }

        if exc_type:
            extra["error"] = str(exc_val)
            extra["error_type"] = exc_type.__name__
            self.logger.error(
                f"Operation failed: {self.operation}",
                extra={"extra_fields": extra},
            )
        else:
            self.logger.log(
                self.log_level,
                f"Operation completed: {self.operation}",
                extra={"extra_fields": extra},
            )


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the graphstage logger hierarchy.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting if True, standard format if False
    """
    level = getattr(logging, log_level.upper())
    package_logger = logging.getLogger("graphstage")
    package_logger.setLevel(level)

    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_access_id() -> Optional[str]:
    return access_id_ctx.get()


@contextmanager
def bind_access_id(access_id: Optional[str]) -> Iterator[None]:
    """Bind an access id to log records for the duration of the block."""
    token = access_id_ctx.set(access_id)
    try:
        yield
    finally:
        access_id_ctx.reset(token)


def get_structured_logger(name: str) -> SessionLogger:
    return SessionLogger(logging.getLogger(name))
