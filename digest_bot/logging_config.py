"""Structured logging configuration for RSS Digest Bot."""

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

# Third-party loggers that flood DEBUG output
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3")


class StructuredFormatter(logging.Formatter):
    """Renders every record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        # execution_id, component, stage, counts...
        log_entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ExecutionLogger:
    """Logger that stamps every record with an execution id and component.

    Keyword arguments passed to the logging methods become JSON fields.
    """

    def __init__(self, execution_id: str, component: str = "main"):
        """
        Args:
            execution_id: Identifier shared by every component of one run
            component: Component name (e.g., 'pipeline', 'categorizer')
        """
        self.execution_id = execution_id
        self.component = component
        self.logger = logging.getLogger(f"digest_bot.{component}")
        self._started: float | None = None

    def log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        extra = {"execution_id": self.execution_id, "component": self.component}
        for key, value in context.items():
            # LogRecord refuses extra keys that shadow its own attributes
            extra[f"ctx_{key}" if key in _RESERVED_ATTRS else key] = value
        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self.log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        """Log at ERROR level with the active traceback attached."""
        self.log(logging.ERROR, message, exc_info=True, **context)

    def log_execution_start(self, **context) -> None:
        self._started = time.monotonic()
        self.info(
            f"{self.component} started",
            execution_start=datetime.now(UTC).isoformat(),
            **context,
        )

    def log_execution_end(self, success: bool = True, **context) -> None:
        duration = None
        if self._started is not None:
            duration = round(time.monotonic() - self._started, 3)

        self.log(
            logging.INFO if success else logging.ERROR,
            f"{self.component} {'finished' if success else 'failed'}",
            execution_end=datetime.now(UTC).isoformat(),
            execution_duration_seconds=duration,
            execution_success=success,
            **context,
        )

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        self.info("Run metrics", metrics=metrics)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Route all logging to stdout as JSON lines.

    Replaces any handler already installed on the root logger, so calling it
    twice is harmless.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("digest_bot").setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def new_execution_id(prefix: str = "exec") -> str:
    return f"{prefix}_{datetime.now(UTC):%Y%m%d_%H%M%S_%f}"


def create_execution_logger(
    component: str, execution_id: str | None = None
) -> ExecutionLogger:
    """Return a logger for `component`, generating an execution id if none is given."""
    return ExecutionLogger(execution_id or new_execution_id(), component)
