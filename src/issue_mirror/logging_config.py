"""Structured logging configuration for issue-mirror.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the issue_mirror namespace
- Level and format taken from MirrorConfig (LOG_LEVEL, LOG_FORMAT)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

# Keys redacted from the structured context
SENSITIVE_KEYS = {
    "password", "token", "secret", "apikey", "api_key",
    "authorization", "credential", "auth", "bearer",
}

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Outputs logs in JSON format with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name (INFO, ERROR, etc.)
    - logger: Logger name (issue_mirror hierarchy)
    - message: Log message
    - context: Extras dict merged from LogRecord attributes
    - exception: Formatted traceback when exc_info is set
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None, log_format: str = "json") -> None:
    """Configure logging for all issue_mirror loggers.

    Args:
        level: Log level name (default: INFO)
        log_format: "json" or "text"
    """
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    formatter = TextFormatter() if log_format == "text" else StructuredFormatter()

    logger = logging.getLogger("issue_mirror")
    logger.setLevel(log_level)

    # Idempotent: reconfiguring swaps the formatter instead of stacking handlers
    if not logger.handlers:
        logger.addHandler(logging.StreamHandler())
    for handler in logger.handlers:
        handler.setFormatter(formatter)

    logger.propagate = False
