"""
Structured Logging for the ProxySQL agent.

Provides JSON-structured or plain-text logging to stdout. Structured fields
are passed through `extra={"extra_fields": {...}}`.
"""

import json
import logging
import re
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

# Matches CR, LF, null bytes, and other control chars except tab
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_FORMAT_WITH_SOURCE = "%(asctime)s [%(levelname)s] %(name)s (%(module)s:%(lineno)d): %(message)s"


def _sanitize_log_message(message: str) -> str:
    """
    Escape newlines and strip control characters so a message cannot
    forge additional log entries.
    """
    if not isinstance(message, str):
        message = str(message)

    message = message.replace("\r\n", "\\r\\n")
    message = message.replace("\n", "\\n")
    message = message.replace("\r", "\\r")

    return _CONTROL_CHAR_PATTERN.sub("", message)


@dataclass
class LogContext:
    """Structured log context."""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    level: str = "INFO"
    logger: str = "proxysql_agent"
    message: str = ""
    source: str | None = None
    extra: dict = field(default_factory=dict)

    def to_json(self) -> str:
        """Convert to JSON string."""
        data = asdict(self)
        data = {k: v for k, v in data.items() if v is not None}
        extra = data.pop("extra", {})
        data.update(extra)
        return json.dumps(data, default=str)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_source: bool = False):
        super().__init__()
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        ctx = LogContext(
            timestamp=datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=_sanitize_log_message(record.getMessage()),
        )

        if self.include_source:
            ctx.source = f"{record.module}:{record.lineno}"

        if hasattr(record, "extra_fields"):
            ctx.extra = dict(record.extra_fields)

        if record.exc_info:
            ctx.extra["exception"] = self.formatException(record.exc_info)

        return ctx.to_json()


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    source: bool = False,
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        fmt: "json" for structured output, anything else for plain text
        source: Include module and line number
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if fmt == "json":
        console_handler.setFormatter(StructuredFormatter(include_source=source))
    else:
        console_handler.setFormatter(
            logging.Formatter(TEXT_FORMAT_WITH_SOURCE if source else TEXT_FORMAT)
        )

    root_logger.addHandler(console_handler)

    # uvicorn installs its own handlers; route them through ours.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True

    # Keep the driver and HTTP client quiet unless debugging.
    if numeric_level > logging.DEBUG:
        for name in ("httpx", "httpcore", "mysql.connector"):
            logging.getLogger(name).setLevel(logging.WARNING)
