"""
Logging utilities for sitesnap.

Log records can carry snapshot context (snapshot_id, repository, operation)
so a failed push or pull can be traced back to what was being done. Context
is bound explicitly with SnapshotLogAdapter rather than held in a global.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple

CONTEXT_FIELDS = ("snapshot_id", "repository", "operation")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Snapshot context fields if present
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with snapshot context.

    Format: TIMESTAMP [LEVEL] LOGGER - MESSAGE [snapshot_id=X repository=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
        else:
            fmt = "[%(levelname)s] %(name)s - %(message)s"
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        context_parts = []
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


class SnapshotLogAdapter(logging.LoggerAdapter):
    """
    LoggerAdapter that stamps snapshot context onto every record.

    Example:
        >>> log = SnapshotLogAdapter(logger, repository="team")
        >>> log = log.bind(snapshot_id=snapshot.id, operation="push")
        >>> log.info("Uploading blocks")
    """

    def __init__(self, logger: logging.Logger, **context: Optional[str]):
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def bind(self, **context: Optional[str]) -> "SnapshotLogAdapter":
        """Return a new adapter with additional context fields."""
        merged = dict(self.extra)
        merged.update({k: v for k, v in context.items() if v is not None})
        return SnapshotLogAdapter(self.logger, **merged)

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
) -> None:
    """
    Configure logging for the sitesnap package.

    Args:
        level: Logging level (default: INFO)
        structured: If True, output JSON-structured logs; if False, human-readable
        include_timestamp: Whether to include timestamp in log messages
    """
    package_logger = logging.getLogger("sitesnap")
    package_logger.setLevel(level)

    # Avoid duplicate handlers when called more than once
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if structured:
        formatter: logging.Formatter = StructuredFormatter(include_timestamp=include_timestamp)
    else:
        formatter = HumanReadableFormatter(include_timestamp=include_timestamp)

    handler.setFormatter(formatter)
    package_logger.addHandler(handler)
