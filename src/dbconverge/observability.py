"""
Logging setup for dbconverge.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
``configure_logging`` once to install handlers on the root logger.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from .config import LoggingConfig


_RESERVED_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "WARNING",
        "logger": "dbconverge.schema.diff",
        "message": "...",
        ...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.%f"
            )[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # extra={...} fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_obj[key] = value

        return json.dumps(log_obj, default=str)


def configure_logging(config: Optional[LoggingConfig] = None, debug: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        config: Logging section of the configuration (defaults if omitted)
        debug: Force DEBUG level regardless of the configured level
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if debug else getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter
    if config.json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(config.format)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if config.file:
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # asyncpg is chatty at DEBUG
    logging.getLogger("asyncpg").setLevel(max(level, logging.INFO))
