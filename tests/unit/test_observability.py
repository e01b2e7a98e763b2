"""
Tests for dbconverge.observability module.
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from dbconverge.config import LoggingConfig
from dbconverge.observability import JSONFormatter, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(message="hello", **extra):
    record = logging.LogRecord(
        "dbconverge.schema.diff", logging.WARNING, __file__, 1, message, None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON log lines."""

    def test_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "WARNING"
        assert data["logger"] == "dbconverge.schema.diff"
        assert data["message"] == "hello"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields(self):
        data = json.loads(JSONFormatter().format(make_record(table="sales_order")))

        assert data["table"] == "sales_order"

    def test_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad" in data["exception"]


class TestConfigureLogging:
    """Test root logger configuration."""

    def test_level_and_single_stream_handler(self):
        configure_logging(LoggingConfig(level="WARNING"))
        configure_logging(LoggingConfig(level="WARNING"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_debug_overrides_level(self):
        configure_logging(LoggingConfig(level="ERROR"), debug=True)

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("asyncpg").level == logging.INFO

    def test_json_and_file(self, tmp_path):
        configure_logging(LoggingConfig(json_format=True, file=str(tmp_path / "run.log")))

        handlers = logging.getLogger().handlers
        assert any(isinstance(h, RotatingFileHandler) for h in handlers)
        assert all(isinstance(h.formatter, JSONFormatter) for h in handlers)
