"""
Unit Tests: Structured Logging

Tests:
    - JSON formatting of extras
    - Context propagation
    - Child loggers with default fields
    - key=value text output
"""

import io
import json
import logging

import pytest

from vecgraph.observability import (
    JsonFormatter,
    KeyValueFormatter,
    LogLevel,
    StructuredLogger,
    log_context,
    setup_logging,
)


@pytest.fixture
def capture():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("vecgraph.test")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield stream
    logger.removeHandler(handler)


def _records(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_extras_in_json(self, capture):
        StructuredLogger("vecgraph.test").info("Inserted vector", vector_id=42)
        record = _records(capture)[0]
        assert record["message"] == "Inserted vector"
        assert record["level"] == "INFO"
        assert record["logger"] == "vecgraph.test"
        assert record["vector_id"] == 42

    def test_context_fields(self, capture):
        log = StructuredLogger("vecgraph.test")
        with log.context(op="search"):
            log.warning("slow query")
        log.warning("outside")
        inside, outside = _records(capture)
        assert inside["op"] == "search"
        assert "op" not in outside

    def test_with_extra(self, capture):
        log = StructuredLogger("vecgraph.test").with_extra(index="products")
        log.error("failed", reason="io")
        record = _records(capture)[0]
        assert record["index"] == "products"
        assert record["reason"] == "io"

    def test_level_filtering(self, capture):
        log = StructuredLogger("vecgraph.test", level=LogLevel.WARNING)
        log.info("hidden")
        log.critical("shown")
        assert [r["message"] for r in _records(capture)] == ["shown"]
        assert not log.is_enabled_for(LogLevel.DEBUG)

    def test_reserved_names_are_prefixed(self, capture):
        StructuredLogger("vecgraph.test").info("collision", name="x", args=1)
        record = _records(capture)[0]
        assert record["field_name"] == "x"
        assert record["field_args"] == 1
        assert record["logger"] == "vecgraph.test"


class TestLogContext:
    """Tests for log_context."""

    def test_nested_contexts_merge(self, capture):
        log = StructuredLogger("vecgraph.test")
        with log_context(index="a", op="save"):
            with log_context(op="compact"):
                log.info("inner")
            log.info("outer")
        inner, outer = _records(capture)
        assert (inner["index"], inner["op"]) == ("a", "compact")
        assert (outer["index"], outer["op"]) == ("a", "save")

    def test_plain_logger_records_get_context(self, capture):
        with log_context(op="rebuild"):
            logging.getLogger("vecgraph.test").warning("stdlib %d", 7)
        record = _records(capture)[0]
        assert record["message"] == "stdlib 7"
        assert record["op"] == "rebuild"


class TestKeyValueFormatter:
    """Tests for the text formatter."""

    def test_fields_appended_sorted(self):
        record = logging.LogRecord("vecgraph.kv", logging.INFO, __file__, 1, "swapped", (), None)
        record.generation = 2
        record.codes = 10
        line = KeyValueFormatter().format(record)
        assert "| INFO     | vecgraph.kv | swapped" in line
        assert line.endswith("swapped codes=10 generation=2")

    def test_no_fields(self):
        record = logging.LogRecord("vecgraph.kv", logging.INFO, __file__, 1, "plain", (), None)
        assert KeyValueFormatter().format(record).endswith("| plain")


class TestSetup:
    """Tests for root logger configuration."""

    def test_setup_logging_json(self):
        stream = io.StringIO()
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(LogLevel.INFO, json_output=True, stream=stream)
            logging.getLogger("vecgraph.setup").info("ready")
            assert json.loads(stream.getvalue().splitlines()[-1])["message"] == "ready"
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_parse_level(self):
        assert LogLevel.parse("debug") == LogLevel.DEBUG
