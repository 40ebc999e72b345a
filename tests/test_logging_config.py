"""Tests for toolbridge.logging_config."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from toolbridge.config import LoggingConfig
from toolbridge.llm.json_repair import normalize_arguments
from toolbridge.logging_config import LOGGER_NAME, JsonFormatter, configure_logging


@pytest.fixture
def bridge_logger():
    logger = logging.getLogger(LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestJsonFormatter:
    def test_basic_fields(self):
        record = logging.LogRecord("toolbridge.x", logging.INFO, __file__, 1, "hello %s", ("bob",), None)
        data = json.loads(JsonFormatter().format(record))
        assert data["level"] == "INFO"
        assert data["logger"] == "toolbridge.x"
        assert data["msg"] == "hello bob"
        assert "repair_event" not in data

    def test_repair_event_included(self):
        record = logging.LogRecord("toolbridge.x", logging.INFO, __file__, 1, "repair", (), None)
        record.repair_event = {"event_type": "repair_recovered", "strategy": "key_values"}
        data = json.loads(JsonFormatter().format(record))
        assert data["repair_event"]["strategy"] == "key_values"

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "toolbridge.x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        data = json.loads(JsonFormatter().format(record))
        assert "ValueError: boom" in data["exc"]


class TestConfigureLogging:
    def test_single_handler(self, bridge_logger):
        configure_logging(LoggingConfig(level="debug"))
        configure_logging(LoggingConfig(level="debug"))
        assert len(bridge_logger.handlers) == 1
        assert bridge_logger.level == logging.DEBUG
        assert bridge_logger.propagate is False

    def test_json_output_carries_repair_events(self, bridge_logger, capsys):
        configure_logging(LoggingConfig(level="INFO", json=True))
        normalize_arguments('{"a":1}{"a":1}', backend="openrouter")
        lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
        events = [line["repair_event"] for line in lines if "repair_event" in line]
        assert events[-1]["event_type"] == "repair_recovered"
        assert events[-1]["backend"] == "openrouter"
        # DEBUG attempt events are filtered at INFO.
        assert all(e["event_type"] != "repair_attempt" for e in events)
