"""Unit tests for logging_config (get_logger, JSON formatter)."""

from __future__ import annotations

import logging
import os
import sys

import orjson

from reqrun.logging_config import LOG_FORMAT_ENV, LOG_LEVEL_ENV, _JsonFormatter, get_logger


def test_get_logger_returns_logger() -> None:
    logger = get_logger("test")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "reqrun.test"


def test_get_logger_root_name() -> None:
    logger = get_logger("reqrun")
    assert logger.name == "reqrun"


def test_root_logger_has_single_handler() -> None:
    get_logger("a")
    get_logger("b")
    assert len(logging.getLogger("reqrun").handlers) == 1


def test_env_names() -> None:
    assert LOG_LEVEL_ENV == "REQRUN_LOG_LEVEL"
    assert LOG_FORMAT_ENV == "REQRUN_LOG_FORMAT"
    assert os.environ.get(LOG_LEVEL_ENV, "INFO")


def test_json_formatter_outputs_one_object() -> None:
    record = logging.LogRecord("reqrun.x", logging.WARNING, __file__, 1, "value %s", ("A",), None)
    line = _JsonFormatter().format(record)
    data = orjson.loads(line)
    assert data["level"] == "WARNING"
    assert data["logger"] == "reqrun.x"
    assert data["message"] == "value A"
    assert "exception" not in data


def test_json_formatter_includes_exception() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("reqrun.x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    data = orjson.loads(_JsonFormatter().format(record))
    assert "ValueError: boom" in data["exception"]
