"""Tests for structured logging configuration and the calendar context processor."""

from __future__ import annotations

import json
import logging

import pytest

from ledgersync.logging import (
    LOG_FILE_NAME,
    add_calendar_context,
    add_otel_context,
    calendar_context,
    configure_logging,
    get_calendar_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    noise_levels = {name: logging.getLogger(name).level for name in ("httpx", "httpcore")}
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, noise_level in noise_levels.items():
        logging.getLogger(name).setLevel(noise_level)


def test_calendar_context_is_scoped():
    assert get_calendar_context() is None
    with calendar_context("Service"):
        assert get_calendar_context() == "Service"
        with calendar_context("Warranty"):
            assert get_calendar_context() == "Warranty"
        assert get_calendar_context() == "Service"
    assert get_calendar_context() is None


def test_processors_inject_calendar_and_trace_ids():
    with calendar_context("Service"):
        event = add_calendar_context(None, "info", {"event": "hello"})
    event = add_otel_context(None, "info", event)
    assert event["calendar"] == "Service"
    assert event["trace_id"] == "0" * 32
    assert event["span_id"] == "0" * 16


def test_configure_logging_quiets_http_clients(restore_logging):
    logging.getLogger("httpx").setLevel(logging.NOTSET)
    configure_logging(level="debug")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_log_root_writes_json_lines(tmp_path, restore_logging):
    configure_logging(level="INFO", fmt="json", log_root=tmp_path / "logs")

    with calendar_context("Service"):
        logging.getLogger("ledgersync.test").info("Reconciled %d record(s)", 3)
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (tmp_path / "logs" / LOG_FILE_NAME).read_text().strip().splitlines()
    payload = json.loads(lines[-1])
    assert payload["event"] == "Reconciled 3 record(s)"
    assert payload["calendar"] == "Service"
    assert payload["level"] == "info"
    assert payload["logger"] == "ledgersync.test"
