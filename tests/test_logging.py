"""
Tests for Structured Logging
"""

import asyncio
import json
import logging
import sys

from hosting_bridge.logging_config import (
    JSONFormatter,
    SessionContextFilter,
    TextFormatter,
    bind_session,
    configure_logging,
    current_session,
)


def make_record(**extra):
    record = logging.LogRecord(
        name="hosting_bridge.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Session %s state: %s",
        args=("cs_test_123", "ready"),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(make_record()))
        assert entry["service"] == "hosting-bridge"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "hosting_bridge.orchestrator"
        assert entry["message"] == "Session cs_test_123 state: ready"
        assert entry["timestamp"].endswith("Z")

    def test_context_fields(self):
        entry = json.loads(JSONFormatter().format(
            make_record(session_id="cs_test_123", instance_id=7, state="ready")
        ))
        assert entry["session_id"] == "cs_test_123"
        assert entry["instance_id"] == 7
        assert "account_id" not in entry

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestTextFormatter:

    def test_without_context(self):
        line = TextFormatter().format(make_record())
        assert line.endswith("hosting_bridge.orchestrator: Session cs_test_123 state: ready")

    def test_context_tags(self):
        line = TextFormatter().format(make_record(session_id="cs_test_123", instance_id=7))
        assert line.endswith("state: ready [session_id=cs_test_123 instance_id=7]")

    def test_tags_stay_on_first_line(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(session_id="cs_test_123")
            record.exc_info = sys.exc_info()

        first, _, rest = TextFormatter().format(record).partition("\n")
        assert first.endswith("[session_id=cs_test_123]")
        assert "RuntimeError: boom" in rest


class TestSessionBinding:

    def test_bound_session_fills_record(self):
        async def in_task():
            bind_session("cs_test_bound")
            record = make_record()
            SessionContextFilter().filter(record)
            return record.session_id

        assert asyncio.run(in_task()) == "cs_test_bound"

    def test_explicit_extra_wins(self):
        async def in_task():
            bind_session("cs_test_bound")
            record = make_record(session_id="cs_test_explicit")
            SessionContextFilter().filter(record)
            return record.session_id

        assert asyncio.run(in_task()) == "cs_test_explicit"

    def test_binding_does_not_leak_out_of_task(self):
        async def outer():
            async def inner():
                bind_session("cs_test_inner")
            await asyncio.create_task(inner())
            return current_session()

        assert asyncio.run(outer()) == ""

    def test_unbound_record_untouched(self):
        record = make_record()
        SessionContextFilter().filter(record)
        assert not hasattr(record, "session_id")


class TestConfigureLogging:

    def test_json_handler(self):
        configure_logging("DEBUG", "json", service="bridge-test")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.handlers[0].formatter.service == "bridge-test"
        assert any(isinstance(f, SessionContextFilter) for f in root.handlers[0].filters)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_handler(self):
        configure_logging("warning", "text")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, TextFormatter)
