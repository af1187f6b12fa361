"""
Hosting Bridge Structured Logging
=================================

JSON lines in production, one-line text in development. Both carry the
provisioning context (session, account, instance, event type, state).

Context comes from two places:
- ``extra=`` on the log call
- the session bound to the current asyncio task with ``bind_session``,
  so panel and billing calls made during a provisioning run are tagged
  with its session id without passing it down
"""

import logging
import json
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

SERVICE_NAME = "hosting-bridge"

# Context attached through ``extra=`` on log calls
CONTEXT_FIELDS = ("session_id", "account_id", "instance_id", "event_type", "state")

_current_session: ContextVar[str] = ContextVar("session_id", default="")


def bind_session(session_id: str) -> None:
    """Tag every record logged from the current task (and tasks it starts) with ``session_id``."""
    _current_session.set(session_id)


def current_session() -> str:
    return _current_session.get()


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class SessionContextFilter(logging.Filter):
    """Fill ``session_id`` from the bound session when the call did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            session_id = _current_session.get()
            if session_id:
                record.session_id = session_id
        return True


class JSONFormatter(logging.Formatter):
    """Output log records as JSON lines."""

    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_context(record))

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """``2026-10-19 12:00:00 INFO     hosting_bridge.orchestrator: message [session_id=cs_...]``"""

    def __init__(self):
        super().__init__(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        tags = " ".join(f"{key}={value}" for key, value in context.items())
        # Exception text goes after the first line
        first, newline, rest = line.partition("\n")
        return f"{first} [{tags}]{newline}{rest}"


def configure_logging(level: str = "INFO", fmt: str = "json", service: str = SERVICE_NAME):
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        fmt: Format - "json" for structured, anything else for text
        service: Value of the ``service`` field in JSON output
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(SessionContextFilter())
    handler.setFormatter(JSONFormatter(service) if fmt == "json" else TextFormatter())
    root.addHandler(handler)

    # Request lines and per-call client chatter
    for name in ("uvicorn.access", "httpx", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)
