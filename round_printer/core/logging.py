"""
Logging setup for Round Printer.

The agent runs unattended, so records carry enough context to be read back
later: the thread that emitted them (dispatch loop, websocket, HTTP worker),
the short component name, and the request id for operator API calls.

Environment:
- ROUNDPRINTER_LOG_LEVEL: root level name (default INFO)
- ROUNDPRINTER_JSON_LOGS: "true" for one JSON object per line
- ROUNDPRINTER_LOG_FILE: also write to this file, rotated at 1 MB (5 backups)
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List

PACKAGE_PREFIX = "round_printer."
PLAIN_FORMAT = "[%(asctime)s] %(levelname)s %(threadName)s %(component)s [%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """
    Stamp every record with `request_id`, `path` and `component`.
    Records emitted outside a Flask request get "-" for the first two.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.component = _component(record.name)
        record.request_id = "-"
        record.path = "-"
        try:
            from flask import g, has_request_context, request  # lazy import

            if has_request_context():
                record.request_id = getattr(g, "request_id", "-")
                record.path = request.path
        except Exception:
            pass
        return True


def _component(name: str) -> str:
    # round_printer.dispatch.scheduler -> dispatch.scheduler
    return name[len(PACKAGE_PREFIX):] if name.startswith(PACKAGE_PREFIX) else name


class JsonFormatter(logging.Formatter):
    """One JSON object per record; `path` only appears for API requests."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "component": getattr(record, "component", record.name),
            "thread": record.threadName,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        if getattr(record, "path", "-") != "-":
            entry["path"] = record.path  # type: ignore[attr-defined]
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _level_from_env() -> int:
    level = logging.getLevelName(os.environ.get("ROUNDPRINTER_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _build_handlers() -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    # journald when running as a systemd service, console otherwise
    try:
        from systemd.journal import JournalHandler  # type: ignore

        handlers.append(JournalHandler(SYSLOG_IDENTIFIER="round-printer"))
    except Exception:
        handlers.append(logging.StreamHandler())

    log_file = os.environ.get("ROUNDPRINTER_LOG_FILE")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=1024 * 1024, backupCount=5, encoding="utf-8"))
    return handlers


def configure_logging() -> logging.Logger:
    """
    Configure root logging for the agent and return the root logger.

    Existing root handlers are replaced, so calling this twice (CLI, then the
    app factory) does not duplicate output. Flask's app logger is made to
    propagate to root, and websocket-client is held at WARNING since it logs
    every frame at INFO.
    """
    root = logging.getLogger()
    root.setLevel(_level_from_env())
    root.handlers = []

    json_logs = os.environ.get("ROUNDPRINTER_JSON_LOGS", "false").lower() in ("1", "true", "yes")
    formatter = JsonFormatter() if json_logs else logging.Formatter(PLAIN_FORMAT)
    for handler in _build_handlers():
        handler.setFormatter(formatter)
        handler.addFilter(RequestIdFilter())
        root.addHandler(handler)

    logging.getLogger("websocket").setLevel(logging.WARNING)
    flask_logger = logging.getLogger("flask.app")
    flask_logger.handlers = []
    flask_logger.propagate = True
    return root


__all__ = ["JsonFormatter", "RequestIdFilter", "configure_logging"]
