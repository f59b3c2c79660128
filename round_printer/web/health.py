from __future__ import annotations

"""
Health endpoints for Round Printer.

This blueprint exposes `/healthz`, reporting:
- Overall status ("ok" or "degraded")
- Dispatch loop liveness and backlog
- Whether dispatch is armed, the realtime connection state and session flags
- Presence of saved config
- With ?probe=1, reachability of the dispatch printer (connect + close)
"""

from typing import Any, Dict

from flask import Blueprint, current_app, request

from round_printer.core.config import load_config

from .api import AGENT_KEY

health_bp = Blueprint("health", __name__)


@health_bp.get("/healthz")
def healthz():
    status: Dict[str, Any] = {"status": "ok"}
    agent = current_app.extensions.get(AGENT_KEY)
    if agent is None:
        status["status"] = "degraded"
        status["reason"] = "agent_not_running"
        return status, 200

    snap = agent.snapshot()
    status.update(snap["loop"])
    status["armed"] = snap["armed"]
    status["connection"] = snap["connection"]["state"]
    status["session"] = {k: snap["session"][k] for k in ("active", "in_flight", "pending", "retry_scheduled")}
    status["failed_prints"] = len(snap["failed"])

    try:
        cfg = load_config(current_app.config.get("ROUNDPRINTER_CONFIG_PATH"))
    except Exception:
        cfg = None
    if not cfg:
        status["status"] = "degraded"
        status["reason"] = "no_config"
        return status, 200

    if not status.get("loop_alive"):
        status["status"] = "degraded"
        status["reason"] = "loop_stopped"
    elif not snap["armed"]:
        status["status"] = "degraded"
        status["reason"] = "not_armed"

    if request.args.get("probe") in ("1", "true", "yes"):
        probe = agent.probe_printer()
        status["printer_ok"] = probe.get("ok")
        if probe.get("ok") is False and status["status"] == "ok":
            status["status"] = "degraded"
            status["reason"] = probe.get("reason") or "printer_unreachable"

    return status, 200
