from __future__ import annotations

"""
JSON API (v1) for Round Printer operators.

Endpoints:
- GET    /api/v1/status                 : dispatch snapshot (session, connection, diagnostics)
- GET    /api/v1/failed                 : preserved failed prints
- POST   /api/v1/failed/<id>/retry      : re-send a failed print (async). Returns 202
- POST   /api/v1/printed                : external printed-ack {latest, content}
- GET    /api/v1/printers               : stored printer records
- POST   /api/v1/printers               : create/update a printer (+ base_url, outlet_code)
- DELETE /api/v1/printers/<id>          : delete a printer
- POST   /api/v1/test-connection        : one settings fetch against {base_url, outlet_code}

Every store change re-applies the config to the dispatch coordinator.
"""

from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError

from round_printer.core.store import delete_printer, list_printer_records, save_printer
from . import schemas

api_bp = Blueprint("api", __name__, url_prefix="/api/v1")

AGENT_KEY = "round_printer.agent"


def _json_error(msg: str, code: int = 400):
    return jsonify({"error": msg}), code


def _validation_message(e: ValidationError) -> str:
    try:
        first_err = e.errors()[0]
        return first_err.get("msg") or str(e)
    except Exception:
        return str(e)


def _agent():
    return current_app.extensions.get(AGENT_KEY)


def _config_path():
    return current_app.config.get("ROUNDPRINTER_CONFIG_PATH")


def _body() -> Any:
    return request.get_json(silent=True) or {}


@api_bp.get("/status")
def status():
    agent = _agent()
    if agent is None:
        return _json_error("Dispatch agent not running", 503)
    return jsonify(agent.snapshot())


@api_bp.get("/failed")
def list_failed():
    agent = _agent()
    if agent is None:
        return _json_error("Dispatch agent not running", 503)
    return jsonify({"failed": agent.failed_prints()})


@api_bp.post("/failed/<failed_id>/retry")
def retry_failed(failed_id: str):
    agent = _agent()
    if agent is None:
        return _json_error("Dispatch agent not running", 503)
    if not agent.retry_print(failed_id):
        return _json_error("Failed print not found", 404)
    return jsonify({"id": failed_id, "status": "retrying"}), 202


@api_bp.post("/printed")
def printed():
    if not request.is_json:
        return _json_error("Expected application/json body", 415)
    agent = _agent()
    if agent is None:
        return _json_error("Dispatch agent not running", 503)
    try:
        ack = schemas.PrintedAck.model_validate(_body())
    except ValidationError as e:
        return _json_error(_validation_message(e), 400)
    agent.acknowledge_printed(ack.model_dump())
    return jsonify({"status": "accepted"}), 202


@api_bp.get("/printers")
def list_printers():
    try:
        printers = list_printer_records(_config_path())
    except Exception as e:
        current_app.logger.exception(f"Reading printers failed: {e}")
        return _json_error("Could not read printer records", 500)
    return jsonify({"printers": printers})


@api_bp.post("/printers")
def upsert_printer():
    if not request.is_json:
        return _json_error("Expected application/json body", 415)
    try:
        req = schemas.PrinterSaveRequest.model_validate(_body())
    except ValidationError as e:
        return _json_error(_validation_message(e), 400)

    agent = _agent()
    try:
        stored = save_printer(
            req.record(),
            base_url=req.base_url,
            outlet_code=req.outlet_code,
            path=_config_path(),
        )
    except KeyError:
        return _json_error("Printer not found", 404)
    except (ValueError, OSError) as e:
        current_app.logger.warning(f"Saving printer failed: {e}")
        if agent is not None:
            agent.notify(f"Could not save printer: {e}")
        return _json_error(str(e), 400)

    if agent is not None:
        agent.apply_config()
    return jsonify({"printer": stored}), 200 if req.id is not None else 201


@api_bp.delete("/printers/<printer_id>")
def remove_printer(printer_id: str):
    agent = _agent()
    try:
        deleted = delete_printer(printer_id, _config_path())
    except (ValueError, OSError) as e:
        current_app.logger.warning(f"Deleting printer {printer_id} failed: {e}")
        if agent is not None:
            agent.notify(f"Could not delete printer: {e}")
        return _json_error(str(e), 400)
    if not deleted:
        return _json_error("Printer not found", 404)
    if agent is not None:
        agent.apply_config()
    return jsonify({"deleted": printer_id})


@api_bp.post("/test-connection")
def test_connection():
    if not request.is_json:
        return _json_error("Expected application/json body", 415)
    agent = _agent()
    if agent is None:
        return _json_error("Dispatch agent not running", 503)
    try:
        req = schemas.ConnectionTestRequest.model_validate(_body())
    except ValidationError as e:
        return _json_error(_validation_message(e), 400)

    timeout = float(current_app.config.get("ROUNDPRINTER_TEST_TIMEOUT", agent.tunables.http_timeout + 2))
    try:
        ok, message = agent.test_connection(req.base_url, req.outlet_code).result(timeout)
    except FutureTimeout:
        return _json_error("Connection test timed out", 504)
    return jsonify({"ok": ok, "message": message}), 200 if ok else 502
