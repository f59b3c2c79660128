"""
Printer and backend records kept in the JSON config file.

This is the CRUD side used by the operator API. The dispatch engine never
writes here; it only reads AgentConfig snapshots produced by read_agent_config().
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import load_config, save_config
from .errors import MalformedInput
from .models import AgentConfig, Printer, parse_content_code

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = {"EPSON"}
SUPPORTED_INTERFACES = {"TCP"}


def _load(path: Optional[str]) -> Dict[str, Any]:
    data = load_config(path)
    return dict(data) if data else {}


def read_agent_config(path: Optional[str] = None) -> AgentConfig:
    """Current snapshot of the stored configuration (empty when no file exists)."""
    return AgentConfig.from_mapping(load_config(path))


def list_printer_records(path: Optional[str] = None) -> List[Dict[str, Any]]:
    return [dict(p) for p in _load(path).get("printers") or []]


def _validate_printer(record: Mapping[str, Any]) -> Printer:
    if not record.get("type") or not record.get("interface"):
        raise ValueError("Invalid printer data")
    try:
        printer = Printer.model_validate(dict(record))
    except ValidationError as e:
        raise ValueError(f"Invalid printer data: {e.errors()[0].get('msg', 'invalid')}") from e
    if str(printer.type).upper() not in SUPPORTED_TYPES:
        raise ValueError(f"Unsupported printer type: {printer.type}")
    if str(printer.interface).upper() not in SUPPORTED_INTERFACES:
        raise ValueError(f"Unsupported printer interface: {printer.interface}")
    if not printer.address:
        raise ValueError("Printer needs an IP address or a port")
    try:
        parse_content_code(printer.content)
    except MalformedInput as e:
        raise ValueError(e.reason) from e
    return printer


def save_printer(
    record: Mapping[str, Any],
    *,
    base_url: Optional[str] = None,
    outlet_code: Optional[str] = None,
    path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create or update a printer (update when record["id"] matches an existing
    printer). The backend URL and outlet code travel with the printer form and
    are stored alongside it. Returns the stored record.

    Raises ValueError on invalid input and KeyError when updating an unknown id.
    """
    printer = _validate_printer(record)
    data = _load(path)
    if base_url is not None:
        data["base_url"] = base_url.strip()
    if outlet_code is not None:
        data["outlet_code"] = outlet_code.strip() or None

    printers: List[Dict[str, Any]] = list(data.get("printers") or [])
    stored = printer.to_record()
    if printer.id is not None:
        for idx, existing in enumerate(printers):
            if str(existing.get("id")) == str(printer.id):
                printers[idx] = stored
                break
        else:
            raise KeyError(printer.id)
    else:
        ids = [int(p["id"]) for p in printers if str(p.get("id", "")).isdigit()]
        stored["id"] = max(ids, default=0) + 1
        printers.append(stored)

    data["printers"] = printers
    save_config(data, path)
    logger.info("Saved printer id=%s name=%r", stored["id"], stored.get("name"))
    return stored


def delete_printer(printer_id: Any, path: Optional[str] = None) -> bool:
    """Remove a printer by id. Returns False when no such printer exists."""
    if printer_id in (None, ""):
        raise ValueError("Invalid printer ID")
    data = _load(path)
    printers = list(data.get("printers") or [])
    kept = [p for p in printers if str(p.get("id")) != str(printer_id)]
    if len(kept) == len(printers):
        return False
    data["printers"] = kept
    save_config(data, path)
    logger.info("Deleted printer id=%s", printer_id)
    return True


__all__ = ["delete_printer", "list_printer_records", "read_agent_config", "save_printer"]
