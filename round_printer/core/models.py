from __future__ import annotations

"""
Domain models for Round Printer.

Backend payloads and stored printer records are validated here, once, at the
boundary. Everything downstream works with these frozen models; a payload
that does not validate is reported as MalformedInput instead of leaking a
pydantic error inward.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedInput, extract_reason

logger = logging.getLogger(__name__)

Scalar = Union[int, float, str]

CONTENT_CODES = {"K": "Kitchen", "B": "Bar", "I": "Invoice"}

DEFAULT_REALTIME_PURPOSE = "printing"
DEFAULT_REALTIME_EVENT = "printable-round.created"


class RoundCategory(str, Enum):
    ORDER = "ORDER"
    INVOICE = "INVOICE"


def _first_error(e: ValidationError) -> str:
    try:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg") or str(e)
        return f"{loc}: {msg}" if loc else msg
    except Exception:
        return str(e)


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    name: str = ""
    quantity: Optional[Scalar] = None
    price: Optional[Scalar] = None
    amount: Optional[Scalar] = None
    comment: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_default(cls, v: Any) -> Any:
        return "" if v is None else v


class FiscalMeta(BaseModel):
    """Tax-authority (EBM/SDC) block attached to signed invoices."""

    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True, populate_by_name=True)

    issued_at: Optional[str] = Field(default=None, alias="vsdcRcptPbctDate")
    sdc_id: Optional[str] = Field(default=None, alias="sdcId")
    internal_data: Optional[str] = Field(default=None, alias="intrlData")
    signature: Optional[str] = Field(default=None, alias="rcptSign")
    mrc: Optional[str] = Field(default=None, alias="mrcNo")


class PrintableRound(BaseModel):
    """
    One unit of printable work, assembled from the backend's
    `{round, order, items}` response triple.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: Scalar
    category: RoundCategory
    round_no: Optional[Scalar] = None
    destination: Optional[str] = None
    order_id: Optional[Scalar] = None
    customer: Optional[str] = None
    served_by: Optional[str] = None
    table: Optional[Scalar] = None
    system_date: Optional[str] = None
    order_time: Optional[str] = None
    total_taxes: Optional[Scalar] = None
    grand_total: Optional[Scalar] = None
    items: Tuple[LineItem, ...] = ()
    fiscal: Optional[FiscalMeta] = None

    @field_validator("category", mode="before")
    @classmethod
    def _upper_category(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @property
    def is_invoice(self) -> bool:
        return self.category is RoundCategory.INVOICE

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "PrintableRound":
        """
        Build a round from a next-printable-round response body.
        Raises MalformedInput when the shape is unusable.
        """
        rnd = payload.get("round")
        if not isinstance(rnd, Mapping):
            raise MalformedInput("response has no round object")
        order = payload.get("order") or {}
        if not isinstance(order, Mapping):
            raise MalformedInput("order is not an object")
        items = payload.get("items") or []
        if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
            raise MalformedInput("items is not a list")
        fiscal = order.get("ebm_meta")
        try:
            return cls(
                id=rnd.get("id"),
                category=rnd.get("category"),
                round_no=rnd.get("round_no"),
                destination=rnd.get("destination_name"),
                order_id=order.get("id"),
                customer=order.get("client"),
                served_by=order.get("waiter"),
                table=order.get("table_name"),
                system_date=order.get("system_date"),
                order_time=order.get("order_time"),
                total_taxes=order.get("total_taxes"),
                grand_total=order.get("grand_total"),
                items=tuple(LineItem.model_validate(i) for i in items),
                fiscal=FiscalMeta.model_validate(fiscal) if isinstance(fiscal, Mapping) and fiscal else None,
            )
        except ValidationError as e:
            raise MalformedInput(f"round payload invalid ({_first_error(e)})") from e


class Trigger(BaseModel):
    """
    Why a fetch was requested. `latest` (last seen round id) and `content`
    (content-filter code) become query filters on the round fetch.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    latest: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def from_meta(cls, meta: Any) -> Optional["Trigger"]:
        if meta is None or isinstance(meta, Trigger):
            return meta
        if not isinstance(meta, Mapping):
            return None
        trigger = cls.model_validate(dict(meta))
        return trigger if (trigger.latest or trigger.content) else None

    def as_query(self) -> dict[str, Optional[str]]:
        return {"latest": self.latest, "content": self.content}


def parse_content_code(raw: Any) -> str:
    """
    Normalize a printer content filter to its letter code, e.g. "KI".

    Accepts the code itself ("KB"), a list of letters, or the JSON array
    string the desktop app stores ('["K","B"]'). Raises MalformedInput for
    anything else, including unknown letters and duplicates.
    """
    value = raw
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except ValueError as e:
                raise MalformedInput(f"content is not valid JSON: {text!r}") from e
        else:
            value = list(text)
    if not isinstance(value, (list, tuple)):
        raise MalformedInput(f"unsupported content value: {raw!r}")
    letters = [str(v).strip().upper() for v in value]
    if not 1 <= len(letters) <= 3:
        raise MalformedInput(f"content must select one to three categories: {raw!r}")
    if any(letter not in CONTENT_CODES for letter in letters) or len(set(letters)) != len(letters):
        raise MalformedInput(f"content has unknown or repeated categories: {raw!r}")
    return "".join(letters)


def describe_content(code: str) -> str:
    """Human label for a content code, e.g. "KI" -> "Kitchen & Invoice"."""
    try:
        letters = parse_content_code(code)
    except MalformedInput:
        return "Unknown"
    if len(letters) == len(CONTENT_CODES):
        return "All Orders and Invoices"
    return " & ".join(CONTENT_CODES[c] for c in letters)


class Printer(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    id: Optional[Scalar] = None
    name: str = ""
    type: str = "EPSON"
    interface: str = "TCP"
    ip: Optional[str] = None
    port: Optional[str] = None
    content: Union[str, List[str]] = "KBI"
    chars_per_line: Optional[int] = Field(default=None, ge=24, le=96)

    @field_validator("ip", "port", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @property
    def content_code(self) -> str:
        return parse_content_code(self.content)

    @property
    def address(self) -> Optional[str]:
        """Network address when set, otherwise the local port/queue name."""
        return self.ip or self.port

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Settings(BaseModel):
    """Company/display fields merged into every receipt."""

    model_config = ConfigDict(frozen=True, extra="allow", coerce_numbers_to_str=True)

    name: Optional[str] = None
    tin_number: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address_line: Optional[str] = None
    momo_code: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Settings":
        if not isinstance(payload, Mapping):
            raise MalformedInput("settings payload is not an object")
        # Some backends wrap the object in {"settings": {...}}
        inner = payload.get("settings")
        data = inner if isinstance(inner, Mapping) else payload
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise MalformedInput(f"settings invalid ({_first_error(e)})") from e


class AgentConfig(BaseModel):
    """Snapshot of the locally stored configuration the engine reads."""

    model_config = ConfigDict(frozen=True)

    base_url: Optional[str] = None
    outlet_code: Optional[str] = None
    printers: Tuple[Printer, ...] = ()
    realtime_purpose: str = DEFAULT_REALTIME_PURPOSE
    realtime_event: str = DEFAULT_REALTIME_EVENT

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "AgentConfig":
        """
        Build from the JSON config. Printer records that fail validation are
        skipped (logged) rather than failing the whole snapshot.
        """
        data = data or {}
        printers: list[Printer] = []
        for raw in data.get("printers") or []:
            try:
                printers.append(Printer.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping invalid printer record %r: %s", raw, _first_error(e))
        realtime = data.get("realtime") or {}
        base_url = str(data.get("base_url") or "").strip() or None
        outlet = str(data.get("outlet_code") or "").strip() or None
        return cls(
            base_url=base_url,
            outlet_code=outlet,
            printers=tuple(printers),
            realtime_purpose=str(realtime.get("purpose") or DEFAULT_REALTIME_PURPOSE),
            realtime_event=str(realtime.get("event") or DEFAULT_REALTIME_EVENT),
        )

    @property
    def active_printers(self) -> Tuple[Printer, ...]:
        """
        Printers eligible for dispatch: a usable address and a parseable
        content filter. Malformed records fail closed.
        """
        active = []
        for p in self.printers:
            if not p.address:
                logger.warning("Printer %r has no address; not dispatching to it", p.name or p.id)
                continue
            try:
                p.content_code
            except MalformedInput as e:
                logger.warning("Printer %r dropped from active set: %s", p.name or p.id, extract_reason(e))
                continue
            active.append(p)
        return tuple(active)

    @property
    def armed(self) -> bool:
        return bool(self.base_url) and bool(self.active_printers)


__all__ = [
    "AgentConfig",
    "CONTENT_CODES",
    "FiscalMeta",
    "LineItem",
    "PrintableRound",
    "Printer",
    "RoundCategory",
    "Settings",
    "Trigger",
    "describe_content",
    "parse_content_code",
]
