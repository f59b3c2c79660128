"""
Receipt rendering for Round Printer.

render_round() turns a PrintableRound into an ordered tuple of Instruction
records. It performs no I/O and reads no clock, so identical inputs always
give identical output; printing/transmit.py replays the instructions on a
python-escpos printer.

Layout (80mm paper, font A = `line_width` columns):
- centered header: company name (double size), TIN, phone, email, address
- invoices only: MoMo pay code
- reference, customer, served-by/table and date/time rows
- item table: Item 50% | Qty 10% | Price 18% | Total 22%
- invoices only: tax, grand total, disclaimer, QR code, SDC fiscal block
- cut + buzzer
"""

from __future__ import annotations

import logging
import math
import re
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone as dt_timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from round_printer.core.config import Tunables
from round_printer.core.models import PrintableRound, Printer, RoundCategory, Settings

logger = logging.getLogger(__name__)

LINE_CHARACTER = "."
DEFAULT_CUSTOMER = "Walk-In"
VAT_LABEL = "Tax(VAT - 18%)"
CURRENCY = "RWF"
DISCLAIMER = "Notes: This is not a legal receipt."
THANKS = "THANKS FOR VISITING!!"

ITEM_COLUMNS: Tuple[Tuple[str, str, float], ...] = (
    ("Item", "left", 0.5),
    ("Qty", "center", 0.1),
    ("Price", "center", 0.18),
    ("Total", "right", 0.22),
)

_THOUSANDS = re.compile(r"\B(?=(\d{3})+(?!\d))")


@dataclass(frozen=True)
class Instruction:
    """
    One printer operation.

    op is one of "set", "text", "qr", "cut", "buzzer". `options` is a sorted
    tuple of (name, value) pairs so instructions stay hashable and compare
    by value.
    """

    op: str
    data: str = ""
    options: Tuple[Tuple[str, Any], ...] = ()

    @property
    def kwargs(self) -> dict[str, Any]:
        return dict(self.options)


def _op(op: str, data: str = "", **options: Any) -> Instruction:
    return Instruction(op, data, tuple(sorted(options.items())))


def style(
    align: str = "left",
    *,
    font: str = "a",
    bold: bool = False,
    double_width: bool = False,
    double_height: bool = False,
) -> Instruction:
    """A full text style; every style instruction resets all attributes."""
    return _op("set", align=align, font=font, bold=bold, double_width=double_width, double_height=double_height)


def text(line: str) -> Instruction:
    return _op("text", line)


@dataclass(frozen=True)
class ReceiptLayout:
    line_width: int = 48
    timezone: str = "Africa/Kigali"
    qr_url: str = "https://tameapp.cloud"

    @classmethod
    def from_tunables(cls, tunables: Tunables) -> "ReceiptLayout":
        return cls(line_width=tunables.line_width, timezone=tunables.timezone, qr_url=tunables.receipt_qr_url)


# ----- value formatting ------------------------------------------------------


def _is_blank(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (int, float)):
        return value == 0 or (isinstance(value, float) and math.isnan(value))
    return False


def _number_text(value: float) -> str:
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_number(value: Any) -> float:
    """Lenient numeric conversion; anything unparsable becomes 0."""
    if value is None or value is False or (isinstance(value, str) and not value.strip()):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return int(number) if number.is_integer() else number


def format_money(value: Any) -> str:
    """
    Money for receipts: "0" for empty/zero/non-numeric values, otherwise the
    value's own digits with at most 3 decimals (truncated) and thousands
    separators on the integer part.
    """
    if _is_blank(value) or isinstance(value, bool):
        return "0"
    if isinstance(value, str):
        raw = value.strip()
        try:
            number = float(raw)
        except ValueError:
            return "0"
        if math.isnan(number):
            return "0"
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and math.isinf(value):
            return "0"
        raw = _number_text(float(value)) if isinstance(value, float) else str(value)
    else:
        return "0"

    sign = ""
    if raw.startswith(("-", "+")):
        sign, raw = ("-" if raw[0] == "-" else ""), raw[1:]
    whole, dot, decimals = raw.partition(".")
    whole = _THOUSANDS.sub(",", whole)
    return f"{sign}{whole}{dot}{decimals[:3]}"


def pad_reference(number: Any, width: int = 4) -> str:
    """Zero-pad a voucher/reference number; empty values become "0000"."""
    if _is_blank(number):
        return "0" * width
    return str(number).strip().rjust(width, "0")


def format_fiscal_date(stamp: Any) -> str:
    """'20240115093045' -> '15/01/2024 09:30:45'; anything else -> 'Invalid Date'."""
    if not isinstance(stamp, str) or len(stamp) < 14 or not stamp[:14].isdigit():
        return "Invalid Date"
    return f"{stamp[6:8]}/{stamp[4:6]}/{stamp[0:4]} {stamp[8:10]}:{stamp[10:12]}:{stamp[12:14]}"


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using UTC for receipt dates", name)
        return dt_timezone.utc


def parse_order_datetime(system_date: Optional[str], order_time: Optional[str], tz_name: str) -> Optional[datetime]:
    """
    Combine the order's date and time into a datetime in the business
    timezone. Naive stamps are taken as business-local time. Returns None
    when nothing usable is present; raises ValueError when unparsable.
    """
    stamp = " ".join(str(p).strip() for p in (system_date, order_time) if p and str(p).strip())
    if not stamp:
        return None
    parsed = datetime.fromisoformat(stamp)
    zone = _zone(tz_name)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def format_receipt_date(system_date: Optional[str], order_time: Optional[str], tz_name: str) -> str:
    try:
        dt = parse_order_datetime(system_date, order_time, tz_name)
    except ValueError:
        return "Invalid Date"
    if dt is None:
        return "N/A"
    return f"{dt:%b} {dt.day}, {dt.year}"


def format_receipt_time(system_date: Optional[str], order_time: Optional[str], tz_name: str) -> str:
    try:
        dt = parse_order_datetime(system_date, order_time, tz_name)
    except ValueError:
        return "Invalid Time"
    if dt is None:
        return "N/A"
    meridiem = "AM" if dt.hour < 12 else "PM"
    return f"{dt.hour % 12 or 12}:{dt:%M:%S} {meridiem}"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


# ----- layout helpers --------------------------------------------------------


def _column_widths(fractions: Sequence[float], width: int) -> list[int]:
    widths = [max(1, int(width * f)) for f in fractions]
    widths[-1] += width - sum(widths)
    return widths


def table_rows(cells: Sequence[Tuple[str, str, float]], width: int) -> list[str]:
    """
    Lay out one logical table row as one or more printed lines. Text that
    does not fit its column wraps inside that column; columns are separated
    by one space.
    """
    widths = _column_widths([c[2] for c in cells], width)
    last = len(cells) - 1
    wrapped: list[list[str]] = []
    for i, (value, _, _) in enumerate(cells):
        inner = max(1, widths[i] - (0 if i == last else 1))
        wrapped.append(textwrap.wrap(value, inner, break_long_words=True, break_on_hyphens=False) or [""])

    lines = []
    for r in range(max(len(w) for w in wrapped)):
        parts = []
        for i, (_, align, _) in enumerate(cells):
            inner = max(1, widths[i] - (0 if i == last else 1))
            seg = wrapped[i][r] if r < len(wrapped[i]) else ""
            if align == "right":
                seg = seg.rjust(inner)
            elif align == "center":
                seg = seg.center(inner)
            else:
                seg = seg.ljust(inner)
            parts.append(seg if i == last else seg + " ")
        lines.append("".join(parts).rstrip())
    return lines


def two_columns(left: str, right: str, width: int) -> list[str]:
    return table_rows(((left, "left", 0.5), (right, "right", 0.5)), width)


def _lines(rows: Sequence[str]) -> list[Instruction]:
    return [text(f"{row}\n") for row in rows]


def _separator(width: int) -> list[Instruction]:
    return [style("left"), text(LINE_CHARACTER * width + "\n")]


# ----- sections --------------------------------------------------------------


def _header(rnd: PrintableRound, settings: Settings, width: int) -> list[Instruction]:
    out = [
        style("center", double_width=True, double_height=True),
        text(f"{_str(settings.name)}\n"),
        style("center"),
        text(f"TIN: {_str(settings.tin_number)}\n"),
        text(f"Tel: {_str(settings.phone)}\n"),
        text(f"Email: {_str(settings.email)}\n"),
        text(f"Address: {_str(settings.address_line)}\n"),
    ]
    if rnd.is_invoice:
        out += [
            text("MOMO Code: "),
            style("center", bold=True),
            text(_str(settings.momo_code)),
            style("center"),
            text("\n"),
        ]
    out += _separator(width)
    return out


def _body(rnd: PrintableRound, layout: ReceiptLayout, width: int) -> list[Instruction]:
    out = [style("left")]
    if rnd.category is RoundCategory.ORDER:
        out.append(text(f"Order #: {pad_reference(rnd.round_no)}({_str(rnd.destination)})\n"))
    else:
        out.append(text(f"Invoice #: {pad_reference(rnd.order_id)}\n"))
    out.append(text(f"Customer: {rnd.customer or DEFAULT_CUSTOMER}\n"))
    out += _lines(two_columns(f"Served By: {_str(rnd.served_by)}", f"Table No: {_str(rnd.table)}", width))
    date = format_receipt_date(rnd.system_date, rnd.order_time, layout.timezone)
    time = format_receipt_time(rnd.system_date, rnd.order_time, layout.timezone)
    out += _lines(two_columns(f"Date: {date}", f"Time: {time}", width))
    out += _separator(width)
    return out


def _note_rows(note: str, width: int) -> list[Instruction]:
    label = "Notes: "
    font_b_width = width * 4 // 3
    wrapped = textwrap.wrap(label + note, font_b_width, break_long_words=True) or [label]
    out = [style("left", font="b", bold=True), text(label), style("left", font="b"), text(wrapped[0][len(label):] + "\n")]
    out += [text(f"{line}\n") for line in wrapped[1:]]
    out.append(style("left"))
    return out


def _items(rnd: PrintableRound, width: int) -> list[Instruction]:
    out = [style("left", bold=True)]
    out += _lines(table_rows([(name, align, frac) for name, align, frac in ITEM_COLUMNS], width))
    out += _separator(width)
    for item in rnd.items:
        values = (item.name, _str(item.quantity), format_money(item.price), format_money(item.amount))
        cells = [(v, align, frac) for v, (_, align, frac) in zip(values, ITEM_COLUMNS)]
        out += _lines(table_rows(cells, width))
        if item.comment and item.comment.strip() and rnd.category is RoundCategory.ORDER:
            out += _note_rows(item.comment.strip(), width)
    out += _separator(width)
    return out


def _invoice_footer(rnd: PrintableRound, layout: ReceiptLayout, width: int) -> list[Instruction]:
    tax = format_money(to_number(rnd.total_taxes)).split(".")[0]
    out = [
        style("right"),
        text("\n"),
        text(f"{VAT_LABEL}: {CURRENCY} {tax}\n"),
        text("\n"),
        style("right", double_width=True),
        text(f"Total: {CURRENCY} {format_money(to_number(rnd.grand_total))}\n"),
    ]
    out += _separator(width)
    out += [
        style("center"),
        text("\n"),
        text(f"{DISCLAIMER}\n"),
        text("\n"),
        style("center", font="b"),
        text(f"{THANKS}\n"),
        style("center"),
        text("\n"),
        _op("qr", layout.qr_url, size=6, ec="H"),
    ]
    meta = rnd.fiscal
    if meta is not None:
        out += [
            text("\n"),
            style("center", bold=True),
            text("SDC INFORMATION\n"),
        ]
        out += _separator(width)
        out += [
            text(f"Date: {format_fiscal_date(meta.issued_at)}\n"),
            text(f"SDC ID: {_str(meta.sdc_id)}\n"),
            text(f"Internal Data: {_str(meta.internal_data)}\n"),
            text(f"Receipt Signature: {_str(meta.signature)}\n"),
            text(f"MRC: {_str(meta.mrc)}\n"),
        ]
    return out


def render_round(
    rnd: PrintableRound,
    printer: Printer,
    settings: Optional[Settings],
    layout: Optional[ReceiptLayout] = None,
) -> Tuple[Instruction, ...]:
    """
    Render a round into printer instructions for the given printer.
    The printer's chars_per_line, when set, overrides the layout width.
    """
    layout = layout or ReceiptLayout()
    settings = settings or Settings()
    width = printer.chars_per_line or layout.line_width

    out: list[Instruction] = [style("left")]
    out += _header(rnd, settings, width)
    out += _body(rnd, layout, width)
    out += _items(rnd, width)
    if rnd.is_invoice:
        out += _invoice_footer(rnd, layout, width)
    out += [_op("cut"), _op("buzzer", times=1, duration=1)]
    return tuple(out)


__all__ = [
    "ITEM_COLUMNS",
    "Instruction",
    "ReceiptLayout",
    "format_fiscal_date",
    "format_money",
    "format_receipt_date",
    "format_receipt_time",
    "pad_reference",
    "render_round",
    "style",
    "table_rows",
    "text",
    "to_number",
    "two_columns",
]
