"""
Transmission adapter: replays rendered instructions on a python-escpos printer.

Network printers (an IP address) use escpos' Network transport. A printer with
only a port/queue name is a local device: a Windows print queue on win32, a
device file (e.g. /dev/usb/lp0) elsewhere. Every failure is reported as a
TransmitResult with a short reason; nothing raises out of this module.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional

from round_printer.core.errors import DeviceTransmissionError, extract_reason
from round_printer.core.models import Printer

from .render import Instruction

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_PORT = 9100


@dataclass(frozen=True)
class TransmitResult:
    ok: bool
    reason: Optional[str] = None


def network_address(printer: Printer) -> tuple[str, int]:
    """
    Split a printer's ip into host and port.
    Accepts "10.0.0.5", "10.0.0.5:9100" and "tcp://10.0.0.5:9100"; a port in the
    address wins over a numeric port field, then DEFAULT_NETWORK_PORT.
    """
    host = printer.ip.strip()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.rstrip("/")
    port = int(printer.port) if printer.port and str(printer.port).isdigit() else DEFAULT_NETWORK_PORT
    name, sep, tail = host.rpartition(":")
    if sep and tail.isdigit() and ":" not in name:
        host, port = name, int(tail)
    return host, port


def connect_printer(printer: Printer, timeout: float = 5.0):
    """
    Create an ESC/POS printer instance for the given printer record.
    The connection is not opened yet; callers open() it explicitly.
    """
    if printer.ip:
        from escpos.printer import Network

        host, port = network_address(printer)
        return Network(host, port=port, timeout=timeout)
    if printer.port:
        if sys.platform == "win32":
            from escpos.printer import Win32Raw

            return Win32Raw(printer_name=printer.port)
        from escpos.printer import File

        return File(devfile=printer.port)
    raise DeviceTransmissionError(f"printer {printer.name or printer.id!r} has no address")


def _qr_level(name: Any) -> int:
    from escpos import constants

    return {
        "L": constants.QR_ECLEVEL_L,
        "M": constants.QR_ECLEVEL_M,
        "Q": constants.QR_ECLEVEL_Q,
        "H": constants.QR_ECLEVEL_H,
    }.get(str(name).upper(), constants.QR_ECLEVEL_H)


def apply_instructions(p, instructions: Iterable[Instruction]) -> None:
    """Replay instructions on an escpos printer (real or Dummy)."""
    for ins in instructions:
        kw = ins.kwargs
        if ins.op == "set":
            doubled = bool(kw.get("double_width") or kw.get("double_height"))
            p.set(
                align=kw.get("align", "left"),
                font=kw.get("font", "a"),
                bold=bool(kw.get("bold")),
                double_width=bool(kw.get("double_width")),
                double_height=bool(kw.get("double_height")),
                normal_textsize=not doubled,
            )
        elif ins.op == "text":
            p.text(ins.data)
        elif ins.op == "qr":
            p.qr(ins.data, ec=_qr_level(kw.get("ec", "H")), size=int(kw.get("size", 6)))
        elif ins.op == "cut":
            p.cut()
        elif ins.op == "buzzer":
            p.buzzer(times=int(kw.get("times", 1)), duration=int(kw.get("duration", 1)))
        else:
            raise ValueError(f"Unknown printer instruction: {ins.op}")


def encode_instructions(instructions: Iterable[Instruction]) -> bytes:
    """The exact ESC/POS byte stream a printer would receive."""
    from escpos.printer import Dummy

    d = Dummy()
    apply_instructions(d, instructions)
    return d.output


def render_and_transmit(instructions: Iterable[Instruction], printer: Printer, timeout: float = 5.0) -> TransmitResult:
    """
    Send a rendered receipt to the printer.
    Returns TransmitResult(ok=True) on success, ok=False with a reason otherwise.
    """
    p = None
    try:
        logger.info("Connecting to printer %r at %s", printer.name, printer.address)
        p = connect_printer(printer, timeout=timeout)
        p.open()
        apply_instructions(p, instructions)
        logger.info("Receipt sent to printer %r", printer.name)
        return TransmitResult(True)
    except Exception as e:
        logger.exception("Printer error on %r: %s", printer.name, e)
        return TransmitResult(False, extract_reason(e))
    finally:
        if p is not None:
            try:
                p.close()
            except Exception:
                pass


def probe_printer(printer: Printer, timeout: float = 5.0) -> tuple[bool, Optional[str]]:
    """
    Attempt to connect to the printer and close immediately.

    Returns:
        (ok, reason): reason is a short code string on failure, None on success.
    """
    try:
        p = connect_printer(printer, timeout=timeout)
        p.open()
    except Exception as e:
        return False, f"printer_unreachable: {type(e).__name__}"
    try:
        p.close()
    except Exception:
        # Connection succeeded if we got this far
        pass
    return True, None


class EscposTransmitter:
    """Callable transmission adapter bound to a connect timeout."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def __call__(self, instructions: Iterable[Instruction], printer: Printer) -> TransmitResult:
        return render_and_transmit(instructions, printer, timeout=self.timeout)

    def probe(self, printer: Printer) -> tuple[bool, Optional[str]]:
        return probe_printer(printer, timeout=self.timeout)


__all__ = [
    "EscposTransmitter",
    "TransmitResult",
    "apply_instructions",
    "connect_printer",
    "encode_instructions",
    "probe_printer",
    "render_and_transmit",
]
