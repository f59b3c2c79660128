import pytest
from escpos.printer import Dummy

import round_printer.printing.transmit as transmit
from round_printer.core.models import Printer
from round_printer.printing.render import Instruction, style, text
from round_printer.printing.transmit import EscposTransmitter, TransmitResult, network_address, render_and_transmit


class RecordingDummy(Dummy):
    def __init__(self):
        super().__init__()
        self.opened = False
        self.closed = False

    def open(self, *args, **kwargs):
        self.opened = True

    def close(self, *args, **kwargs):
        self.closed = True


INSTRUCTIONS = (style("center", bold=True), text("Cafe Kigali\n"), Instruction("cut"))


def test_transmit_without_address_fails_with_reason():
    result = render_and_transmit(INSTRUCTIONS, Printer(name="Nowhere"))
    assert result == TransmitResult(False, "printer 'Nowhere' has no address")


def test_transmit_replays_and_closes(monkeypatch, printer):
    device = RecordingDummy()
    monkeypatch.setattr(transmit, "connect_printer", lambda p, timeout=5.0: device)
    result = EscposTransmitter(timeout=1.0)(INSTRUCTIONS, printer)
    assert result.ok
    assert device.opened and device.closed
    assert b"Cafe Kigali" in device.output


def test_transmit_unknown_instruction_is_reported(monkeypatch, printer):
    device = RecordingDummy()
    monkeypatch.setattr(transmit, "connect_printer", lambda p, timeout=5.0: device)
    result = render_and_transmit((Instruction("beep"),), printer)
    assert not result.ok
    assert result.reason == "Unknown printer instruction: beep"
    assert device.closed


def test_reachability_check_reports_unreachable(monkeypatch, printer):
    def refuse(p, timeout=5.0):
        raise ConnectionRefusedError()

    monkeypatch.setattr(transmit, "connect_printer", refuse)
    assert EscposTransmitter().probe(printer) == (False, "printer_unreachable: ConnectionRefusedError")


@pytest.mark.parametrize(
    "ip,port,expected",
    [
        ("10.0.0.5", None, ("10.0.0.5", 9100)),
        ("10.0.0.5", "9101", ("10.0.0.5", 9101)),
        ("10.0.0.5:9100", None, ("10.0.0.5", 9100)),
        ("10.0.0.5:9102", "9101", ("10.0.0.5", 9102)),
        ("tcp://10.0.0.5:9103/", None, ("10.0.0.5", 9103)),
        (" printer.local ", "COM3", ("printer.local", 9100)),
    ],
)
def test_network_address_splits_host_and_port(ip, port, expected):
    assert network_address(Printer(name="Kitchen", ip=ip, port=port)) == expected


def test_connect_printer_passes_split_address(monkeypatch):
    import escpos.printer

    seen = {}

    def fake_network(host, port=9100, timeout=60, *args, **kwargs):
        seen.update(host=host, port=port, timeout=timeout)
        return RecordingDummy()

    monkeypatch.setattr(escpos.printer, "Network", fake_network)
    transmit.connect_printer(Printer(name="Kitchen", ip="10.0.0.5:9100"), timeout=2.0)
    assert seen == {"host": "10.0.0.5", "port": 9100, "timeout": 2.0}
