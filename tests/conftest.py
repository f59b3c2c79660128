# Ensure the repository root is on sys.path so `round_printer` can be imported in tests.

import json
import sys
from concurrent.futures import Future
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    # This file lives at: <repo_root>/tests/conftest.py
    # We want to add <repo_root> to sys.path (if not already present).
    here = Path(__file__).resolve()
    repo_root = here.parent.parent
    repo_str = str(repo_root)
    if repo_str not in sys.path:
        sys.path.insert(0, repo_str)


_ensure_repo_root_on_syspath()

from round_printer.core.models import PrintableRound, Printer, Settings  # noqa: E402
from round_printer.dispatch.backend import RoundQuery  # noqa: E402
from round_printer.dispatch.loop import TimerHandle  # noqa: E402
from round_printer.printing.transmit import TransmitResult  # noqa: E402


class FakeJob:
    def __init__(self, fn, args, callback):
        self.fn = fn
        self.args = args
        self.callback = callback
        self.future = Future()

    @property
    def name(self):
        return getattr(self.fn, "__name__", repr(self.fn))


class FakeLoop:
    """
    Deterministic stand-in for EventLoop: call_soon runs inline, timers live
    on a virtual clock moved by advance(), background jobs wait in `jobs`
    until a test runs or completes them.
    """

    def __init__(self):
        self.now = 0.0
        self.timers = []
        self.jobs = []

    # EventLoop surface
    def start(self):
        pass

    def stop(self, timeout=None):
        pass

    def is_alive(self):
        return True

    def in_loop_thread(self):
        return True

    def status(self):
        return {"loop_started": True, "loop_alive": True, "loop_backlog": 0}

    def call_soon(self, fn, *args):
        fn(*args)

    def call_later(self, delay, fn, *args):
        handle = TimerHandle(self.now + delay)
        self.timers.append((handle, fn, args))
        return handle

    def submit(self, fn, *args, callback=None):
        job = FakeJob(fn, args, callback)
        self.jobs.append(job)
        return job.future

    def run_sync(self, fn, *args, timeout=None):
        return fn(*args)

    # Test controls
    def pending_timers(self):
        return [h for h, _, _ in self.timers if not h.cancelled]

    def advance(self, seconds):
        self.now += seconds
        while True:
            due = [t for t in self.timers if t[0].when <= self.now]
            if not due:
                return
            due.sort(key=lambda t: t[0].when)
            entry = due[0]
            self.timers.remove(entry)
            handle, fn, args = entry
            handle._run(fn, args)

    def complete(self, job, result=None, error=None):
        self.jobs.remove(job)
        if error is not None:
            job.future.set_exception(error)
        else:
            job.future.set_result(result)
        if job.callback is not None:
            job.callback(job.future)

    def run_job(self, job):
        try:
            result = job.fn(*job.args)
        except Exception as e:
            self.complete(job, error=e)
        else:
            self.complete(job, result=result)

    def run_jobs(self, limit=100):
        ran = 0
        while self.jobs and ran < limit:
            self.run_job(self.jobs[0])
            ran += 1
        return ran

    def jobs_named(self, name):
        return [j for j in self.jobs if j.name == name]


class FakeBackend:
    """Scripted backend: `rounds` holds RoundQuery results or exceptions, served in order."""

    def __init__(self, base_url="https://pos.example.com", outlet_code=None):
        self.base_url = base_url
        self.outlet_code = outlet_code
        self.rounds = []
        self.fetches = []
        self.acks = []
        self.tenant = "42"
        self.realtime = {"key": "app-key", "host": "ws.example.com", "port": 443, "scheme": "https"}
        self.settings = Settings(name="Cafe Kigali", tin_number="123456789")
        self.preloader_calls = 0
        self.closed = 0

    def next_printable_round(self, trigger=None):
        self.fetches.append(trigger)
        item = self.rounds.pop(0) if self.rounds else RoundQuery(ready=False)
        if isinstance(item, BaseException):
            raise item
        return item

    def ack_printed(self, round_id):
        self.acks.append(round_id)

    def tenant_context(self):
        if isinstance(self.tenant, BaseException):
            raise self.tenant
        return self.tenant

    def realtime_config(self):
        if isinstance(self.realtime, BaseException):
            raise self.realtime
        return self.realtime

    def preloaders(self):
        self.preloader_calls += 1
        if isinstance(self.settings, BaseException):
            raise self.settings
        return self.settings

    def close(self):
        self.closed += 1


class FakeTransmitter:
    def __init__(self):
        self.sent = []
        self.results = []
        self.probe_result = (True, None)

    def __call__(self, instructions, printer):
        self.sent.append((tuple(instructions), printer))
        return self.results.pop(0) if self.results else TransmitResult(True)

    def probe(self, printer):
        return self.probe_result


class FakeTransport:
    def __init__(self, url, *, on_open, on_message, on_error, on_close):
        self.url = url
        self.handlers = {"open": on_open, "message": on_message, "error": on_error, "close": on_close}
        self.sent = []
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def send(self, text):
        self.sent.append(json.loads(text))

    def close(self):
        self.closed = True

    # Simulated server side
    def establish(self, socket_id="123.456"):
        self.handlers["open"]()
        self.deliver({"event": "pusher:connection_established", "data": json.dumps({"socket_id": socket_id})})

    def deliver(self, frame):
        self.handlers["message"](json.dumps(frame))

    def fail(self, error):
        self.handlers["error"](error)

    def drop(self, code=1006, message=""):
        self.handlers["close"](code, message)

    def frames(self, event):
        return [f for f in self.sent if f.get("event") == event]


class TransportFactory:
    def __init__(self):
        self.created = []

    def __call__(self, url, **handlers):
        transport = FakeTransport(url, **handlers)
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]


def round_payload(round_id=1, category="ORDER", **order):
    base_order = {
        "id": 77,
        "client": "Alice",
        "waiter": "Jean",
        "table_name": "T4",
        "system_date": "2024-01-15",
        "order_time": "09:30:45",
        "total_taxes": "1525.42",
        "grand_total": "10000",
    }
    base_order.update(order)
    return {
        "status": True,
        "round": {"id": round_id, "category": category, "round_no": 12, "destination_name": "Kitchen"},
        "order": base_order,
        "items": [
            {"name": "Brochette", "quantity": 2, "price": 2500, "amount": 5000, "comment": "well done"},
            {"name": "Fanta", "quantity": 1, "price": "1000", "amount": "1000"},
        ],
    }


def make_round(round_id=1, category="ORDER", **order):
    return PrintableRound.from_response(round_payload(round_id, category, **order))


def ready(round_id=1, category="ORDER"):
    return RoundQuery(ready=True, round=make_round(round_id, category))


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transmitter():
    return FakeTransmitter()


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def printer():
    return Printer(id=1, name="Kitchen", ip="192.168.1.50", port="9100", content='["K","B"]')


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setenv("ROUNDPRINTER_CONFIG_PATH", str(path))
    return str(path)
