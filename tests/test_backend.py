import pytest
import requests

from conftest import round_payload

from round_printer.core.errors import MalformedInput, TransientNetworkError
from round_printer.core.models import Trigger
from round_printer.dispatch.backend import BackendClient


class FakeResponse:
    def __init__(self, body=None, status=200, text=None):
        self.body = body
        self.status_code = status
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.text is not None:
            raise ValueError("not json")
        return self.body


class FakeSession:
    def __init__(self, responses=None):
        self.headers = {}
        self.responses = dict(responses or {})
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        reply = self.responses.get(url.split("?")[0], FakeResponse({}))
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self):
        pass


PROD = "https://pos.example.com/bkend/api"


def _client(responses=None, outlet="OUT-1", base="https://pos.example.com"):
    session = FakeSession(responses)
    return BackendClient(base, outlet, timeout=4.0, session=session), session


def test_headers_and_outlet_scoped_urls():
    client, session = _client()
    assert session.headers["Accept"] == "application/json"
    assert session.headers["User-Agent"].startswith("round-printer/")
    assert client.url("/api/preloaders", with_outlet=True) == f"{PROD}/preloaders/OUT-1"
    assert client.url("/api/tenant-context", with_outlet=True) == f"{PROD}/tenant-context/OUT-1"
    local, _ = _client(base="http://localhost:8000", outlet=None)
    assert local.url("/api/preloaders", with_outlet=True) == "http://localhost:8000/api/preloaders"


def test_round_query_url_carries_trigger_filters():
    client, _ = _client()
    assert client.round_query_url() == f"{PROD}/next-printable-round/OUT-1"
    assert client.round_query_url(Trigger(latest="12", content="KB")) == (
        f"{PROD}/next-printable-round/OUT-1?latest=12&content=KB"
    )


def test_next_printable_round_ready():
    client, session = _client({f"{PROD}/next-printable-round/OUT-1": FakeResponse(round_payload(5))})
    result = client.next_printable_round()
    assert result.ready
    assert result.round.id == 5
    assert session.calls[0][1] == 4.0


def test_next_printable_round_stale_and_empty():
    client, session = _client({f"{PROD}/next-printable-round/OUT-1": FakeResponse({"status": False, "round": {"id": 9}})})
    result = client.next_printable_round()
    assert not result.ready
    assert result.stale_round_id == 9

    session.responses[f"{PROD}/next-printable-round/OUT-1"] = FakeResponse({"status": False})
    assert client.next_printable_round().stale_round_id is None


@pytest.mark.parametrize(
    "reply,error",
    [
        (requests.ConnectionError("refused"), TransientNetworkError),
        (FakeResponse({}, status=500), TransientNetworkError),
        (FakeResponse(text="<html>"), MalformedInput),
        (FakeResponse(["not", "an", "object"]), MalformedInput),
        (FakeResponse({"status": True, "round": {"id": 1}}), MalformedInput),
    ],
)
def test_next_printable_round_errors(reply, error):
    client, _ = _client({f"{PROD}/next-printable-round/OUT-1": reply})
    with pytest.raises(error):
        client.next_printable_round()


def test_ack_printed():
    client, session = _client()
    client.ack_printed(31)
    assert session.calls[-1][0] == f"{PROD}/update-printed-round/31"

    session.responses[f"{PROD}/update-printed-round/32"] = FakeResponse(status=503)
    with pytest.raises(TransientNetworkError, match="ack for round 32 failed"):
        client.ack_printed(32)


def test_tenant_context_and_realtime_config():
    client, session = _client(
        {
            f"{PROD}/tenant-context": FakeResponse({"tenant_id": 42}),
            f"{PROD}/realtime-config": FakeResponse({"key": "app-key", "host": "ws.example.com"}),
        }
    )
    assert client.tenant_context() == "42"
    assert client.realtime_config() == {"key": "app-key", "host": "ws.example.com"}

    session.responses[f"{PROD}/tenant-context"] = FakeResponse({"tenant_id": ""})
    session.responses[f"{PROD}/realtime-config"] = FakeResponse([])
    assert client.tenant_context() is None
    assert client.realtime_config() == {}


def test_preloaders():
    client, _ = _client({f"{PROD}/preloaders/OUT-1": FakeResponse({"settings": {"name": "Cafe", "tin_number": 1}})})
    settings = client.preloaders()
    assert settings.name == "Cafe"
    assert settings.tin_number == "1"
