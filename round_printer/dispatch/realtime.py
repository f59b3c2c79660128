"""
Realtime channel: a Pusher-protocol websocket (as served by Laravel Reverb)
subscribed to one public tenant channel.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING/CONNECTED -> ERROR, and connect() always passes through
    DISCONNECTED before a new attempt.

Tenant id and socket config are looked up concurrently on the loop's pool.
The socket itself runs on a websocket-client thread; every signal it raises is
posted back to the loop tagged with the generation it belongs to, so a
torn-down transport can never move the state.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlencode, urlparse

import websocket

from round_printer.core.errors import DataUnavailable, DispatchError, TransientNetworkError, extract_reason

from .loop import future_outcome

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 7
CLIENT_NAME = "round-printer"
CLIENT_VERSION = "1.0"
LOG_CAPACITY = 40


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    at: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"at": self.at, "kind": self.kind, "message": self.message}


class DiagnosticLog:
    """Bounded connection log, newest entry first."""

    def __init__(self, capacity: int = LOG_CAPACITY):
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def add(self, kind: str, message: str) -> None:
        self._entries.appendleft(LogEntry(datetime.now(timezone.utc).isoformat(), kind, message))

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def normalize_event(name: str) -> str:
    """Echo-style listener key: always with a single leading dot."""
    return name if name.startswith(".") else f".{name}"


def wire_event(name: str) -> str:
    """Event name as it travels on the socket (leading dot stripped)."""
    return name[1:] if name.startswith(".") else name


def channel_name(tenant_id: str, purpose: str) -> str:
    return f"tenant.{tenant_id}.{purpose}"


def socket_url(config: dict[str, Any], base_url: str) -> str:
    """
    Build the Pusher socket URL from /api/realtime-config, falling back to
    the backend URL for scheme and host.
    """
    parsed = urlparse(base_url or "")
    scheme = str(config.get("scheme") or parsed.scheme or "http").lower()
    tls = scheme in ("https", "wss")
    host = config.get("host") or parsed.hostname or "localhost"
    port = config.get("port") or (443 if tls else 6001)
    query = urlencode({"protocol": PROTOCOL_VERSION, "client": CLIENT_NAME, "version": CLIENT_VERSION, "flash": "false"})
    return f"{'wss' if tls else 'ws'}://{host}:{port}/app/{config['key']}?{query}"


class WebSocketTransport:
    """websocket-client WebSocketApp running on its own daemon thread."""

    def __init__(self, url: str, *, on_open, on_message, on_error, on_close):
        self.url = url
        self._app = websocket.WebSocketApp(
            url,
            on_open=lambda ws: on_open(),
            on_message=lambda ws, message: on_message(message),
            on_error=lambda ws, error: on_error(error),
            on_close=lambda ws, code, msg: on_close(code, msg),
        )
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._app.run_forever, daemon=True, name="round-printer-ws")
        self._thread.start()

    def send(self, text: str) -> None:
        self._app.send(text)

    def close(self) -> None:
        self._app.close()


class RealtimeChannel:
    def __init__(
        self,
        loop,
        backend_factory: Callable[[str, Optional[str]], Any],
        *,
        purpose: str,
        event: str,
        on_event: Optional[Callable[[], Any]] = None,
        on_state: Optional[Callable[[ConnectionState, Optional[BaseException]], Any]] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
        log: Optional[DiagnosticLog] = None,
    ):
        self.loop = loop
        self.backend_factory = backend_factory
        self.purpose = purpose
        self.event = event
        self.on_event = on_event
        self.on_state = on_state
        self.transport_factory = transport_factory or WebSocketTransport
        self.log = log or DiagnosticLog()
        self.state = ConnectionState.DISCONNECTED
        self.tenant_id: Optional[str] = None
        self.channel: Optional[str] = None
        self.socket_id: Optional[str] = None
        self.last_reason: Optional[str] = None
        self._transport = None
        self._listeners: set[tuple[str, str]] = set()
        self._generation = 0
        self._queued_connect: Optional[tuple[str, Optional[str], Any]] = None

    # ----- state -------------------------------------------------------------

    def _set_state(self, state: ConnectionState, message: str, error: Optional[BaseException] = None) -> None:
        self.state = state
        if state is ConnectionState.ERROR:
            self.last_reason = message
        self.log.add(state.value, message)
        logger.info("Realtime %s: %s", state.value, message)
        if self.on_state is not None:
            self.on_state(state, error)

    def _fail(self, error: DispatchError) -> None:
        self._close_transport()
        self._set_state(ConnectionState.ERROR, error.reason, error)

    # ----- connect / disconnect ----------------------------------------------

    def connect(self, base_url: str, outlet_code: Optional[str] = None, backend: Any = None) -> None:
        """
        Resolve tenant and realtime config, then open the socket. A caller
        that owns a backend client passes it in; otherwise one is built from
        backend_factory and closed once the lookups return.
        """
        if self.state is ConnectionState.CONNECTING and self._transport is None:
            # Lookups still running; _on_lookups picks this up
            self._queued_connect = (base_url, outlet_code, backend)
            self.log.add("connect", "Connect requested while connecting; queued")
            return
        self.disconnect()
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING, f"Resolving tenant for {base_url}")
        owned = backend is None
        if owned:
            backend = self.backend_factory(base_url, outlet_code)
        done: dict[str, Any] = {}

        def collect(name: str, future) -> None:
            done[name] = future
            if len(done) == 2:
                if owned:
                    backend.close()
                self._on_lookups(generation, base_url, done["tenant"], done["config"])

        self.loop.submit(backend.tenant_context, callback=lambda f: collect("tenant", f))
        self.loop.submit(backend.realtime_config, callback=lambda f: collect("config", f))

    def _on_lookups(self, generation: int, base_url: str, tenant_future, config_future) -> None:
        if generation != self._generation or self.state is not ConnectionState.CONNECTING:
            return
        if self._queued_connect is not None:
            # A newer connect() arrived meanwhile; this attempt's result is stale
            base_url, outlet_code, backend = self._queued_connect
            self.disconnect()
            self.connect(base_url, outlet_code, backend)
            return
        tenant, tenant_error = future_outcome(tenant_future)
        config, config_error = future_outcome(config_future)
        error = tenant_error or config_error
        if error is not None:
            self._fail(error if isinstance(error, DispatchError) else TransientNetworkError(error))
            return
        if not tenant:
            self._fail(DataUnavailable("tenant context has no tenant_id"))
            return
        if not (config or {}).get("key"):
            self._fail(DataUnavailable("realtime config has no key"))
            return

        self.tenant_id = tenant
        self.channel = channel_name(tenant, self.purpose)
        url = socket_url(config, base_url)
        self.log.add("transport", f"Opening {url.split('?')[0]}")

        def post(handler):
            return lambda *args: self.loop.call_soon(handler, generation, *args)

        try:
            self._transport = self.transport_factory(
                url,
                on_open=post(self._on_open),
                on_message=post(self._on_message),
                on_error=post(self._on_error),
                on_close=post(self._on_close),
            )
            self._transport.start()
        except Exception as e:
            self._transport = None
            self._fail(TransientNetworkError(e))

    def disconnect(self) -> None:
        """Unsubscribe, close the socket and drop the tenant binding. Always safe."""
        self._generation += 1
        self._queued_connect = None
        if self._transport is not None and self.channel and self._listeners:
            self._send({"event": "pusher:unsubscribe", "data": {"channel": self.channel}})
        self._listeners.clear()
        self._close_transport()
        was = self.state
        self.tenant_id = None
        self.channel = None
        self.socket_id = None
        if was is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED, "Disconnected")

    def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as e:
            logger.debug("Closing realtime transport failed: %s", e)

    # ----- subscription ------------------------------------------------------

    def listen(self) -> bool:
        """Subscribe to the tenant channel for the configured event. Duplicate binds are no-ops."""
        if self.state is not ConnectionState.CONNECTED or not self.channel:
            return False
        key = (self.channel, normalize_event(self.event))
        if key in self._listeners:
            return False
        self._send({"event": "pusher:subscribe", "data": {"channel": self.channel}})
        self._listeners.add(key)
        self.log.add("subscribe", f"Listening for {wire_event(self.event)} on {self.channel}")
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _send(self, frame: dict[str, Any]) -> None:
        if self._transport is None:
            return
        try:
            self._transport.send(json.dumps(frame))
        except Exception as e:
            logger.warning("Realtime send of %s failed: %s", frame.get("event"), e)

    # ----- transport signals (loop thread) ----------------------------------

    def _current(self, generation: int) -> bool:
        return generation == self._generation and self._transport is not None

    def _on_open(self, generation: int) -> None:
        if self._current(generation):
            self.log.add("transport", "Socket open; waiting for handshake")

    def _on_message(self, generation: int, raw: Any) -> None:
        if not self._current(generation):
            return
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-JSON realtime frame")
            return
        if not isinstance(frame, dict):
            return
        event = str(frame.get("event") or "")
        data = _decode_data(frame.get("data"))

        if event == "pusher:connection_established":
            self.socket_id = data.get("socket_id") if isinstance(data, dict) else None
            self._set_state(ConnectionState.CONNECTED, f"Connected (socket {self.socket_id or '?'})")
            self.listen()
        elif event == "pusher:ping":
            self._send({"event": "pusher:pong", "data": {}})
        elif event == "pusher:error":
            self._on_pusher_error(data)
        elif event == "pusher_internal:subscription_succeeded":
            self.log.add("subscribe", f"Subscribed to {frame.get('channel')}")
        elif frame.get("channel") == self.channel and event == wire_event(self.event):
            self.log.add("event", f"{event} received")
            if self.on_event is not None:
                self.on_event()

    def _on_pusher_error(self, data: Any) -> None:
        reason = extract_reason(data)
        code = data.get("code") if isinstance(data, dict) else None
        self.log.add("pusher-error", f"{reason} (code {code})")
        # 4000-4099: the server refuses this client; reconnecting will not help
        if isinstance(code, int) and 4000 <= code < 4100:
            self._fail(DataUnavailable(reason))

    def _on_error(self, generation: int, error: Any) -> None:
        if not self._current(generation):
            return
        self._fail(TransientNetworkError(error))

    def _on_close(self, generation: int, code: Any = None, message: Any = None) -> None:
        if not self._current(generation):
            return
        self._transport = None
        self._listeners.clear()
        reason = extract_reason(message, f"closed (code {code})") if message else f"closed (code {code})"
        self.last_reason = reason
        # Passing the error marks this as an unexpected drop, unlike disconnect()
        self._set_state(ConnectionState.DISCONNECTED, reason, TransientNetworkError(reason))

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "tenant_id": self.tenant_id,
            "channel": self.channel,
            "event": wire_event(self.event),
            "listeners": self.listener_count,
            "last_reason": self.last_reason,
            "log": [e.to_dict() for e in self.log.entries()],
        }


def _decode_data(data: Any) -> Any:
    # Pusher sends `data` as a JSON-encoded string
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


__all__ = [
    "ConnectionState",
    "DiagnosticLog",
    "LogEntry",
    "RealtimeChannel",
    "WebSocketTransport",
    "channel_name",
    "normalize_event",
    "socket_url",
    "wire_event",
]
