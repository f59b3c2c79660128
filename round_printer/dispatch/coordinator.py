"""
Dispatch coordinator: owns one EventLoop, one FetchScheduler and one
RealtimeChannel, and decides when each of them runs.

Dispatch is armed when a backend URL and at least one active printer are
configured. Arming refreshes settings, connects the channel and resumes the
scheduler once settings are known; disarming disconnects and stops.

Public methods may be called from any thread (Flask handlers, the CLI);
they are marshalled onto the loop thread.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import OrderedDict, deque
from collections.abc import Mapping
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from round_printer.core.config import Tunables
from round_printer.core.errors import DataUnavailable, extract_reason
from round_printer.core.models import AgentConfig, Settings, Trigger
from round_printer.core.store import read_agent_config
from round_printer.printing.render import ReceiptLayout
from round_printer.printing.transmit import EscposTransmitter

from .backend import BackendClient
from .loop import EventLoop, TimerHandle, future_outcome
from .realtime import ConnectionState, RealtimeChannel
from .scheduler import FailedPrint, FetchScheduler

logger = logging.getLogger(__name__)

NOTICE_CAPACITY = 20


class DispatchCoordinator:
    def __init__(
        self,
        *,
        loop: Optional[EventLoop] = None,
        tunables: Optional[Tunables] = None,
        config_path: Optional[str] = None,
        backend_factory: Optional[Callable[[str, Optional[str]], Any]] = None,
        transmitter: Optional[Callable[..., Any]] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
    ):
        self.tunables = tunables or Tunables.from_env()
        self.loop = loop or EventLoop()
        self.config_path = config_path
        self.backend_factory = backend_factory or self._default_backend
        self.transmitter = transmitter or EscposTransmitter(self.tunables.printer_timeout)
        self.config = AgentConfig()
        self.settings: Optional[Settings] = None
        self.last_printed: Optional[Trigger] = None
        self.notices: deque[dict[str, str]] = deque(maxlen=NOTICE_CAPACITY)
        self.failed: OrderedDict[str, FailedPrint] = OrderedDict()
        self._retrying: set[str] = set()
        self._backend = None
        self._config_generation = 0
        self._printed_timer: Optional[TimerHandle] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._closed = False

        self.scheduler = FetchScheduler(
            self.loop,
            self.transmitter,
            layout=ReceiptLayout.from_tunables(self.tunables),
            poll_delay=self.tunables.poll_delay,
            retry_delay=self.tunables.retry_delay,
            on_printed=self._on_printed,
            on_print_failed=self._on_print_failed,
        )
        self.channel = RealtimeChannel(
            self.loop,
            self.backend_factory,
            purpose=self.config.realtime_purpose,
            event=self.config.realtime_event,
            on_event=self._on_realtime_event,
            on_state=self._on_channel_state,
            transport_factory=transport_factory,
        )

    def _default_backend(self, base_url: str, outlet_code: Optional[str]) -> BackendClient:
        return BackendClient(
            base_url,
            outlet_code,
            timeout=self.tunables.http_timeout,
            api_prefix=self.tunables.api_prefix,
        )

    def _swap_backend(self, backend: Any) -> None:
        """Install a new backend client and close the one it replaces."""
        old, self._backend = self._backend, backend
        if old is not None and old is not backend:
            old.close()

    def _post(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.loop.in_loop_thread():
            fn(*args)
        else:
            self.loop.call_soon(fn, *args)

    # ----- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.loop.start()

    def shutdown(self) -> None:
        """Disconnect the channel, stop the scheduler, cancel timers, stop the loop."""
        self.loop.run_sync(self._shutdown)
        self.loop.stop()

    def _shutdown(self) -> None:
        self._closed = True
        self.channel.disconnect()
        self.scheduler.stop()
        self._cancel_printed_timer()
        self._cancel_reconnect()
        self.scheduler.bind(None, None)
        self._swap_backend(None)
        logger.info("Dispatch shut down")

    # ----- configuration -----------------------------------------------------

    def apply_config(self, config: Union[AgentConfig, Mapping[str, Any], None] = None) -> None:
        """
        Re-evaluate dispatch for a new configuration. With no argument the
        stored config is re-read, which is what printer save/delete calls.
        """
        if config is None:
            config = read_agent_config(self.config_path)
        elif not isinstance(config, AgentConfig):
            config = AgentConfig.from_mapping(config)
        self._post(self._apply_config, config)

    def _apply_config(self, config: AgentConfig) -> None:
        if self._closed:
            return
        previous = self.config
        self.config = config
        self._config_generation += 1
        self._cancel_reconnect()
        self.scheduler.stop()

        if not config.armed:
            logger.info("Dispatch disarmed (backend url set: %s, active printers: %d)", bool(config.base_url), len(config.active_printers))
            self.channel.disconnect()
            self.scheduler.bind(None, None)
            self._swap_backend(None)
            return

        if (previous.base_url, previous.outlet_code) != (config.base_url, config.outlet_code):
            self.settings = None
            self.scheduler.settings = None
            self._swap_backend(None)
        if self._backend is None:
            self._swap_backend(self.backend_factory(config.base_url, config.outlet_code))
        printer = config.active_printers[0]
        self.scheduler.bind(self._backend, printer)
        logger.info("Dispatch armed: %s via printer %r", config.base_url, printer.name)

        self._refresh_settings()
        self.channel.purpose = config.realtime_purpose
        self.channel.event = config.realtime_event
        self.channel.connect(config.base_url, config.outlet_code, self._backend)

    def _refresh_settings(self) -> None:
        generation = self._config_generation
        self.loop.submit(self._backend.preloaders, callback=lambda f: self._on_settings(generation, f))

    def _on_settings(self, generation: int, future) -> None:
        if generation != self._config_generation or self._closed:
            return
        settings, error = future_outcome(future)
        if error is not None:
            reason = extract_reason(error)
            logger.warning("Loading settings failed: %s", reason)
            self.notify(f"Could not load settings: {reason}")
            if self.settings is None:
                return
        else:
            self.settings = settings
            self.scheduler.settings = settings
            logger.info("Settings loaded for %r", settings.name)
        if self.config.armed:
            self.scheduler.resume()

    # ----- realtime ----------------------------------------------------------

    def _on_realtime_event(self) -> None:
        # Notifications are only hints; the fetch decides what to print
        self.scheduler.queue()

    def _on_channel_state(self, state: ConnectionState, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        if state is ConnectionState.CONNECTED:
            self._cancel_reconnect()
            if self.config.armed and self._backend is not None:
                self._refresh_settings()
            return
        if error is None or not self.config.armed:
            return
        if isinstance(error, DataUnavailable):
            logger.error("Realtime unavailable, not retrying: %s", extract_reason(error))
            return
        if state in (ConnectionState.ERROR, ConnectionState.DISCONNECTED):
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            return
        delay = self.tunables.reconnect_delay
        logger.info("Realtime reconnect in %ss", delay)
        self._reconnect_timer = self.loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._closed or not self.config.armed:
            return
        if self.channel.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        self.channel.connect(self.config.base_url, self.config.outlet_code, self._backend)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # ----- printed / failed --------------------------------------------------

    def _on_printed(self, trigger: Trigger) -> None:
        self.last_printed = trigger
        self._drop_failed(trigger.latest)

    def acknowledge_printed(self, meta: Any = None) -> None:
        """External printed-ack: resume fetching with `meta` after the debounce delay."""
        self._post(self._acknowledge_printed, Trigger.from_meta(meta))

    def _acknowledge_printed(self, trigger: Optional[Trigger]) -> None:
        if self._closed:
            return
        self._cancel_printed_timer()
        self._printed_timer = self.loop.call_later(self.tunables.printed_debounce, self._resume_after_print, trigger)

    def _resume_after_print(self, trigger: Optional[Trigger]) -> None:
        self._printed_timer = None
        if self.config.armed and not self._closed:
            self.scheduler.resume(trigger)

    def _cancel_printed_timer(self) -> None:
        if self._printed_timer is not None:
            self._printed_timer.cancel()
            self._printed_timer = None

    def _drop_failed(self, round_id: Any) -> None:
        """Forget every preserved failure of a round; at most one exists per round."""
        for failed_id in [k for k, f in self.failed.items() if str(f.round_id) == str(round_id)]:
            del self.failed[failed_id]

    def _on_print_failed(self, failed: FailedPrint) -> None:
        self._drop_failed(failed.round_id)
        self.failed[failed.id] = failed
        while len(self.failed) > self.tunables.failed_max:
            dropped_id, dropped = self.failed.popitem(last=False)
            logger.warning("Dropping oldest failed print %s (round %s)", dropped_id, dropped.round_id)
        self.notify(f"Round {failed.round_id} failed to print on {failed.printer.name or failed.printer.id}: {failed.reason}")

    def retry_print(self, failed_id: str) -> bool:
        """
        Re-send a preserved failed print. Returns False for an unknown id, or
        when the scheduler is printing that round right now.
        """
        return self.loop.run_sync(self._retry_print, failed_id)

    def _retry_print(self, failed_id: str) -> bool:
        failed = self.failed.get(failed_id)
        if failed is None:
            return False
        if failed_id in self._retrying:
            return True
        if self.scheduler.is_printing(failed.round_id):
            logger.info("Round %s is already being printed; not retrying %s", failed.round_id, failed_id)
            return False
        self._retrying.add(failed_id)
        self.scheduler.hold(failed.round_id)
        logger.info("Retrying failed print %s (round %s)", failed_id, failed.round_id)
        self.loop.submit(
            self.transmitter,
            failed.instructions,
            failed.printer,
            callback=lambda f: self._on_retry_done(failed, f),
        )
        return True

    def _on_retry_done(self, failed: FailedPrint, future) -> None:
        self._retrying.discard(failed.id)
        self.scheduler.release(failed.round_id)
        result, error = future_outcome(future)
        if error is None and result is not None and result.ok:
            self._drop_failed(failed.round_id)
            logger.info("Failed print %s delivered on retry", failed.id)
            backend = self._backend
            if backend is not None:
                self.loop.submit(backend.ack_printed, failed.round_id, callback=lambda f: _log_outcome("ack", f))
            self._acknowledge_printed(Trigger(latest=str(failed.round_id), content=failed.content or None))
            return
        reason = extract_reason(error if error is not None else (result.reason if result else None))
        if failed.id in self.failed:
            self.failed[failed.id] = dataclasses.replace(failed, reason=reason)
        self.notify(f"Retry of round {failed.round_id} failed: {reason}")

    def failed_prints(self) -> list[dict[str, Any]]:
        return self.loop.run_sync(lambda: [f.to_dict() for f in self.failed.values()])

    # ----- operator helpers --------------------------------------------------

    def notify(self, message: str) -> None:
        """Record a short operator-facing notice."""
        logger.info("Notice: %s", message)
        entry = {"at": datetime.now(timezone.utc).isoformat(), "message": message}
        self._post(self.notices.appendleft, entry)

    def test_connection(self, base_url: str, outlet_code: Optional[str] = None) -> Future:
        """
        One preloaders fetch against the given backend. The returned future
        resolves to (ok, message); the message is also recorded as a notice.
        """
        outcome: Future = Future()
        backend = self.backend_factory(base_url, outlet_code)

        def done(future) -> None:
            _, error = future_outcome(future)
            backend.close()
            if error is None:
                message = "Connection successful"
            else:
                message = f"Connection failed: {extract_reason(error)}"
            self.notify(message)
            outcome.set_result((error is None, message))

        self.loop.submit(backend.preloaders, callback=done)
        return outcome

    def probe_printer(self) -> dict[str, Any]:
        """Reachability check of the printer dispatch would use."""
        active = self.config.active_printers
        if not active:
            return {"ok": False, "reason": "no_active_printer"}
        probe = getattr(self.transmitter, "probe", None)
        if probe is None:
            return {"ok": None, "reason": "probe_unsupported"}
        ok, reason = probe(active[0])
        return {"ok": ok, "reason": reason, "printer": active[0].name}

    # ----- status ------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return self.loop.run_sync(self._snapshot)

    def _snapshot(self) -> dict[str, Any]:
        cfg = self.config
        active = cfg.active_printers
        return {
            "armed": cfg.armed,
            "config": {
                "base_url": cfg.base_url,
                "outlet_code": cfg.outlet_code,
                "printers": len(cfg.printers),
                "active_printers": len(active),
                "printer": active[0].name if active else None,
            },
            "settings_loaded": self.settings is not None,
            "session": self.scheduler.snapshot(),
            "connection": self.channel.snapshot(),
            "last_printed": self.last_printed.as_query() if self.last_printed else None,
            "failed": [f.to_dict() for f in self.failed.values()],
            "notices": list(self.notices),
            "reconnect_scheduled": self._reconnect_timer is not None,
            "loop": self.loop.status(),
        }


def _log_outcome(what: str, future) -> None:
    _, error = future_outcome(future)
    if error is not None:
        logger.warning("%s failed: %s", what, extract_reason(error))


__all__ = ["DispatchCoordinator", "NOTICE_CAPACITY"]
