"""
Fetch scheduler: polls the backend for the next printable round, prints it on
the first active printer, and decides when to ask again.

All methods run on the EventLoop thread. Blocking work (HTTP, printer socket)
goes through loop.submit() and comes back as a callback on the loop.

Outcomes of one fetch:
- round ready: render, transmit; on success ack + printed event + re-queue,
  on failure record a FailedPrint and idle
- stale round (status false, round present): ack it, then re-queue
- round held by a manual retry: skip it, ask again after poll_delay
- nothing to print: try again after poll_delay
- network error or malformed payload: try again after retry_delay
A trigger that arrived while busy always runs next, ahead of any delay.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple

from round_printer.core.errors import DispatchError, extract_reason
from round_printer.core.models import PrintableRound, Printer, Scalar, Settings, Trigger
from round_printer.printing.render import Instruction, ReceiptLayout, render_round

from .loop import TimerHandle, future_outcome

logger = logging.getLogger(__name__)


@dataclass
class FetchSession:
    active: bool = False
    in_flight: bool = False
    has_pending: bool = False
    pending_trigger: Optional[Trigger] = None
    retry_timer: Optional[TimerHandle] = None
    printing: Optional[str] = None
    attempts: int = 0
    printed: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class FailedPrint:
    """A rendered receipt that could not be transmitted, kept verbatim for retry."""

    round_id: Scalar
    printer: Printer
    instructions: Tuple[Instruction, ...]
    reason: str
    content: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "round_id": self.round_id,
            "printer": self.printer.name or self.printer.id,
            "reason": self.reason,
            "content": self.content,
            "created_at": self.created_at,
            "instructions": len(self.instructions),
        }


class FetchScheduler:
    def __init__(
        self,
        loop,
        transmit: Callable[..., Any],
        *,
        layout: Optional[ReceiptLayout] = None,
        poll_delay: float = 2.0,
        retry_delay: float = 3.0,
        on_printed: Optional[Callable[[Trigger], Any]] = None,
        on_print_failed: Optional[Callable[[FailedPrint], Any]] = None,
    ):
        self.loop = loop
        self.transmit = transmit
        self.layout = layout or ReceiptLayout()
        self.poll_delay = poll_delay
        self.retry_delay = retry_delay
        self.on_printed = on_printed
        self.on_print_failed = on_print_failed
        self.session = FetchSession()
        self.backend = None
        self.printer: Optional[Printer] = None
        self.settings: Optional[Settings] = None
        # Round ids a manual retry is re-sending; fetches skip them
        self.held: set[str] = set()
        # Bumped by stop(); callbacks from an older epoch schedule nothing
        self._epoch = 0

    def bind(self, backend, printer: Optional[Printer]) -> None:
        """Point the scheduler at a backend client and the printer to use."""
        self.backend = backend
        self.printer = printer

    def hold(self, round_id: Scalar) -> None:
        self.held.add(str(round_id))

    def release(self, round_id: Scalar) -> None:
        self.held.discard(str(round_id))

    def is_printing(self, round_id: Scalar) -> bool:
        return self.session.printing == str(round_id)

    # ----- public operations -------------------------------------------------

    def queue(self, trigger: Any = None) -> None:
        s = self.session
        if not s.active:
            return
        if self.backend is None or self.printer is None:
            logger.debug("queue() ignored: no backend or no active printer")
            return
        trigger = Trigger.from_meta(trigger)
        if s.in_flight:
            s.has_pending = True
            s.pending_trigger = trigger
            return
        self._cancel_timer()
        self._fetch(trigger)

    def resume(self, trigger: Any = None) -> None:
        self.session.active = True
        self.queue(trigger)

    def stop(self) -> None:
        s = self.session
        if s.active:
            logger.info("Fetch scheduler stopped")
        s.active = False
        s.has_pending = False
        s.pending_trigger = None
        self._cancel_timer()
        self._epoch += 1

    def snapshot(self) -> dict[str, Any]:
        s = self.session
        return {
            "active": s.active,
            "in_flight": s.in_flight,
            "pending": s.has_pending,
            "pending_trigger": s.pending_trigger.as_query() if s.pending_trigger else None,
            "retry_scheduled": s.retry_timer is not None,
            "printing": s.printing,
            "held": sorted(self.held),
            "attempts": s.attempts,
            "printed": s.printed,
            "last_error": s.last_error,
            "printer": self.printer.name if self.printer else None,
        }

    # ----- fetch cycle -------------------------------------------------------

    def _cancel_timer(self) -> None:
        s = self.session
        if s.retry_timer is not None:
            s.retry_timer.cancel()
            s.retry_timer = None

    def _fetch(self, trigger: Optional[Trigger]) -> None:
        s = self.session
        s.in_flight = True
        s.attempts += 1
        epoch = self._epoch
        backend = self.backend
        logger.debug("Fetching next printable round (trigger=%s)", trigger.as_query() if trigger else None)
        self.loop.submit(
            backend.next_printable_round,
            trigger,
            callback=lambda f: self._on_fetched(epoch, backend, trigger, f),
        )

    def _on_fetched(self, epoch: int, backend, trigger: Optional[Trigger], future) -> None:
        result, error = future_outcome(future)
        if epoch != self._epoch:
            self._finish(None, None)
            return
        if error is not None:
            self.session.last_error = extract_reason(error)
            level = logging.WARNING if isinstance(error, DispatchError) else logging.ERROR
            logger.log(level, "Round fetch failed, retrying in %ss: %s", self.retry_delay, self.session.last_error)
            self._finish(trigger, self.retry_delay)
            return
        self.session.last_error = None
        if result.ready and str(result.round.id) in self.held:
            logger.info("Round %s is being retried by hand; skipping", result.round.id)
            self._finish(trigger, self.poll_delay)
            return
        if result.ready:
            self._dispatch(backend, result.round)
            return
        if result.stale_round_id is not None:
            logger.info("Backend reports round %s as not printable; acknowledging", result.stale_round_id)
            self.loop.submit(
                backend.ack_printed,
                result.stale_round_id,
                callback=lambda f: self._on_stale_acked(epoch, result.stale_round_id, f),
            )
            return
        self._finish(trigger, self.poll_delay)

    def _on_stale_acked(self, epoch: int, round_id: Scalar, future) -> None:
        _, error = future_outcome(future)
        if error is not None:
            logger.warning("Ack for round %s failed: %s", round_id, extract_reason(error))
        if epoch != self._epoch:
            self._finish(None, None)
            return
        self._finish(None, 0)

    def _dispatch(self, backend, rnd: PrintableRound) -> None:
        printer = self.printer
        if printer is None:
            self._finish(None, self.poll_delay)
            return
        try:
            instructions = render_round(rnd, printer, self.settings or Settings(), self.layout)
        except Exception as e:
            self.session.last_error = extract_reason(e)
            logger.exception("Rendering round %s failed", rnd.id)
            self._finish(None, self.retry_delay)
            return
        epoch = self._epoch
        logger.info("Printing round %s on %r", rnd.id, printer.name)
        self.session.printing = str(rnd.id)
        self.loop.submit(
            self.transmit,
            instructions,
            printer,
            callback=lambda f: self._on_transmitted(epoch, backend, rnd, printer, instructions, f),
        )

    def _on_transmitted(self, epoch: int, backend, rnd: PrintableRound, printer: Printer, instructions, future) -> None:
        result, error = future_outcome(future)
        ok = error is None and bool(result and result.ok)
        self.session.printing = None
        content = _content_code(printer)
        if ok:
            self.session.printed += 1
            # Ack even when stopped meanwhile: the receipt is already on paper
            self.loop.submit(backend.ack_printed, rnd.id, callback=lambda f: _log_ack(rnd.id, f))
            if self.on_printed is not None:
                self.on_printed(Trigger(latest=str(rnd.id), content=content or None))
            self._finish(None, 0 if epoch == self._epoch else None)
            return
        reason = extract_reason(error if error is not None else (result.reason if result else None))
        self.session.last_error = reason
        logger.error("Round %s could not be printed on %r: %s", rnd.id, printer.name, reason)
        failed = FailedPrint(round_id=rnd.id, printer=printer, instructions=tuple(instructions), reason=reason, content=content)
        if self.on_print_failed is not None:
            self.on_print_failed(failed)
        self._finish(None, None)

    def _finish(self, trigger: Optional[Trigger], delay: Optional[float]) -> None:
        """
        Close the current cycle. A coalesced trigger runs now; otherwise
        delay None idles, 0 re-queues immediately, >0 arms the retry timer.
        """
        s = self.session
        s.in_flight = False
        if not s.active:
            return
        if s.has_pending:
            pending = s.pending_trigger
            s.has_pending = False
            s.pending_trigger = None
            self.queue(pending)
            return
        if delay is None:
            return
        if delay <= 0:
            self.queue(None)
            return
        self._cancel_timer()
        s.retry_timer = self.loop.call_later(delay, self._on_timer, trigger)

    def _on_timer(self, trigger: Optional[Trigger]) -> None:
        self.session.retry_timer = None
        self.queue(trigger)


def _content_code(printer: Printer) -> str:
    try:
        return printer.content_code
    except DispatchError:
        return ""


def _log_ack(round_id: Scalar, future) -> None:
    _, error = future_outcome(future)
    if error is not None:
        logger.warning("Ack for round %s failed (not retried): %s", round_id, extract_reason(error))


__all__ = ["FailedPrint", "FetchScheduler", "FetchSession"]
