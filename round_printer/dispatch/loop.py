"""
Single-threaded event loop for the dispatch engine.

All scheduler, channel and coordinator state is owned by one worker thread
draining a queue of callables. Other threads (HTTP workers, the websocket
thread, timers, Flask request handlers) never touch that state directly;
they post work with call_soon().

- call_soon(fn, *args): run fn on the loop thread
- call_later(delay, fn, *args): timer that posts fn; cancel() guarantees it never runs
- submit(fn, *args, callback=...): run blocking fn on a bounded thread pool,
  then call callback(future) on the loop thread
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_STOP = object()


class TimerHandle:
    """Cancellable reference to a pending call_later() callback."""

    def __init__(self, when: float = 0.0):
        self.when = when
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def _run(self, fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        # A cancel() that raced the timer thread still wins here
        if not self.cancelled:
            fn(*args)


def future_outcome(future: Future) -> Tuple[Any, Optional[BaseException]]:
    """(result, None) for a completed future, (None, error) otherwise."""
    if future.cancelled():
        return None, CancelledError("background job cancelled")
    error = future.exception()
    if error is not None:
        return None, error
    return future.result(), None


class EventLoop:
    def __init__(self, max_workers: int = 4, name: str = "round-printer"):
        self.name = name
        self._queue: queue.Queue[Any] = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-io")
        self._thread: Optional[threading.Thread] = None
        self._started = False

    # ----- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the loop thread (idempotent)."""
        if self._started and self._thread and self._thread.is_alive():
            return
        t = threading.Thread(target=self._run, daemon=True, name=f"{self.name}-loop")
        t.start()
        self._thread = t
        self._started = True
        logger.info("Dispatch loop started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Drain queued callbacks, stop the loop thread, and release the pool."""
        if not self._started:
            return
        self._queue.put(_STOP)
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._started = False
        logger.info("Dispatch loop stopped")

    def is_alive(self) -> bool:
        return bool(self._thread) and self._thread.is_alive()  # type: ignore[union-attr]

    def in_loop_thread(self) -> bool:
        return self._thread is threading.current_thread()

    def status(self) -> dict[str, Any]:
        return {"loop_started": self._started, "loop_alive": self.is_alive(), "loop_backlog": self._queue.qsize()}

    # ----- scheduling --------------------------------------------------------

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        self._queue.put((fn, args))

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(delay)
        timer = threading.Timer(max(0.0, delay), self.call_soon, (handle._run, fn, args))
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        callback: Optional[Callable[[Future], Any]] = None,
    ) -> Future:
        future = self._executor.submit(fn, *args)
        if callback is not None:
            future.add_done_callback(lambda f: self.call_soon(callback, f))
        return future

    def run_sync(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = 5.0) -> Any:
        """
        Run fn on the loop thread and wait for its result. Called from the
        loop thread itself, or before the loop is running, fn runs inline.
        """
        if self.in_loop_thread() or not self.is_alive():
            return fn(*args)
        future: Future = Future()

        def call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self.call_soon(call)
        return future.result(timeout)

    # ----- worker ------------------------------------------------------------

    def _run(self) -> None:
        """
        Loop body. Never raises; a failing callback is logged and the loop
        moves on to the next one.
        """
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                fn, args = item
                fn(*args)
            except Exception as e:
                logger.exception(f"Dispatch callback failed: {e}")
            finally:
                self._queue.task_done()


__all__ = ["EventLoop", "TimerHandle", "future_outcome"]
