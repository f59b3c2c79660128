"""
Print dispatch engine.

- loop: the single-threaded EventLoop every component runs on
- backend: requests-based client for the POS backend
- scheduler: fetch/print/retry cycle (FetchScheduler)
- realtime: Pusher websocket channel and its connection state machine
- coordinator: DispatchCoordinator wiring the above together
"""

from .backend import BackendClient, RoundQuery
from .coordinator import DispatchCoordinator
from .loop import EventLoop, TimerHandle, future_outcome
from .realtime import ConnectionState, DiagnosticLog, RealtimeChannel
from .scheduler import FailedPrint, FetchScheduler, FetchSession

__all__ = [
    "BackendClient",
    "ConnectionState",
    "DiagnosticLog",
    "DispatchCoordinator",
    "EventLoop",
    "FailedPrint",
    "FetchScheduler",
    "FetchSession",
    "RealtimeChannel",
    "RoundQuery",
    "TimerHandle",
    "future_outcome",
]
