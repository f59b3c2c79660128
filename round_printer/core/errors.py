"""
Error types shared by the dispatch engine.

Every failure that crosses a component boundary is reduced to one of these,
each carrying a short human-readable `reason`. Raw backend payloads and
library exceptions never travel further inward than the call site that
caught them.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

UNKNOWN_REASON = "unknown error"


class DispatchError(Exception):
    """Base class; `reason` is always a non-empty string."""

    def __init__(self, reason: Any = None):
        self.reason = extract_reason(reason)
        super().__init__(self.reason)


class TransientNetworkError(DispatchError):
    """A fetch or connect attempt failed; retried on a fixed delay."""


class DataUnavailable(DispatchError):
    """Tenant id or realtime transport key missing; waits for an external re-trigger."""


class DeviceTransmissionError(DispatchError):
    """Rendering worked but the printer rejected or never received the job."""

    def __init__(self, reason: Any = None, payload: Optional[Any] = None):
        super().__init__(reason)
        self.payload = payload


class MalformedInput(DispatchError):
    """Stored printer content or a backend payload could not be parsed."""


def extract_reason(obj: Any, default: str = UNKNOWN_REASON) -> str:
    """
    Best available message from whatever error shape arrives.

    Handles DispatchError, plain exceptions, strings, and mappings carrying a
    `message` field, a nested `data.message`, or a `data` string (Pusher
    error frames use the latter two).
    """
    if obj is None:
        return default
    if isinstance(obj, DispatchError):
        return obj.reason
    if isinstance(obj, str):
        return obj.strip() or default
    if isinstance(obj, Mapping):
        msg = obj.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
        data = obj.get("data")
        if isinstance(data, Mapping):
            return extract_reason(data, default)
        if isinstance(data, str) and data.strip():
            return data.strip()
        error = obj.get("error")
        if error is not None and error is not obj:
            return extract_reason(error, default)
        return default
    if isinstance(obj, BaseException):
        text = str(obj).strip()
        if text:
            return text
        return type(obj).__name__
    text = str(obj).strip()
    return text or default


__all__ = [
    "DataUnavailable",
    "DeviceTransmissionError",
    "DispatchError",
    "MalformedInput",
    "TransientNetworkError",
    "UNKNOWN_REASON",
    "extract_reason",
]
