from __future__ import annotations

"""
Pydantic schemas for the Round Printer operator API (v1).

These models validate request bodies before anything touches the config
store or the dispatch coordinator.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from round_printer.core.errors import MalformedInput
from round_printer.core.models import parse_content_code


def _has_control_chars(s: str) -> bool:
    return any((ord(c) < 32 and c not in "\n\r\t") or ord(c) == 127 for c in s)


def _clean_url(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v:
        return v
    if not v.lower().startswith(("http://", "https://")):
        raise ValueError("base_url must start with http:// or https://")
    if _has_control_chars(v):
        raise ValueError("base_url contains control characters")
    return v


class PrinterSaveRequest(BaseModel):
    """Create (no id) or update (id set) a printer record."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[Union[int, str]] = None
    name: str = Field(default="", max_length=100)
    type: str = Field(default="EPSON", max_length=20)
    interface: str = Field(default="TCP", max_length=20)
    ip: Optional[str] = Field(default=None, max_length=255)
    port: Optional[str] = Field(default=None, max_length=255)
    content: Union[str, List[str]] = Field(
        default="KBI",
        description="Content filter: letters from K (kitchen), B (bar), I (invoice)",
        examples=["KBI", ["K", "I"], '["B"]'],
    )
    chars_per_line: Optional[int] = Field(default=None, ge=24, le=96)
    base_url: Optional[str] = Field(default=None, max_length=255)
    outlet_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = v.strip()
        if _has_control_chars(v):
            raise ValueError("name contains control characters")
        return v

    @field_validator("content")
    @classmethod
    def _validate_content(cls, v: Any) -> str:
        try:
            return parse_content_code(v)
        except MalformedInput as e:
            raise ValueError(e.reason) from e

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        return _clean_url(v)

    def record(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"base_url", "outlet_code"})


class PrintedAck(BaseModel):
    """Printed acknowledgement: last printed round id and content code."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    latest: Optional[str] = Field(default=None, max_length=64)
    content: Optional[str] = Field(default=None, max_length=8)


class ConnectionTestRequest(BaseModel):
    base_url: str = Field(min_length=1, max_length=255)
    outlet_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        v = _clean_url(v) or ""
        if not v:
            raise ValueError("base_url is required")
        return v


__all__ = ["PrintedAck", "PrinterSaveRequest", "ConnectionTestRequest"]
