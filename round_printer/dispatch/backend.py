"""
HTTP client for the POS backend.

Endpoints (paths pass through core.config.api_url, so production hosts get the
API prefix inserted):
- GET /api/next-printable-round[/<outlet>]?latest=&content=
- GET /api/update-printed-round/<round_id>
- GET /api/tenant-context
- GET /api/realtime-config
- GET /api/preloaders[/<outlet>]

Transport failures become TransientNetworkError and unusable bodies become
MalformedInput, right here. Callers never see a requests exception.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

import requests

from round_printer.core.config import api_url, encode_query
from round_printer.core.errors import MalformedInput, TransientNetworkError, extract_reason
from round_printer.core.models import PrintableRound, Scalar, Settings, Trigger

logger = logging.getLogger(__name__)

USER_AGENT = "round-printer/1.0"


@dataclass(frozen=True)
class RoundQuery:
    """
    Outcome of one next-printable-round request.

    ready=True carries a round to print. ready=False with stale_round_id set
    means the backend wants that round marked printed without printing it.
    """

    ready: bool
    round: Optional[PrintableRound] = None
    stale_round_id: Optional[Scalar] = None


class BackendClient:
    def __init__(
        self,
        base_url: str,
        outlet_code: Optional[str] = None,
        *,
        timeout: float = 10.0,
        api_prefix: str = "/bkend",
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.outlet_code = outlet_code or None
        self.timeout = timeout
        self.api_prefix = api_prefix
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def url(self, path: str, *, with_outlet: bool = False) -> str:
        if with_outlet and self.outlet_code:
            path = f"{path.rstrip('/')}/{self.outlet_code}"
        return api_url(self.base_url, path, self.api_prefix)

    def _get_json(self, url: str) -> Any:
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransientNetworkError(f"GET {url} failed: {extract_reason(e)}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedInput(f"GET {url} returned non-JSON body") from e

    # ----- rounds ------------------------------------------------------------

    def round_query_url(self, trigger: Optional[Trigger] = None) -> str:
        url = self.url("/api/next-printable-round", with_outlet=True)
        if trigger is not None:
            url = encode_query(url, trigger.as_query())
        return url

    def next_printable_round(self, trigger: Optional[Trigger] = None) -> RoundQuery:
        data = self._get_json(self.round_query_url(trigger))
        if not isinstance(data, Mapping):
            raise MalformedInput("round query response is not an object")
        if data.get("status"):
            return RoundQuery(ready=True, round=PrintableRound.from_response(data))
        rnd = data.get("round")
        stale_id = rnd.get("id") if isinstance(rnd, Mapping) else None
        return RoundQuery(ready=False, stale_round_id=stale_id)

    def ack_printed(self, round_id: Scalar) -> None:
        """Mark a round as printed. Raises TransientNetworkError on failure."""
        url = self.url(f"/api/update-printed-round/{round_id}")
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransientNetworkError(f"ack for round {round_id} failed: {extract_reason(e)}") from e
        logger.info("Round %s acknowledged as printed", round_id)

    # ----- realtime bootstrap ------------------------------------------------

    def tenant_context(self) -> Optional[str]:
        data = self._get_json(self.url("/api/tenant-context"))
        tenant = data.get("tenant_id") if isinstance(data, Mapping) else None
        return str(tenant) if tenant not in (None, "") else None

    def realtime_config(self) -> dict[str, Any]:
        data = self._get_json(self.url("/api/realtime-config"))
        return dict(data) if isinstance(data, Mapping) else {}

    # ----- settings ----------------------------------------------------------

    def preloaders(self) -> Settings:
        return Settings.from_payload(self._get_json(self.url("/api/preloaders", with_outlet=True)))

    def close(self) -> None:
        self.session.close()


__all__ = ["BackendClient", "RoundQuery"]
