"""
Config utilities for Round Printer.

Responsibilities:
- Resolve the config path with environment and XDG support
- Provide JSON load/save helpers for the agent's config
- Read runtime tunables (delays, timeouts, receipt layout) from the environment
- Build backend URLs, honoring the local/production API prefix switch
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlsplit

LOCAL_HOSTS = ("localhost", "127.0.0.1")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        value = float(os.environ.get(name, default))
    except Exception:
        return default
    return value if value >= 0 else default


def default_config_path() -> str:
    """
    Resolve the default config path using:
    1) $XDG_CONFIG_HOME/roundprinter/config.json
    2) ~/.config/roundprinter/config.json
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return str(Path(xdg) / "roundprinter" / "config.json")
    return str(Path.home() / ".config" / "roundprinter" / "config.json")


def get_config_path() -> str:
    """
    Return the config path honoring ROUNDPRINTER_CONFIG_PATH override.
    """
    return os.environ.get("ROUNDPRINTER_CONFIG_PATH", default_config_path())


def load_config(path: Optional[str] = None) -> Optional[dict[str, Any]]:
    """
    Load the JSON config if it exists; return None if missing.

    Raises:
        json.JSONDecodeError if the file exists but contains invalid JSON.
        OSError for I/O errors other than missing file.
    """
    cfg_path = Path(path or get_config_path())
    if not cfg_path.exists():
        return None
    with cfg_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def save_config(data: Mapping[str, Any], path: Optional[str] = None) -> None:
    """
    Save the JSON config, creating parent directories as needed.

    Writes atomically by using a temporary file and os.replace().
    Raises OSError on I/O failures.
    """
    cfg_path = Path(path or get_config_path())
    cfg_path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(dict(data), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, cfg_path)


@dataclass(frozen=True)
class Tunables:
    """Runtime knobs for the dispatch engine. All delays are in seconds."""

    poll_delay: float = 2.0
    retry_delay: float = 3.0
    printed_debounce: float = 3.0
    reconnect_delay: float = 10.0
    http_timeout: float = 10.0
    printer_timeout: float = 5.0
    api_prefix: str = "/bkend"
    timezone: str = "Africa/Kigali"
    receipt_qr_url: str = "https://tameapp.cloud"
    line_width: int = 48
    failed_max: int = 50

    @classmethod
    def from_env(cls) -> "Tunables":
        return cls(
            poll_delay=_env_float("ROUNDPRINTER_POLL_DELAY", cls.poll_delay),
            retry_delay=_env_float("ROUNDPRINTER_RETRY_DELAY", cls.retry_delay),
            printed_debounce=_env_float("ROUNDPRINTER_PRINTED_DEBOUNCE", cls.printed_debounce),
            reconnect_delay=_env_float("ROUNDPRINTER_RECONNECT_DELAY", cls.reconnect_delay),
            http_timeout=_env_float("ROUNDPRINTER_HTTP_TIMEOUT", cls.http_timeout),
            printer_timeout=_env_float("ROUNDPRINTER_PRINTER_TIMEOUT", cls.printer_timeout),
            api_prefix=os.environ.get("ROUNDPRINTER_API_PREFIX", cls.api_prefix),
            timezone=os.environ.get("ROUNDPRINTER_TIMEZONE", cls.timezone),
            receipt_qr_url=os.environ.get("ROUNDPRINTER_RECEIPT_QR_URL", cls.receipt_qr_url),
            line_width=max(24, _env_int("ROUNDPRINTER_LINE_WIDTH", cls.line_width)),
            failed_max=max(1, _env_int("ROUNDPRINTER_FAILED_MAX", cls.failed_max)),
        )


def is_local_base_url(base_url: str) -> bool:
    """
    True when the base URL points at a development host
    (localhost, 127.0.0.1 or any *.localhost name).
    """
    try:
        host = urlsplit(base_url).hostname
    except ValueError:
        host = None
    if host is None:
        # Not a parseable absolute URL; fall back to a substring check.
        return any(h in (base_url or "") for h in LOCAL_HOSTS)
    return host in LOCAL_HOSTS or host.endswith(".localhost")


def api_url(base_url: str, path: str, prefix: str = "/bkend") -> str:
    """
    Join a backend base URL and an API path.

    Local hosts use the path as-is. Any other host gets `prefix` inserted in
    front of the path unless the path already carries it.
    """
    base = (base_url or "").rstrip("/")
    clean = path if path.startswith("/") else f"/{path}"
    if is_local_base_url(base_url):
        return f"{base}{clean}"
    prefix = "/" + prefix.strip("/") if prefix and prefix.strip("/") else ""
    if prefix and not (clean == prefix or clean.startswith(prefix + "/")):
        clean = f"{prefix}{clean}"
    return f"{base}{clean}"


def encode_query(url: str, params: Mapping[str, Any]) -> str:
    """
    Append truthy params to url. Keys already present in the query string are
    left alone so a filter is never sent twice.
    """
    parts = []
    for key, value in params.items():
        if not value:
            continue
        if f"?{key}=" in url or f"&{key}=" in url:
            continue
        parts.append(f"{quote(str(key), safe='')}={quote(str(value), safe='')}")
    if not parts:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{'&'.join(parts)}"


__all__ = [
    "Tunables",
    "api_url",
    "default_config_path",
    "encode_query",
    "get_config_path",
    "is_local_base_url",
    "load_config",
    "save_config",
]
