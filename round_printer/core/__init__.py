"""
Core utilities for Round Printer.

This package groups non-Flask helpers used across the agent:
- config: paths, JSON load/save, tunables, backend URL building
- errors: the dispatch error taxonomy and reason extraction
- logging: Request ID aware logging filters/formatters and root logger config
- models: validated domain models (rounds, printers, settings)
- store: printer CRUD over the JSON config

Exports are explicit to keep static analyzers (e.g., Pyright) happy.
"""

from .config import (
    Tunables,
    api_url,
    default_config_path,
    encode_query,
    get_config_path,
    is_local_base_url,
    load_config,
    save_config,
)
from .errors import (
    DataUnavailable,
    DeviceTransmissionError,
    DispatchError,
    MalformedInput,
    TransientNetworkError,
    extract_reason,
)
from .logging import (
    JsonFormatter,
    RequestIdFilter,
    configure_logging,
)
from .models import AgentConfig, PrintableRound, Printer, Settings, Trigger

__all__ = [
    # config
    "Tunables",
    "api_url",
    "default_config_path",
    "encode_query",
    "get_config_path",
    "is_local_base_url",
    "load_config",
    "save_config",
    # errors
    "DataUnavailable",
    "DeviceTransmissionError",
    "DispatchError",
    "MalformedInput",
    "TransientNetworkError",
    "extract_reason",
    # logging
    "configure_logging",
    "RequestIdFilter",
    "JsonFormatter",
    # models
    "AgentConfig",
    "PrintableRound",
    "Printer",
    "Settings",
    "Trigger",
]
