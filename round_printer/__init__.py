"""
Round Printer package

This module provides an application factory for the operator HTTP surface:
- Configures logging (round_printer.core.logging)
- Creates a Flask app with request IDs for log correlation
- Registers the health and JSON API blueprints
- Attaches the dispatch agent (a DispatchCoordinator) to app.extensions
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Optional

from flask import Flask, g

from round_printer.core.logging import configure_logging

__version__ = "1.0.0"


def _set_request_id() -> None:
    """
    Assign a request ID for logging if not set by a filter elsewhere.
    """
    g.request_id = getattr(g, "request_id", uuid.uuid4().hex)


def create_app(
    agent: Optional[Any] = None,
    config_overrides: Optional[dict] = None,
    configure_logs: bool = True,
) -> Flask:
    """
    Application factory.

    Parameters:
    - agent: the DispatchCoordinator to expose; None serves health/store
      endpoints only (the API reports 503 for dispatch operations)
    - config_overrides: values to inject into app.config after defaults
    - configure_logs: set False when the caller already configured logging

    Returns:
    - Flask app instance
    """
    from round_printer.web import api_bp, health_bp
    from round_printer.web.api import AGENT_KEY

    app = Flask("round_printer")
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("ROUNDPRINTER_MAX_CONTENT_LENGTH", 64 * 1024))
    app.config["ROUNDPRINTER_CONFIG_PATH"] = getattr(agent, "config_path", None)

    if configure_logs:
        configure_logging()
    app.logger.info("Round Printer app created")

    # Strict slashes off for more forgiving routing
    app.url_map.strict_slashes = False

    @app.before_request
    def _before_request():
        _set_request_id()

    app.register_blueprint(health_bp)
    app.register_blueprint(api_bp)

    if agent is not None:
        app.extensions[AGENT_KEY] = agent
    else:
        logging.getLogger(__name__).warning("App created without a dispatch agent")

    # Allow runtime overrides
    if config_overrides:
        app.config.update(config_overrides)

    return app


__all__ = ["__version__", "create_app"]
