"""
Command-line entry point for the Round Printer agent.

Starts the dispatch engine from the stored config and serves the operator
HTTP API next to it (or just blocks with --no-web).
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

from round_printer.core.config import Tunables, get_config_path
from round_printer.core.logging import configure_logging
from round_printer.dispatch.coordinator import DispatchCoordinator


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Round Printer: prints backend rounds on local thermal printers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--host",
        default=os.environ.get("ROUNDPRINTER_HOST", "127.0.0.1"),
        help="Host for the operator API (default: 127.0.0.1)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("ROUNDPRINTER_PORT", "5055")),
        help="Port for the operator API (default: 5055)",
    )

    parser.add_argument(
        "--no-web",
        action="store_true",
        help="Run the dispatch engine without the operator API",
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.json (default: $ROUNDPRINTER_CONFIG_PATH or XDG config dir)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point for the agent."""
    args = parse_args(argv)

    configure_logging()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    logger = logging.getLogger(__name__)

    config_path = args.config or get_config_path()
    agent = DispatchCoordinator(tunables=Tunables.from_env(), config_path=config_path)
    stopped = threading.Event()

    def _on_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stopped.set()
        if not args.no_web:
            # Let the werkzeug server unwind through KeyboardInterrupt
            raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, _on_signal)

    try:
        logger.info(f"Starting Round Printer with config {config_path}")
        agent.start()
        agent.apply_config()
        if args.no_web:
            signal.signal(signal.SIGINT, _on_signal)
            stopped.wait()
        else:
            from round_printer import create_app

            app = create_app(agent=agent, configure_logs=False)
            logger.info(f"Operator API on http://{args.host}:{args.port}")
            app.run(host=args.host, port=args.port, debug=False, use_reloader=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Round Printer...")
    except Exception as e:
        logger.error(f"Error running Round Printer: {e}")
        if args.debug:
            logger.exception("Full traceback:")
        return 1
    finally:
        agent.shutdown()
        logger.info("Round Printer shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
