"""
Turnkeeper entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the appropriate
interface (API or CLI).
"""

import argparse
import logging
import os
import sys
import threading
from pathlib import Path

from turnkeeper.api.app import run_api
from turnkeeper.config import settings

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Client libraries log every request at INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _ensure_data_dir() -> Path:
    data_dir = Path(settings.DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)
    return data_dir


def build_parser() -> argparse.ArgumentParser:
    """Command-line options of the ``turnkeeper`` script."""
    parser = argparse.ArgumentParser(description="Run the Turnkeeper booking assistant")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="api",
        help="Launch the REST API, or the API plus an interactive CLI (default: api)",
    )
    parser.add_argument(
        "--role",
        choices=["customer", "admin"],
        type=str.lower,
        default="customer",
        help="Session role used by the CLI (default: customer)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the Turnkeeper application.

    Sets up logging and the data directory, then serves the API, or serves it from a background
    thread while the CLI runs in the foreground.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)
    _ensure_data_dir()

    logger.info("Starting Turnkeeper [%s mode, provider=%s]", args.mode, settings.MODEL_PROVIDER)
    logger.debug(
        "Settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"})
    )

    if args.mode == "api":
        run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)
        return

    # Start API server in a separate thread
    api_thread = threading.Thread(
        target=run_api,
        kwargs={
            "host": "0.0.0.0",
            "port": settings.API_PORT,
            "reload": False,  # Reload doesn't work well with threading
            "log_level": "warning",
        },
        daemon=True,
    )
    api_thread.start()

    # Lazy import to avoid CLI dependencies if not needed
    from turnkeeper.client.cli import run_cli  # pylint: disable=import-outside-toplevel

    run_cli(role=args.role)


if __name__ == "__main__":
    main()
