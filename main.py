"""
Booking engine entry point.

Serves the HTTP API with uvicorn, or runs the offline console demo.

Usage:
    HTTP API:     python main.py serve
    Console mode: python main.py console [--scenario promotion]
"""

import logging
import sys

from evbooking.config import settings

logger = logging.getLogger(__name__)


def _run_server() -> None:
    """Start the FastAPI app on the configured host and port."""
    import uvicorn

    from evbooking.api import create_app

    app = create_app()
    logger.info("Starting %s on %s:%d", settings.app_name, settings.server.host, settings.server.port)
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
    )


def _run_console_mode(argv: list[str]) -> None:
    """Walk the allocation scenarios in the terminal (no server needed)."""
    from console_demo import main as console_main

    console_main(argv)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode(sys.argv[2:])
    else:
        _run_server()
