"""Entry point for the roomlink signaling server."""

import asyncio
import logging

from roomlink.config import get_config
from roomlink.server.signaling_server import SignalingServer


def run_server(host=None, port=None):
    """Create a SignalingServer and run it until interrupted.

    Args:
        host: Interface to bind to. CLI option overrides config.
        port: Port to listen on. CLI option overrides config.
    """
    config = get_config()

    server = SignalingServer(
        host=host or config.host,
        port=port or config.port,
    )

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logging.info("Server stopped")
