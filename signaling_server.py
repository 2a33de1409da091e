"""Standalone WebSocket signaling server for roomlink rooms.

Equivalent to ``roomlink serve`` for running from a source checkout.

Usage:
    python signaling_server.py [--host HOST] [--port PORT]

Examples:
    python signaling_server.py
    python signaling_server.py --port 8080
    python signaling_server.py --host 0.0.0.0 --port 9000
"""

import argparse
import asyncio
import logging

from roomlink.server.signaling_server import SignalingServer

logging.basicConfig(level=logging.INFO)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="roomlink signaling server")
    parser.add_argument("--host", default="localhost", help="Host to bind to (default: localhost)")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on (default: 8080)")

    args = parser.parse_args()

    try:
        asyncio.run(SignalingServer(host=args.host, port=args.port).serve_forever())
    except KeyboardInterrupt:
        logging.info("Server stopped")
