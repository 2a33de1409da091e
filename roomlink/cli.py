"""Unified CLI for roomlink using Click."""

import json
import logging
import sys

import click
from loguru import logger

from roomlink.protocol import InvalidRoomCode, generate_room_code, normalize_room_code


@click.group()
def cli():
    pass


# =============================================================================
# Server Commands
# =============================================================================


@cli.command()
@click.option("--host", default=None, help="Interface to bind to (default: from config).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: from config).")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging level.",
)
def serve(host, port, log_level):
    """Run the signaling server.

    Example:
        roomlink serve --host 0.0.0.0 --port 8080
    """
    from roomlink.rtc_server import run_server

    logging.basicConfig(level=log_level.upper())
    run_server(host=host, port=port)


# =============================================================================
# Client Commands
# =============================================================================


@cli.command()
@click.argument("room_code")
@click.option("--name", "-n", default=None, help="Display name shown to the room.")
@click.option("--server", "-s", default=None, help="Signaling server WebSocket URL.")
@click.option(
    "--role",
    type=click.Choice(["host", "guest"]),
    default=None,
    help="Role to record (default: host if you create the room).",
)
@click.option("--video", default=None, help="Video source (file or capture device).")
@click.option("--audio", default=None, help="Audio source (file or capture device).")
@click.option("--verbose", "-v", is_flag=True, help="Show negotiation logs.")
def join(room_code, name, server, role, video, audio, verbose):
    """Join ROOM_CODE and chat from the terminal.

    Type a line to send it as chat. /help lists the commands.

    Example:
        roomlink join ab12 --name Ada
    """
    from roomlink.client.room_client import RoomClientError
    from roomlink.rtc_room import run_room_client

    try:
        code = normalize_room_code(room_code)
    except InvalidRoomCode as e:
        logger.error(str(e))
        sys.exit(1)

    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)

    try:
        run_room_client(
            code, server=server, name=name, role=role, video=video, audio=audio
        )
    except RoomClientError as e:
        logger.error(f"Join failed: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Could not reach signaling server: {e}")
        sys.exit(1)


@cli.command("new-code")
@click.option("--length", type=click.IntRange(4, 8), default=6, help="Code length (4-8).")
def new_code(length):
    """Print a fresh random room code."""
    click.echo(generate_room_code(length))


# =============================================================================
# Utility Commands
# =============================================================================


@cli.command("config")
def show_config():
    """Show the effective configuration."""
    from roomlink.config import get_config

    config = get_config()
    click.echo(json.dumps(config.to_dict(), indent=2))


if __name__ == "__main__":
    cli()
