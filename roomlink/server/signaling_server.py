"""WebSocket signaling server for roomlink rooms.

Each WebSocket connection is served by its own handler task. The handler
assigns the session id, feeds every incoming envelope to the room registry
and turns the end of the connection (clean or not) into a leave.

Usage:
    roomlink serve [--host HOST] [--port PORT]
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from roomlink.protocol import (
    MSG_JOIN,
    MSG_LEAVE,
    Envelope,
    SignalingError,
    error_envelope,
    parse_client_envelope,
)
from roomlink.server.registry import RoomRegistry

logger = logging.getLogger(__name__)


class SignalingServer:
    """Accepts WebSocket connections and routes envelopes through a RoomRegistry.

    Attributes:
        registry: RoomRegistry holding rooms and sessions.
        host: Interface to bind to.
        port: Port to listen on.
    """

    def __init__(
        self,
        registry: Optional[RoomRegistry] = None,
        host: str = "localhost",
        port: int = 8080,
    ):
        self.registry = registry or RoomRegistry()
        self.host = host
        self.port = port

    async def handler(self, websocket: Any) -> None:
        """Serve one WebSocket connection until it closes."""
        session_id = uuid.uuid4().hex
        self.registry.connect(session_id, websocket)

        try:
            async for message in websocket:
                await self.handle_message(session_id, message)
        except ConnectionClosed:
            logger.info(f"Connection closed: {session_id}")
        finally:
            # Clean close, error and transport drop all end up here.
            await self.registry.disconnect(session_id)

    async def handle_message(self, session_id: str, message: Any) -> None:
        """Process one raw message from a session.

        Recoverable errors are reported back to the session as an ``error``
        envelope; they never end the connection.
        """
        try:
            envelope = parse_client_envelope(message)
            envelope.sender_id = session_id
            logger.debug(f"Received {envelope.type} from {session_id}")

            if envelope.type == MSG_JOIN:
                payload = envelope.payload or {}
                await self.registry.join(
                    session_id,
                    envelope.room_id,
                    display_name=payload.get("displayName"),
                    role=payload.get("role"),
                )
            elif envelope.type == MSG_LEAVE:
                await self.registry.leave(session_id)
            else:
                await self.registry.relay(envelope)

        except SignalingError as e:
            logger.warning(f"Rejected message from {session_id}: [{e.code}] {e}")
            await self._send_error(session_id, e)

    async def _send_error(self, session_id: str, error: SignalingError) -> None:
        session = self.registry.get_session(session_id)
        if session is None:
            return

        envelope: Envelope = error_envelope(error, room_id=session.room_id)
        try:
            await session.channel.send(envelope.to_json())
        except ConnectionClosed:
            logger.debug(f"Could not report error to {session_id}: connection closed")

    async def serve_forever(self) -> None:
        """Start the signaling server and run until cancelled."""
        async with websockets.serve(self.handler, self.host, self.port):
            logger.info(f"Signaling server running on ws://{self.host}:{self.port}")
            await asyncio.Future()  # Run forever
