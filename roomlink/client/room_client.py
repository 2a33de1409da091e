"""Room client: one local participant's connection to a roomlink room.

RoomClient owns the WebSocket to the signaling server and is the only
reader of it. Incoming envelopes are routed to:
- the participant roster and chat feed (joined, presence-*, chat)
- the MeshCoordinator (presence-*, offer, answer, candidate)
- the pending join, or the error callback (error)

The roster and chat feed live in memory for the lifetime of the client.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed
from aiortc.contrib.media import MediaRelay

from roomlink.client.media import AiortcMediaTransport, MediaTransport
from roomlink.client.mesh_coordinator import MeshCoordinator
from roomlink.client.peer_link import LinkState
from roomlink.protocol import (
    MSG_CHAT,
    MSG_ERROR,
    MSG_JOIN,
    MSG_JOINED,
    MSG_PRESENCE_JOINED,
    MSG_PRESENCE_LEFT,
    Envelope,
    MalformedEnvelope,
    normalize_room_code,
)

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]


class RoomClientError(Exception):
    """A request was rejected by the signaling server or is not possible now."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


@dataclass
class ChatMessage:
    sender_id: str
    display_name: str
    text: str
    local: bool = False
    received_at: float = field(default_factory=time.time)


class RoomClient:
    """Joins a room through a signaling server and maintains the peer mesh.

    Attributes:
        url: Signaling server WebSocket URL.
        display_name: Name announced to the room.
        session_id: Server-assigned session id (after joining).
        room_id: Current room code, or None.
        role: "host" or "guest" as recorded by the server.
        participants: Other members, session id -> display name.
        chat_log: Chat messages seen since joining.
        screen_sharing: True while a screen track replaces the camera.
        coordinator: MeshCoordinator for the current room.
    """

    def __init__(
        self,
        url: str,
        display_name: Optional[str] = None,
        transport_factory: Optional[Callable[[str], MediaTransport]] = None,
        local_tracks: Optional[Dict[str, Any]] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
    ):
        """Initialize RoomClient.

        Args:
            url: Signaling server WebSocket URL (ws://host:port).
            display_name: Optional display name; the server generates one if omitted.
            transport_factory: Builds a MediaTransport per remote session.
                Defaults to an aiortc transport sending ``local_tracks``.
            local_tracks: Local media tracks keyed by kind ("audio"/"video").
            ice_servers: ICE server dicts for the default transport.
        """
        self.url = url
        self.display_name = display_name
        self.local_tracks: Dict[str, Any] = dict(local_tracks or {})
        self.camera_track: Optional[Any] = self.local_tracks.get("video")
        self.ice_servers = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        self.relay = MediaRelay()

        self.websocket = None
        self.session_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.role: Optional[str] = None
        self.joined_at: Optional[float] = None
        self.participants: Dict[str, str] = {}
        self.chat_log: List[ChatMessage] = []
        self.screen_sharing = False
        self._screen_track: Optional[Any] = None
        self._enabled: Dict[str, bool] = {"audio": True, "video": True}

        # Optional application hooks
        self.on_chat: Optional[Callable[[ChatMessage], None]] = None
        self.on_presence: Optional[Callable[[str, str, str], None]] = None
        self.on_error: Optional[Callable[[str, str], None]] = None
        self.on_link_state: Optional[Callable[[str, LinkState], None]] = None

        self.coordinator = MeshCoordinator(
            send=self.send,
            transport_factory=transport_factory or self._create_transport,
            on_link_state=self._on_link_state,
        )

        self._join_future: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None

    def _create_transport(self, remote_id: str) -> MediaTransport:
        return AiortcMediaTransport(
            tracks=[
                track
                for kind, track in self.local_tracks.items()
                if self._enabled.get(kind, True)
            ],
            ice_servers=self.ice_servers,
            relay=self.relay,
        )

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the WebSocket and start the read loop."""
        self.websocket = await websockets.connect(self.url)
        logger.info(f"Connected to signaling server {self.url}")
        self._reader_task = asyncio.create_task(self.handle_connection())

    async def send(self, envelope: Envelope) -> None:
        if self.websocket is None:
            raise RoomClientError("Not connected to a signaling server")
        await self.websocket.send(envelope.to_json())

    async def handle_connection(self) -> None:
        """Read every message from the signaling server and route it.

        This is the only method that reads from the WebSocket.
        """
        try:
            async for message in self.websocket:
                try:
                    envelope = Envelope.from_json(message)
                except MalformedEnvelope as e:
                    logger.warning(f"Dropping malformed message from server: {e}")
                    continue
                try:
                    await self.handle_envelope(envelope)
                except Exception as e:
                    logger.error(f"Error handling {envelope.type} from server: {e}")
        except ConnectionClosed:
            logger.info("Signaling connection closed")
        finally:
            self._fail_pending_join(RoomClientError("Signaling connection closed"))
            await self.coordinator.close_all()

    async def handle_envelope(self, envelope: Envelope) -> None:
        msg_type = envelope.type

        if msg_type == MSG_JOINED:
            payload = envelope.payload
            self.session_id = payload["sessionId"]
            self.room_id = envelope.room_id
            self.role = payload.get("role")
            self.display_name = payload.get("displayName", self.display_name)
            self.joined_at = time.time()
            self.participants = {
                member["sessionId"]: member.get("displayName", member["sessionId"])
                for member in payload.get("members", [])
            }
            await self.coordinator.handle_envelope(envelope)
            if self._join_future is not None and not self._join_future.done():
                self._join_future.set_result(payload)

        elif msg_type in (MSG_PRESENCE_JOINED, MSG_PRESENCE_LEFT):
            remote_id = envelope.payload["sessionId"]
            name = envelope.payload.get("displayName", remote_id)
            if msg_type == MSG_PRESENCE_JOINED:
                self.participants[remote_id] = name
                logger.info(f"{name} joined the room")
            else:
                self.participants.pop(remote_id, None)
                logger.info(f"{name} left the room")
            if self.on_presence is not None:
                self.on_presence(msg_type, remote_id, name)
            await self.coordinator.handle_envelope(envelope)

        elif msg_type == MSG_CHAT:
            message = ChatMessage(
                sender_id=envelope.sender_id,
                display_name=self.participants.get(envelope.sender_id, envelope.sender_id),
                text=envelope.payload,
            )
            self.chat_log.append(message)
            if self.on_chat is not None:
                self.on_chat(message)

        elif msg_type == MSG_ERROR:
            code = envelope.payload.get("code")
            text = envelope.payload.get("message", "")
            if self._join_future is not None and not self._join_future.done():
                self._join_future.set_exception(RoomClientError(text, code=code))
                return
            logger.warning(f"Server reported error [{code}]: {text}")
            if self.on_error is not None:
                self.on_error(code, text)

        else:
            await self.coordinator.handle_envelope(envelope)

    # -------------------------------------------------------------------------
    # Room actions
    # -------------------------------------------------------------------------

    async def join(self, room_code: str, role: Optional[str] = None) -> Dict[str, Any]:
        """Join a room and wait for the server's acknowledgement.

        Args:
            room_code: Room code (case-insensitive).
            role: Optional "host"/"guest".

        Returns:
            The ``joined`` payload (session id, role, existing members).

        Raises:
            InvalidRoomCode: The code is malformed (checked locally first).
            RoomClientError: The server rejected the join.
        """
        code = normalize_room_code(room_code)
        if self.room_id is not None:
            await self.leave()

        payload: Dict[str, Any] = {}
        if self.display_name:
            payload["displayName"] = self.display_name
        if role:
            payload["role"] = role

        self._join_future = asyncio.get_running_loop().create_future()
        try:
            await self.send(Envelope(type=MSG_JOIN, room_id=code, payload=payload))
            return await self._join_future
        finally:
            self._join_future = None

    async def send_chat(self, text: str) -> None:
        """Send a chat message to everyone else in the room."""
        if self.room_id is None:
            raise RoomClientError("Not in a room")
        await self.send(Envelope(type=MSG_CHAT, room_id=self.room_id, payload=text))
        self.chat_log.append(
            ChatMessage(
                sender_id=self.session_id,
                display_name=self.display_name or "You",
                text=text,
                local=True,
            )
        )

    @property
    def audio_enabled(self) -> bool:
        return self._enabled["audio"]

    @property
    def video_enabled(self) -> bool:
        return self._enabled["video"]

    def set_audio_enabled(self, enabled: bool) -> None:
        """Mute or unmute the local audio on every link."""
        self._set_enabled("audio", enabled)

    def set_video_enabled(self, enabled: bool) -> None:
        """Stop or resume sending local video on every link.

        Resuming sends whatever video is current: the camera, or the shared
        screen while screen sharing.
        """
        self._set_enabled("video", enabled)

    def switch_video(self, track: Any) -> None:
        """Send ``track`` as video on every link, renegotiating as needed.

        While video is disabled the track is only remembered.
        """
        self.local_tracks["video"] = track
        if self.video_enabled:
            self.coordinator.renegotiate_all("video", track)

    def start_screen_share(self, screen_track: Any) -> None:
        """Send ``screen_track`` instead of the camera.

        Sharing stops by itself when the track ends (e.g. the capture
        source went away).
        """
        self.screen_sharing = True
        self._screen_track = screen_track
        if hasattr(screen_track, "on"):
            screen_track.on("ended", lambda: self._on_screen_track_ended(screen_track))
        self.switch_video(screen_track)

    def stop_screen_share(self) -> None:
        """Go back to the camera track that was sent before screen sharing."""
        if not self.screen_sharing:
            return
        self.screen_sharing = False
        self._screen_track = None
        self.switch_video(self.camera_track)

    async def leave(self) -> None:
        """Leave the current room: close every link, then notify the server."""
        await self.coordinator.leave()
        self.room_id = None
        self.role = None
        self.joined_at = None
        self.participants.clear()

    async def close(self) -> None:
        """Leave the room (if any) and close the signaling connection."""
        if self.room_id is not None and self.websocket is not None:
            try:
                await self.leave()
            except ConnectionClosed:
                logger.debug("Connection already closed while leaving")

        if self.websocket is not None:
            await self.websocket.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        self.websocket = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _on_link_state(self, remote_id: str, state: LinkState) -> None:
        if self.on_link_state is not None:
            self.on_link_state(remote_id, state)

    def _set_enabled(self, kind: str, enabled: bool) -> None:
        if self._enabled[kind] == enabled:
            return
        self._enabled[kind] = enabled
        track = self.local_tracks.get(kind) if enabled else None
        logger.info(f"Local {kind} {'enabled' if enabled else 'disabled'}")
        self.coordinator.renegotiate_all(kind, track)

    def _on_screen_track_ended(self, track: Any) -> None:
        if self.screen_sharing and self._screen_track is track:
            logger.info("Shared screen track ended; going back to the camera")
            self.stop_screen_share()

    def _fail_pending_join(self, error: Exception) -> None:
        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_exception(error)
