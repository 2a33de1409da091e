"""Room registry: room membership bookkeeping and relay for the signaling server.

The registry owns every room and every connected session. It is the only
mutable shared state on the server. Each room carries its own lock;
membership changes and the envelopes they produce are delivered while that
lock is held, so joins and leaves in one room are linearized and presence
broadcasts always match the membership they describe. Rooms never contend
with each other.

Lifecycle:
1. Transport connects -> ``connect()`` registers a Session (no room)
2. ``join()`` binds the session to a room, creating the room if needed
3. ``relay()`` routes offers/answers/candidates/chat inside the room
4. ``leave()`` unbinds the session; the last one out deletes the room
5. Transport disconnects -> ``disconnect()`` (a leave, then forget)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from roomlink.protocol import (
    MSG_CHAT,
    MSG_JOINED,
    MSG_PRESENCE_JOINED,
    MSG_PRESENCE_LEFT,
    ROLE_GUEST,
    ROLE_HOST,
    ROLES,
    Envelope,
    MalformedEnvelope,
    NotInRoom,
    UnknownTarget,
    normalize_room_code,
    presence_payload,
)
from roomlink.server.dispatcher import RelayDispatcher

logger = logging.getLogger(__name__)


def default_display_name(session_id: str) -> str:
    return f"Guest-{session_id[:4].upper()}"


@dataclass
class Session:
    """One participant's connection identity.

    Attributes:
        session_id: Identifier assigned by the server on connect.
        channel: Outbound channel; anything with an async ``send(str)``.
        display_name: Human-readable name shown to other members.
        role: "host" or "guest", recorded at join time.
        room_id: Current room code, or None when not in a room.
        connected_at: Connection timestamp (epoch seconds).
    """

    session_id: str
    channel: Any
    display_name: str
    role: Optional[str] = None
    room_id: Optional[str] = None
    connected_at: float = field(default_factory=time.time)


@dataclass
class Room:
    room_id: str
    members: Set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    closed: bool = False


@dataclass
class RoomMembership:
    """Result of a successful join."""

    room_id: str
    session_id: str
    display_name: str
    role: str
    members: List[Dict[str, str]]
    created_room: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "displayName": self.display_name,
            "role": self.role,
            "members": self.members,
        }


class RoomRegistry:
    """Owns the set of active rooms and the sessions in them.

    Attributes:
        dispatcher: RelayDispatcher used to deliver envelopes.
    """

    def __init__(self, dispatcher: Optional[RelayDispatcher] = None):
        self.dispatcher = dispatcher or RelayDispatcher()
        self._rooms: Dict[str, Room] = {}
        self._sessions: Dict[str, Session] = {}

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def rooms(self) -> List[str]:
        return sorted(self._rooms)

    def members(self, room_id: str) -> Set[str]:
        room = self._rooms.get(room_id.upper())
        return set(room.members) if room else set()

    def room_of(self, session_id: str) -> Optional[str]:
        session = self._sessions.get(session_id)
        return session.room_id if session else None

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id.upper())

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def connect(
        self, session_id: str, channel: Any, display_name: Optional[str] = None
    ) -> Session:
        """Register a new transport connection.

        Args:
            session_id: Server-assigned connection identifier.
            channel: Outbound channel for the connection.
            display_name: Optional initial display name.

        Returns:
            The new Session (not in any room yet).
        """
        if session_id in self._sessions:
            raise ValueError(f"Session already connected: {session_id}")

        session = Session(
            session_id=session_id,
            channel=channel,
            display_name=display_name or default_display_name(session_id),
        )
        self._sessions[session_id] = session
        logger.info(f"Session connected: {session_id} (total: {len(self._sessions)})")
        return session

    async def disconnect(self, session_id: str) -> None:
        """Handle a transport disconnect exactly like an explicit leave."""
        await self.leave(session_id)
        if self._sessions.pop(session_id, None) is not None:
            logger.info(
                f"Session disconnected: {session_id} (remaining: {len(self._sessions)})"
            )

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    async def join(
        self,
        session_id: str,
        room_id: str,
        display_name: Optional[str] = None,
        role: Optional[str] = None,
    ) -> RoomMembership:
        """Add a session to a room, creating the room if absent.

        The joining session receives a ``joined`` envelope listing the
        existing members; every other member receives ``presence-joined``.

        Args:
            session_id: Joining session.
            room_id: Room code as typed (case-insensitive).
            display_name: Optional new display name for the session.
            role: Optional "host"/"guest". Defaults to host for the session
                that creates the room, guest otherwise.

        Returns:
            RoomMembership describing the room as seen by the newcomer.

        Raises:
            InvalidRoomCode: If the room code is malformed.
            MalformedEnvelope: If the role is not recognized.
            NotInRoom: If the session disconnected before the join completed.
        """
        code = normalize_room_code(room_id)
        if role is not None and (not isinstance(role, str) or role not in ROLES):
            raise MalformedEnvelope(f"Unknown role: {role!r}")

        session = self._require_session(session_id)

        # A session is in at most one room at a time.
        if session.room_id is not None:
            logger.info(f"Session {session_id} switching from room {session.room_id} to {code}")
            await self.leave(session_id)

        if display_name:
            session.display_name = display_name

        while True:
            room = self._rooms.get(code)
            if room is None:
                room = Room(room_id=code)
                self._rooms[code] = room
                logger.info(f"Created room {code}")

            async with room.lock:
                if room.closed:
                    # Deleted while we waited on its lock; start over.
                    continue

                if self._sessions.get(session_id) is not session:
                    # Disconnected while we waited on the lock.
                    if not room.members:
                        room.closed = True
                        del self._rooms[code]
                        logger.info(f"Deleted empty room {code}")
                    logger.info(f"Session {session_id} disconnected before joining {code}")
                    raise NotInRoom(f"Session {session_id} disconnected before joining")

                created_room = not room.members
                session.role = role or (ROLE_HOST if created_room else ROLE_GUEST)

                others = [self._sessions[sid] for sid in room.members]
                room.members.add(session_id)
                session.room_id = code

                membership = RoomMembership(
                    room_id=code,
                    session_id=session_id,
                    display_name=session.display_name,
                    role=session.role,
                    members=[
                        presence_payload(other.session_id, other.display_name)
                        for other in others
                    ],
                    created_room=created_room,
                )
                logger.info(
                    f"Session {session_id} ({session.display_name}, {session.role}) "
                    f"joined room {code} (members: {len(room.members)})"
                )

                failed = await self.dispatcher.deliver(
                    Envelope(
                        type=MSG_JOINED,
                        room_id=code,
                        payload=membership.to_payload(),
                    ),
                    [session],
                )
                failed += await self.dispatcher.deliver(
                    Envelope(
                        type=MSG_PRESENCE_JOINED,
                        room_id=code,
                        sender_id=session_id,
                        payload=presence_payload(session_id, session.display_name),
                    ),
                    others,
                )
            break

        await self._reconcile(failed)
        return membership

    async def leave(self, session_id: str) -> None:
        """Remove a session from its room. No-op if it is not in one.

        Remaining members receive ``presence-left``. The room is deleted when
        its last member leaves.
        """
        while True:
            session = self._sessions.get(session_id)
            if session is None or session.room_id is None:
                return

            room = self._rooms.get(session.room_id)
            if room is None:
                session.room_id = None
                return

            async with room.lock:
                if session.room_id != room.room_id:
                    # Membership changed while we waited; re-evaluate.
                    continue

                room.members.discard(session_id)
                session.room_id = None
                logger.info(
                    f"Session {session_id} left room {room.room_id} "
                    f"(remaining: {len(room.members)})"
                )

                if not room.members:
                    room.closed = True
                    del self._rooms[room.room_id]
                    logger.info(f"Deleted empty room {room.room_id}")
                    return

                remaining = [self._sessions[sid] for sid in room.members]
                failed = await self.dispatcher.deliver(
                    Envelope(
                        type=MSG_PRESENCE_LEFT,
                        room_id=room.room_id,
                        sender_id=session_id,
                        payload=presence_payload(session_id, session.display_name),
                    ),
                    remaining,
                )
            break

        await self._reconcile(failed)

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    async def relay(self, envelope: Envelope) -> None:
        """Route an envelope within the sender's room.

        Directed envelopes go to ``target_id`` only; chat goes to every other
        member. The envelope's ``room_id`` is stamped from the sender's room.

        Raises:
            NotInRoom: The sender is not in a room.
            UnknownTarget: The target is not another member of the sender's room.
            MalformedEnvelope: The envelope type is not relayable.
        """
        if not envelope.is_directed and envelope.type != MSG_CHAT:
            raise MalformedEnvelope(f"'{envelope.type}' cannot be relayed")

        session = self._sessions.get(envelope.sender_id)
        if session is None or session.room_id is None:
            raise NotInRoom(f"Session {envelope.sender_id} is not in a room")

        room = self._rooms.get(session.room_id)
        if room is None:
            raise NotInRoom(f"Session {envelope.sender_id} is not in a room")

        async with room.lock:
            if session.room_id != room.room_id:
                raise NotInRoom(f"Session {envelope.sender_id} is not in a room")

            envelope.room_id = room.room_id

            if envelope.is_directed:
                target_id = envelope.target_id
                if target_id == session.session_id or target_id not in room.members:
                    raise UnknownTarget(
                        f"Target {target_id} is not a member of room {room.room_id}"
                    )
                recipients = [self._sessions[target_id]]
            else:
                recipients = [
                    self._sessions[sid]
                    for sid in room.members
                    if sid != session.session_id
                ]

            failed = await self.dispatcher.deliver(envelope, recipients)

        await self._reconcile(failed)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    async def _reconcile(self, failed: List[str]) -> None:
        """Drop sessions whose channel could not accept a message."""
        for session_id in failed:
            logger.warning(f"Dropping unreachable session {session_id}")
            await self.disconnect(session_id)
