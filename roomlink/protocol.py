"""Message protocol definitions for roomlink.

This module defines the signaling envelope exchanged between room clients
and the signaling server, the room code format, and the recoverable
signaling errors.

Envelope Format
---------------

Every signaling message is one JSON object per WebSocket text frame:

    {"type": "...", "roomId": "...", "senderId": "...", "targetId": "...",
     "payload": ...}

``targetId`` is only present on directed messages (offer, answer,
candidate). Everything else is scoped to the sender's room. The server
never looks inside ``payload``; it only routes.

Message Types
-------------

**join**
    Sent by: Client
    Purpose: Enter a room, creating it if needed
    roomId: room code (case-insensitive)
    Payload: {"displayName": "...", "role": "host" | "guest"} (both optional)

**leave**
    Sent by: Client
    Purpose: Leave the current room

**joined**
    Sent by: Server (to the joining session only)
    Payload: {"sessionId", "displayName", "role",
              "members": [{"sessionId", "displayName"}, ...]}

**presence-joined** / **presence-left**
    Sent by: Server (to the other members of the room)
    Payload: {"sessionId": "...", "displayName": "..."}

**offer** / **answer**
    Sent by: Client, relayed to targetId
    Payload: opaque session description, {"sdp": "...", "type": "..."}

**candidate**
    Sent by: Client, relayed to targetId
    Payload: opaque network hint,
             {"candidate": "...", "sdpMid": "...", "sdpMLineIndex": 0}

**chat**
    Sent by: Client, relayed to every other member of the room
    Payload: UTF-8 text

**error**
    Sent by: Server (to the session that caused it)
    Payload: {"code": "...", "message": "..."}

Message Flow Example
--------------------

1. H → Server: join AB12
2. Server → H: joined (members: [])
3. G → Server: join ab12
4. Server → G: joined (members: [H])
5. Server → H: presence-joined (G)
6. H → Server → G: offer
7. G → Server → H: answer
8. H ⇄ G: candidate (both directions)
"""

import json
import re
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Client -> server
MSG_JOIN = "join"
MSG_LEAVE = "leave"

# Server -> client
MSG_JOINED = "joined"
MSG_PRESENCE_JOINED = "presence-joined"
MSG_PRESENCE_LEFT = "presence-left"
MSG_ERROR = "error"

# Relayed
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_CANDIDATE = "candidate"
MSG_CHAT = "chat"

# Types that carry a targetId and are delivered to exactly one session.
DIRECTED_TYPES = frozenset({MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE})

# Types fanned out to the rest of the sender's room.
BROADCAST_TYPES = frozenset({MSG_PRESENCE_JOINED, MSG_PRESENCE_LEFT, MSG_CHAT})

# Types a client is allowed to send.
CLIENT_TYPES = frozenset(
    {MSG_JOIN, MSG_LEAVE, MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE, MSG_CHAT}
)

# Types only the server may originate.
SERVER_TYPES = frozenset(
    {MSG_JOINED, MSG_PRESENCE_JOINED, MSG_PRESENCE_LEFT, MSG_ERROR}
)

MESSAGE_TYPES = CLIENT_TYPES | SERVER_TYPES

# Session roles recorded at join time.
ROLE_HOST = "host"
ROLE_GUEST = "guest"
ROLES = frozenset({ROLE_HOST, ROLE_GUEST})

# Room codes: case-insensitive alphanumeric, 4-8 characters.
ROOM_CODE_MIN_LENGTH = 4
ROOM_CODE_MAX_LENGTH = 8
ROOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4,8}$")
ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase

# Error codes carried in MSG_ERROR payloads.
ERR_INVALID_ROOM_CODE = "invalid-room-code"
ERR_NOT_IN_ROOM = "not-in-room"
ERR_UNKNOWN_TARGET = "unknown-target"
ERR_MALFORMED_ENVELOPE = "malformed-envelope"


class SignalingError(Exception):
    """Recoverable signaling error reported back to the offending session."""

    code = "signaling-error"

    def to_payload(self) -> Dict[str, str]:
        return {"code": self.code, "message": str(self)}


class InvalidRoomCode(SignalingError):
    code = ERR_INVALID_ROOM_CODE


class NotInRoom(SignalingError):
    code = ERR_NOT_IN_ROOM


class UnknownTarget(SignalingError):
    code = ERR_UNKNOWN_TARGET


class MalformedEnvelope(SignalingError):
    code = ERR_MALFORMED_ENVELOPE


def normalize_room_code(code: Any) -> str:
    """Validate a room code and return its canonical (uppercased) form.

    Args:
        code: Room code as typed by a user.

    Returns:
        The uppercased room code.

    Raises:
        InvalidRoomCode: If the code is not 4-8 alphanumeric characters.
    """
    if not isinstance(code, str):
        raise InvalidRoomCode(f"Room code must be a string, got {type(code).__name__}")
    code = code.strip()
    if not ROOM_CODE_PATTERN.match(code):
        raise InvalidRoomCode(
            f"Invalid room code '{code}': expected {ROOM_CODE_MIN_LENGTH}-"
            f"{ROOM_CODE_MAX_LENGTH} letters or digits"
        )
    return code.upper()


def generate_room_code(length: int = 6) -> str:
    """Generate a random room code.

    Args:
        length: Number of characters (4-8, default 6).

    Returns:
        Uppercase base-36 room code.
    """
    if not ROOM_CODE_MIN_LENGTH <= length <= ROOM_CODE_MAX_LENGTH:
        raise ValueError(
            f"Room code length must be between {ROOM_CODE_MIN_LENGTH} "
            f"and {ROOM_CODE_MAX_LENGTH}"
        )
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def presence_payload(session_id: str, display_name: str) -> Dict[str, str]:
    return {"sessionId": session_id, "displayName": display_name}


@dataclass
class Envelope:
    """A typed signaling message.

    Attributes:
        type: One of MESSAGE_TYPES.
        room_id: Room code the message is scoped to (may be empty on
            client-sent messages; the server stamps it).
        sender_id: Session id of the sender (stamped by the server).
        target_id: Recipient session id, directed types only.
        payload: Opaque message body.
    """

    type: str
    room_id: Optional[str] = None
    sender_id: Optional[str] = None
    target_id: Optional[str] = None
    payload: Any = None

    @property
    def is_directed(self) -> bool:
        return self.type in DIRECTED_TYPES

    @property
    def is_broadcast(self) -> bool:
        return self.type in BROADCAST_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "roomId": self.room_id,
            "senderId": self.sender_id,
            "payload": self.payload,
        }
        if self.target_id is not None:
            data["targetId"] = self.target_id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """Build and validate an envelope from a decoded JSON object.

        Raises:
            MalformedEnvelope: Unknown type, missing or forbidden field.
        """
        if not isinstance(data, dict):
            raise MalformedEnvelope("Envelope must be a JSON object")

        envelope = cls(
            type=data.get("type"),
            room_id=data.get("roomId"),
            sender_id=data.get("senderId"),
            target_id=data.get("targetId"),
            payload=data.get("payload"),
        )
        envelope.validate()
        return envelope

    @classmethod
    def from_json(cls, message: Any) -> "Envelope":
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedEnvelope(f"Envelope is not valid UTF-8: {e}")
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelope(f"Envelope is not valid JSON: {e}")
        return cls.from_dict(data)

    def validate(self) -> None:
        """Check the envelope's shape against its type.

        Raises:
            MalformedEnvelope: If a required field is missing or a field is
                present where it is not allowed.
        """
        if self.type not in MESSAGE_TYPES:
            raise MalformedEnvelope(f"Unknown message type: {self.type!r}")

        if self.is_directed:
            if not isinstance(self.target_id, str) or not self.target_id:
                raise MalformedEnvelope(f"'{self.type}' requires a targetId")
            if self.payload is None:
                raise MalformedEnvelope(f"'{self.type}' requires a payload")
        elif self.target_id is not None:
            raise MalformedEnvelope(f"'{self.type}' must not carry a targetId")

        if self.type == MSG_JOIN:
            if not self.room_id:
                raise MalformedEnvelope("'join' requires a roomId")
            if self.payload is not None and not isinstance(self.payload, dict):
                raise MalformedEnvelope("'join' payload must be an object")
            payload = self.payload or {}
            role = payload.get("role")
            if role is not None and (not isinstance(role, str) or role not in ROLES):
                raise MalformedEnvelope(f"'join' role must be one of {sorted(ROLES)}")
            display_name = payload.get("displayName")
            if display_name is not None and not isinstance(display_name, str):
                raise MalformedEnvelope("'join' displayName must be a string")
        elif self.type == MSG_CHAT:
            if not isinstance(self.payload, str):
                raise MalformedEnvelope("'chat' payload must be a string")
        elif self.type in (MSG_PRESENCE_JOINED, MSG_PRESENCE_LEFT, MSG_JOINED):
            if not isinstance(self.payload, dict) or "sessionId" not in self.payload:
                raise MalformedEnvelope(f"'{self.type}' payload requires a sessionId")
            members = self.payload.get("members", [])
            if self.type == MSG_JOINED and not (
                isinstance(members, list)
                and all(isinstance(m, dict) and "sessionId" in m for m in members)
            ):
                raise MalformedEnvelope("'joined' members must each have a sessionId")
        elif self.type == MSG_ERROR:
            if not isinstance(self.payload, dict) or "code" not in self.payload:
                raise MalformedEnvelope("'error' payload requires a code")


def parse_client_envelope(message: Any) -> Envelope:
    """Parse an envelope received by the server from a client.

    Raises:
        MalformedEnvelope: If the message is not a valid client envelope.
    """
    envelope = Envelope.from_json(message)
    if envelope.type not in CLIENT_TYPES:
        raise MalformedEnvelope(f"'{envelope.type}' is not accepted from clients")
    return envelope


def error_envelope(error: SignalingError, room_id: Optional[str] = None) -> Envelope:
    return Envelope(type=MSG_ERROR, room_id=room_id, payload=error.to_payload())
