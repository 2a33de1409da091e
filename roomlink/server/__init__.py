"""Signaling server: room registry, relay dispatcher and WebSocket front end."""

from roomlink.server.dispatcher import RelayDispatcher
from roomlink.server.registry import Room, RoomMembership, RoomRegistry, Session
from roomlink.server.signaling_server import SignalingServer

__all__ = [
    "RelayDispatcher",
    "Room",
    "RoomMembership",
    "RoomRegistry",
    "Session",
    "SignalingServer",
]
