"""Room client: peer links, mesh coordinator and media transport."""

from roomlink.client.media import AiortcMediaTransport, MediaTransport
from roomlink.client.mesh_coordinator import MeshCoordinator
from roomlink.client.peer_link import LinkState, PeerLink
from roomlink.client.room_client import ChatMessage, RoomClient, RoomClientError

__all__ = [
    "AiortcMediaTransport",
    "ChatMessage",
    "LinkState",
    "MediaTransport",
    "MeshCoordinator",
    "PeerLink",
    "RoomClient",
    "RoomClientError",
]
