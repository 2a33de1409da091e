"""Mesh coordinator for the peer links of one room.

This module keeps one PeerLink per remote session in the local participant's
current room and feeds signaling envelopes to the right link.

Key responsibilities:
- Offer to newcomers (presence-joined), wait passively for existing members
- Create passive links for the members listed in the join acknowledgement
- Tear links down on presence-left and on local leave
- Renegotiate every link when a local track changes
- Isolate failures: a failed link is reported, closed and dropped alone

Tie-break:
The member already in the room when a newcomer's presence-joined arrives
offers to the newcomer. The newcomer never offers on join, so the join case
cannot produce competing offers. Renegotiation offers come from the side
whose media changed; if both sides change at once, the PeerLink with the
lower session id answers first and offers again afterwards.

The coordinator never awaits a negotiation step. It only queues work on
each link's inbox, so a slow peer cannot hold up presence or chat handling
for the rest of the room.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from roomlink.client.media import MediaTransport
from roomlink.client.peer_link import LinkState, PeerLink
from roomlink.protocol import (
    MSG_ANSWER,
    MSG_CANDIDATE,
    MSG_JOINED,
    MSG_LEAVE,
    MSG_OFFER,
    MSG_PRESENCE_JOINED,
    MSG_PRESENCE_LEFT,
    Envelope,
)

logger = logging.getLogger(__name__)

SendFunction = Callable[[Envelope], Awaitable[None]]
TransportFactory = Callable[[str], MediaTransport]
LinkStateListener = Callable[[str, LinkState], None]


class MeshCoordinator:
    """Owns the remote-session-id -> PeerLink map for the current room.

    Attributes:
        local_id: Local session id (known after the join acknowledgement).
        room_id: Current room code, or None.
        links: Active peer links keyed by remote session id.
    """

    def __init__(
        self,
        send: SendFunction,
        transport_factory: TransportFactory,
        on_link_state: Optional[LinkStateListener] = None,
    ):
        """Initialize MeshCoordinator.

        Args:
            send: Coroutine that puts an envelope on the signaling channel.
            transport_factory: Builds a MediaTransport for a remote session id.
            on_link_state: Optional callback(remote_id, state) for every link
                state change, including failures.
        """
        self.send = send
        self.transport_factory = transport_factory
        self.on_link_state = on_link_state

        self.local_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}

        self._cleanup_tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Envelope handling
    # -------------------------------------------------------------------------

    async def handle_envelope(self, envelope: Envelope) -> None:
        """Route one signaling envelope received from the server."""
        msg_type = envelope.type

        if msg_type == MSG_JOINED:
            self._handle_joined(envelope)

        elif msg_type == MSG_PRESENCE_JOINED:
            remote_id = envelope.payload.get("sessionId")
            if remote_id == self.local_id:
                return
            logger.info(f"Peer joined room {self.room_id}: {remote_id}")
            if remote_id in self.links:
                self.remove_link(remote_id)
            link = self._create_link(remote_id)
            # We were here first: we offer.
            link.initiate()

        elif msg_type == MSG_PRESENCE_LEFT:
            remote_id = envelope.payload.get("sessionId")
            logger.info(f"Peer left room {self.room_id}: {remote_id}")
            self.remove_link(remote_id)

        elif msg_type == MSG_OFFER:
            link = self.links.get(envelope.sender_id)
            if link is None:
                link = self._create_link(envelope.sender_id)
            link.deliver(envelope)

        elif msg_type in (MSG_ANSWER, MSG_CANDIDATE):
            link = self.links.get(envelope.sender_id)
            if link is None:
                logger.warning(
                    f"Dropping {msg_type} from unknown peer {envelope.sender_id}"
                )
                return
            link.deliver(envelope)

        else:
            logger.debug(f"Coordinator ignoring message type: {msg_type}")

    def _handle_joined(self, envelope: Envelope) -> None:
        payload = envelope.payload
        self.local_id = payload.get("sessionId")
        self.room_id = envelope.room_id
        members = payload.get("members", [])
        logger.info(
            f"Joined room {self.room_id} as {self.local_id} "
            f"({len(members)} existing members)"
        )

        # Existing members will offer to us; wait for them.
        for member in members:
            remote_id = member.get("sessionId")
            if remote_id and remote_id not in self.links:
                self._create_link(remote_id)

    # -------------------------------------------------------------------------
    # Link management
    # -------------------------------------------------------------------------

    def _create_link(self, remote_id: str) -> PeerLink:
        transport = self.transport_factory(remote_id)
        link = PeerLink(
            local_id=self.local_id,
            remote_id=remote_id,
            transport=transport,
            send=self.send,
            on_state_change=self._on_link_state_change,
        )
        self.links[remote_id] = link
        link.start()
        logger.info(f"Created peer link to {remote_id} (total: {len(self.links)})")
        return link

    def remove_link(self, remote_id: str) -> Optional[PeerLink]:
        """Forget the link to ``remote_id`` and close it in the background.

        The envelope reader never waits on a peer connection shutting down.
        Returns the removed link, if there was one.
        """
        link = self.links.pop(remote_id, None)
        if link is not None:
            self._close_in_background(link)
        return link

    async def close_all(self) -> None:
        """Close every link without notifying the server."""
        links = list(self.links.values())
        self.links.clear()
        await asyncio.gather(*(link.close() for link in links))
        await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    def _on_link_state_change(
        self, link: PeerLink, old_state: LinkState, new_state: LinkState
    ) -> None:
        if self.on_link_state is not None:
            self.on_link_state(link.remote_id, new_state)

        if new_state == LinkState.FAILED:
            logger.error(
                f"Peer link to {link.remote_id} failed: {link.failure_reason}"
            )
            # Only drop the map entry if it still points at the failed link.
            if self.links.get(link.remote_id) is link:
                del self.links[link.remote_id]
            self._close_in_background(link)

    def _close_in_background(self, link: PeerLink) -> None:
        task = asyncio.create_task(self._close_link(link))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _close_link(self, link: PeerLink) -> None:
        await link.close()
        logger.info(f"Closed peer link to {link.remote_id} (remaining: {len(self.links)})")

    # -------------------------------------------------------------------------
    # Local actions
    # -------------------------------------------------------------------------

    def renegotiate_all(self, kind: str, track: Any) -> None:
        """Swap the local ``kind`` track on every link and renegotiate."""
        logger.info(f"Local {kind} track changed; renegotiating {len(self.links)} links")
        for link in self.links.values():
            link.request_renegotiation(kind, track)

    async def leave(self) -> None:
        """Tear down every link, then tell the server we are leaving."""
        await self.close_all()
        if self.room_id is not None:
            await self.send(Envelope(type=MSG_LEAVE, room_id=self.room_id))
            logger.info(f"Left room {self.room_id}")
        self.room_id = None

    def get_connected_peers(self) -> List[str]:
        return [
            remote_id
            for remote_id, link in self.links.items()
            if link.state == LinkState.CONNECTED
        ]

    def get_link(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)
