"""Media transport interface used by peer links, and its aiortc implementation.

A PeerLink never touches media or inspects negotiation blobs. It only
sequences calls into a MediaTransport: produce an offer or answer, apply the
remote description, add remote candidates, swap a sent track. The transport
reports local candidates and connection state back through the callbacks
registered with ``bind()``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

# States reported by a transport through its state callback.
TRANSPORT_CONNECTED = "connected"
TRANSPORT_FAILED = "failed"
TRANSPORT_CLOSED = "closed"

CandidateCallback = Callable[[Dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]


class MediaTransport(ABC):
    """Narrow interface onto a media peer connection."""

    def __init__(self):
        self._on_candidate: Optional[CandidateCallback] = None
        self._on_state: Optional[StateCallback] = None

    def bind(self, on_candidate: CandidateCallback, on_state: StateCallback) -> None:
        """Register callbacks for local candidates and connection state."""
        self._on_candidate = on_candidate
        self._on_state = on_state

    async def emit_candidate(self, candidate: Dict[str, Any]) -> None:
        if self._on_candidate is not None:
            await self._on_candidate(candidate)

    async def emit_state(self, state: str) -> None:
        if self._on_state is not None:
            await self._on_state(state)

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Create an offer, apply it locally and return it."""

    @abstractmethod
    async def create_answer(self) -> Dict[str, Any]:
        """Create an answer to the applied remote offer, apply it locally and return it."""

    @abstractmethod
    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        """Apply a remote offer or answer."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard the local offer that has not been answered yet."""

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply a remote network candidate hint."""

    @abstractmethod
    async def replace_track(self, kind: str, track: Any) -> None:
        """Swap the local track sent for ``kind`` ("audio" or "video")."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""


class AiortcMediaTransport(MediaTransport):
    """MediaTransport backed by an aiortc RTCPeerConnection.

    aiortc gathers all of its own candidates before ``setLocalDescription``
    returns and embeds them in the SDP, so this transport never emits
    candidates itself. It still applies candidates trickled by the remote
    side (e.g. a browser).

    Attributes:
        pc: The wrapped RTCPeerConnection.
        relay: Optional MediaRelay so one local source can feed many links.
        remote_tracks: Tracks received from the remote peer.
    """

    def __init__(
        self,
        tracks: Iterable[Any] = (),
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        relay: Optional[MediaRelay] = None,
    ):
        super().__init__()

        configuration = None
        if ice_servers:
            configuration = RTCConfiguration(
                iceServers=[RTCIceServer(**server) for server in ice_servers]
            )
        self.pc = RTCPeerConnection(configuration=configuration)
        self.relay = relay
        self.remote_tracks: List[Any] = []

        # Always negotiate audio and video so a track can be swapped in later.
        sent_kinds = set()
        for track in tracks:
            self.pc.addTrack(self._subscribe(track))
            sent_kinds.add(track.kind)
        for kind in ("audio", "video"):
            if kind not in sent_kinds:
                self.pc.addTransceiver(kind, direction="recvonly")

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self.pc.connectionState
            logger.info(f"Connection state: {state}")
            if state in (TRANSPORT_CONNECTED, TRANSPORT_FAILED, TRANSPORT_CLOSED):
                await self.emit_state(state)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received remote {track.kind} track")
            self.remote_tracks.append(track)

    async def create_offer(self) -> Dict[str, Any]:
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return self._local_description()

    async def create_answer(self) -> Dict[str, Any]:
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return self._local_description()

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def rollback(self) -> None:
        if self.pc.signalingState != "have-local-offer":
            return
        # aiortc accepts "rollback" descriptions but never applies them, so
        # drop the pending offer and return to the stable state directly.
        self.pc._RTCPeerConnection__pendingLocalDescription = None
        self.pc._RTCPeerConnection__setSignalingState("stable")
        logger.info("Rolled back local offer")

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        sdp = candidate.get("candidate")
        if not sdp:
            logger.debug("Received empty ICE candidate (end of candidates)")
            return

        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def replace_track(self, kind: str, track: Any) -> None:
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind != kind:
                continue
            transceiver.sender.replaceTrack(self._subscribe(track))
            if track is not None and transceiver.direction == "recvonly":
                transceiver.direction = "sendrecv"
            logger.info(f"Replaced local {kind} track")
            return
        raise ValueError(f"No {kind} transceiver to replace")

    async def close(self) -> None:
        await self.pc.close()

    def _subscribe(self, track: Any) -> Any:
        if track is None or self.relay is None:
            return track
        return self.relay.subscribe(track)

    def _local_description(self) -> Dict[str, Any]:
        return {
            "sdp": self.pc.localDescription.sdp,
            "type": self.pc.localDescription.type,
        }
