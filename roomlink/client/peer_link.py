"""Per-peer negotiation state machine.

A PeerLink drives the offer/answer/candidate exchange with one remote
session until the media transport reports a connected path, and runs
renegotiation rounds when a local track changes.

State flow:

    offering side:   idle -> offering -> offer-sent -> connected
    answering side:  idle -> answer-pending -> answered -> connected
    track change:    connected -> renegotiating -> connected
    crossed offers:  renegotiating -> connected  (lower session id answers, then re-offers)
    any state:       -> connected  (transport reports an established path)
    any state:       -> failed     (transport failure or a step raised)
    failed/teardown: -> closed     (terminal)

Work for a link (local offers, incoming envelopes, track changes) is queued
on the link's own inbox and executed one item at a time by a dedicated
task. Envelopes from one remote are therefore applied in arrival order,
while other links make progress independently. Closing a link cancels that
task, so nothing keeps waiting on a negotiation result for a dead link.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from roomlink.client.media import (
    TRANSPORT_CLOSED,
    TRANSPORT_CONNECTED,
    TRANSPORT_FAILED,
    MediaTransport,
)
from roomlink.protocol import MSG_ANSWER, MSG_CANDIDATE, MSG_OFFER, Envelope

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    OFFER_SENT = "offer-sent"
    ANSWER_PENDING = "answer-pending"
    ANSWERED = "answered"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    FAILED = "failed"
    CLOSED = "closed"


FINISHED_STATES = frozenset({LinkState.FAILED, LinkState.CLOSED})

SendFunction = Callable[[Envelope], Awaitable[None]]
StateListener = Callable[["PeerLink", LinkState, LinkState], None]


class PeerLink:
    """Negotiation state for one (local session, remote session) pair.

    Attributes:
        local_id: Local session id.
        remote_id: Remote session id this link negotiates with.
        transport: MediaTransport doing the actual media work.
        state: Current LinkState.
        pending_candidates: Remote candidates received before the remote
            description was applied, in arrival order.
        failure_reason: Why the link failed, if it did.
    """

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        transport: MediaTransport,
        send: SendFunction,
        on_state_change: Optional[StateListener] = None,
    ):
        self.local_id = local_id
        self.remote_id = remote_id
        self.transport = transport
        self.state = LinkState.IDLE
        self.pending_candidates: List[Dict[str, Any]] = []
        self.failure_reason: Optional[str] = None

        self._send = send
        self._on_state_change = on_state_change
        self._remote_description_set = False
        self._local_offer_pending = False
        self._media_connected = False
        self._pending_track_changes: Dict[str, Any] = {}
        self._offered_track_change: Optional[tuple] = None

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._state_changed = asyncio.Event()

        transport.bind(self._on_local_candidate, self._on_transport_state)

    def __repr__(self) -> str:
        return f"PeerLink({self.local_id} -> {self.remote_id}, {self.state.value})"

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def is_polite(self) -> bool:
        """True if this side yields when both sides offer at once."""
        return self.local_id < self.remote_id

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the task that works through this link's inbox."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def submit(self, step: Callable[[], Awaitable[None]]) -> None:
        """Queue a negotiation step. Ignored once the link is finished."""
        if self.is_finished:
            logger.debug(f"{self!r}: ignoring work for finished link")
            return
        self.start()
        self._inbox.put_nowait(step)

    def initiate(self) -> None:
        """Queue the initial offer (this side is the offering side)."""
        self.submit(self.offer)

    def deliver(self, envelope: Envelope) -> None:
        """Queue handling of a negotiation envelope from the remote."""
        handlers = {
            MSG_OFFER: self.handle_offer,
            MSG_ANSWER: self.handle_answer,
            MSG_CANDIDATE: self.handle_candidate,
        }
        handler = handlers.get(envelope.type)
        if handler is None:
            logger.warning(f"{self!r}: cannot handle {envelope.type}")
            return
        payload = envelope.payload
        self.submit(lambda: handler(payload))

    def request_renegotiation(self, kind: str, track: Any) -> None:
        """Queue a local track change followed by a renegotiation round."""
        self.submit(lambda: self.renegotiate(kind, track))

    async def _run(self) -> None:
        while True:
            step = await self._inbox.get()
            if self.is_finished:
                continue
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self!r}: negotiation step failed: {e}")
                self.fail(str(e))

    # -------------------------------------------------------------------------
    # Negotiation steps
    # -------------------------------------------------------------------------

    async def offer(self) -> None:
        """Produce the initial offer and send it to the remote."""
        if self.state != LinkState.IDLE:
            logger.warning(f"{self!r}: not offering, link is {self.state.value}")
            return

        self._transition(LinkState.OFFERING)
        description = await self.transport.create_offer()
        self._local_offer_pending = True
        await self._send_to_remote(MSG_OFFER, description)
        self._transition(LinkState.OFFER_SENT)

    async def handle_offer(self, description: Dict[str, Any]) -> None:
        """Apply a remote offer and answer it.

        An offer on an idle link is the initial negotiation. An offer on an
        answered or connected link is a renegotiation started by the remote.

        When both sides renegotiate at once, the polite side (lower session
        id) rolls its own offer back, answers the remote one and offers its
        change again once connected. The other side drops the remote offer
        and waits for the answer to its own. Any other offer arriving while
        our offer is outstanding is dropped.
        """
        was_connected = self.state in (LinkState.CONNECTED, LinkState.RENEGOTIATING)
        if self.state == LinkState.IDLE:
            self._transition(LinkState.ANSWER_PENDING)
        elif self.state in (LinkState.ANSWERED, LinkState.CONNECTED):
            logger.info(f"{self!r}: remote started renegotiation")
            self._transition(LinkState.RENEGOTIATING)
        elif (
            self.state == LinkState.RENEGOTIATING
            and self._local_offer_pending
            and self.is_polite
        ):
            logger.info(
                f"{self!r}: competing renegotiation offers, yielding to {self.remote_id}"
            )
            await self.transport.rollback()
            self._local_offer_pending = False
            kind, track = self._offered_track_change
            self._pending_track_changes.setdefault(kind, track)
        else:
            logger.warning(
                f"{self!r}: dropping offer from {self.remote_id} "
                f"while {self.state.value}"
            )
            return

        await self._apply_remote_description(description)
        answer = await self.transport.create_answer()
        await self._send_to_remote(MSG_ANSWER, answer)

        if self._media_connected or was_connected:
            self._transition(LinkState.CONNECTED)
        else:
            self._transition(LinkState.ANSWERED)

    async def handle_answer(self, description: Dict[str, Any]) -> None:
        """Apply the remote answer to our outstanding offer."""
        if not self._local_offer_pending:
            logger.warning(
                f"{self!r}: dropping unexpected answer while {self.state.value}"
            )
            return

        await self._apply_remote_description(description)
        self._local_offer_pending = False
        self._transition(LinkState.CONNECTED)

    async def handle_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply a remote candidate, or buffer it until the remote description is set."""
        if not self._remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug(
                f"{self!r}: buffered candidate ({len(self.pending_candidates)} pending)"
            )
            return

        await self.transport.add_candidate(candidate)
        logger.debug(f"{self!r}: added candidate")

    async def renegotiate(self, kind: str, track: Any) -> None:
        """Swap a local track and offer the change to the remote.

        Only a connected link renegotiates right away. Otherwise the change
        is remembered and offered once the link connects.
        """
        if self.state != LinkState.CONNECTED:
            logger.info(
                f"{self!r}: deferring {kind} track change until connected"
            )
            self._pending_track_changes[kind] = track
            return

        self._transition(LinkState.RENEGOTIATING)
        await self.transport.replace_track(kind, track)
        description = await self.transport.create_offer()
        self._local_offer_pending = True
        self._offered_track_change = (kind, track)
        await self._send_to_remote(MSG_OFFER, description)

    async def _apply_remote_description(self, description: Dict[str, Any]) -> None:
        await self.transport.set_remote_description(description)

        # Candidates that raced ahead of the description go in, oldest first.
        while self.pending_candidates:
            candidate = self.pending_candidates.pop(0)
            await self.transport.add_candidate(candidate)
            logger.debug(f"{self!r}: applied buffered candidate")

        self._remote_description_set = True

    async def _send_to_remote(self, msg_type: str, payload: Dict[str, Any]) -> None:
        await self._send(
            Envelope(
                type=msg_type,
                sender_id=self.local_id,
                target_id=self.remote_id,
                payload=payload,
            )
        )
        logger.info(f"{self!r}: sent {msg_type}")

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    async def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.is_finished:
            return
        await self._send_to_remote(MSG_CANDIDATE, candidate)

    async def _on_transport_state(self, state: str) -> None:
        if self.is_finished:
            return

        if state == TRANSPORT_CONNECTED:
            self._media_connected = True
            self._transition(LinkState.CONNECTED)
        elif state == TRANSPORT_FAILED:
            self.fail("transport reported failure")
        elif state == TRANSPORT_CLOSED:
            self.fail("transport closed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def fail(self, reason: str) -> None:
        """Move the link to failed. Other links are not affected."""
        if self.is_finished:
            return
        self.failure_reason = reason
        logger.warning(f"{self!r}: failed ({reason})")
        self._transition(LinkState.FAILED)

    async def close(self) -> None:
        """Tear the link down: stop pending work, drop buffered candidates."""
        if self.state == LinkState.CLOSED:
            return

        self._transition(LinkState.CLOSED)
        self.pending_candidates.clear()

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"{self!r}: error closing transport: {e}")

    async def wait_for(self, *states: LinkState) -> LinkState:
        """Wait until the link reaches one of ``states`` and return it."""
        while self.state not in states:
            await self._state_changed.wait()
        return self.state

    def _transition(self, new_state: LinkState) -> None:
        old_state = self.state
        if old_state == new_state:
            return

        self.state = new_state
        logger.info(f"Link {self.local_id} -> {self.remote_id}: {old_state.value} -> {new_state.value}")

        # Wake current waiters, then arm a fresh event for the next change.
        event, self._state_changed = self._state_changed, asyncio.Event()
        event.set()

        if new_state == LinkState.CONNECTED and self._pending_track_changes:
            changes, self._pending_track_changes = self._pending_track_changes, {}
            for kind, track in changes.items():
                self.request_renegotiation(kind, track)

        if self._on_state_change is not None:
            self._on_state_change(self, old_state, new_state)
