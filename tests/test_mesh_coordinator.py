"""Tests for MeshCoordinator link management and tie-breaking."""

import asyncio

import pytest

from roomlink.client.media import TRANSPORT_CONNECTED, TRANSPORT_FAILED
from roomlink.client.mesh_coordinator import MeshCoordinator
from roomlink.client.peer_link import LinkState
from roomlink.protocol import Envelope, presence_payload


# ── helpers ──────────────────────────────────────────────────────────────────

def _joined(local_id, members=(), room="AB12"):
    return Envelope(
        type="joined",
        room_id=room,
        payload={
            "sessionId": local_id,
            "displayName": local_id.upper(),
            "role": "guest" if members else "host",
            "members": [presence_payload(m, m.upper()) for m in members],
        },
    )


def _presence(msg_type, session_id, room="AB12"):
    return Envelope(type=msg_type, room_id=room, sender_id=session_id,
                    payload=presence_payload(session_id, session_id.upper()))


def _offer(sender, sdp="remote-offer"):
    return Envelope(type="offer", room_id="AB12", sender_id=sender, target_id="me",
                    payload={"type": "offer", "sdp": sdp})


async def _settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def transports():
    """Transports built by the coordinator, keyed by remote session id."""
    return {}


@pytest.fixture
def link_events():
    return []


@pytest.fixture
def coordinator(send, make_transport, transports, link_events):
    def factory(remote_id):
        transport = make_transport(name=remote_id)
        transports.setdefault(remote_id, []).append(transport)
        return transport

    mesh = MeshCoordinator(
        send=send,
        transport_factory=factory,
        on_link_state=lambda remote_id, state: link_events.append((remote_id, state)),
    )
    return mesh


# ── tie-break ────────────────────────────────────────────────────────────────

class TestTieBreak:

    @pytest.mark.asyncio
    async def test_existing_member_offers_to_newcomer(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me"))
        await coordinator.handle_envelope(_presence("presence-joined", "new"))
        await coordinator.get_link("new").wait_for(LinkState.OFFER_SENT)

        assert [(e.type, e.target_id) for e in sent] == [("offer", "new")]
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_newcomer_waits_for_offers(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me", members=["a", "b"]))
        await _settle()

        assert set(coordinator.links) == {"a", "b"}
        assert all(link.state == LinkState.IDLE for link in coordinator.links.values())
        assert sent == []
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_offer_from_listed_member_is_answered(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me", members=["a"]))
        link = coordinator.get_link("a")

        await coordinator.handle_envelope(_offer("a"))
        await link.wait_for(LinkState.ANSWERED)

        assert coordinator.get_link("a") is link
        assert [(e.type, e.target_id) for e in sent] == [("answer", "a")]
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_offer_from_unknown_sender_creates_link(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me"))

        await coordinator.handle_envelope(_offer("late"))
        await coordinator.get_link("late").wait_for(LinkState.ANSWERED)

        assert [(e.type, e.target_id) for e in sent] == [("answer", "late")]
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_answer_from_unknown_sender_dropped(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me"))
        await coordinator.handle_envelope(
            Envelope(type="answer", sender_id="ghost", target_id="me",
                     payload={"type": "answer", "sdp": "x"})
        )
        await coordinator.handle_envelope(
            Envelope(type="candidate", sender_id="ghost", target_id="me",
                     payload={"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
        )
        assert coordinator.links == {}


# ── link lifecycle ───────────────────────────────────────────────────────────

class TestLinkLifecycle:

    @pytest.mark.asyncio
    async def test_presence_left_closes_link(self, coordinator, transports, wait_until):
        await coordinator.handle_envelope(_joined("me", members=["a"]))
        link = coordinator.get_link("a")

        await coordinator.handle_envelope(_presence("presence-left", "a"))

        assert coordinator.links == {}
        await wait_until(lambda: transports["a"][0].closed)
        assert link.state == LinkState.CLOSED

    @pytest.mark.asyncio
    async def test_presence_left_does_not_wait_for_slow_close(self, coordinator, transports):
        await coordinator.handle_envelope(_joined("me", members=["a"]))
        slow = transports["a"][0]
        gate = asyncio.Event()
        original_close = slow.close

        async def slow_close():
            await gate.wait()
            await original_close()

        slow.close = slow_close

        await asyncio.wait_for(coordinator.handle_envelope(_presence("presence-left", "a")), 1)
        await asyncio.wait_for(coordinator.handle_envelope(_presence("presence-joined", "b")), 1)
        await coordinator.get_link("b").wait_for(LinkState.OFFER_SENT)
        assert not slow.closed

        gate.set()
        await coordinator.close_all()
        assert slow.closed

    @pytest.mark.asyncio
    async def test_rejoin_replaces_stale_link(self, coordinator, transports, wait_until):
        await coordinator.handle_envelope(_joined("me"))
        await coordinator.handle_envelope(_presence("presence-joined", "a"))
        first = coordinator.get_link("a")

        await coordinator.handle_envelope(_presence("presence-joined", "a"))
        second = coordinator.get_link("a")

        assert second is not first
        await wait_until(lambda: first.state == LinkState.CLOSED)
        assert len(transports["a"]) == 2
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_own_presence_ignored(self, coordinator):
        await coordinator.handle_envelope(_joined("me"))
        await coordinator.handle_envelope(_presence("presence-joined", "me"))
        assert coordinator.links == {}

    @pytest.mark.asyncio
    async def test_connected_peers(self, coordinator, transports):
        await coordinator.handle_envelope(_joined("me", members=["a", "b"]))
        await coordinator.handle_envelope(_offer("a"))
        await coordinator.get_link("a").wait_for(LinkState.ANSWERED)

        await transports["a"][0].emit_state(TRANSPORT_CONNECTED)

        assert coordinator.get_connected_peers() == ["a"]
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_leave_closes_links_then_notifies_server(self, coordinator, sent, transports):
        await coordinator.handle_envelope(_joined("me", members=["a", "b"]))

        await coordinator.leave()

        assert coordinator.links == {}
        assert all(t[0].closed for t in transports.values())
        assert sent[-1].type == "leave"
        assert sent[-1].room_id == "AB12"
        assert coordinator.room_id is None

    @pytest.mark.asyncio
    async def test_leave_outside_room_sends_nothing(self, coordinator, sent):
        await coordinator.leave()
        assert sent == []


# ── failure isolation ────────────────────────────────────────────────────────

class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_failed_link_dropped_others_untouched(
        self, coordinator, transports, link_events, wait_until
    ):
        await coordinator.handle_envelope(_joined("me"))
        for remote_id in ("a", "b", "c"):
            await coordinator.handle_envelope(_presence("presence-joined", remote_id))
        for remote_id in ("a", "b", "c"):
            await coordinator.get_link(remote_id).wait_for(LinkState.OFFER_SENT)
        failing = coordinator.get_link("b")

        await transports["b"][0].emit_state(TRANSPORT_FAILED)
        await wait_until(lambda: failing.state == LinkState.CLOSED)

        assert ("b", LinkState.FAILED) in link_events
        assert "b" not in coordinator.links
        assert set(coordinator.links) == {"a", "c"}
        assert all(
            coordinator.get_link(r).state == LinkState.OFFER_SENT for r in ("a", "c")
        )
        await coordinator.close_all()

    @pytest.mark.asyncio
    async def test_new_offer_after_failure_gets_fresh_link(
        self, coordinator, transports, wait_until
    ):
        await coordinator.handle_envelope(_joined("me", members=["a"]))
        await transports["a"][0].emit_state(TRANSPORT_FAILED)
        await wait_until(lambda: "a" not in coordinator.links)

        await coordinator.handle_envelope(_offer("a", sdp="retry"))
        await coordinator.get_link("a").wait_for(LinkState.ANSWERED)

        assert len(transports["a"]) == 2
        await coordinator.close_all()


# ── renegotiation ────────────────────────────────────────────────────────────

class TestRenegotiateAll:

    @pytest.mark.asyncio
    async def test_track_change_reaches_every_connected_link(self, coordinator, sent):
        await coordinator.handle_envelope(_joined("me"))
        for remote_id in ("a", "b"):
            await coordinator.handle_envelope(_presence("presence-joined", remote_id))
        for remote_id in ("a", "b"):
            link = coordinator.get_link(remote_id)
            await link.wait_for(LinkState.OFFER_SENT)
            link.deliver(Envelope(type="answer", sender_id=remote_id, target_id="me",
                                  payload={"type": "answer", "sdp": "ok"}))
            await link.wait_for(LinkState.CONNECTED)
        sent.clear()

        coordinator.renegotiate_all("video", "screen")
        await _settle()

        assert sorted((e.type, e.target_id) for e in sent) == [("offer", "a"), ("offer", "b")]
        for remote_id in ("a", "b"):
            assert coordinator.get_link(remote_id).transport.tracks == {"video": "screen"}
        await coordinator.close_all()
