"""Shared fakes for roomlink tests.

Nothing here touches the network or real media: channels record what the
server sends, transports record what the peer link asks of them, and the
loopback connection wires a RoomClient straight into a SignalingServer.
"""

import asyncio
import json

import pytest

from roomlink.client.media import TRANSPORT_CONNECTED, MediaTransport
from roomlink.protocol import Envelope
from roomlink.server.registry import RoomRegistry
from roomlink.server.signaling_server import SignalingServer


# ── fakes ────────────────────────────────────────────────────────────────────


class FakeChannel:
    """Outbound channel that records every message sent to a session."""

    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def send(self, message):
        if self.fail:
            raise ConnectionError("channel is broken")
        self.messages.append(json.loads(message))

    def types(self):
        return [m["type"] for m in self.messages]

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]


class FakeTransport(MediaTransport):
    """MediaTransport that records calls and can fake a connected path.

    With ``auto_connect`` the transport reports "connected" once it holds
    both a local and a remote description, like a real peer connection
    would after ICE completes.
    """

    def __init__(self, name="local", auto_connect=False):
        super().__init__()
        self.name = name
        self.auto_connect = auto_connect
        self.calls = []
        self.local_description = None
        self.remote_description = None
        self.tracks = {}
        self.closed = False
        self.offer_gate = None
        self._connected = False
        self._tasks = []
        self._counter = 0

    def call_names(self):
        return [call[0] for call in self.calls]

    async def create_offer(self):
        self.calls.append(("create_offer",))
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        self._counter += 1
        self.local_description = {"type": "offer", "sdp": f"offer-{self.name}-{self._counter}"}
        return self.local_description

    async def create_answer(self):
        self.calls.append(("create_answer",))
        self._counter += 1
        self.local_description = {"type": "answer", "sdp": f"answer-{self.name}-{self._counter}"}
        self._maybe_connect()
        return self.local_description

    async def set_remote_description(self, description):
        self.calls.append(("set_remote_description", description))
        self.remote_description = description
        if description.get("type") == "answer":
            self._maybe_connect()

    async def rollback(self):
        self.calls.append(("rollback",))
        self.local_description = None

    async def add_candidate(self, candidate):
        self.calls.append(("add_candidate", candidate))

    async def replace_track(self, kind, track):
        self.calls.append(("replace_track", kind, track))
        self.tracks[kind] = track

    async def close(self):
        self.calls.append(("close",))
        self.closed = True

    def _maybe_connect(self):
        if self.auto_connect and not self._connected:
            self._connected = True
            self._tasks.append(asyncio.create_task(self.emit_state(TRANSPORT_CONNECTED)))


class ServerSideChannel:
    """Server -> client half of a loopback connection."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise ConnectionError("connection closed")
        self.inbox.put_nowait(message)


class ClientSideSocket:
    """Client -> server half of a loopback connection."""

    def __init__(self, server, session_id):
        self.server = server
        self.session_id = session_id

    async def send(self, message):
        await self.server.handle_message(self.session_id, message)

    async def close(self):
        pass


class LoopbackConnection:
    """Connects a RoomClient to a SignalingServer in-process.

    The client's outgoing messages go straight into
    ``SignalingServer.handle_message``; messages the server sends to the
    session are queued and fed to ``RoomClient.handle_envelope`` by a pump
    task, preserving order like a WebSocket would.
    """

    def __init__(self, server, client, session_id):
        self.server = server
        self.client = client
        self.session_id = session_id
        self.channel = ServerSideChannel()
        server.registry.connect(session_id, self.channel)
        client.websocket = ClientSideSocket(server, session_id)
        self._pump = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            message = await self.channel.inbox.get()
            await self.client.handle_envelope(Envelope.from_json(message))

    async def drop(self):
        """Simulate an ungraceful transport disconnect."""
        self.channel.closed = True
        self._pump.cancel()
        await asyncio.gather(self._pump, return_exceptions=True)
        await self.server.registry.disconnect(self.session_id)

    async def stop(self):
        self._pump.cancel()
        await asyncio.gather(self._pump, return_exceptions=True)
        await self.client.coordinator.close_all()


async def eventually(predicate, timeout=2.0):
    """Wait until ``predicate()`` is true, failing after ``timeout`` seconds."""

    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


# ── fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def server():
    return SignalingServer()


@pytest.fixture
def sent():
    """List that collects envelopes passed to a ``send`` coroutine."""
    return []


@pytest.fixture
def send(sent):
    async def _send(envelope):
        sent.append(envelope)

    return _send


@pytest.fixture
def make_channel():
    return FakeChannel


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def loopback():
    return LoopbackConnection


@pytest.fixture
def wait_until():
    return eventually
