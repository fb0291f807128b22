"""Shared fakes for the signaling and negotiation tests."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiortc import RTCSessionDescription
from websockets.exceptions import ConnectionClosedOK


OFFER_SDP = """v=0
o=- 1 1 IN IP4 0.0.0.0
s=-
t=0 0
a=group:BUNDLE 0 1
m=audio 9 UDP/TLS/RTP/SAVPF 111
c=IN IP4 0.0.0.0
a=mid:0
a=candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host
a=end-of-candidates
m=video 9 UDP/TLS/RTP/SAVPF 96
c=IN IP4 0.0.0.0
a=mid:1
a=candidate:1 1 udp 2130706431 192.168.1.2 50002 typ host
a=candidate:2 1 udp 1694498815 203.0.113.7 61000 typ srflx raddr 192.168.1.2 rport 50002
"""

ANSWER_SDP = OFFER_SDP.replace("192.168.1.2", "192.168.1.3")


# =============================================================================
# Server side
# =============================================================================

class FakeTransport:
    """Stands in for a server-side websocket connection."""

    def __init__(self, name=""):
        self.name = name
        self.sent = []
        self.closed = False

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(raw))

    def types(self):
        return [m["type"] for m in self.sent]

    def last(self):
        return self.sent[-1]


# =============================================================================
# Client side
# =============================================================================

class FakeSignalingSocket:
    """Client websocket: iterates frames pushed with feed(), records sends."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def feed(self, msg):
        self.incoming.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def drop(self):
        """Server side went away."""
        self.closed = True
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def types(self):
        return [m["type"] for m in self.sent]

    def of_type(self, t):
        return [m for m in self.sent if m["type"] == t]


class FakePeerConnection:
    """
    Just enough of RTCPeerConnection: signaling state transitions, pyee style
    `on` registration and recorded tracks/candidates.
    """

    def __init__(self):
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.candidates = []
        self.handlers = {}
        self.closed = False

    def on(self, event):
        def deco(f):
            self.handlers[event] = f
            return f
        return deco

    def fire(self, event, *args):
        self.handlers[event](*args)

    def set_connection_state(self, state):
        self.connectionState = state
        self.fire("connectionstatechange")

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, desc):
        if desc.type == "offer":
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise RuntimeError("cannot answer in state " + self.signalingState)
            self.signalingState = "stable"
        self.localDescription = desc

    async def setRemoteDescription(self, desc):
        if desc.type == "offer":
            if self.signalingState != "stable":
                raise RuntimeError("cannot accept offer in state " + self.signalingState)
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise RuntimeError("cannot accept answer in state " + self.signalingState)
            self.signalingState = "stable"
        self.remoteDescription = desc

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.signalingState = "closed"
        self.connectionState = "closed"


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMedia:
    def __init__(self):
        self.audio = FakeTrack("audio")
        self.video = FakeTrack("video")
        self.stopped = False

    @property
    def tracks(self):
        return [self.audio, self.video]

    def track(self, kind):
        return self.audio if kind == "audio" else self.video

    def stop(self):
        self.stopped = True


class PeerConnectionFactory:
    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def last(self):
        return self.created[-1]


async def settle(connector):
    """
    Lets the reader hand frames over, then waits until the pump has drained
    the event queue or exited after a teardown.
    """
    for _ in range(2):
        for _ in range(5):
            await asyncio.sleep(0)
        pump = connector._pump
        if pump is None:
            return
        drained = asyncio.ensure_future(connector.events.join())
        await asyncio.wait([drained, pump], timeout=2, return_when=asyncio.FIRST_COMPLETED)
        drained.cancel()


@pytest.fixture
def pcs():
    return PeerConnectionFactory()


@pytest.fixture
def renderer():
    r = MagicMock()
    r.start = AsyncMock()
    r.stop = AsyncMock()
    return r
