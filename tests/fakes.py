"""In-memory stand-ins for aiortc peer connections, tracks and signaling."""

import asyncio
import itertools

from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from hostmesh.exceptions import SignalingError, TransportUnavailableError
from hostmesh.signaling.multiplexer import SignalingStats
from hostmesh.signaling.transport import Transport

_track_ids = itertools.count(1)


def make_candidate(index: int) -> dict:
    """Browser-style ICE candidate payload."""
    return {
        "candidate": f"candidate:{index} 1 udp 2130706431 10.0.0.{index} {5000 + index} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


class FakeTrack:
    """Minimal MediaStreamTrack: id, kind, readyState, recv/stop."""

    def __init__(self, kind: str = "video"):
        self.kind = kind
        self.id = f"track-{next(_track_ids)}"
        self.readyState = "live"
        self.frames = asyncio.Queue()

    async def recv(self):
        return await self.frames.get()

    def stop(self):
        self.readyState = "ended"


class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection look-alike driven by the test.

    Attributes:
        fail_on: Method names that raise, mapped to how many times.
    """

    def __init__(self, fail_on=None):
        super().__init__()
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.transceivers = []
        self.added_tracks = []
        self.candidates = []
        self.closed = False
        self.fail_on = dict(fail_on or {})
        # When set, setRemoteDescription waits on it
        self.remote_gate = None

    def _maybe_fail(self, name):
        remaining = self.fail_on.get(name, 0)
        if remaining:
            self.fail_on[name] = remaining - 1
            raise RuntimeError(f"{name} failed")

    def addTransceiver(self, kind, direction=None):
        self.transceivers.append((kind, direction))

    def addTrack(self, track):
        self.added_tracks.append(track)

    async def createOffer(self):
        self._maybe_fail("createOffer")
        return RTCSessionDescription(sdp="v=0 fake-offer", type="offer")

    async def createAnswer(self):
        self._maybe_fail("createAnswer")
        return RTCSessionDescription(sdp="v=0 fake-answer", type="answer")

    async def setLocalDescription(self, description):
        self._maybe_fail("setLocalDescription")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        self._maybe_fail("setRemoteDescription")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self._maybe_fail("addIceCandidate")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    # ── test drivers ──

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def set_ice_state(self, state):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def receive_track(self, track):
        self.emit("track", track)


class PeerConnectionFactory:
    """Callable pc_factory that remembers every connection it created."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self):
        pc = FakePeerConnection(**self.kwargs)
        self.created.append(pc)
        return pc

    @property
    def last(self):
        return self.created[-1]


class FakeSignaling:
    """Multiplexer stand-in recording what was published."""

    def __init__(self, local_id="host-1", session_id="abc123def456"):
        self.local_id = local_id
        self.session_id = session_id
        self.published = []
        self.fail = False
        self.handlers = []
        self.started = False
        self.stats = SignalingStats()

    async def publish(self, msg_type, payload=None, receiver=None):
        if self.fail:
            raise SignalingError(msg_type, {"fake": False})
        self.published.append((msg_type, payload, receiver))
        return {"fake": True}

    def of_type(self, msg_type):
        return [p for p in self.published if p[0] == msg_type]

    def subscribe(self, handler):
        self.handlers.append(handler)

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    def channel_status(self):
        return {"fake": True}


class FakeTransport(Transport):
    """Channel whose deliveries and failures are controlled by the test."""

    def __init__(self, name, fail=False, start_error=None):
        super().__init__()
        self.name = name
        self.fail = fail
        self.start_error = start_error
        self.sent = []

    async def _start(self):
        if self.start_error is not None:
            raise self.start_error
        self.available = True

    async def send(self, message):
        if self.fail:
            raise TransportUnavailableError(f"{self.name} down")
        self.sent.append(message)

    async def stop(self):
        self.available = False

    async def deliver(self, message):
        await self._on_message(message, self.name)


async def settle(rounds: int = 5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
