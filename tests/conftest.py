import os
import tempfile
from collections import defaultdict
from typing import Any, Dict, List, Optional

os.environ.setdefault("LOGS_DIR", os.path.join(tempfile.gettempdir(), "watchparty-test-logs"))

import pytest
from aiortc import RTCSessionDescription

from watchparty.client.relay import RelayClient
from watchparty.handlers.socket_events import SocketEventHandler
from watchparty.services.room_manager import RoomManager


class FakeSocketServer:
    """Stands in for socketio.AsyncServer and records deliveries per sid."""

    def __init__(self):
        self.handlers: Dict[str, Any] = {}
        self.rooms: Dict[str, set] = defaultdict(set)
        self.delivered: List[tuple] = []

    def on(self, event):
        def register(handler):
            self.handlers[event] = handler
            return handler
        return register

    async def enter_room(self, sid, room):
        self.rooms[room].add(sid)

    async def emit(self, event, data=None, room=None, to=None, skip_sid=None):
        target = to or room
        sids = set(self.rooms[target]) if target in self.rooms else {target}
        for sid in sorted(sids):
            if sid != skip_sid:
                self.delivered.append((sid, event, data))

    def drop(self, sid):
        for members in self.rooms.values():
            members.discard(sid)

    def received(self, sid, event) -> List[Any]:
        return [data for to, name, data in self.delivered if to == sid and name == event]

    def recipients(self, event) -> List[str]:
        return [to for to, name, _ in self.delivered if name == event]

    def clear(self):
        self.delivered.clear()


class FakeSocketClient:
    """Stands in for socketio.AsyncClient."""

    def __init__(self):
        self.connected = True
        self.handlers: Dict[str, Any] = {}
        self.sent: List[tuple] = []

    async def connect(self, url):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None):
        self.sent.append((event, data))

    def sent_events(self, event) -> List[Any]:
        return [data for name, data in self.sent if name == event]


class FakePlayer:
    def __init__(self, position: float = 0.0):
        self.position = position
        self.seeks: List[float] = []
        self.playing = False
        self.url: Optional[str] = None
        self.commands: List[str] = []

    def current_time(self) -> float:
        return self.position

    def seek(self, seconds: float) -> None:
        self.seeks.append(seconds)
        self.position = seconds

    def play(self) -> None:
        self.commands.append("play")
        self.playing = True

    def pause(self) -> None:
        self.commands.append("pause")
        self.playing = False

    def load(self, url: str) -> None:
        self.commands.append(f"load {url}")
        self.url = url


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTrack:
    def __init__(self, kind: str, ready_state: str = "live"):
        self.kind = kind
        self.readyState = ready_state
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True
        self.readyState = "ended"


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced: List[Any] = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakeReceiver:
    def __init__(self, track):
        self.track = track


class FakePeerConnection:
    """Stands in for aiortc.RTCPeerConnection."""

    def __init__(self):
        self.connectionState = "new"
        self.signalingState = "stable"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.receivers: List[FakeReceiver] = []
        self.candidates: List[Any] = []
        self.listeners: Dict[str, Any] = {}
        self.closed = False
        self.fail_remote = False
        self.fail_candidates = False

    def on(self, event):
        def register(handler):
            self.listeners[event] = handler
            return handler
        return register

    def report(self, state: str):
        self.connectionState = state
        self.listeners["connectionstatechange"]()

    def addTrack(self, track):
        self.senders.append(FakeSender(track))

    def getSenders(self):
        return list(self.senders)

    def getReceivers(self):
        return list(self.receivers)

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        if self.fail_remote:
            raise ValueError("malformed sdp")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        if self.fail_candidates:
            raise ValueError("bad candidate")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"
        self.signalingState = "closed"


class PeerConnectionPool:
    """pc_factory that remembers every connection it made."""

    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


@pytest.fixture
def sio():
    return FakeSocketServer()


@pytest.fixture
def room_manager():
    return RoomManager()


@pytest.fixture
def handler(sio, room_manager):
    return SocketEventHandler(sio, room_manager)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def socket_client():
    return FakeSocketClient()


@pytest.fixture
def relay(socket_client):
    return RelayClient("movie-night", "b", "Bea", client=socket_client)


@pytest.fixture
def pc_pool():
    return PeerConnectionPool()
