"""
Peer connection lifecycle for WatchParty calls.

Every remote participant gets its own PeerConnectionManager: a small state
machine around one aiortc RTCPeerConnection, fed by an ordered queue of
negotiation messages. PeerNetwork owns the managers of the local participant,
routes relay events to them and keeps the links healthy.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp

from ..config import PeerSettings
from ..exceptions import NegotiationError, TransportUnavailable
from ..models import events
from .media import LocalMedia, capture_local_media
from .relay import RelayClient

logger = logging.getLogger("watchparty.client.peer")


class PeerState(Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


PEER_TRANSITIONS: Dict[PeerState, Set[PeerState]] = {
    PeerState.ABSENT: {PeerState.CONNECTING, PeerState.CLOSED},
    PeerState.CONNECTING: {PeerState.CONNECTED, PeerState.DISCONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.CONNECTED: {PeerState.DISCONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.DISCONNECTED: {PeerState.CONNECTING, PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED},
    PeerState.FAILED: {PeerState.CONNECTING, PeerState.CLOSED},
    PeerState.CLOSED: set(),
}

# RTCPeerConnection.connectionState -> tag. A transport that closes on its own
# is recycled like a failed one; CLOSED is reserved for close().
REPORTED_STATES = {
    "new": PeerState.CONNECTING,
    "connecting": PeerState.CONNECTING,
    "connected": PeerState.CONNECTED,
    "disconnected": PeerState.DISCONNECTED,
    "failed": PeerState.FAILED,
    "closed": PeerState.FAILED,
}

UNHEALTHY_STATES = (PeerState.FAILED, PeerState.DISCONNECTED)


def describe(description: RTCSessionDescription) -> dict:
    return {'type': description.type, 'sdp': description.sdp}


def parse_candidate(data: dict):
    """Build an aiortc candidate from a browser-style candidate dict."""
    sdp = data.get('candidate') or ''
    if sdp.startswith('candidate:'):
        sdp = sdp[len('candidate:'):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


def rtc_configuration(settings: PeerSettings) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in settings.ice_servers])


class PeerConnectionManager:
    """Negotiates and maintains the media link to one remote participant."""

    def __init__(self, peer_id: str, local_id: str, relay: RelayClient,
                 pc_factory: Callable[[], RTCPeerConnection],
                 outbound_tracks: Callable[[], List[MediaStreamTrack]],
                 on_remote_track: Optional[Callable[[str, MediaStreamTrack], None]] = None):
        self.peer_id = peer_id
        self.local_id = local_id
        self.relay = relay
        self.pc_factory = pc_factory
        self.outbound_tracks = outbound_tracks
        self.on_remote_track = on_remote_track

        self.pc: Optional[RTCPeerConnection] = None
        self.state = PeerState.ABSENT
        self.reconnect_timer: Optional[asyncio.TimerHandle] = None
        self.remote_tracks: List[MediaStreamTrack] = []

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def is_initiator(self) -> bool:
        return self.local_id < self.peer_id

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_timer is not None

    def _transition(self, new_state: PeerState) -> None:
        if new_state is self.state:
            return
        if new_state not in PEER_TRANSITIONS[self.state]:
            raise ValueError(f"Peer {self.peer_id}: no transition {self.state.value} -> {new_state.value}")
        logger.debug(f"🔀 Peer {self.peer_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def observe(self, reported: str) -> PeerState:
        """Fold a transport-reported connection state into the tag."""
        new_state = REPORTED_STATES.get(reported)
        if new_state is None or new_state is self.state or self.state is PeerState.CLOSED:
            return self.state
        if new_state not in PEER_TRANSITIONS[self.state]:
            logger.warning(f"⚠️ Peer {self.peer_id}: ignoring reported {reported} while {self.state.value}")
            return self.state
        self._transition(new_state)
        return self.state

    def refresh_state(self) -> PeerState:
        if self.pc is not None:
            self.observe(self.pc.connectionState)
        return self.state

    # Inbound channel

    def enqueue(self, job: Callable[[], Awaitable[None]]) -> None:
        """Queue work for this peer; jobs run one at a time in arrival order."""
        if self.state is PeerState.CLOSED:
            logger.debug(f"Peer {self.peer_id} closed, dropping queued work")
            return
        self._inbox.put_nowait(job)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work())

    async def drain(self) -> None:
        """Wait until everything queued so far has been handled."""
        await self._inbox.join()

    async def _work(self) -> None:
        while True:
            job = await self._inbox.get()
            try:
                await job()
            except NegotiationError as e:
                # Left in place; the health sweep recycles the connection
                logger.warning(f"⚠️ {e}")
            except TransportUnavailable as e:
                logger.error(f"❌ Relay unavailable while talking to {self.peer_id}: {e}")
            except Exception as e:
                logger.error(f"❌ Error handling work for peer {self.peer_id}: {e}")
            finally:
                self._inbox.task_done()

    def deliver(self, signal_type: str, data: Any) -> None:
        handlers = {
            events.SIGNAL_OFFER: self.handle_offer,
            events.SIGNAL_ANSWER: self.handle_answer,
            events.SIGNAL_ICE_CANDIDATE: self.handle_ice_candidate,
        }
        handler = handlers.get(signal_type)
        if handler is None:
            logger.warning(f"⚠️ Unknown signal type {signal_type} from {self.peer_id}")
            return
        self.enqueue(lambda: handler(data))

    def request_call(self) -> None:
        self.enqueue(self.start_call)

    # Negotiation

    async def _ensure_connection(self) -> RTCPeerConnection:
        if self.state is PeerState.CLOSED:
            raise NegotiationError(self.peer_id, "connection setup", RuntimeError("manager is closed"))

        if self.pc is not None and self.refresh_state() is not PeerState.FAILED:
            return self.pc

        if self.pc is not None:
            # Unusable link: replace the handle, keep the manager
            old, self.pc = self.pc, None
            await old.close()

        pc = self.pc_factory()
        self.pc = pc
        self._wire(pc)
        for track in self.outbound_tracks():
            pc.addTrack(track)
        self._transition(PeerState.CONNECTING)
        return pc

    def _wire(self, pc: RTCPeerConnection) -> None:
        @pc.on("connectionstatechange")
        def on_connection_state_change():
            if pc is self.pc:
                logger.info(f"📶 Peer {self.peer_id} connection state: {pc.connectionState}")
                self.observe(pc.connectionState)

        @pc.on("track")
        def on_track(track):
            if pc is not self.pc:
                return
            self.remote_tracks.append(track)
            if self.on_remote_track:
                self.on_remote_track(self.peer_id, track)

    async def start_call(self) -> None:
        pc = await self._ensure_connection()
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(self.peer_id, "create offer", e) from e

        logger.info(f"📞 Sending offer to {self.peer_id}")
        await self.relay.send_signal(self.peer_id, events.SIGNAL_OFFER, describe(pc.localDescription))

    async def handle_offer(self, data: dict) -> None:
        pc = await self._ensure_connection()
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=data['sdp'], type=data['type']))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(self.peer_id, "answer offer", e) from e

        await self.relay.send_signal(self.peer_id, events.SIGNAL_ANSWER, describe(pc.localDescription))

    async def handle_answer(self, data: dict) -> None:
        if self.pc is None:
            logger.warning(f"⚠️ Answer from {self.peer_id} without a connection - ignoring")
            return
        if self.pc.signalingState != "have-local-offer":
            logger.warning(f"⚠️ Received answer in {self.pc.signalingState} state from {self.peer_id} - ignoring")
            return
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=data['sdp'], type=data['type']))
        except Exception as e:
            raise NegotiationError(self.peer_id, "apply answer", e) from e

    async def handle_ice_candidate(self, data: dict) -> None:
        if self.pc is None or not data or not data.get('candidate'):
            return
        try:
            await self.pc.addIceCandidate(parse_candidate(data))
        except Exception as e:
            logger.warning(f"⚠️ Error adding ICE candidate from {self.peer_id}: {e}")

    # Health

    def schedule_reconnect(self, delay: float, callback: Callable[[str], None]) -> bool:
        """Arm the reconnect timer unless one is already pending."""
        if self.reconnect_timer is not None or self.state is PeerState.CLOSED:
            return False
        self.reconnect_timer = asyncio.get_running_loop().call_later(delay, self._fire_reconnect, callback)
        return True

    def _fire_reconnect(self, callback: Callable[[str], None]) -> None:
        self.reconnect_timer = None
        callback(self.peer_id)

    def cancel_reconnect(self) -> None:
        if self.reconnect_timer is not None:
            self.reconnect_timer.cancel()
            self.reconnect_timer = None

    def has_live_inbound_track(self) -> bool:
        if self.pc is None:
            return False
        return any(
            receiver.track is not None and receiver.track.readyState == "live"
            for receiver in self.pc.getReceivers()
        )

    def replace_outbound_track(self, track: MediaStreamTrack) -> bool:
        """Swap the outgoing track of the same kind without renegotiating."""
        if self.pc is None:
            return False
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == track.kind:
                try:
                    sender.replaceTrack(track)
                except Exception as e:
                    logger.error(f"❌ Error replacing {track.kind} track for {self.peer_id}: {e}")
                    return False
                return True
        return False

    async def close(self) -> None:
        """Release the handle, the timer and the worker. Terminal."""
        if self.state is PeerState.CLOSED:
            return
        self.cancel_reconnect()

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

        pc, self.pc = self.pc, None
        self._transition(PeerState.CLOSED)
        self.remote_tracks.clear()
        if pc is not None:
            await pc.close()
        logger.info(f"🔌 Closed connection to {self.peer_id}")


class PeerNetwork:
    """All peer links of the local participant."""

    def __init__(self, relay: RelayClient, local_id: str,
                 settings: Optional[PeerSettings] = None,
                 media_factory: Callable[[], Awaitable[LocalMedia]] = capture_local_media,
                 pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
                 on_remote_track: Optional[Callable[[str, MediaStreamTrack], None]] = None):
        self.relay = relay
        self.local_id = local_id
        self.settings = settings or PeerSettings()
        self.media_factory = media_factory
        self.on_remote_track = on_remote_track

        if pc_factory is None:
            configuration = rtc_configuration(self.settings)
            logger.debug(f"ICE servers: {self.settings.ice_servers} "
                         f"(candidate pool size {self.settings.ice_candidate_pool_size})")
            pc_factory = lambda: RTCPeerConnection(configuration=configuration)  # noqa: E731
        self.pc_factory = pc_factory

        self.peers: Dict[str, PeerConnectionManager] = {}
        self.local_media: Optional[LocalMedia] = None
        self.foreground = True

        self._media_relay = MediaRelay()
        self._health_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    async def acquire_media(self) -> LocalMedia:
        """Open local capture. PermissionDenied is surfaced, not retried."""
        self.local_media = await self.media_factory()
        return self.local_media

    def start(self) -> None:
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())

    def _outbound_tracks(self) -> List[MediaStreamTrack]:
        if self.local_media is None:
            return []
        return [self._media_relay.subscribe(track) for track in self.local_media.tracks()]

    def _create_peer(self, peer_id: str) -> PeerConnectionManager:
        manager = PeerConnectionManager(
            peer_id, self.local_id, self.relay, self.pc_factory,
            self._outbound_tracks, self.on_remote_track,
        )
        self.peers[peer_id] = manager
        return manager

    # Relay events

    async def handle_signal(self, payload: dict) -> None:
        peer_id = payload.get('from')
        signal_type = payload.get('type')
        if not peer_id or peer_id == self.local_id:
            return

        logger.debug(f"📡 Received {signal_type} from {peer_id}")
        manager = self.peers.get(peer_id)
        if signal_type == events.SIGNAL_OFFER:
            if manager is None or manager.state is PeerState.CLOSED:
                manager = self._create_peer(peer_id)
        elif manager is None:
            logger.debug(f"Ignoring {signal_type} from untracked peer {peer_id}")
            return

        manager.deliver(signal_type, payload.get('data'))

    def maybe_call(self, peer_id: str) -> bool:
        """Offer to a peer when this side is the designated initiator."""
        if peer_id == self.local_id or not self.local_id < peer_id:
            return False
        existing = self.peers.get(peer_id)
        if existing is not None and existing.state is not PeerState.CLOSED:
            return False
        self._create_peer(peer_id).request_call()
        return True

    async def handle_user_connected(self, peer_id: str) -> None:
        self.maybe_call(peer_id)

    async def handle_users(self, users: List[dict]) -> None:
        for user in users:
            self.maybe_call(user.get('id', ''))

    async def handle_user_disconnected(self, peer_id: str) -> None:
        await self.teardown(peer_id)

    async def teardown(self, peer_id: str) -> None:
        manager = self.peers.pop(peer_id, None)
        if manager is not None:
            await manager.close()

    # Health

    def check_health(self) -> int:
        """One sweep: arm a reconnect for every failed or disconnected peer."""
        scheduled = 0
        for peer_id, manager in list(self.peers.items()):
            state = manager.refresh_state()
            if state not in UNHEALTHY_STATES:
                continue
            if manager.schedule_reconnect(self.settings.reconnect_delay, self._spawn_reconnect):
                logger.info(f"🩺 Connection {state.value} for peer {peer_id}, scheduling reconnect")
                scheduled += 1
        return scheduled

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            if self.foreground:
                self.check_health()

    def _spawn_reconnect(self, peer_id: str) -> None:
        task = asyncio.create_task(self.reconnect(peer_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def reconnect(self, peer_id: str) -> bool:
        """Tear the link down; re-offer only when this side initiates."""
        logger.info(f"🔁 Attempting to reconnect to peer: {peer_id}")
        await self.teardown(peer_id)
        if self.local_id < peer_id:
            logger.info(f"📞 Reinitiating call to {peer_id}")
            self._create_peer(peer_id).request_call()
            return True
        return False

    async def set_foreground(self, visible: bool) -> List[str]:
        self.foreground = visible
        if not visible:
            logger.info("🌙 Backgrounded")
            return []
        return await self.resume()

    async def resume(self) -> List[str]:
        """Heal media and links after returning to the foreground.

        PermissionDenied from reacquiring capture propagates to the caller.
        """
        logger.info("☀️ Back in foreground, checking connections...")
        await asyncio.sleep(self.settings.resume_settle_delay)

        if self.local_media is not None and self.local_media.has_ended_track():
            await self._reacquire_media()

        reconnected = []
        for peer_id, manager in list(self.peers.items()):
            state = manager.refresh_state()
            if state in (PeerState.FAILED, PeerState.DISCONNECTED, PeerState.CLOSED):
                await self.reconnect(peer_id)
                reconnected.append(peer_id)
            elif state is PeerState.CONNECTED and not manager.has_live_inbound_track():
                logger.info(f"📭 No active tracks for peer {peer_id}, reconnecting...")
                await self.reconnect(peer_id)
                reconnected.append(peer_id)
        return reconnected

    async def _reacquire_media(self) -> None:
        logger.info("🎥 Local tracks ended, reinitializing media...")
        fresh = await self.media_factory()

        old, self.local_media = self.local_media, fresh
        for manager in self.peers.values():
            for track in fresh.tracks():
                manager.replace_outbound_track(self._media_relay.subscribe(track))
        if old is not None:
            old.stop()

    # Local media controls

    def toggle_audio(self) -> bool:
        return self.local_media.toggle_audio() if self.local_media else False

    def toggle_video(self) -> bool:
        return self.local_media.toggle_video() if self.local_media else False

    async def close(self) -> None:
        """Release every timer, task, connection and capture device."""
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        for peer_id in list(self.peers):
            await self.teardown(peer_id)

        if self.local_media is not None:
            self.local_media.stop()
            self.local_media = None
