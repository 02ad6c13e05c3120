"""
Room client for WatchParty participants.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import PeerSettings, SyncSettings
from ..models import events
from ..models.room import VideoState
from .media import LocalMedia, capture_local_media
from .peer import PeerNetwork
from .relay import RelayClient
from .sync import Player, SyncController

logger = logging.getLogger("watchparty.client.room")


class RoomClient:
    """Joins a room and feeds relay events to playback sync and the call."""

    def __init__(self, relay: RelayClient, player: Player,
                 sync_settings: Optional[SyncSettings] = None,
                 peer_settings: Optional[PeerSettings] = None,
                 media_factory: Callable[[], Awaitable[LocalMedia]] = capture_local_media,
                 pc_factory=None):
        self.relay = relay
        self.user_id = relay.user_id
        self.sync = SyncController(player, relay, relay.user_id, sync_settings)
        self.peers = PeerNetwork(relay, relay.user_id, peer_settings, media_factory, pc_factory)

        self.video_state: Optional[VideoState] = None
        self.messages: List[dict] = []
        self.users: List[dict] = []
        self.host_id: str = ''
        self.buffering_users: Dict[str, bool] = {}
        self.joined = False

        self._register_events()

    def _register_events(self):
        self.relay.on(events.CONNECT, self.handle_connect)
        self.relay.on(events.SYNC_STATE, self.handle_sync_state)
        self.relay.on(events.UPDATE_USERS, self.handle_update_users)
        self.relay.on(events.VIDEO_STATE, self.handle_video_state)
        self.relay.on(events.SYNC_CORRECTION, self.handle_sync_correction)
        self.relay.on(events.CHAT_MESSAGE, self.handle_chat_message)
        self.relay.on(events.USER_CONNECTED, self.handle_user_connected)
        self.relay.on(events.USER_DISCONNECTED, self.handle_user_disconnected)
        self.relay.on(events.USER_BUFFER_STATE, self.handle_user_buffer_state)
        self.relay.on(events.HOST_ASSIGNED, self.handle_host_assigned)
        self.relay.on(events.HOST_CHANGED, self.handle_host_changed)
        self.relay.on(events.SIGNAL, self.handle_signal)
        self.relay.on(events.ERROR, self.handle_error)

    @property
    def is_host(self) -> bool:
        return bool(self.host_id) and self.host_id == self.user_id

    async def join(self, url: str, with_media: bool = True) -> None:
        """Connect to the relay, join the room and start call monitoring."""
        await self.relay.connect(url)
        if with_media:
            await self.peers.acquire_media()
        await self.relay.join_room()
        self.joined = True
        self.peers.start()

    async def leave(self) -> None:
        self.joined = False
        await self.peers.close()
        if self.relay.connected:
            await self.relay.disconnect()

    async def send_message(self, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        await self.relay.send_chat_message(text)
        return True

    async def handle_connect(self):
        # A reconnect arrives on a new sid the server no longer has in the room
        if self.joined:
            logger.info(f"🔄 Reconnected to relay, rejoining room {self.relay.room_id}")
            await self.relay.join_room()

    async def handle_sync_state(self, state: Dict[str, Any]):
        logger.info(f"📥 Received sync-state for room {self.relay.room_id}")
        self.messages = list(state.get('messages') or [])
        self.users = list(state.get('users') or [])
        self.host_id = state.get('hostId') or self.host_id
        self.sync.set_host(self.is_host)

        if state.get('videoState'):
            self.video_state = VideoState.from_dict(state['videoState'])
            self.sync.apply_state(self.video_state)
        await self.peers.handle_users(self.users)

    async def handle_update_users(self, users: List[dict]):
        self.users = list(users)
        await self.peers.handle_users(self.users)

    async def handle_video_state(self, state: Dict[str, Any]):
        self.video_state = VideoState.from_dict(state)
        self.sync.apply_state(self.video_state)

    async def handle_sync_correction(self, correction: Dict[str, Any]):
        self.sync.apply_correction(correction)
        self.video_state = self.sync.video_state

    async def handle_chat_message(self, message: Dict[str, Any]):
        self.messages.append(message)

    async def handle_user_connected(self, user_id: str):
        logger.info(f"👤 User connected: {user_id}")
        await self.peers.handle_user_connected(user_id)

    async def handle_user_disconnected(self, user_id: str):
        logger.info(f"👤 User disconnected: {user_id}")
        self.buffering_users.pop(user_id, None)
        await self.peers.handle_user_disconnected(user_id)

    async def handle_user_buffer_state(self, payload: Dict[str, Any]):
        self.buffering_users[payload['userId']] = bool(payload.get('isBuffering'))

    async def handle_host_assigned(self, payload: Dict[str, Any]):
        if payload.get('isHost'):
            logger.info("👑 You are now the host")
            self.host_id = self.user_id
            self.sync.set_host(True)

    async def handle_host_changed(self, payload: Dict[str, Any]):
        logger.info(f"👑 Host changed to {payload.get('hostUsername')} ({payload.get('hostId')})")
        self.host_id = payload.get('hostId', '')
        self.sync.set_host(self.is_host)

    async def handle_signal(self, payload: Dict[str, Any]):
        await self.peers.handle_signal(payload)

    async def handle_error(self, payload: Dict[str, Any]):
        logger.warning(f"⚠️ Relay error: {payload.get('message')}")
