"""
Client side of the WatchParty event relay.
"""

import logging
from typing import Any, Callable, Dict, Optional

import socketio
from socketio.exceptions import BadNamespaceError, ConnectionError as SocketConnectionError

from ..exceptions import TransportUnavailable
from ..models import events

logger = logging.getLogger("watchparty.client.relay")


class RelayClient:
    """Sends and receives relay events for one participant in one room."""

    def __init__(self, room_id: str, user_id: str, username: str,
                 client: Optional[socketio.AsyncClient] = None):
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        self.client = client or socketio.AsyncClient(reconnection=True)

    @property
    def connected(self) -> bool:
        return bool(self.client.connected)

    async def connect(self, url: str) -> None:
        """Open the relay channel. Failures are surfaced, not retried."""
        try:
            await self.client.connect(url)
        except SocketConnectionError as e:
            raise TransportUnavailable(f"Cannot reach relay at {url}: {e}") from e
        logger.info(f"🔗 Connected to relay {url} as {self.user_id}")

    async def disconnect(self) -> None:
        await self.client.disconnect()
        logger.info(f"🔗 Disconnected {self.user_id} from relay")

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.client.on(event, handler)

    async def emit(self, event: str, payload: Any) -> None:
        if not self.connected:
            raise TransportUnavailable(f"Relay is not connected, cannot send {event}")
        try:
            await self.client.emit(event, payload)
        except BadNamespaceError as e:
            raise TransportUnavailable(f"Relay dropped while sending {event}: {e}") from e

    async def join_room(self) -> None:
        await self.emit(events.JOIN_ROOM, {
            'roomId': self.room_id,
            'userId': self.user_id,
            'username': self.username,
        })

    async def send_video_state(self, patch: Dict[str, Any]) -> None:
        await self.emit(events.VIDEO_STATE, {
            'roomId': self.room_id,
            'videoState': {**patch, 'updatedBy': self.user_id},
        })

    async def report_position(self, played_seconds: float, is_buffering: bool) -> None:
        await self.emit(events.POSITION_REPORT, {
            'roomId': self.room_id,
            'userId': self.user_id,
            'playedSeconds': played_seconds,
            'isBuffering': is_buffering,
        })

    async def report_buffer_state(self, is_buffering: bool) -> None:
        await self.emit(events.BUFFER_STATE, {
            'roomId': self.room_id,
            'userId': self.user_id,
            'isBuffering': is_buffering,
        })

    async def send_chat_message(self, text: str) -> None:
        await self.emit(events.CHAT_MESSAGE, {
            'roomId': self.room_id,
            'message': {
                'userId': self.user_id,
                'username': self.username,
                'message': text,
            },
        })

    async def send_signal(self, to: str, signal_type: str, data: Any) -> None:
        await self.emit(events.SIGNAL, {
            'roomId': self.room_id,
            'to': to,
            'signal': {'type': signal_type, 'from': self.user_id, 'data': data},
        })
