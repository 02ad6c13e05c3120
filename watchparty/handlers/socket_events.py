"""
Socket.IO event handlers for WatchParty.
"""

import logging
from typing import Any, Awaitable, Dict, Optional, Type, TypeVar

import socketio
from pydantic import BaseModel, ValidationError

from ..exceptions import TargetUnreachable
from ..models import events
from ..models.events import (
    BufferStatePayload,
    ChatMessagePayload,
    JoinRoomPayload,
    PositionReportPayload,
    SignalPayload,
    VideoStatePayload,
)
from ..services.dispatcher import RoomDispatcher
from ..services.metrics import ServerMetrics
from ..services.room_manager import LeaveResult, RoomManager

logger = logging.getLogger("watchparty.handlers.socket_events")

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class SocketEventHandler:
    """Handles all Socket.IO events."""

    def __init__(self, sio: socketio.AsyncServer, room_manager: RoomManager,
                 metrics: Optional[ServerMetrics] = None,
                 dispatcher: Optional[RoomDispatcher] = None):
        self.sio = sio
        self.room_manager = room_manager
        self.metrics = metrics or ServerMetrics()
        self.dispatcher = dispatcher or RoomDispatcher()
        self._register_events()
        logger.info("🔌 Socket event handlers registered")

    def _register_events(self):
        """Register all Socket.IO event handlers."""
        self.sio.on('connect')(self.handle_connect)
        self.sio.on('disconnect')(self.handle_disconnect)
        self.sio.on(events.JOIN_ROOM)(self.handle_join_room)
        self.sio.on(events.VIDEO_STATE)(self.handle_video_state)
        self.sio.on(events.POSITION_REPORT)(self.handle_position_report)
        self.sio.on(events.BUFFER_STATE)(self.handle_buffer_state)
        self.sio.on(events.CHAT_MESSAGE)(self.handle_chat_message)
        self.sio.on(events.SIGNAL)(self.handle_signal)

    async def handle_connect(self, sid: str, environ: Dict, auth: Any = None):
        """Handle client connection."""
        self.metrics.connected()
        logger.info(f"🔗 Client {sid} connected | Current: {self.metrics.current_connections} | "
                    f"Total: {self.metrics.total_connections}")

    async def handle_disconnect(self, sid: str, reason: Any = None):
        """Handle client disconnection."""
        self.metrics.disconnected()
        logger.info(f"🔗 Client {sid} disconnected (Reason: {reason}) | Current: {self.metrics.current_connections}")

        for room_id in self.room_manager.rooms_for_sid(sid):
            await self._dispatch(room_id, 'disconnect', sid, self._leave_room(sid, room_id))

    async def handle_join_room(self, sid: str, data: Dict[str, Any]):
        """Handle user joining a room."""
        payload = await self._parse(JoinRoomPayload, data, sid, events.JOIN_ROOM)
        if payload:
            await self._dispatch(payload.room_id, events.JOIN_ROOM, sid, self._join_room(sid, payload))

    async def handle_video_state(self, sid: str, data: Dict[str, Any]):
        """Handle a playback state patch (play, pause, seek, url change)."""
        payload = await self._parse(VideoStatePayload, data, sid, events.VIDEO_STATE)
        if payload:
            await self._dispatch(payload.room_id, events.VIDEO_STATE, sid, self._update_video_state(sid, payload))

    async def handle_position_report(self, sid: str, data: Dict[str, Any]):
        """Handle a periodic position report used for drift detection."""
        payload = await self._parse(PositionReportPayload, data, sid, events.POSITION_REPORT)
        if payload:
            await self._dispatch(payload.room_id, events.POSITION_REPORT, sid, self._report_position(payload))

    async def handle_buffer_state(self, sid: str, data: Dict[str, Any]):
        """Handle a buffering start/stop notice."""
        payload = await self._parse(BufferStatePayload, data, sid, events.BUFFER_STATE)
        if payload:
            await self._dispatch(payload.room_id, events.BUFFER_STATE, sid, self._buffer_state(sid, payload))

    async def handle_chat_message(self, sid: str, data: Dict[str, Any]):
        """Handle chat messages."""
        payload = await self._parse(ChatMessagePayload, data, sid, events.CHAT_MESSAGE)
        if payload:
            await self._dispatch(payload.room_id, events.CHAT_MESSAGE, sid, self._chat_message(sid, payload))

    async def handle_signal(self, sid: str, data: Dict[str, Any]):
        """Relay a WebRTC negotiation message to exactly one participant."""
        payload = await self._parse(SignalPayload, data, sid, events.SIGNAL)
        if payload:
            await self._dispatch(payload.room_id, events.SIGNAL, sid, self._relay_signal(payload))

    async def _join_room(self, sid: str, payload: JoinRoomPayload):
        await self.sio.enter_room(sid, payload.room_id)
        result = self.room_manager.join_room(payload.room_id, payload.user_id, payload.username, sid)
        room = result.room
        logger.info(f"🚪 User \"{payload.username}\" ({payload.user_id}) joined room \"{room.id}\" via socket {sid}")

        await self.sio.emit(events.UPDATE_USERS, room.user_list(), room=room.id)
        await self.sio.emit(events.SYNC_STATE, room.snapshot(), room=sid)

        if result.is_host:
            await self.sio.emit(events.HOST_ASSIGNED, {'isHost': True}, room=sid)
            logger.info(f"👑 {payload.username} ({payload.user_id}) is the host of room {room.id}")

        await self.sio.emit(events.USER_CONNECTED, payload.user_id, room=room.id, skip_sid=sid)

    async def _update_video_state(self, sid: str, payload: VideoStatePayload):
        patch = payload.video_state.fields()
        if 'updated_by' not in patch:
            sender = self.room_manager.get_user_session(sid, payload.room_id)
            if sender:
                patch['updated_by'] = sender

        state = self.room_manager.update_video_state(payload.room_id, patch)
        if state is None:
            await self.sio.emit(events.ERROR, {'message': 'Room not found'}, room=sid)
            return

        # The sender gets the echo too; it needs the server timestamp
        await self.sio.emit(events.VIDEO_STATE, state.to_dict(), room=payload.room_id)

    async def _report_position(self, payload: PositionReportPayload):
        outcome = self.room_manager.report_position(
            payload.room_id, payload.user_id, payload.played_seconds, payload.is_buffering
        )
        if outcome is None:
            logger.debug(f"📍 Position report for unknown user {payload.user_id} in room {payload.room_id}")
            return

        if outcome.correction:
            await self.sio.emit(events.SYNC_CORRECTION, outcome.correction, room=outcome.target_sid)

    async def _buffer_state(self, sid: str, payload: BufferStatePayload):
        room = self.room_manager.get_room(payload.room_id)
        if not room or payload.user_id not in room.users:
            return

        logger.info(f"⏳ User {payload.user_id} in room {payload.room_id} is "
                    f"{'buffering' if payload.is_buffering else 'ready'}")
        await self.sio.emit(events.USER_BUFFER_STATE, {
            'userId': payload.user_id,
            'isBuffering': payload.is_buffering,
        }, room=payload.room_id, skip_sid=sid)

    async def _chat_message(self, sid: str, payload: ChatMessagePayload):
        text = payload.message.message.strip()
        if not text:
            return

        user_id = self.room_manager.get_user_session(sid, payload.room_id)
        chat_message = None
        if user_id:
            chat_message = self.room_manager.add_chat_message(payload.room_id, user_id, text, payload.message.id)

        if chat_message is None:
            logger.warning(f"💬 Socket {sid} not in room {payload.room_id} when trying to send message")
            await self.sio.emit(events.ERROR, {'message': 'Not in a room'}, room=sid)
            return

        self.metrics.message_sent()
        await self.sio.emit(events.CHAT_MESSAGE, chat_message.to_dict(), room=payload.room_id)

    async def _relay_signal(self, payload: SignalPayload):
        try:
            target_sid = self.room_manager.resolve_signal_target(payload.room_id, payload.to)
        except TargetUnreachable as e:
            logger.warning(f"📡 Dropping {payload.signal.type} from {payload.signal.sender}: {e}")
            return

        await self.sio.emit(events.SIGNAL, payload.signal.to_wire(), room=target_sid)

    async def _leave_room(self, sid: str, room_id: str):
        user_id = self.room_manager.get_user_session(sid, room_id)
        result = self.room_manager.leave_room(room_id, user_id) if user_id else None
        if result is None:
            return
        await self._announce_departure(sid, result)

    async def _announce_departure(self, sid: str, result: LeaveResult):
        logger.info(f"👋 User {result.user.username} ({result.user.id}) left room {result.room_id}")
        if result.room_deleted:
            return

        await self.sio.emit(events.USER_DISCONNECTED, result.user.id, room=result.room_id, skip_sid=sid)
        await self.sio.emit(events.UPDATE_USERS, result.users, room=result.room_id, skip_sid=sid)

        if result.new_host:
            logger.info(f"👑 Host transferred to {result.new_host.username} ({result.new_host.id}) "
                        f"in room {result.room_id}")
            await self.sio.emit(events.HOST_CHANGED, {
                'hostId': result.new_host.id,
                'hostUsername': result.new_host.username,
            }, room=result.room_id, skip_sid=sid)
            await self.sio.emit(events.HOST_ASSIGNED, {'isHost': True}, room=result.new_host.sid)

    async def _parse(self, model: Type[PayloadT], data: Any, sid: str, event: str) -> Optional[PayloadT]:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid {event} payload from {sid}: {e.error_count()} error(s)")
            await self.sio.emit(events.ERROR, {'message': f'Invalid {event} payload'}, room=sid)
            return None

    async def _dispatch(self, room_id: str, event: str, sid: str, work: Awaitable[None]) -> None:
        try:
            await self.dispatcher.submit(room_id, work)
        except Exception as e:
            logger.error(f"❌ Error handling {event} for room {room_id}: {e}")
            self.metrics.record_error(event, e)
            await self.sio.emit(events.ERROR, {'message': 'Server error occurred'}, room=sid)
