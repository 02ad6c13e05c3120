"""
Room management service for WatchParty.

The session store is the single authority for every room's playback state,
roster, host and chat log. Every operation is a synchronous mutation so that
no other event can observe a half-applied change.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from ..config import DRIFT_CORRECTION_THRESHOLD
from ..exceptions import TargetUnreachable
from ..models.room import ChatMessage, Room, User, VideoState, now_ms

logger = logging.getLogger("watchparty.services.room_manager")


class RoomStore(ABC):
    """Storage for rooms keyed by room id."""

    @abstractmethod
    def get(self, room_id: str) -> Optional[Room]:
        ...

    @abstractmethod
    def save(self, room: Room) -> None:
        ...

    @abstractmethod
    def delete(self, room_id: str) -> None:
        ...

    @abstractmethod
    def all(self) -> Iterator[Room]:
        ...


class InMemoryRoomStore(RoomStore):
    """Keeps rooms in this process's memory."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def save(self, room: Room) -> None:
        self._rooms[room.id] = room

    def delete(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    def all(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def __len__(self) -> int:
        return len(self._rooms)


@dataclass
class JoinResult:
    room: Room
    user: User
    created: bool

    @property
    def is_host(self) -> bool:
        return self.room.host_id == self.user.id


@dataclass
class LeaveResult:
    room_id: str
    user: User
    new_host: Optional[User]
    room_deleted: bool
    users: List[dict]


@dataclass
class PositionOutcome:
    drift: float
    quality: str
    correction: Optional[dict]
    target_sid: str


class RoomManager:
    """Manages all room operations and state."""

    def __init__(self, store: Optional[RoomStore] = None,
                 correction_threshold: float = DRIFT_CORRECTION_THRESHOLD):
        self._store = store if store is not None else InMemoryRoomStore()
        self._correction_threshold = correction_threshold
        # sid -> {room_id: user_id}
        self._user_sessions: Dict[str, Dict[str, str]] = {}
        self.rooms_created = 0
        logger.info("🏢 RoomManager initialized")

    def get_room(self, room_id: str) -> Optional[Room]:
        """Get a room by its id."""
        return self._store.get(room_id)

    def join_room(self, room_id: str, user_id: str, username: str, sid: str) -> JoinResult:
        """Add a user to a room, creating the room for its first member."""
        room = self._store.get(room_id)
        created = room is None
        if created:
            room = Room(room_id)
            self._store.save(room)
            self.rooms_created += 1

        previous = room.users.get(user_id)
        if previous and previous.sid != sid:
            self._forget_session(previous.sid, room_id)

        room.add_user(user_id, username, sid)
        self._user_sessions.setdefault(sid, {})[room_id] = user_id

        if created:
            logger.info(f"🏠 Room {room_id} created with host {username} ({user_id})")

        return JoinResult(room=room, user=room.users[user_id], created=created)

    def leave_room(self, room_id: str, user_id: str) -> Optional[LeaveResult]:
        """Remove a user from a room, handing over host and deleting empty rooms."""
        room = self._store.get(room_id)
        if not room or user_id not in room.users:
            return None

        user = room.users[user_id]
        new_host_id = room.remove_user(user_id)
        self._forget_session(user.sid, room_id)

        room_deleted = room.is_empty
        if room_deleted:
            self._store.delete(room_id)
            logger.info(f"🗑️ Room {room_id} deleted (empty)")

        return LeaveResult(
            room_id=room_id,
            user=user,
            new_host=room.users[new_host_id] if new_host_id else None,
            room_deleted=room_deleted,
            users=room.user_list(),
        )

    def disconnect(self, sid: str) -> List[LeaveResult]:
        """Remove the user bound to a transport endpoint from all its rooms."""
        results = []
        for room_id, user_id in list(self._user_sessions.get(sid, {}).items()):
            result = self.leave_room(room_id, user_id)
            if result:
                results.append(result)
        self._user_sessions.pop(sid, None)
        return results

    def get_user_session(self, sid: str, room_id: str) -> Optional[str]:
        """User id bound to a transport endpoint within a room."""
        return self._user_sessions.get(sid, {}).get(room_id)

    def rooms_for_sid(self, sid: str) -> List[str]:
        return list(self._user_sessions.get(sid, {}))

    def update_video_state(self, room_id: str, patch: Dict) -> Optional[VideoState]:
        """Merge a validated patch into the room's video state."""
        room = self._store.get(room_id)
        if not room:
            return None

        state = room.update_video(patch)
        logger.debug(
            f"🎮 Sync {self._describe_patch(patch)} | Room: {room_id} | By: {state.updated_by} | "
            f"Position: {state.played_seconds:.2f}s | Playing: {state.is_playing}"
        )
        return state

    def report_position(self, room_id: str, user_id: str, played_seconds: float,
                        is_buffering: bool) -> Optional[PositionOutcome]:
        """Record a position report and decide whether the user needs a correction."""
        room = self._store.get(room_id)
        if not room or user_id not in room.users:
            return None

        state = room.video_state
        user = room.users[user_id]
        now = now_ms()
        drift = abs(played_seconds - state.played_seconds)
        level = user.quality.record(drift, now)

        correction = None
        if drift > self._correction_threshold and state.is_playing and not is_buffering:
            logger.info(f"📐 Detected {drift:.2f}s drift for user {user_id} in room {room_id} (Quality: {level})")
            correction = {
                'playedSeconds': state.played_seconds,
                'isPlaying': state.is_playing,
                'serverTimestamp': now,
                'drift': drift,
                'connectionQuality': level,
            }

        return PositionOutcome(drift=drift, quality=level, correction=correction, target_sid=user.sid)

    def add_chat_message(self, room_id: str, user_id: str, text: str,
                         message_id: Optional[str] = None) -> Optional[ChatMessage]:
        """Append a chat message from a room member."""
        room = self._store.get(room_id)
        if not room or user_id not in room.users:
            return None

        return room.add_message(user_id, room.users[user_id].username, text, message_id)

    def resolve_signal_target(self, room_id: str, to_user_id: str) -> str:
        """Current endpoint of a signal's recipient."""
        room = self._store.get(room_id)
        if not room or to_user_id not in room.users:
            raise TargetUnreachable(room_id, to_user_id)
        return room.users[to_user_id].sid

    def get_room_stats(self) -> Dict:
        """Get statistics about all rooms."""
        rooms = list(self._store.all())
        return {
            'total_rooms': len(rooms),
            'total_users': sum(room.user_count for room in rooms),
            'rooms': {room.id: room.user_count for room in rooms},
        }

    def describe_rooms(self) -> List[Dict]:
        """Per-room summary for detailed health output."""
        return [
            {
                'roomId': room.id,
                'userCount': room.user_count,
                'messageCount': len(room.messages),
                'videoUrl': room.video_state.url or 'none',
                'isPlaying': room.video_state.is_playing,
            }
            for room in self._store.all()
        ]

    def cleanup_empty_rooms(self) -> int:
        """Clean up empty rooms. Returns number of rooms cleaned."""
        empty_rooms = [room.id for room in self._store.all() if room.is_empty]

        for room_id in empty_rooms:
            self._store.delete(room_id)
            logger.info(f"🗑️ Cleaned up empty room {room_id}")

        return len(empty_rooms)

    def _forget_session(self, sid: str, room_id: str) -> None:
        rooms = self._user_sessions.get(sid)
        if rooms is None:
            return
        rooms.pop(room_id, None)
        if not rooms:
            del self._user_sessions[sid]

    @staticmethod
    def _describe_patch(patch: Dict) -> str:
        if 'is_playing' in patch:
            return 'PLAY' if patch['is_playing'] else 'PAUSE'
        if 'played_seconds' in patch:
            return 'SEEK'
        return 'UPDATE'

