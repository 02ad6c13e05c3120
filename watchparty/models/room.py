"""
Room models and data structures for WatchParty.
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from ..config import CHAT_HISTORY_LIMIT, QUALITY_FAIR_THRESHOLD, QUALITY_GOOD_THRESHOLD

logger = logging.getLogger("watchparty.models.room")

# Fields a client may set through a video-state patch
VIDEO_STATE_FIELDS = ('is_playing', 'played_seconds', 'url', 'updated_by', 'is_buffering', 'playback_rate')


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class VideoState:
    """Represents the authoritative playback state of a room."""
    is_playing: bool = False
    played_seconds: float = 0.0
    url: str = ""
    last_updated: int = field(default_factory=now_ms)
    updated_by: str = ""
    server_timestamp: int = field(default_factory=now_ms)
    is_buffering: bool = False
    playback_rate: float = 1.0

    def apply_patch(self, patch: Dict[str, Any], now: int) -> None:
        """Merge recognised fields and stamp the server time."""
        for name in VIDEO_STATE_FIELDS:
            if name in patch and patch[name] is not None:
                setattr(self, name, patch[name])

        # Wall clocks may step backwards; the stored stamp never does
        stamp = max(now, self.server_timestamp)
        self.last_updated = stamp
        self.server_timestamp = stamp

    def to_dict(self) -> dict:
        return {
            'isPlaying': self.is_playing,
            'playedSeconds': self.played_seconds,
            'url': self.url,
            'lastUpdated': self.last_updated,
            'updatedBy': self.updated_by,
            'serverTimestamp': self.server_timestamp,
            'isBuffering': self.is_buffering,
            'playbackRate': self.playback_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoState":
        """Build a state from its wire form, tolerating missing keys."""
        now = now_ms()
        return cls(
            is_playing=bool(data.get('isPlaying', False)),
            played_seconds=float(data.get('playedSeconds') or 0.0),
            url=data.get('url') or "",
            last_updated=int(data.get('lastUpdated') or now),
            updated_by=data.get('updatedBy') or "",
            server_timestamp=int(data.get('serverTimestamp') or now),
            is_buffering=bool(data.get('isBuffering', False)),
            playback_rate=float(data.get('playbackRate') or 1.0),
        )


@dataclass
class ConnectionQuality:
    """Running drift statistics for one user."""
    average_drift: float = 0.0
    report_count: int = 0
    level: str = "good"  # good, fair, poor
    last_report_time: Optional[int] = None

    def record(self, drift: float, now: int) -> str:
        """Fold one drift sample into the cumulative average."""
        self.report_count += 1
        self.average_drift += (drift - self.average_drift) / self.report_count
        self.last_report_time = now

        if self.average_drift < QUALITY_GOOD_THRESHOLD:
            self.level = "good"
        elif self.average_drift < QUALITY_FAIR_THRESHOLD:
            self.level = "fair"
        else:
            self.level = "poor"
        return self.level


@dataclass
class User:
    """Represents a user in a room."""
    id: str
    username: str
    sid: str
    joined_at: int = field(default_factory=now_ms)
    quality: ConnectionQuality = field(default_factory=ConnectionQuality)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'username': self.username,
            'joinedAt': self.joined_at,
            'connectionQuality': self.quality.level,
        }


@dataclass(frozen=True)
class ChatMessage:
    """Represents a chat message in a room."""
    id: str
    user_id: str
    username: str
    text: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'username': self.username,
            'message': self.text,
            'timestamp': self.timestamp,
        }


class Room:
    """Represents a room with all its data and operations."""

    def __init__(self, room_id: str, history_limit: int = CHAT_HISTORY_LIMIT):
        self.id = room_id
        self.host_id: Optional[str] = None
        self.users: Dict[str, User] = {}
        self.video_state = VideoState()
        self.messages: Deque[ChatMessage] = deque(maxlen=history_limit)
        self.created_at = now_ms()

        logger.info(f"🏠 Room {room_id} created")

    def add_user(self, user_id: str, username: str, sid: str) -> bool:
        """Add or refresh a user. Returns True if the user is new to the room."""
        existing = self.users.get(user_id)
        if existing:
            # Rejoining keeps the original position for host succession
            existing.sid = sid
            existing.username = username
            logger.info(f"🔄 User {username} ({user_id}) rejoined room {self.id}")
            return False

        self.users[user_id] = User(id=user_id, username=username, sid=sid)
        if self.host_id is None:
            self.host_id = user_id

        logger.info(f"👤 User {username} ({user_id}) joined room {self.id}")
        return True

    def remove_user(self, user_id: str) -> Optional[str]:
        """Remove a user from the room. Returns new host ID if host changed."""
        user = self.users.pop(user_id, None)
        if user is None:
            return None

        logger.info(f"👤 User {user.username} ({user_id}) left room {self.id}")

        if not self.users:
            self.host_id = None
            logger.info(f"🏠 Room {self.id} is now empty")
            return None

        if self.host_id == user_id:
            # Earliest-joined remaining member takes over
            self.host_id = next(iter(self.users))
            logger.info(f"👑 New host in room {self.id}: {self.users[self.host_id].username}")
            return self.host_id

        return None

    def add_message(self, user_id: str, username: str, text: str,
                    message_id: Optional[str] = None, now: Optional[int] = None) -> ChatMessage:
        """Append a chat message, evicting the oldest beyond the history limit."""
        chat_message = ChatMessage(
            id=message_id or uuid.uuid4().hex,
            user_id=user_id,
            username=username,
            text=text,
            timestamp=now if now is not None else now_ms(),
        )

        self.messages.append(chat_message)
        logger.debug(f"💬 Message in room {self.id}: {username}: {text}")
        return chat_message

    def update_video(self, patch: Dict[str, Any], now: Optional[int] = None) -> VideoState:
        """Merge a validated patch into the video state."""
        if patch.get('url') and patch['url'] != self.video_state.url:
            logger.info(f"🎬 Media changed in room {self.id}: {patch['url']}")

        self.video_state.apply_patch(patch, now if now is not None else now_ms())
        return self.video_state

    def snapshot(self) -> dict:
        """Full state sent to a joining user."""
        return {
            'videoState': self.video_state.to_dict(),
            'messages': [msg.to_dict() for msg in self.messages],
            'users': self.user_list(),
            'hostId': self.host_id,
        }

    def user_list(self) -> List[dict]:
        return [user.to_dict() for user in self.users.values()]

    @property
    def user_count(self) -> int:
        """Get the number of users in the room."""
        return len(self.users)

    @property
    def is_empty(self) -> bool:
        """Check if the room is empty."""
        return len(self.users) == 0
