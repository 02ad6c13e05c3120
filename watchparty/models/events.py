"""
Event names and payload schemas for the WatchParty event relay.

Inbound payloads are validated with pydantic before they reach the session
store. Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Transport
CONNECT = 'connect'

# Client -> authority
JOIN_ROOM = 'join-room'
POSITION_REPORT = 'position-report'
BUFFER_STATE = 'buffer-state'

# Authority -> client(s)
SYNC_STATE = 'sync-state'
UPDATE_USERS = 'update-users'
SYNC_CORRECTION = 'sync-correction'
USER_CONNECTED = 'user-connected'
USER_DISCONNECTED = 'user-disconnected'
USER_BUFFER_STATE = 'user-buffer-state'
HOST_ASSIGNED = 'host-assigned'
HOST_CHANGED = 'host-changed'
ERROR = 'error'

# Both directions
VIDEO_STATE = 'video-state'
CHAT_MESSAGE = 'chat-message'
SIGNAL = 'signal'

SIGNAL_OFFER = 'offer'
SIGNAL_ANSWER = 'answer'
SIGNAL_ICE_CANDIDATE = 'ice-candidate'


class WireModel(BaseModel):
    """Base for relay payloads: camelCase aliases, unknown keys dropped."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
    )


class JoinRoomPayload(WireModel):
    room_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    username: str = Field(min_length=1)


class VideoStatePatch(WireModel):
    """The only video-state fields a client may change."""
    is_playing: Optional[bool] = None
    played_seconds: Optional[float] = Field(default=None, ge=0)
    url: Optional[str] = None
    updated_by: Optional[str] = None
    is_buffering: Optional[bool] = None
    playback_rate: Optional[float] = Field(default=None, gt=0)

    def fields(self) -> dict:
        return self.model_dump(exclude_none=True)


class VideoStatePayload(WireModel):
    room_id: str = Field(min_length=1)
    video_state: VideoStatePatch


class PositionReportPayload(WireModel):
    room_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    played_seconds: float = Field(ge=0)
    is_buffering: bool = False


class BufferStatePayload(WireModel):
    room_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    is_buffering: bool


class ChatMessageBody(WireModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    message: str = Field(min_length=1)


class ChatMessagePayload(WireModel):
    room_id: str = Field(min_length=1)
    message: ChatMessageBody


class Signal(WireModel):
    type: Literal['offer', 'answer', 'ice-candidate']
    sender: str = Field(alias='from', min_length=1)
    data: Any = None

    def to_wire(self) -> dict:
        return {'from': self.sender, 'type': self.type, 'data': self.data}


class SignalPayload(WireModel):
    room_id: str = Field(min_length=1)
    to: str = Field(min_length=1)
    signal: Signal
