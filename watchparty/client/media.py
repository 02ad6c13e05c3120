"""
Local audio/video capture for WatchParty calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from ..config import (
    AUDIO_DEVICE,
    AUDIO_FORMAT,
    VIDEO_DEVICE,
    VIDEO_FORMAT,
    VIDEO_IDEAL_HEIGHT,
    VIDEO_IDEAL_WIDTH,
)
from ..exceptions import PermissionDenied

logger = logging.getLogger("watchparty.client.media")


@dataclass
class MediaConstraints:
    """What to ask the capture devices for.

    Resolution is passed to the video device. ffmpeg capture devices have no
    camera facing, echo cancellation or noise suppression switches, so those
    are carried along for transports that apply them.
    """
    ideal_width: int = VIDEO_IDEAL_WIDTH
    ideal_height: int = VIDEO_IDEAL_HEIGHT
    facing_mode: str = "user"
    echo_cancellation: bool = True
    noise_suppression: bool = True
    video_device: str = VIDEO_DEVICE
    video_format: Optional[str] = VIDEO_FORMAT
    audio_device: str = AUDIO_DEVICE
    audio_format: Optional[str] = AUDIO_FORMAT


def _blank_video(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format='yuv420p')
    luma, *chroma = blank.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b'\x80' * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _silent_audio(frame: AudioFrame) -> AudioFrame:
    silence = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silence.planes:
        plane.update(bytes(plane.buffer_size))
    silence.sample_rate = frame.sample_rate
    silence.pts = frame.pts
    silence.time_base = frame.time_base
    return silence


class ToggleableTrack(MediaStreamTrack):
    """A capture track that can be muted without detaching it from senders."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    @property
    def readyState(self) -> str:
        if self.source.readyState == "ended":
            return "ended"
        return super().readyState

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return _blank_video(frame)
        return _silent_audio(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class LocalMedia:
    """The local capture stream shared by every peer connection."""

    def __init__(self, audio: Optional[ToggleableTrack], video: Optional[ToggleableTrack],
                 constraints: Optional[MediaConstraints] = None, players: Optional[List[MediaPlayer]] = None):
        self.audio = audio
        self.video = video
        self.constraints = constraints or MediaConstraints()
        self._players = players or []

    def tracks(self) -> List[ToggleableTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def has_ended_track(self) -> bool:
        return any(track.readyState == "ended" for track in self.tracks())

    def toggle_audio(self) -> bool:
        return self._toggle(self.audio)

    def toggle_video(self) -> bool:
        return self._toggle(self.video)

    @property
    def audio_enabled(self) -> bool:
        return bool(self.audio and self.audio.enabled)

    @property
    def video_enabled(self) -> bool:
        return bool(self.video and self.video.enabled)

    @staticmethod
    def _toggle(track: Optional[ToggleableTrack]) -> bool:
        if track is None:
            return False
        track.enabled = not track.enabled
        logger.info(f"🎚️ Local {track.kind} {'enabled' if track.enabled else 'disabled'}")
        return track.enabled

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()
        self._players.clear()


def _open_devices(constraints: MediaConstraints) -> LocalMedia:
    video_player = MediaPlayer(
        constraints.video_device,
        format=constraints.video_format,
        options={'video_size': f"{constraints.ideal_width}x{constraints.ideal_height}"},
    )
    audio_player = MediaPlayer(constraints.audio_device, format=constraints.audio_format)

    video = ToggleableTrack(video_player.video) if video_player.video else None
    audio = ToggleableTrack(audio_player.audio) if audio_player.audio else None
    return LocalMedia(audio, video, constraints, [video_player, audio_player])


async def capture_local_media(constraints: Optional[MediaConstraints] = None) -> LocalMedia:
    """Open the camera and microphone. Refusals surface as PermissionDenied."""
    constraints = constraints or MediaConstraints()
    try:
        media = await asyncio.to_thread(_open_devices, constraints)
    except (OSError, FFmpegError) as e:
        logger.error(f"❌ Error accessing media: {e}")
        raise PermissionDenied(f"Cannot open capture devices: {e}") from e

    logger.info(f"🎥 Local media ready ({', '.join(t.kind for t in media.tracks()) or 'no tracks'})")
    return media
