"""
Client-side playback synchronization for WatchParty.

The controller reconciles the local player against the authoritative state
broadcast by the server. The player follows the room's URL and play/pause
and seeks when the local position drifts. The controller reports the position
on every progress tick and, while its participant is host, rebroadcasts it at
a bounded rate.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Union

from ..config import SyncSettings
from ..models.room import VideoState
from .relay import RelayClient

logger = logging.getLogger("watchparty.client.sync")


class Player(Protocol):
    """Local media player the controller drives."""

    def current_time(self) -> float:
        ...

    def seek(self, seconds: float) -> None:
        ...

    def play(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def load(self, url: str) -> None:
        ...


class SyncPhase(Enum):
    IN_SYNC = "in_sync"
    CORRECTING = "correcting"  # a corrective seek is settling; outbound events are muted


class SyncTrigger(Enum):
    CORRECTIVE_SEEK = "corrective_seek"
    COOLDOWN_ELAPSED = "cooldown_elapsed"


SYNC_TRANSITIONS: Dict[tuple, SyncPhase] = {
    (SyncPhase.IN_SYNC, SyncTrigger.CORRECTIVE_SEEK): SyncPhase.CORRECTING,
    (SyncPhase.CORRECTING, SyncTrigger.CORRECTIVE_SEEK): SyncPhase.CORRECTING,
    (SyncPhase.CORRECTING, SyncTrigger.COOLDOWN_ELAPSED): SyncPhase.IN_SYNC,
}


@dataclass
class SyncStatus:
    """What the UI shows about synchronization."""
    is_synced: bool = True
    drift: float = 0.0
    last_sync_time: float = 0.0
    sync_attempts: int = 0
    is_buffering: bool = False
    connection_quality: str = "good"


class SyncController:
    """Keeps one participant's player aligned with the room."""

    STATUS_RESET_DELAY = 2.0

    def __init__(self, player: Player, relay: RelayClient, user_id: str,
                 settings: Optional[SyncSettings] = None,
                 clock: Callable[[], float] = time.time):
        self.player = player
        self.relay = relay
        self.user_id = user_id
        self.settings = settings or SyncSettings()
        self.clock = clock

        self.video_state: Optional[VideoState] = None
        self.is_host = False
        self.is_buffering = False
        self.status = SyncStatus()

        self._phase = SyncPhase.IN_SYNC
        self._cooldown_until = 0.0
        self._last_broadcast = 0.0
        self._status_reset_at: Optional[float] = None
        # What the local player was last told to show
        self._loaded_url: Optional[str] = None
        self._playing: Optional[bool] = None

    @property
    def phase(self) -> SyncPhase:
        self._refresh()
        return self._phase

    def _transition(self, trigger: SyncTrigger) -> None:
        next_phase = SYNC_TRANSITIONS.get((self._phase, trigger))
        if next_phase is None:
            raise ValueError(f"No sync transition from {self._phase.value} on {trigger.value}")
        self._phase = next_phase

    def _refresh(self) -> None:
        now = self.clock()
        if self._phase is SyncPhase.CORRECTING and now >= self._cooldown_until:
            self._transition(SyncTrigger.COOLDOWN_ELAPSED)
        if self._status_reset_at is not None and now >= self._status_reset_at:
            self.status.is_synced = True
            self.status.drift = 0.0
            self._status_reset_at = None

    def set_host(self, is_host: bool) -> None:
        if is_host != self.is_host:
            logger.info(f"👑 {self.user_id} is {'now' if is_host else 'no longer'} driving playback")
        self.is_host = is_host

    def adjusted_target(self, state: VideoState) -> float:
        """Authoritative position plus capped latency compensation."""
        target = state.played_seconds
        if state.is_playing and state.server_timestamp:
            latency = (self.clock() * 1000 - state.server_timestamp) / 1000
            target += min(max(latency, 0.0), self.settings.latency_cap)
        return target

    def apply_state(self, state: Union[VideoState, dict]) -> Optional[float]:
        """Reconcile with an authoritative state. Returns the seek target, if any."""
        if isinstance(state, dict):
            state = VideoState.from_dict(state)
        self._refresh()
        self.video_state = state
        self._follow_playback(state)

        if self.is_buffering:
            return None

        local = self.player.current_time()
        adjusted = self.adjusted_target(state)
        drift = abs(local - adjusted)

        if abs(local - state.played_seconds) > self.settings.hard_drift_threshold:
            return self._corrective_seek(adjusted, drift)

        if state.updated_by != self.user_id and drift > self.settings.correction_threshold:
            return self._corrective_seek(adjusted, drift)

        return None

    def _follow_playback(self, state: VideoState) -> None:
        if state.url and state.url != self._loaded_url:
            logger.info(f"🎬 Loading {state.url}")
            self.player.load(state.url)
            self._loaded_url = state.url
            self._playing = None
        if state.is_playing != self._playing:
            if state.is_playing:
                self.player.play()
            else:
                self.player.pause()
            self._playing = state.is_playing

    def apply_correction(self, correction: dict) -> Optional[float]:
        """Handle a targeted sync-correction from the server."""
        self._refresh()
        drift = float(correction.get('drift', 0.0))
        logger.info(f"📐 Sync correction received. Drift: {drift:.2f}s, "
                    f"Quality: {correction.get('connectionQuality', 'unknown')}")

        self.status.is_synced = False
        self.status.drift = drift
        self.status.connection_quality = correction.get('connectionQuality') or 'unknown'
        self._status_reset_at = self.clock() + self.STATUS_RESET_DELAY

        base = self.video_state.to_dict() if self.video_state else {}
        base.update({
            'playedSeconds': correction['playedSeconds'],
            'isPlaying': correction['isPlaying'],
            'serverTimestamp': correction['serverTimestamp'],
            'updatedBy': '',
        })
        return self.apply_state(base)

    def resync(self) -> Optional[float]:
        """Manual re-sync to the last authoritative position, ignoring thresholds."""
        self._refresh()
        if self.video_state is None:
            return None
        target = self.video_state.played_seconds
        logger.info(f"🔄 Manual re-sync to {target:.2f}s")
        return self._corrective_seek(target, abs(self.player.current_time() - target))

    def _corrective_seek(self, target: float, drift: float) -> float:
        logger.info(f"⏩ Correcting drift: {drift:.2f}s. Seeking to {target:.2f}s")
        self.player.seek(target)
        self._transition(SyncTrigger.CORRECTIVE_SEEK)
        now = self.clock()
        self._cooldown_until = now + self.settings.seek_cooldown
        self.status.last_sync_time = now
        self.status.sync_attempts += 1
        return target

    async def on_progress(self, played_seconds: float) -> bool:
        """Progress tick from the player. Returns True if a host broadcast went out."""
        self._refresh()
        await self.relay.report_position(played_seconds, self.is_buffering)

        if not self.is_host or self._phase is SyncPhase.CORRECTING:
            return False
        if not (self.video_state and self.video_state.is_playing):
            return False

        now = self.clock()
        if now - self._last_broadcast < self.settings.broadcast_interval:
            return False

        await self.relay.send_video_state({'playedSeconds': played_seconds})
        self._last_broadcast = now
        return True

    async def on_local_play(self) -> bool:
        self._playing = True
        return await self._emit_local({'isPlaying': True, 'playedSeconds': self.player.current_time()})

    async def on_local_pause(self) -> bool:
        self._playing = False
        return await self._emit_local({'isPlaying': False, 'playedSeconds': self.player.current_time()})

    async def on_local_seek(self, seconds: float) -> bool:
        is_playing = self.video_state.is_playing if self.video_state else False
        return await self._emit_local({'playedSeconds': seconds, 'isPlaying': is_playing})

    async def change_url(self, url: str) -> bool:
        url = url.strip()
        if not url:
            return False
        await self.relay.send_video_state({'url': url, 'isPlaying': True, 'playedSeconds': 0})
        return True

    async def _emit_local(self, patch: dict) -> bool:
        # Player events caused by our own corrective seek must not echo back
        if self.phase is SyncPhase.CORRECTING:
            logger.debug(f"🔇 Suppressed local event during cooldown: {patch}")
            return False
        await self.relay.send_video_state(patch)
        return True

    async def on_buffer_start(self) -> None:
        await self._set_buffering(True)

    async def on_buffer_end(self) -> None:
        await self._set_buffering(False)

    async def _set_buffering(self, is_buffering: bool) -> None:
        if is_buffering == self.is_buffering:
            return
        self.is_buffering = is_buffering
        self.status.is_buffering = is_buffering
        await self.relay.report_buffer_state(is_buffering)

    @property
    def sync_status(self) -> SyncStatus:
        self._refresh()
        return self.status
