"""
Error taxonomy for WatchParty.
"""


class WatchPartyError(Exception):
    """Base class for all WatchParty errors."""


class TransportUnavailable(WatchPartyError):
    """The relay channel is down or was never connected."""


class PermissionDenied(WatchPartyError):
    """A capture device was refused or could not be opened."""


class NegotiationError(WatchPartyError):
    """Applying a session description or ICE candidate failed."""

    def __init__(self, peer_id: str, stage: str, cause: Exception):
        super().__init__(f"{stage} failed for peer {peer_id}: {cause}")
        self.peer_id = peer_id
        self.stage = stage
        self.cause = cause


class TargetUnreachable(WatchPartyError):
    """A signal was addressed to a participant that is not in the room."""

    def __init__(self, room_id: str, user_id: str):
        super().__init__(f"Target user {user_id} not found in room {room_id}")
        self.room_id = room_id
        self.user_id = user_id
