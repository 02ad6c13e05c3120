"""
Client package for WatchParty participants.
"""

from .media import LocalMedia, MediaConstraints, capture_local_media
from .peer import PeerConnectionManager, PeerNetwork, PeerState
from .relay import RelayClient
from .room import RoomClient
from .sync import SyncController, SyncPhase, SyncStatus

__all__ = [
    'LocalMedia', 'MediaConstraints', 'capture_local_media',
    'PeerConnectionManager', 'PeerNetwork', 'PeerState',
    'RelayClient', 'RoomClient',
    'SyncController', 'SyncPhase', 'SyncStatus',
]
