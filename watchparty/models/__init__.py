"""
Models package for WatchParty.
"""

from .room import Room, VideoState, ConnectionQuality, ChatMessage, User, now_ms

__all__ = ['Room', 'VideoState', 'ConnectionQuality', 'ChatMessage', 'User', 'now_ms']
