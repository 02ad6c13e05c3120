"""
Server metrics for WatchParty health endpoints.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict

from ..config import RECENT_ERRORS_LIMIT
from ..models.room import now_ms

logger = logging.getLogger("watchparty.services.metrics")


@dataclass
class ServerMetrics:
    """Process-lifetime counters."""
    start_time: int = field(default_factory=now_ms)
    total_connections: int = 0
    current_connections: int = 0
    total_disconnections: int = 0
    total_messages: int = 0
    errors: Deque[Dict] = field(default_factory=lambda: deque(maxlen=RECENT_ERRORS_LIMIT))

    def connected(self) -> None:
        self.total_connections += 1
        self.current_connections += 1

    def disconnected(self) -> None:
        self.current_connections = max(0, self.current_connections - 1)
        self.total_disconnections += 1

    def message_sent(self) -> None:
        self.total_messages += 1

    def record_error(self, event: str, error: Exception) -> None:
        self.errors.append({
            'event': event,
            'error': str(error),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })

    @property
    def uptime(self) -> int:
        return now_ms() - self.start_time

    def average_messages_per_connection(self) -> float:
        if self.total_connections == 0:
            return 0.0
        return round(self.total_messages / self.total_connections, 2)


def format_uptime(ms: int) -> str:
    """Render an uptime in milliseconds as e.g. '1d 2h 3m 4s'."""
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m {seconds % 60}s"
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
