"""
Configuration module for WatchParty application.
"""

import logging
import os
import platform
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

# Application settings
APP_NAME = "WatchParty"
VERSION = "0.1.0"
DEBUG = os.getenv("DEBUG", "true").lower() == "true"
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3001))

# Paths
BASE_DIR = Path(__file__).parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", BASE_DIR / "logs"))

# Logging configuration
LOG_LEVEL = logging.INFO if not DEBUG else logging.DEBUG
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE = LOGS_DIR / "watchparty.log"

def setup_logging():
    """Configure application logging."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    # Create formatters
    formatter = logging.Formatter(LOG_FORMAT)

    # File handler
    file_handler = logging.FileHandler(LOG_FILE, encoding='utf-8')
    file_handler.setLevel(LOG_LEVEL)
    file_handler.setFormatter(formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(formatter)

    # Emoji log tags need a UTF-8 console on Windows
    if platform.system() == "Windows" and hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')
        sys.stderr.reconfigure(encoding='utf-8')

    # Configure root logger
    logging.basicConfig(
        level=LOG_LEVEL,
        handlers=[file_handler, console_handler],
        format=LOG_FORMAT
    )

    # Filter out noisy debug messages from the transport stacks
    noisy_loggers = [
        'watchfiles.main',
        'uvicorn.protocols.http',
        'engineio.server',
        'socketio.server',
        'engineio.client',
        'socketio.client',
        'aiortc',
        'aioice',
    ]

    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # Create app logger
    logger = logging.getLogger("watchparty")
    logger.info(f"{APP_NAME} v{VERSION} - Logging initialized")
    logger.info(f"Log file: {LOG_FILE}")

    return logger

# Socket.IO settings
SOCKETIO_CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "*")

# Session store settings
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", 100))
DRIFT_CORRECTION_THRESHOLD = float(os.getenv("DRIFT_CORRECTION_THRESHOLD", 0.3))
QUALITY_GOOD_THRESHOLD = 0.5
QUALITY_FAIR_THRESHOLD = 1.5
RECENT_ERRORS_LIMIT = 10

# Client synchronization settings (seconds)
SYNC_CORRECTION_THRESHOLD = float(os.getenv("SYNC_CORRECTION_THRESHOLD", 0.3))
SYNC_HARD_DRIFT_THRESHOLD = float(os.getenv("SYNC_HARD_DRIFT_THRESHOLD", 2.0))
LATENCY_COMPENSATION_CAP = float(os.getenv("LATENCY_COMPENSATION_CAP", 2.0))
SEEK_COOLDOWN = float(os.getenv("SEEK_COOLDOWN", 1.0))
HOST_BROADCAST_INTERVAL = float(os.getenv("HOST_BROADCAST_INTERVAL", 1.5))

# Peer connection settings
ICE_SERVERS = [
    url.strip() for url in os.getenv(
        "ICE_SERVERS",
        "stun:stun.l.google.com:19302,"
        "stun:stun1.l.google.com:19302,"
        "stun:stun2.l.google.com:19302,"
        "stun:stun.stunprotocol.org:3478"
    ).split(",") if url.strip()
]
ICE_CANDIDATE_POOL_SIZE = int(os.getenv("ICE_CANDIDATE_POOL_SIZE", 10))
HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", 3.0))
RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", 2.0))
RESUME_SETTLE_DELAY = float(os.getenv("RESUME_SETTLE_DELAY", 1.0))

# Media capture settings
VIDEO_IDEAL_WIDTH = int(os.getenv("VIDEO_IDEAL_WIDTH", 1280))
VIDEO_IDEAL_HEIGHT = int(os.getenv("VIDEO_IDEAL_HEIGHT", 720))
VIDEO_DEVICE = os.getenv("VIDEO_DEVICE", "/dev/video0")
VIDEO_FORMAT = os.getenv("VIDEO_FORMAT", "v4l2")
AUDIO_DEVICE = os.getenv("AUDIO_DEVICE", "default")
AUDIO_FORMAT = os.getenv("AUDIO_FORMAT", "pulse")


@dataclass
class SyncSettings:
    """Tunables for the client synchronization controller."""
    correction_threshold: float = SYNC_CORRECTION_THRESHOLD
    hard_drift_threshold: float = SYNC_HARD_DRIFT_THRESHOLD
    latency_cap: float = LATENCY_COMPENSATION_CAP
    seek_cooldown: float = SEEK_COOLDOWN
    broadcast_interval: float = HOST_BROADCAST_INTERVAL


@dataclass
class PeerSettings:
    """Tunables for peer connections and their health monitoring."""
    ice_servers: List[str] = field(default_factory=lambda: list(ICE_SERVERS))
    ice_candidate_pool_size: int = ICE_CANDIDATE_POOL_SIZE
    health_check_interval: float = HEALTH_CHECK_INTERVAL
    reconnect_delay: float = RECONNECT_DELAY
    resume_settle_delay: float = RESUME_SETTLE_DELAY
