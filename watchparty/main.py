"""
WatchParty - Main Application Module

Real-time watch-party authority built with FastAPI and Socket.IO.
"""

import platform
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import socketio
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .config import APP_NAME, SOCKETIO_CORS_ALLOWED_ORIGINS, VERSION, setup_logging
from .handlers.socket_events import SocketEventHandler
from .services.metrics import ServerMetrics, format_uptime
from .services.room_manager import RoomManager

# Initialize logging
logger = setup_logging()

# Create Socket.IO server
sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins=SOCKETIO_CORS_ALLOWED_ORIGINS,
    logger=False,
    engineio_logger=False
)

room_manager = RoomManager()
metrics = ServerMetrics()
socket_handler = SocketEventHandler(sio, room_manager, metrics)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 {APP_NAME} startup completed")
    logger.info("🔌 Socket.IO handlers registered")

    yield

    # Shutdown
    logger.info(f"🛑 {APP_NAME} shutting down")
    await socket_handler.dispatcher.shutdown()
    cleaned = room_manager.cleanup_empty_rooms()
    if cleaned > 0:
        logger.info(f"🗑️ Cleaned up {cleaned} empty rooms")


# Create FastAPI app with lifespan
app = FastAPI(
    title=APP_NAME,
    description="Watch-party synchronization authority",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Combine Socket.IO with FastAPI
socket_app = socketio.ASGIApp(sio, app)

logger.info(f"🎬 {APP_NAME} v{VERSION} initialized")


@app.get("/", response_class=PlainTextResponse)
async def home():
    """Liveness text."""
    return f"{APP_NAME} server is running"


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    uptime = metrics.uptime
    return {
        "status": "healthy",
        "app": APP_NAME,
        "version": VERSION,
        "uptime": uptime,
        "uptimeFormatted": format_uptime(uptime),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "connections": metrics.current_connections,
        "activeRooms": room_manager.get_room_stats()['total_rooms'],
    }


@app.get("/health/detailed")
async def detailed_health_check():
    """Health check with counters, per-room summary and recent errors."""
    uptime = metrics.uptime
    stats = room_manager.get_room_stats()
    return {
        "status": "healthy",
        "server": {
            "uptime": uptime,
            "uptimeFormatted": format_uptime(uptime),
            "startTime": datetime.fromtimestamp(metrics.start_time / 1000, timezone.utc).isoformat(),
            "currentTime": datetime.now(timezone.utc).isoformat(),
            "pythonVersion": sys.version.split()[0],
            "platform": platform.system(),
        },
        "metrics": {
            "totalConnections": metrics.total_connections,
            "currentConnections": metrics.current_connections,
            "totalDisconnections": metrics.total_disconnections,
            "totalRoomsCreated": room_manager.rooms_created,
            "activeRooms": stats['total_rooms'],
            "totalMessages": metrics.total_messages,
            "averageMessagesPerConnection": metrics.average_messages_per_connection(),
        },
        "rooms": room_manager.describe_rooms(),
        "recentErrors": list(metrics.errors),
    }


@app.get("/api/room/{room_id}")
async def get_room_info(room_id: str):
    """Get room information."""
    room = room_manager.get_room(room_id)

    if not room:
        logger.warning(f"❌ API request for non-existent room: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.debug(f"📊 Room info requested: {room_id}")
    return {
        "room_id": room.id,
        "user_count": room.user_count,
        "host_id": room.host_id,
        "has_media": bool(room.video_state.url),
        "is_playing": room.video_state.is_playing,
        "created_at": room.created_at,
    }


@app.get("/api/stats")
async def get_stats():
    """Get server statistics."""
    stats = room_manager.get_room_stats()
    logger.debug(f"📊 Server stats requested: {stats['total_rooms']} rooms, {stats['total_users']} users")
    return stats


if __name__ == "__main__":
    import uvicorn
    from .config import HOST, PORT, DEBUG

    logger.info(f"🎬 Starting {APP_NAME} server...")
    logger.info(f"🌐 Server will be available at: http://{HOST}:{PORT}")

    uvicorn.run(
        "watchparty.main:socket_app",
        host=HOST,
        port=PORT,
        reload=DEBUG,
        log_level="info" if not DEBUG else "debug"
    )
