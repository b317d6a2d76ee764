from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Dict, Optional

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from app.settings import get_settings
from database import SqlRoomBackend
from game import Room
from service import GameService
from store import RoomStore
from views import build_game_state, summarize_room

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- CORS with multiple origins ----------
ALLOWED_ORIGINS = settings.allowed_origins()

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

logger.info("[CORS] allow_origins: %s", ALLOWED_ORIGINS)


# ---------- WebSockets hub ----------
class Hub:
    """Live sockets by connection id."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    async def connect(self, ws: WebSocket) -> str:
        await ws.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = ws
        return connection_id

    def disconnect(self, connection_id: str):
        self.connections.pop(connection_id, None)

    async def send(self, connection_id: str, message: dict) -> None:
        ws = self.connections.get(connection_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except (RuntimeError, WebSocketDisconnect):
            # socket already closing; the receive loop cleans up
            logger.debug("Dropped %s for closed connection %s", message.get("type"), connection_id)


hub = Hub()
backend = SqlRoomBackend(settings.room_database_url) if settings.room_database_url else None
store = RoomStore(backend, expiry_seconds=settings.room_expiry_sec)
service = GameService.from_settings(settings, store, hub)

_housekeeping: Optional[asyncio.Task] = None


async def _housekeeping_loop() -> None:
    while True:
        await asyncio.sleep(settings.store_sync_interval_sec)
        try:
            await service.run_housekeeping()
        except Exception:
            logger.exception("Room housekeeping failed")


@app.on_event("startup")
async def _startup() -> None:
    global _housekeeping
    if backend is not None:
        try:
            await backend.init()
        except Exception:
            logger.exception("[Database] room storage unavailable, continuing with memory only")
    _housekeeping = asyncio.create_task(_housekeeping_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _housekeeping is not None:
        _housekeeping.cancel()
    await service.shutdown()
    if backend is not None:
        await backend.close()


# ---------- REST ----------
async def _get_room_or_404(code: str) -> Room:
    room = await store.get(code)
    if room is None:
        raise HTTPException(status_code=404, detail="room_not_found")
    return room


@app.get("/api/rooms")
async def rooms():
    return [summarize_room(room).model_dump(by_alias=True) for room in await store.list_all()]


@app.get("/api/rooms/count")
async def rooms_count():
    return {"count": await store.count()}


@app.get("/api/game/state/{code}")
async def game_state(code: str, x_user_id: Optional[str] = Header(None)):
    room = await _get_room_or_404(code)
    return build_game_state(room, x_user_id).model_dump(by_alias=True, mode="json")


# ---------- WS endpoint ----------
@app.websocket("/ws")
async def ws_game(ws: WebSocket):
    connection_id = await hub.connect(ws)
    service.session(connection_id)
    try:
        await ws.send_json({"type": "connected", "connectionId": connection_id})
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                data = None
            if not isinstance(data, dict):
                await ws.send_json({"type": "error", "error": "Unknown command"})
                continue
            await service.handle(connection_id, data)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(connection_id)
        await service.disconnect(connection_id)
