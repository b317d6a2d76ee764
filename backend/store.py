from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Protocol, Set

from game import Room, normalize_code

logger = logging.getLogger(__name__)

ROOM_EXPIRY_SECONDS = 172800


class RoomBackend(Protocol):
    async def load(self, code: str) -> Optional[dict]: ...

    async def save(self, code: str, payload: dict, expires_at: float) -> None: ...

    async def delete(self, code: str) -> None: ...

    async def count(self) -> int: ...

    async def list_all(self) -> List[dict]: ...

    async def purge_expired(self) -> int: ...


class RoomStore:
    """Rooms by code: a local cache in front of an optional durable backend.

    The cache is written synchronously and always trusted on reads; backend
    writes happen in the background and failures are only logged. ``sync``
    re-writes every cached room so a flaky backend catches up.
    """

    def __init__(self, backend: Optional[RoomBackend] = None, expiry_seconds: int = ROOM_EXPIRY_SECONDS):
        self.backend = backend
        self.expiry_seconds = expiry_seconds
        self._cache: Dict[str, dict] = {}
        # latest unsaved snapshot per code, drained by one writer task per code
        self._dirty: Dict[str, dict] = {}
        self._writers: Dict[str, asyncio.Task] = {}
        self._failed: Set[str] = set()

    async def get(self, code: Optional[str]) -> Optional[Room]:
        code = normalize_code(code)
        if not code:
            return None
        cached = self._cache.get(code)
        if cached is not None:
            return Room.model_validate(cached)
        if self.backend is None:
            return None
        try:
            payload = await self.backend.load(code)
        except Exception:
            logger.exception("Room backend load failed for %s", code)
            return None
        if payload is None:
            return None
        self._cache[code] = payload
        logger.info("Room %s loaded from backend", code)
        return Room.model_validate(payload)

    async def set(self, room: Room) -> None:
        payload = room.model_dump(mode="json")
        self._cache[room.code] = payload
        if self.backend is None:
            return
        self._queue_save(room.code, payload)

    async def delete(self, code: str) -> None:
        code = normalize_code(code)
        self._cache.pop(code, None)
        self._dirty.pop(code, None)
        self._failed.discard(code)
        if self.backend is None:
            return
        # an in-flight save must not resurrect the row
        writer = self._writers.get(code)
        if writer is not None:
            await asyncio.gather(writer, return_exceptions=True)
        try:
            await self.backend.delete(code)
        except Exception:
            logger.warning("Room backend delete failed for %s", code, exc_info=True)

    async def count(self) -> int:
        if self.backend is None:
            return len(self._cache)
        try:
            return await self.backend.count()
        except Exception:
            logger.warning("Room backend count failed, using cache", exc_info=True)
            return len(self._cache)

    async def list_all(self) -> List[Room]:
        payloads: List[dict]
        if self.backend is None:
            payloads = list(self._cache.values())
        else:
            try:
                payloads = await self.backend.list_all()
            except Exception:
                logger.warning("Room backend listing failed, using cache", exc_info=True)
                payloads = list(self._cache.values())
        return [Room.model_validate(payload) for payload in payloads]

    async def sync(self) -> int:
        if self.backend is None:
            return 0
        codes = list(self._cache)
        for code in codes:
            self._queue_save(code, self._cache[code])
        await self.flush()
        synced = sum(1 for code in codes if code not in self._failed)
        if synced:
            logger.info("Synced %s rooms to backend", synced)
        return synced

    async def purge_expired(self, now: Optional[float] = None) -> List[str]:
        now = now if now is not None else time.time()
        expired = [
            code for code, payload in self._cache.items()
            if now - payload["last_activity"] > self.expiry_seconds
        ]
        for code in expired:
            self._cache.pop(code, None)
        if self.backend is not None:
            try:
                await self.backend.purge_expired()
            except Exception:
                logger.warning("Room backend purge failed", exc_info=True)
        if expired:
            logger.info("Expired %s idle rooms: %s", len(expired), ", ".join(expired))
        return expired

    async def flush(self) -> None:
        """Wait for background backend writes; used on shutdown and in tests."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)

    def _queue_save(self, code: str, payload: dict) -> None:
        self._dirty[code] = payload
        if code not in self._writers:
            self._writers[code] = asyncio.create_task(self._write_latest(code))

    async def _write_latest(self, code: str) -> None:
        try:
            while code in self._dirty:
                payload = self._dirty.pop(code)
                try:
                    await self.backend.save(code, payload, payload["last_activity"] + self.expiry_seconds)
                except Exception:
                    self._failed.add(code)
                    logger.warning("Room backend save failed for %s", code, exc_info=True)
                else:
                    self._failed.discard(code)
        finally:
            self._writers.pop(code, None)
