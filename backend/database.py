"""
Durable storage for rooms.

Each room is kept as one JSON document keyed by its code, with an expiry
timestamp refreshed on every write. Works with any async SQLAlchemy URL
(``sqlite+aiosqlite://`` locally, ``postgresql+asyncpg://`` in production).
"""
from __future__ import annotations

import json
import logging
import time
from typing import List, Optional

from sqlalchemy import Float, String, Text, delete, func, select
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, init_db, make_engine, make_session_maker

logger = logging.getLogger(__name__)


class RoomRecord(Base):
    __tablename__ = "rooms"

    code: Mapped[str] = mapped_column(String(8), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


class SqlRoomBackend:
    def __init__(self, database_url: str):
        self.engine = make_engine(database_url)
        self.session_maker = make_session_maker(self.engine)
        self._ready = False

    async def init(self) -> None:
        if not self._ready:
            await init_db(self.engine)
            self._ready = True
            logger.info("[Database] rooms table ready")

    async def close(self) -> None:
        await self.engine.dispose()

    async def load(self, code: str, now: Optional[float] = None) -> Optional[dict]:
        await self.init()
        now = now if now is not None else time.time()
        async with self.session_maker() as session:
            record = await session.get(RoomRecord, code)
            if record is None or record.expires_at <= now:
                return None
            return json.loads(record.payload)

    async def save(self, code: str, payload: dict, expires_at: float) -> None:
        await self.init()
        async with self.session_maker() as session:
            record = await session.get(RoomRecord, code)
            if record is None:
                record = RoomRecord(code=code)
                session.add(record)
            record.payload = json.dumps(payload)
            record.updated_at = time.time()
            record.expires_at = expires_at
            await session.commit()

    async def delete(self, code: str) -> None:
        await self.init()
        async with self.session_maker() as session:
            await session.execute(delete(RoomRecord).where(RoomRecord.code == code))
            await session.commit()

    async def count(self, now: Optional[float] = None) -> int:
        await self.init()
        now = now if now is not None else time.time()
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count()).select_from(RoomRecord).where(RoomRecord.expires_at > now)
            )
            return int(result.scalar_one())

    async def list_all(self, now: Optional[float] = None) -> List[dict]:
        await self.init()
        now = now if now is not None else time.time()
        async with self.session_maker() as session:
            result = await session.execute(
                select(RoomRecord.payload).where(RoomRecord.expires_at > now).order_by(RoomRecord.code)
            )
            return [json.loads(payload) for payload in result.scalars().all()]

    async def purge_expired(self, now: Optional[float] = None) -> int:
        await self.init()
        now = now if now is not None else time.time()
        async with self.session_maker() as session:
            result = await session.execute(delete(RoomRecord).where(RoomRecord.expires_at <= now))
            await session.commit()
            return result.rowcount or 0
