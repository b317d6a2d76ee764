from __future__ import annotations

import logging
import os
from functools import lru_cache

from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    origin: str = Field(default="", alias="ORIGIN")
    room_database_url: str = Field(default="", alias="ROOM_DATABASE_URL")
    room_expiry_sec: int = Field(default=172800, alias="ROOM_EXPIRY_SEC")  # 48h without activity
    disconnect_grace_sec: float = Field(default=43200, alias="DISCONNECT_GRACE_SEC")  # 12h, players may sleep
    bot_delay_min_sec: float = Field(default=1.0, alias="BOT_DELAY_MIN_SEC")
    bot_delay_max_sec: float = Field(default=2.0, alias="BOT_DELAY_MAX_SEC")
    store_sync_interval_sec: float = Field(default=300, alias="STORE_SYNC_INTERVAL_SEC")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def allowed_origins(self) -> list[str]:
        extra = [x.strip() for x in self.origin.split(",") if x.strip()]
        return ["http://localhost:5173"] + extra

    def masked_database_url(self) -> str:
        if not self.room_database_url:
            return "<memory only>"
        scheme, _, rest = self.room_database_url.partition("://")
        host = rest.rpartition("@")[2]
        return f"{scheme}://***@{host}" if "@" in rest else self.room_database_url

    def log_status(self) -> None:
        env_name = os.getenv("RENDER_SERVICE_NAME") or os.getenv("ENV", "unknown")
        logger.info(
            "Settings: rooms=%s, expiry=%ss, grace=%ss, bot_delay=%s-%ss, env=%s",
            self.masked_database_url(),
            self.room_expiry_sec,
            self.disconnect_grace_sec,
            self.bot_delay_min_sec,
            self.bot_delay_max_sec,
            env_name,
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.log_status()
    return settings
