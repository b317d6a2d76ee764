from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional

from game import MAX_PLAYERS, GameError
from models import MatchmakingEntry, MatchmakingState, QueuedPlayer

logger = logging.getLogger(__name__)

MIN_MATCH_PLAYERS = 2


class MatchmakingQueue:
    """FIFO of players looking for a game; the longest waiting one is host."""

    def __init__(self):
        self.entries: List[MatchmakingEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def contains(self, connection_id: str) -> bool:
        return any(e.connection_id == connection_id for e in self.entries)

    def join(self, connection_id: str, name: str, now: Optional[float] = None) -> MatchmakingEntry:
        self.leave(connection_id)
        entry = MatchmakingEntry(
            connection_id=connection_id,
            name=name,
            joined_at=now if now is not None else time.time(),
        )
        self.entries.append(entry)
        logger.info("[Matchmaking] %s joined the queue. Total: %s", name, len(self.entries))
        return entry

    def leave(self, connection_id: str) -> Optional[MatchmakingEntry]:
        for idx, entry in enumerate(self.entries):
            if entry.connection_id == connection_id:
                removed = self.entries.pop(idx)
                logger.info("[Matchmaking] %s left the queue. Total: %s", removed.name, len(self.entries))
                return removed
        return None

    def connection_ids(self) -> List[str]:
        return [e.connection_id for e in self.entries]

    def snapshot(self, connection_id: Optional[str] = None) -> MatchmakingState:
        players = [
            QueuedPlayer(id=e.connection_id, name=e.name, is_host=idx == 0, position=idx + 1, joined_at=e.joined_at)
            for idx, e in enumerate(self.entries)
        ]
        me = next((p for p in players if p.id == connection_id), None)
        return MatchmakingState(
            queue_count=len(players),
            players=players,
            host_id=players[0].id if players else None,
            position=me.position if me else None,
            is_host=bool(me and me.is_host),
        )

    def take_for_room(self, starter_id: str, selected_ids: Optional[Iterable[str]] = None) -> List[MatchmakingEntry]:
        """Remove and return the entries that will form a room, starter first."""
        if not self.contains(starter_id):
            raise GameError("You are not in the matchmaking queue")

        if selected_ids is None:
            chosen = list(self.entries)
        else:
            wanted = set(selected_ids) | {starter_id}
            chosen = [e for e in self.entries if e.connection_id in wanted]
            if len(chosen) > MAX_PLAYERS:
                raise GameError(f"At most {MAX_PLAYERS} players are allowed")

        if len(chosen) < MIN_MATCH_PLAYERS:
            raise GameError(f"At least {MIN_MATCH_PLAYERS} players are required to start")

        starter = next(e for e in chosen if e.connection_id == starter_id)
        chosen.remove(starter)
        chosen.insert(0, starter)
        chosen = chosen[:MAX_PLAYERS]

        taken = {e.connection_id for e in chosen}
        self.entries = [e for e in self.entries if e.connection_id not in taken]
        return chosen
