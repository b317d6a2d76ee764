from __future__ import annotations

import asyncio
import logging
import random
import time
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from pydantic import ValidationError

from bots import choose_bot_move
from game import (
    ROOM_CODE_ATTEMPTS,
    GameError,
    InvalidMove,
    RejoinFailed,
    Room,
    generate_room_code,
    normalize_code,
)
from matchmaking import MatchmakingQueue
from models import Card, CardIdsPayload, ChatMessage, NamePayload, Player, RoomNamePayload
from rules import is_immediately_playable
from store import RoomStore
from views import build_game_state

logger = logging.getLogger(__name__)

CHAT_MAX_LENGTH = 200


class Transport(Protocol):
    async def send(self, connection_id: str, message: dict) -> None: ...


@dataclass
class Session:
    connection_id: str
    room_code: Optional[str] = None
    name: Optional[str] = None
    in_matchmaking: bool = False


Handler = Callable[[Session, Dict[str, Any]], Awaitable[None]]


class GameService:
    """Runs player commands against rooms: fetch, mutate, persist, broadcast.

    Every mutation of a room happens under that room's lock. Bot turns and
    disconnect grace periods run as separate tasks that re-read the room when
    they wake up and do nothing if it has moved on.
    """

    def __init__(
        self,
        store: RoomStore,
        transport: Transport,
        *,
        disconnect_grace: float = 43200,
        bot_delay: Tuple[float, float] = (1.0, 2.0),
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.transport = transport
        self.disconnect_grace = disconnect_grace
        self.bot_delay = bot_delay
        self.rng = rng or random.Random()
        self.clock = clock
        self.matchmaking = MatchmakingQueue()
        self.sessions: Dict[str, Session] = {}
        # a lock lives only while some command holds or waits on it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._create_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._scheduled_bot_turns: Set[Tuple[str, int, str]] = set()
        self._handlers: Dict[str, Handler] = {
            "create_room": self.create_room,
            "join_room": self.join_room,
            "rejoin_room": self.rejoin_room,
            "ping": self.ping,
            "add_bot": self.add_bot,
            "remove_bot": self.remove_bot,
            "set_bot_difficulty": self.set_bot_difficulty,
            "set_help_mode": self.set_help_mode,
            "start_game": self.start_game,
            "select_cards": self.select_cards,
            "play_cards": self.play_cards,
            "pass": self.pass_turn,
            "next_round": self.next_round,
            "new_game": self.new_game,
            "host_end_game": self.host_end_game,
            "leave_room": self.leave_room,
            "chat_message": self.chat_message,
            "join_matchmaking": self.join_matchmaking,
            "leave_matchmaking": self.leave_matchmaking,
            "start_matchmaking_game": self.start_matchmaking_game,
        }

    @classmethod
    def from_settings(cls, settings, store: RoomStore, transport: Transport) -> "GameService":
        return cls(
            store,
            transport,
            disconnect_grace=settings.disconnect_grace_sec,
            bot_delay=(settings.bot_delay_min_sec, settings.bot_delay_max_sec),
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def session(self, connection_id: str) -> Session:
        return self.sessions.setdefault(connection_id, Session(connection_id))

    def _lock(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[code] = lock
        return lock

    async def handle(self, connection_id: str, message: Dict[str, Any]) -> None:
        session = self.session(connection_id)
        kind = message.get("type") if isinstance(message, dict) else None
        handler = self._handlers.get(kind)
        if handler is None:
            await self.send(connection_id, {"type": "error", "error": "Unknown command"})
            return
        try:
            await handler(session, message)
        except InvalidMove as exc:
            if exc.explained:
                await self.send(connection_id, {"type": "invalid_move", "message": str(exc)})
            else:
                await self.send(connection_id, {"type": "error", "error": str(exc)})
        except RejoinFailed as exc:
            await self.send(connection_id, {"type": "rejoin_failed", "message": str(exc)})
        except GameError as exc:
            await self.send(connection_id, {"type": "error", "error": str(exc)})
        except ValidationError as exc:
            logger.debug("Rejected %s payload from %s: %s", kind, connection_id, exc)
            await self.send(connection_id, {"type": "error", "error": "Invalid request"})

    async def disconnect(self, connection_id: str) -> None:
        session = self.sessions.pop(connection_id, None)
        if session is None:
            return
        if session.in_matchmaking and self.matchmaking.leave(connection_id):
            await self._broadcast_matchmaking()
        if not session.room_code:
            return

        async with self._lock(session.room_code):
            room = await self.store.get(session.room_code)
            if room is None:
                return
            now = self.clock()
            player = room.mark_disconnected(connection_id, now)
            if player is None:
                return
            await self.store.set(room)
            await self.broadcast_state(room)
            logger.info("Player %s marked disconnected in room %s", player.name, room.code)
        self._spawn(self._expire_disconnected(room.code, player.id, now))

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    async def send(self, connection_id: str, message: dict) -> None:
        await self.transport.send(connection_id, message)

    async def broadcast(self, room: Room, message: dict, exclude: Optional[str] = None) -> None:
        for player in room.players:
            if player.is_bot or player.id == exclude:
                continue
            await self.send(player.id, message)

    async def broadcast_state(self, room: Room) -> None:
        for player in room.players:
            if player.is_bot:
                continue
            payload = build_game_state(room, player.id).model_dump(by_alias=True, mode="json")
            await self.send(player.id, {"type": "state", "payload": payload})

    async def _broadcast_matchmaking(self) -> None:
        for connection_id in self.matchmaking.connection_ids():
            state = self.matchmaking.snapshot(connection_id)
            await self.send(connection_id, {"type": "matchmaking_update", **state.model_dump(by_alias=True)})

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _persist(self, room: Room) -> None:
        room.touch(self.clock())
        await self.store.set(room)

    async def _publish(self, room: Room) -> None:
        await self.broadcast_state(room)
        self._schedule_bot_turn(room)

    async def _commit(self, room: Room) -> None:
        await self._persist(room)
        await self._publish(room)

    async def _delete_room(self, room: Room) -> None:
        await self.store.delete(room.code)
        for player in room.players:
            session = self.sessions.get(player.id)
            if session is not None and session.room_code == room.code:
                session.room_code = None
        logger.info("Room %s deleted", room.code)

    async def _save_or_delete(self, room: Room) -> None:
        if room.has_humans:
            await self._commit(room)
        else:
            await self._delete_room(room)

    async def _after_eviction(self, room: Room, evicted: List[Player], reason: str) -> bool:
        """Apply the consequences of players leaving; True if the room is gone."""
        if not evicted:
            return False
        if room.in_progress:
            await self.broadcast(room, {"type": "game_ended", "playerName": evicted[0].name, "reason": reason})
            await self._delete_room(room)
            return True
        await self._save_or_delete(room)
        return not room.has_humans

    async def _mutate(self, session: Session, action: Callable[[Room], Any]) -> Room:
        if not session.room_code:
            raise GameError("You are not in a room")
        async with self._lock(session.room_code):
            room = await self.store.get(session.room_code)
            if room is None:
                raise GameError("The room no longer exists")
            action(room)
            await self._commit(room)
            return room

    async def _allocate_code(self) -> str:
        for _ in range(ROOM_CODE_ATTEMPTS):
            code = generate_room_code(self.rng)
            if await self.store.get(code) is None:
                return code
        raise GameError("Could not allocate a room code, please try again")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_bot_turn(self, room: Room) -> None:
        if not room.awaiting_bot:
            return
        key = (room.code, room.current_player_index, room.current_player.id)
        if key in self._scheduled_bot_turns:
            return
        self._scheduled_bot_turns.add(key)
        self._spawn(self._run_bot_turn(key))

    async def _run_bot_turn(self, key: Tuple[str, int, str]) -> None:
        code, expected_index, bot_id = key
        try:
            await asyncio.sleep(self.rng.uniform(*self.bot_delay))
        finally:
            self._scheduled_bot_turns.discard(key)

        async with self._lock(code):
            room = await self.store.get(code)
            if (
                room is None
                or not room.awaiting_bot
                or room.current_player_index != expected_index
                or room.current_player.id != bot_id
            ):
                logger.debug("Stale bot turn for %s in room %s skipped", bot_id, code)
                if room is not None:
                    self._schedule_bot_turn(room)
                return

            bot = room.current_player
            move = choose_bot_move(bot.hand, room.tableau, room.bot_difficulty, rng=self.rng)
            try:
                played = room.apply_bot_move(bot.id, move)
            except GameError:
                logger.exception("Bot %s produced an illegal move in room %s", bot.name, code)
                try:
                    played = self._fallback_bot_move(room, bot)
                except GameError:
                    logger.exception("Bot %s has no legal move in room %s", bot.name, code)
                    return

            if played:
                logger.info("Bot %s played: %s", bot.name, ", ".join(card.id for card in played))
            else:
                logger.info("Bot %s passed", bot.name)
            await self._commit(room)

    @staticmethod
    def _fallback_bot_move(room: Room, bot: Player) -> List[Card]:
        """Simplest legal move: one card that fits the table now, else a pass."""
        opener = next((card for card in bot.hand if is_immediately_playable(card, room.tableau)), None)
        if opener is not None:
            return room.play_cards(bot.id, [opener.id])
        room.pass_turn(bot.id)
        return []

    async def _expire_disconnected(self, code: str, player_id: str, disconnected_at: float) -> None:
        await asyncio.sleep(self.disconnect_grace)
        async with self._lock(code):
            room = await self.store.get(code)
            if room is None:
                return
            player = room.player_by_id(player_id)
            if player is None or player.connected or player.disconnected_at != disconnected_at:
                logger.debug("Grace timer for %s in room %s no longer applies", player_id, code)
                return
            room.remove_player(player_id)
            logger.info("Removing disconnected player %s from room %s", player.name, code)
            await self._after_eviction(room, [player], "disconnected")

    async def run_housekeeping(self) -> None:
        await self.store.sync()
        await self.store.purge_expired(self.clock())

    async def wait_idle(self) -> None:
        """Wait until no bot turn or timer is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.store.flush()

    # ------------------------------------------------------------------
    # Room commands
    # ------------------------------------------------------------------
    async def create_room(self, session: Session, data: Dict[str, Any]) -> None:
        payload = NamePayload.model_validate(data)
        async with self._create_lock:
            code = await self._allocate_code()
            room = Room.create(code, session.connection_id, payload.name)
            await self._persist(room)
        session.room_code = room.code
        session.name = payload.name
        logger.info("Room %s created by %s", room.code, payload.name)
        await self.send(session.connection_id, {"type": "room_created", "code": room.code})
        await self._publish(room)

    async def join_room(self, session: Session, data: Dict[str, Any]) -> None:
        payload = RoomNamePayload.model_validate(data)
        code = normalize_code(payload.code)
        async with self._lock(code):
            room = await self.store.get(code)
            if room is None:
                raise GameError("The room does not exist")
            room.join(session.connection_id, payload.name)
            await self._persist(room)
            session.room_code = room.code
            session.name = payload.name
            logger.info("%s joined room %s", payload.name, room.code)
            await self.send(session.connection_id, {"type": "room_joined", "code": room.code})
            await self._publish(room)

    async def rejoin_room(self, session: Session, data: Dict[str, Any]) -> None:
        payload = RoomNamePayload.model_validate(data)
        code = normalize_code(payload.code)
        async with self._lock(code):
            room = await self.store.get(code)
            if room is None:
                raise RejoinFailed("The room no longer exists")
            evicted = room.evict_stale_players(self.clock(), self.disconnect_grace)
            if await self._after_eviction(room, evicted, "disconnected"):
                raise RejoinFailed("The room no longer exists")
            outcome = room.rejoin(session.connection_id, payload.name)
            await self._persist(room)
            session.room_code = room.code
            session.name = payload.name
            logger.info("%s %s room %s", payload.name, outcome, room.code)
            await self.send(session.connection_id, {"type": "rejoin_success", "code": room.code})
            await self._publish(room)

    async def ping(self, session: Session, data: Dict[str, Any]) -> None:
        await self.send(session.connection_id, {"type": "pong"})
        if not session.room_code:
            return
        async with self._lock(session.room_code):
            room = await self.store.get(session.room_code)
            if room is None:
                return
            room.mark_connected(session.connection_id)
            evicted = room.evict_stale_players(self.clock(), self.disconnect_grace)
            if evicted:
                await self._after_eviction(room, evicted, "disconnected")
            else:
                await self._persist(room)

    async def add_bot(self, session: Session, data: Dict[str, Any]) -> None:
        await self._mutate(session, lambda room: room.add_bot(session.connection_id, self.rng))

    async def remove_bot(self, session: Session, data: Dict[str, Any]) -> None:
        bot_id = str(data.get("botId") or "")
        await self._mutate(session, lambda room: room.remove_bot(session.connection_id, bot_id))

    async def set_bot_difficulty(self, session: Session, data: Dict[str, Any]) -> None:
        difficulty = str(data.get("difficulty") or "")
        await self._mutate(session, lambda room: room.set_bot_difficulty(session.connection_id, difficulty))

    async def set_help_mode(self, session: Session, data: Dict[str, Any]) -> None:
        enabled = data.get("helpMode") is True
        await self._mutate(session, lambda room: room.set_help_mode(session.connection_id, enabled))

    async def start_game(self, session: Session, data: Dict[str, Any]) -> None:
        mode = data.get("mode") or None
        room = await self._mutate(session, lambda room: room.start_game(session.connection_id, mode, self.rng))
        humans = [p.name for p in room.players if not p.is_bot]
        bots = [p.name for p in room.players if p.is_bot]
        logger.info("Game started in room %s (%s): humans=%s bots=%s", room.code, room.mode, humans, bots)

    async def select_cards(self, session: Session, data: Dict[str, Any]) -> None:
        payload = CardIdsPayload.model_validate(data)
        room = await self.store.get(session.room_code)
        if room is None or room.state != "playing" or room.round_ended:
            return
        current = room.current_player
        if current is None or current.id != session.connection_id:
            return
        await self.send(session.connection_id, {"type": "cards_selected", "cardIds": payload.card_ids})

    async def play_cards(self, session: Session, data: Dict[str, Any]) -> None:
        payload = CardIdsPayload.model_validate(data)
        played: List = []

        def action(room: Room):
            played.extend(room.play_cards(session.connection_id, payload.card_ids))

        room = await self._mutate(session, action)
        logger.info("%s played %s in room %s", session.name, ", ".join(c.id for c in played), room.code)

    async def pass_turn(self, session: Session, data: Dict[str, Any]) -> None:
        await self._mutate(session, lambda room: room.pass_turn(session.connection_id))

    async def next_round(self, session: Session, data: Dict[str, Any]) -> None:
        await self._reset_round(session, lambda room: room.next_round(session.connection_id, self.rng))

    async def new_game(self, session: Session, data: Dict[str, Any]) -> None:
        await self._reset_round(session, lambda room: room.new_game(session.connection_id))

    async def _reset_round(self, session: Session, action: Callable[[Room], Any]) -> None:
        if not session.room_code:
            raise GameError("You are not in a room")
        async with self._lock(session.room_code):
            room = await self.store.get(session.room_code)
            if room is None:
                raise GameError("The room no longer exists")
            action(room)
            # clients close the round summary before the next snapshot arrives
            await self.broadcast(room, {"type": "close_modal"})
            await self._commit(room)

    async def host_end_game(self, session: Session, data: Dict[str, Any]) -> None:
        if not session.room_code:
            raise GameError("You are not in a room")
        async with self._lock(session.room_code):
            room = await self.store.get(session.room_code)
            if room is None:
                session.room_code = None
                return
            if room.host_id != session.connection_id:
                raise GameError("Only the host can do that")
            await self.broadcast(room, {"type": "host_ended_game"}, exclude=session.connection_id)
            await self._delete_room(room)
            logger.info("Host ended the game in room %s", room.code)

    async def leave_room(self, session: Session, data: Dict[str, Any]) -> None:
        code = session.room_code
        if not code:
            return
        session.room_code = None
        async with self._lock(code):
            room = await self.store.get(code)
            if room is None:
                return
            player = room.player_by_id(session.connection_id)
            if player is None:
                return
            if room.in_progress:
                await self.broadcast(
                    room,
                    {"type": "game_ended", "playerName": player.name, "reason": "left"},
                    exclude=session.connection_id,
                )
                await self._delete_room(room)
                return
            room.remove_player(player.id)
            await self._save_or_delete(room)

    async def chat_message(self, session: Session, data: Dict[str, Any]) -> None:
        if not session.room_code or not session.name:
            return
        text = str(data.get("text") or "").strip()[:CHAT_MAX_LENGTH]
        if not text:
            return
        room = await self.store.get(session.room_code)
        if room is None:
            return
        chat = ChatMessage(sender=session.name, text=text, timestamp=self.clock())
        await self.broadcast(room, {"type": "chat_message", **chat.model_dump()})

    # ------------------------------------------------------------------
    # Matchmaking
    # ------------------------------------------------------------------
    async def join_matchmaking(self, session: Session, data: Dict[str, Any]) -> None:
        payload = NamePayload.model_validate(data)
        session.name = payload.name
        session.in_matchmaking = True
        self.matchmaking.join(session.connection_id, payload.name, self.clock())
        await self._broadcast_matchmaking()

    async def leave_matchmaking(self, session: Session, data: Dict[str, Any]) -> None:
        session.in_matchmaking = False
        if self.matchmaking.leave(session.connection_id):
            await self._broadcast_matchmaking()

    async def start_matchmaking_game(self, session: Session, data: Dict[str, Any]) -> None:
        selected = data.get("selectedIds")
        if selected is not None and not isinstance(selected, list):
            raise GameError("Invalid selection")
        async with self._create_lock:
            entries = self.matchmaking.take_for_room(session.connection_id, selected)
            try:
                code = await self._allocate_code()
            except GameError:
                for entry in entries:
                    self.matchmaking.join(entry.connection_id, entry.name, entry.joined_at)
                raise
            room = Room.from_entries(code, entries)
            await self._persist(room)

        for entry in entries:
            seated = self.session(entry.connection_id)
            seated.room_code = room.code
            seated.name = room.player_by_id(entry.connection_id).name
            seated.in_matchmaking = False
            await self.send(entry.connection_id, {
                "type": "matchmaking_game_started",
                "code": room.code,
                "playerName": seated.name,
            })
        logger.info(
            "[Matchmaking] Room %s started with %s players, %s left in queue",
            room.code, len(entries), len(self.matchmaking),
        )
        await self._broadcast_matchmaking()
        await self._publish(room)
