from __future__ import annotations

import logging
import random
import time
import uuid
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from models import (
    BotDifficulty,
    BotMove,
    Card,
    GameMode,
    MatchmakingEntry,
    Player,
    RoomStateName,
    RoundScore,
    Tableau,
)
from rules import (
    OPENING_CARD_ID,
    build_invalid_move_explanation,
    can_eventually_be_played,
    empty_tableau,
    hand_points,
    make_deck,
    place_cards,
    resolve_play_order,
    shuffle_deck,
    sort_hand,
)

logger = logging.getLogger(__name__)

MAX_PLAYERS = 7
MIN_PLAYERS = 3
ASKEN_PENALTY = 50
GAME_OVER_SCORE = 500

ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 4
ROOM_CODE_ATTEMPTS = 10

GAME_MODES = ("quick", "standard")
BOT_DIFFICULTIES = ("dumb", "medium", "smart")
BOT_ID_PREFIX = "bot-"

BOT_NAMES = [
    "Dave", "Deckard", "Roy", "Pris", "Leon", "Rachael", "R2-D2", "HAL-9000",
    "C-3PO", "Bishop", "Chappie", "M3GAN", "Gort", "Bender", "Ava", "Data",
    "T-800", "T-1000", "Wall-E", "Marvin", "Astro Boy", "K-2SO", "Daneel",
    "KITT", "TARS", "ED-209", "Baymax", "Sonny", "GLaDOS", "Optimus Prime",
    "Maria", "Twiki", "Dot Matrix", "Commodore 64", "ZX Spectrum", "Amiga",
]


class GameError(ValueError):
    """A command was rejected; the room is unchanged."""


class InvalidMove(GameError):
    """The selected cards cannot be played, or a pass was not allowed.

    ``explained`` is set when the message is a detailed, per-card explanation
    meant for a modal rather than a short error toast.
    """

    def __init__(self, message: str, *, explained: bool = False):
        super().__init__(message)
        self.explained = explained


class RejoinFailed(GameError):
    """No seat to reclaim and the room no longer accepts new players."""


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_room_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def is_bot_id(player_id: str) -> bool:
    return player_id.startswith(BOT_ID_PREFIX)


class Room(BaseModel):
    code: str
    host_id: str
    players: List[Player] = Field(default_factory=list)
    state: RoomStateName = "lobby"
    mode: GameMode = "quick"
    current_player_index: int = 0
    dealer_index: int = 0
    starter_index: Optional[int] = None
    tableau: Tableau = Field(default_factory=empty_tableau)
    asken_holder_id: Optional[str] = None
    round_number: int = 1
    round_ended: bool = False
    round_winner_ids: List[str] = Field(default_factory=list)
    round_scores: Optional[List[RoundScore]] = None
    last_played_cards: List[str] = Field(default_factory=list)
    bot_difficulty: BotDifficulty = "dumb"
    help_mode: bool = False
    created_at: float = Field(default_factory=time.time)
    last_activity: float = Field(default_factory=time.time)

    @classmethod
    def create(cls, code: str, host_id: str, host_name: str) -> "Room":
        room = cls(code=normalize_code(code), host_id=host_id)
        room.players.append(Player(id=host_id, name=host_name))
        return room

    @classmethod
    def from_entries(cls, code: str, entries: Sequence[MatchmakingEntry]) -> "Room":
        if not entries:
            raise GameError("No players to seat")
        host = entries[0]
        room = cls.create(code, host.connection_id, host.name)
        for entry in entries[1:]:
            room.players.append(Player(id=entry.connection_id, name=room._unique_name(entry.name)))
        return room

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def player_by_id(self, player_id: Optional[str]) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)

    def _player_index(self, player_id: str) -> int:
        for idx, player in enumerate(self.players):
            if player.id == player_id:
                return idx
        raise GameError("You are not in this game")

    def _name_taken(self, name: str) -> bool:
        wanted = name.strip().lower()
        return any(p.name.lower() == wanted for p in self.players)

    def _unique_name(self, name: str) -> str:
        """``name``, or ``name 2``, ``name 3``... when already seated."""
        if not self._name_taken(name):
            return name
        number = 2
        while self._name_taken(f"{name} {number}"):
            number += 1
        return f"{name} {number}"

    def _require_host(self, actor_id: str):
        if actor_id != self.host_id:
            raise GameError("Only the host can do that")

    def _require_lobby(self, message: str):
        if self.state != "lobby":
            raise GameError(message)

    def _reassign_host(self):
        if self.player_by_id(self.host_id) is not None:
            return
        new_host = next((p for p in self.players if not p.is_bot), None)
        if new_host is not None:
            self.host_id = new_host.id

    @property
    def current_player(self) -> Optional[Player]:
        if not self.players or not 0 <= self.current_player_index < len(self.players):
            return None
        return self.players[self.current_player_index]

    @property
    def in_progress(self) -> bool:
        return self.state in ("playing", "roundEnd")

    @property
    def has_bots(self) -> bool:
        return any(p.is_bot for p in self.players)

    @property
    def has_humans(self) -> bool:
        return any(not p.is_bot for p in self.players)

    @property
    def is_game_over(self) -> bool:
        return self.mode == "quick" or any(p.score >= GAME_OVER_SCORE for p in self.players)

    @property
    def awaiting_bot(self) -> bool:
        current = self.current_player
        return self.state == "playing" and not self.round_ended and current is not None and current.is_bot

    def touch(self, now: Optional[float] = None):
        self.last_activity = now if now is not None else time.time()

    # ------------------------------------------------------------------
    # Lobby management
    # ------------------------------------------------------------------
    def join(self, player_id: str, name: str) -> Player:
        name = name.strip()
        if not name:
            raise GameError("A name is required")
        if self.state != "lobby":
            raise GameError("The game has already started")
        if len(self.players) >= MAX_PLAYERS:
            raise GameError(f"The room is full (max {MAX_PLAYERS} players)")
        if self._name_taken(name):
            raise GameError("That name is already taken")
        player = Player(id=player_id, name=name)
        self.players.append(player)
        return player

    def rejoin(self, player_id: str, name: str) -> str:
        wanted = name.strip().lower()
        existing = next((p for p in self.players if not p.is_bot and p.name.lower() == wanted), None)
        if existing is None:
            if self.state == "lobby" and len(self.players) < MAX_PLAYERS:
                self.join(player_id, name)
                return "joined"
            raise RejoinFailed("Could not rejoin - the game has already started")

        old_id = existing.id
        existing.id = player_id
        existing.connected = True
        existing.disconnected_at = None
        if self.host_id == old_id:
            self.host_id = player_id
        if self.asken_holder_id == old_id:
            self.asken_holder_id = player_id
        self.round_winner_ids = [player_id if pid == old_id else pid for pid in self.round_winner_ids]
        if self.round_scores:
            for entry in self.round_scores:
                if entry.player_id == old_id:
                    entry.player_id = player_id
        return "rejoined"

    def remove_player(self, player_id: str) -> Optional[Player]:
        player = self.player_by_id(player_id)
        if player is None:
            return None
        idx = self.players.index(player)
        self.players.pop(idx)
        if self.players:
            if idx < self.current_player_index:
                self.current_player_index -= 1
            self.current_player_index %= len(self.players)
            self.dealer_index %= len(self.players)
        else:
            self.current_player_index = 0
            self.dealer_index = 0
        self._reassign_host()
        return player

    def evict_stale_players(self, now: float, grace: float) -> List[Player]:
        stale = [
            p for p in self.players
            if not p.is_bot and not p.connected and p.disconnected_at is not None
            and now - p.disconnected_at > grace
        ]
        for player in stale:
            self.remove_player(player.id)
        return stale

    def mark_disconnected(self, player_id: str, now: float) -> Optional[Player]:
        player = self.player_by_id(player_id)
        if player is not None:
            player.connected = False
            player.disconnected_at = now
        return player

    def mark_connected(self, player_id: str) -> Optional[Player]:
        player = self.player_by_id(player_id)
        if player is not None:
            player.connected = True
            player.disconnected_at = None
        return player

    def add_bot(self, actor_id: str, rng: Optional[random.Random] = None) -> Player:
        rng = rng or random
        self._require_host(actor_id)
        self._require_lobby("Bots can only be added in the lobby")
        if len(self.players) >= MAX_PLAYERS:
            raise GameError(f"The room is full (max {MAX_PLAYERS} players)")
        available = [name for name in BOT_NAMES if not self._name_taken(name)]
        if available:
            name = rng.choice(available)
        else:
            number = 1
            while self._name_taken(f"Bot-{number}"):
                number += 1
            name = f"Bot-{number}"
        bot = Player(id=f"{BOT_ID_PREFIX}{uuid.uuid4().hex[:12]}", name=name, is_bot=True)
        self.players.append(bot)
        return bot

    def remove_bot(self, actor_id: str, bot_id: str) -> Player:
        self._require_host(actor_id)
        self._require_lobby("Bots can only be removed in the lobby")
        bot = self.player_by_id(bot_id)
        if bot is None or not bot.is_bot:
            raise GameError("Bot not found")
        self.remove_player(bot_id)
        return bot

    def set_bot_difficulty(self, actor_id: str, difficulty: str):
        self._require_host(actor_id)
        self._require_lobby("Bot difficulty can only be changed in the lobby")
        if difficulty not in BOT_DIFFICULTIES:
            raise GameError("Invalid bot difficulty")
        self.bot_difficulty = difficulty

    def set_help_mode(self, actor_id: str, enabled: bool):
        self._require_host(actor_id)
        self._require_lobby("Help mode can only be changed in the lobby")
        self.help_mode = enabled is True

    # ------------------------------------------------------------------
    # Match lifecycle
    # ------------------------------------------------------------------
    def start_game(self, actor_id: str, mode: Optional[str] = None, rng: Optional[random.Random] = None):
        self._require_host(actor_id)
        self._require_lobby("The game has already started")
        if len(self.players) < MIN_PLAYERS:
            raise GameError(f"At least {MIN_PLAYERS} players are required")
        mode = mode or "quick"
        if mode not in GAME_MODES:
            raise GameError("Unknown game mode")
        self.mode = mode
        self.dealer_index = 0
        self.deal(rng)

    def deal(self, rng: Optional[random.Random] = None):
        for player in self.players:
            player.hand = []

        deck = shuffle_deck(make_deck(), rng)
        seats = len(self.players)
        seat = (self.dealer_index + 1) % seats
        for card in deck:
            self.players[seat].hand.append(card)
            seat = (seat + 1) % seats

        for player in self.players:
            player.hand = sort_hand(player.hand)

        self.current_player_index = next(
            idx for idx, p in enumerate(self.players) if any(c.id == OPENING_CARD_ID for c in p.hand)
        )
        self.starter_index = self.current_player_index
        self.tableau = empty_tableau()
        self.asken_holder_id = None
        self.round_ended = False
        self.round_winner_ids = []
        self.last_played_cards = []
        self.state = "playing"

    def next_round(self, actor_id: str, rng: Optional[random.Random] = None):
        self._require_host(actor_id)
        if self.state != "roundEnd":
            raise GameError("The round is still in progress")
        self.round_number += 1
        self.dealer_index = (self.dealer_index + 1) % len(self.players)
        self.round_scores = None
        self.deal(rng)

    def new_game(self, actor_id: str):
        self._require_host(actor_id)
        for player in self.players:
            player.score = 0
            player.hand = []
        self.round_number = 1
        self.state = "lobby"
        self.tableau = empty_tableau()
        self.asken_holder_id = None
        self.round_ended = False
        self.round_winner_ids = []
        self.round_scores = None
        self.last_played_cards = []

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    def _require_turn(self, player_id: str) -> Player:
        if self.state != "playing":
            raise GameError("The game is not running")
        if self.round_ended:
            raise GameError("The round is already over")
        idx = self._player_index(player_id)
        if idx != self.current_player_index:
            raise GameError("It is not your turn")
        return self.players[idx]

    def _advance_turn(self):
        self.current_player_index = (self.current_player_index + 1) % len(self.players)

    def _commit_play(self, player: Player, ordered: Sequence[Card]):
        played = {card.id for card in ordered}
        player.hand = [card for card in player.hand if card.id not in played]
        self.tableau = place_cards(self.tableau, ordered)
        self.last_played_cards = [card.id for card in ordered]
        if not player.hand:
            self.end_round()
        else:
            self._advance_turn()

    def play_cards(self, player_id: str, card_ids: Sequence[str]) -> List[Card]:
        player = self._require_turn(player_id)

        by_id = {card.id: card for card in player.hand}
        selected: List[Card] = []
        for cid in card_ids:
            card = by_id.pop(cid, None)
            if card is not None:
                selected.append(card)
        if not selected:
            raise GameError("No valid cards selected")

        ordered = resolve_play_order(selected, self.tableau)
        if ordered is None:
            if self.help_mode:
                raise InvalidMove("These cards cannot be played in that order")
            raise InvalidMove(build_invalid_move_explanation(selected, self.tableau), explained=True)

        self._commit_play(player, ordered)
        return ordered

    def pass_turn(self, player_id: str):
        player = self._require_turn(player_id)
        if any(can_eventually_be_played(card, player.hand, self.tableau) for card in player.hand):
            if self.help_mode:
                raise InvalidMove("You must play if you can!")
            raise InvalidMove("You have cards that can be played, so you must play!", explained=True)
        self.asken_holder_id = player.id
        self._advance_turn()

    def apply_bot_move(self, player_id: str, move: BotMove) -> List[Card]:
        if move.action == "play" and move.cards:
            return self.play_cards(player_id, [card.id for card in move.cards])
        self.pass_turn(player_id)
        return []

    def end_round(self):
        self.round_ended = True
        scores: List[RoundScore] = []
        for player in self.players:
            card_total = hand_points(player.hand)
            asken = ASKEN_PENALTY if player.id == self.asken_holder_id else 0
            round_total = card_total + asken
            player.score += round_total
            scores.append(
                RoundScore(
                    player_id=player.id,
                    name=player.name,
                    card_points=card_total,
                    asken_points=asken,
                    round_total=round_total,
                    cards_left=len(player.hand),
                    total_score=player.score,
                )
            )
        self.round_scores = scores

        lowest = min(entry.round_total for entry in scores)
        self.round_winner_ids = [entry.player_id for entry in scores if entry.round_total == lowest]
        self.state = "roundEnd"

        logger.info(
            "Round %s ended in room %s, winners: %s",
            self.round_number,
            self.code,
            ", ".join(p.name for p in self.players if p.id in self.round_winner_ids),
        )
