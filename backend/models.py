from __future__ import annotations
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

Suit = Literal["spades", "hearts", "clubs", "diamonds"]
RoomStateName = Literal["lobby", "playing", "roundEnd"]
GameMode = Literal["quick", "standard"]
BotDifficulty = Literal["dumb", "medium", "smart"]

SUIT_ORDER: Dict[str, int] = {
    "spades": 0,
    "hearts": 1,
    "clubs": 2,
    "diamonds": 3,
}


def card_id(suit: str, rank: int) -> str:
    return f"{suit}-{rank}"


class Card(BaseModel):
    id: str
    suit: Suit
    rank: int = Field(ge=1, le=13)  # 1=A, 11=J, 12=Q, 13=K

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def fill_defaults(cls, value):
        if isinstance(value, dict) and value.get("id") is None:
            suit = value.get("suit")
            rank = value.get("rank")
            if suit in SUIT_ORDER and isinstance(rank, int):
                value = {**value, "id": card_id(suit, rank)}
        return value


class SuitRun(BaseModel):
    low: int
    high: int

    model_config = ConfigDict(frozen=True)

    def covers(self, rank: int) -> bool:
        return self.low <= rank <= self.high

    def extended(self, rank: int) -> "SuitRun":
        return SuitRun(low=min(self.low, rank), high=max(self.high, rank))


Tableau = Dict[str, Optional[SuitRun]]


class Player(BaseModel):
    id: str
    name: str
    hand: List[Card] = Field(default_factory=list)
    score: int = 0
    connected: bool = True
    is_bot: bool = False
    disconnected_at: Optional[float] = None


class RoundScore(BaseModel):
    player_id: str = Field(alias="playerId")
    name: str
    card_points: int = Field(alias="cardPoints")
    asken_points: int = Field(alias="askenPoints")
    round_total: int = Field(alias="roundTotal")
    cards_left: int = Field(0, alias="cardsLeft")
    total_score: int = Field(0, alias="totalScore")

    model_config = ConfigDict(populate_by_name=True)


class BotMove(BaseModel):
    action: Literal["play", "pass"]
    cards: List[Card] = Field(default_factory=list)


class MatchmakingEntry(BaseModel):
    connection_id: str
    name: str
    joined_at: float


# ---------- wire payloads ----------
class PlayerRef(BaseModel):
    id: str
    name: str


class PublicPlayer(BaseModel):
    id: str
    name: str
    card_count: int = Field(alias="cardCount")
    score: int
    hand: Optional[List[Card]] = None
    is_me: bool = Field(False, alias="isMe")
    is_current: bool = Field(False, alias="isCurrent")
    is_host: bool = Field(False, alias="isHost")
    is_dealer: bool = Field(False, alias="isDealer")
    is_starter: bool = Field(False, alias="isStarter")
    has_asken: bool = Field(False, alias="hasAsken")
    is_winner: bool = Field(False, alias="isWinner")
    connected: bool = True
    is_bot: bool = Field(False, alias="isBot")

    model_config = ConfigDict(populate_by_name=True)


class GameState(BaseModel):
    code: str
    host_id: str = Field(alias="hostId")
    state: RoomStateName
    mode: GameMode
    round_number: int = Field(alias="roundNumber")
    current_player_index: int = Field(alias="currentPlayerIndex")
    dealer_index: int = Field(alias="dealerIndex")
    starter_index: Optional[int] = Field(default=None, alias="starterIndex")
    tableau: Tableau
    asken_holder_id: Optional[str] = Field(default=None, alias="askenHolderId")
    round_ended: bool = Field(False, alias="roundEnded")
    round_winners: List[PlayerRef] = Field(default_factory=list, alias="roundWinners")
    round_scores: Optional[List[RoundScore]] = Field(default=None, alias="roundScores")
    last_played_cards: List[str] = Field(default_factory=list, alias="lastPlayedCards")
    bot_difficulty: BotDifficulty = Field("dumb", alias="botDifficulty")
    help_mode: bool = Field(False, alias="helpMode")
    has_bots: bool = Field(False, alias="hasBots")
    is_game_over: bool = Field(False, alias="isGameOver")
    my_id: Optional[str] = Field(default=None, alias="myId")
    players: List[PublicPlayer] = Field(default_factory=list)
    playable_card_ids: Optional[List[str]] = Field(default=None, alias="playableCardIds")

    model_config = ConfigDict(populate_by_name=True)


class RoomSummary(BaseModel):
    code: str
    state: RoomStateName
    mode: GameMode
    round_number: int = Field(alias="roundNumber")
    players: int
    humans: List[str] = Field(default_factory=list)
    bots: List[str] = Field(default_factory=list)
    last_activity: float = Field(alias="lastActivity")

    model_config = ConfigDict(populate_by_name=True)


class QueuedPlayer(BaseModel):
    id: str
    name: str
    is_host: bool = Field(alias="isHost")
    position: int
    joined_at: float = Field(alias="joinedAt")

    model_config = ConfigDict(populate_by_name=True)


class MatchmakingState(BaseModel):
    queue_count: int = Field(alias="queueCount")
    players: List[QueuedPlayer] = Field(default_factory=list)
    host_id: Optional[str] = Field(default=None, alias="hostId")
    position: Optional[int] = None
    is_host: bool = Field(False, alias="isHost")

    model_config = ConfigDict(populate_by_name=True)


class ChatMessage(BaseModel):
    sender: str
    text: str
    timestamp: float


# ---------- inbound commands ----------
class NamePayload(BaseModel):
    name: str = Field(min_length=1, max_length=40)

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class RoomNamePayload(NamePayload):
    code: str = Field(min_length=1, max_length=8)


class CardIdsPayload(BaseModel):
    card_ids: List[str] = Field(default_factory=list, alias="cardIds")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
