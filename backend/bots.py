from __future__ import annotations

import random
from typing import Dict, List, Optional, Sequence

from models import BotMove, Card, Tableau
from rules import (
    card_points,
    can_eventually_be_played,
    is_immediately_playable,
    place_cards,
    playable_candidates,
    resolve_play_order,
)

DIFFICULTIES = ("dumb", "medium", "smart")

# smart-tier weights
POINTS_WEIGHT = 2
CARD_BONUS = 50
TERMINAL_RANK_BONUS = 40
FOLLOW_UP_BONUS = 30
BLOCKER_PENALTY = 20
EMPTIED_SUIT_BONUS = 25

TERMINAL_RANKS = (1, 13)
BLOCKING_RANKS = (6, 8)


def enumerate_sequences(candidates: Sequence[Card], tableau: Tableau) -> List[List[Card]]:
    """Every contiguous per-suit range that resolves, plus the whole candidate set."""
    by_suit: Dict[str, List[Card]] = {}
    for card in candidates:
        by_suit.setdefault(card.suit, []).append(card)

    sequences: List[List[Card]] = []
    for suit_cards in by_suit.values():
        suit_cards.sort(key=lambda c: c.rank)
        for start in range(len(suit_cards)):
            for end in range(start, len(suit_cards)):
                ordered = resolve_play_order(suit_cards[start:end + 1], tableau)
                if ordered:
                    sequences.append(ordered)

    if len(candidates) > 1:
        ordered = resolve_play_order(list(candidates), tableau)
        if ordered and len(ordered) > 1:
            sequences.append(ordered)
    return sequences


def score_medium(sequence: Sequence[Card]) -> int:
    return len(sequence) * 100 + sum(card_points(card) for card in sequence)


def score_smart(sequence: Sequence[Card], hand: Sequence[Card], tableau: Tableau) -> int:
    played_ids = {card.id for card in sequence}
    remaining = [card for card in hand if card.id not in played_ids]
    after = place_cards(tableau, sequence)

    score = POINTS_WEIGHT * sum(card_points(card) for card in sequence)
    score += CARD_BONUS * len(sequence)
    score += FOLLOW_UP_BONUS * sum(1 for card in remaining if can_eventually_be_played(card, remaining, after))

    suits_left = {card.suit for card in remaining}
    for card in sequence:
        if card.rank in TERMINAL_RANKS:
            score += TERMINAL_RANK_BONUS
        if card.rank in BLOCKING_RANKS:
            has_lower = any(c.suit == card.suit and c.rank < card.rank for c in remaining)
            has_higher = any(c.suit == card.suit and c.rank > card.rank for c in remaining)
            if has_lower and has_higher:
                score -= BLOCKER_PENALTY
        if card.suit not in suits_left:
            score += EMPTIED_SUIT_BONUS
    return score


def choose_bot_move(
    hand: Sequence[Card],
    tableau: Tableau,
    difficulty: str = "dumb",
    rng: Optional[random.Random] = None,
) -> BotMove:
    rng = rng or random.Random()
    candidates = playable_candidates(hand, tableau)
    if not candidates:
        return BotMove(action="pass")

    # every non-empty candidate set holds at least one card that can go down now
    openers = [card for card in candidates if is_immediately_playable(card, tableau)]

    if difficulty == "dumb":
        return BotMove(action="play", cards=[rng.choice(openers)])

    sequences = enumerate_sequences(candidates, tableau)
    if not sequences:
        return BotMove(action="play", cards=[openers[0]])

    if difficulty == "medium":
        best = max(sequences, key=score_medium)
    else:
        best = max(sequences, key=lambda seq: score_smart(seq, hand, tableau))
    return BotMove(action="play", cards=best)
