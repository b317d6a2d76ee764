"""
Deck model and tableau legality rules for Asken.

A suit is opened with its seven and then grows one rank at a time in either
direction. The very first card of a round is always the seven of spades.
Every function here is pure: tableaus passed in are never mutated.
"""
from __future__ import annotations

import random
from typing import Dict, Iterable, List, Optional, Sequence

from models import SUIT_ORDER, Card, SuitRun, Tableau

SUITS = ["spades", "hearts", "clubs", "diamonds"]
RANKS = list(range(1, 14))
OPENING_SUIT = "spades"
OPENING_RANK = 7
OPENING_CARD_ID = f"{OPENING_SUIT}-{OPENING_RANK}"

RANK_NAMES: Dict[int, str] = {
    1: "ace", 2: "two", 3: "three", 4: "four", 5: "five", 6: "six", 7: "seven",
    8: "eight", 9: "nine", 10: "ten", 11: "jack", 12: "queen", 13: "king",
}


# ------------------------------------------------------------------
# Deck
# ------------------------------------------------------------------
def make_deck() -> List[Card]:
    return [Card(suit=suit, rank=rank) for suit in SUITS for rank in RANKS]


def shuffle_deck(deck: Sequence[Card], rng: Optional[random.Random] = None) -> List[Card]:
    shuffled = list(deck)
    (rng or random).shuffle(shuffled)
    return shuffled


def sort_hand(hand: Iterable[Card]) -> List[Card]:
    return sorted(hand, key=lambda c: (SUIT_ORDER[c.suit], c.rank))


def card_points(card: Card) -> int:
    """Penalty value of a card left in hand when the round ends."""
    if card.rank == 1:
        return 25
    if card.rank >= 10:
        return 10
    return 5


def hand_points(hand: Iterable[Card]) -> int:
    return sum(card_points(card) for card in hand)


def card_label(card: Card) -> str:
    return f"{RANK_NAMES[card.rank]} of {card.suit}"


# ------------------------------------------------------------------
# Tableau
# ------------------------------------------------------------------
def empty_tableau() -> Tableau:
    return {suit: None for suit in SUITS}


def is_tableau_empty(tableau: Tableau) -> bool:
    return all(tableau.get(suit) is None for suit in SUITS)


def place_card(tableau: Tableau, card: Card) -> Tableau:
    updated = dict(tableau)
    run = tableau.get(card.suit)
    if run is None:
        updated[card.suit] = SuitRun(low=card.rank, high=card.rank)
    else:
        updated[card.suit] = run.extended(card.rank)
    return updated


def place_cards(tableau: Tableau, cards: Iterable[Card]) -> Tableau:
    for card in cards:
        tableau = place_card(tableau, card)
    return tableau


def _is_opening_card(card: Card) -> bool:
    return card.suit == OPENING_SUIT and card.rank == OPENING_RANK


def is_immediately_playable(card: Card, tableau: Tableau) -> bool:
    if is_tableau_empty(tableau):
        return _is_opening_card(card)
    run = tableau.get(card.suit)
    if run is None:
        return card.rank == OPENING_RANK
    return card.rank == run.low - 1 or card.rank == run.high + 1


def can_eventually_be_played(card: Card, hand: Sequence[Card], tableau: Tableau) -> bool:
    """True when the holder of ``hand`` could chain their own cards up to ``card``."""
    if is_tableau_empty(tableau):
        return _is_opening_card(card)

    held = {c.rank for c in hand if c.suit == card.suit}
    run = tableau.get(card.suit)

    if run is None:
        if card.rank == OPENING_RANK:
            return True
        if OPENING_RANK not in held:
            return False
        if card.rank > OPENING_RANK:
            bridge = range(OPENING_RANK + 1, card.rank)
        else:
            bridge = range(card.rank + 1, OPENING_RANK)
        return all(rank in held for rank in bridge)

    if card.rank > run.high:
        return all(rank in held for rank in range(run.high + 1, card.rank))
    if card.rank < run.low:
        return all(rank in held for rank in range(card.rank + 1, run.low))
    return False


def playable_candidates(hand: Sequence[Card], tableau: Tableau) -> List[Card]:
    return [card for card in hand if can_eventually_be_played(card, hand, tableau)]


def resolve_play_order(cards: Sequence[Card], tableau: Tableau) -> Optional[List[Card]]:
    """Find an order in which every selected card is playable when placed.

    Suits never block each other, so greedily committing any playable card
    finds an order whenever one exists. Returns ``None`` otherwise.
    """
    if not cards:
        return None

    if is_tableau_empty(tableau):
        if len(cards) == 1 and _is_opening_card(cards[0]):
            return [cards[0]]
        return None

    simulated = dict(tableau)
    remaining = list(cards)
    ordered: List[Card] = []

    while remaining:
        for idx, card in enumerate(remaining):
            if is_immediately_playable(card, simulated):
                ordered.append(remaining.pop(idx))
                simulated = place_card(simulated, card)
                break
        else:
            return None

    return ordered


def build_invalid_move_explanation(cards: Sequence[Card], tableau: Tableau) -> str:
    if not cards:
        return "No cards selected."

    reasons: List[str] = []
    for card in cards:
        label = card_label(card).capitalize()
        suit = card.suit
        run = tableau.get(card.suit)

        if run is None:
            if card.rank != OPENING_RANK:
                reasons.append(f"{label} cannot be played. {suit.capitalize()} must be started with a seven.")
            elif card.suit != OPENING_SUIT and is_tableau_empty(tableau):
                reasons.append(f"{label} cannot be played. The round opens with the seven of spades.")
            continue

        if card.rank == run.low - 1 or card.rank == run.high + 1:
            continue
        if card.rank < run.low:
            needed = run.low - 1
            reasons.append(f"{label} cannot be played. The {RANK_NAMES[needed]} of {suit} must be played first.")
        elif card.rank > run.high:
            needed = run.high + 1
            reasons.append(f"{label} cannot be played. The {RANK_NAMES[needed]} of {suit} must be played first.")
        else:
            reasons.append(f"{label} is already on the table.")

    if not reasons:
        return "These cards cannot be played together in any order."
    return "\n".join(reasons)
