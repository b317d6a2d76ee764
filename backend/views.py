from __future__ import annotations

from typing import List, Optional

from game import Room
from models import GameState, PlayerRef, PublicPlayer, RoomSummary
from rules import can_eventually_be_played


def _playable_card_ids(room: Room, viewer_id: Optional[str]) -> Optional[List[str]]:
    current = room.current_player
    if current is None or current.id != viewer_id:
        return None
    if room.state != "playing" or room.round_ended:
        return None
    if room.help_mode:
        return [c.id for c in current.hand if can_eventually_be_played(c, current.hand, room.tableau)]
    # without help every card is selectable; play_cards stays the authority
    return [c.id for c in current.hand]


def build_game_state(room: Room, viewer_id: Optional[str]) -> GameState:
    """Snapshot of ``room`` as seen by ``viewer_id``.

    Opponent hands are hidden until the round has ended.
    """
    winners = set(room.round_winner_ids)
    players: List[PublicPlayer] = []
    for idx, player in enumerate(room.players):
        show_hand = player.id == viewer_id or room.round_ended
        players.append(
            PublicPlayer(
                id=player.id,
                name=player.name,
                card_count=len(player.hand),
                score=player.score,
                hand=list(player.hand) if show_hand else None,
                is_me=player.id == viewer_id,
                is_current=idx == room.current_player_index,
                is_host=player.id == room.host_id,
                is_dealer=idx == room.dealer_index,
                is_starter=idx == room.starter_index,
                has_asken=player.id == room.asken_holder_id,
                is_winner=player.id in winners,
                connected=player.connected,
                is_bot=player.is_bot,
            )
        )

    return GameState(
        code=room.code,
        host_id=room.host_id,
        state=room.state,
        mode=room.mode,
        round_number=room.round_number,
        current_player_index=room.current_player_index,
        dealer_index=room.dealer_index,
        starter_index=room.starter_index,
        tableau=dict(room.tableau),
        asken_holder_id=room.asken_holder_id,
        round_ended=room.round_ended,
        round_winners=[PlayerRef(id=p.id, name=p.name) for p in room.players if p.id in winners],
        round_scores=list(room.round_scores) if room.round_scores is not None else None,
        last_played_cards=list(room.last_played_cards),
        bot_difficulty=room.bot_difficulty,
        help_mode=room.help_mode,
        has_bots=room.has_bots,
        is_game_over=room.is_game_over,
        my_id=viewer_id,
        players=players,
        playable_card_ids=_playable_card_ids(room, viewer_id),
    )


def summarize_room(room: Room) -> RoomSummary:
    return RoomSummary(
        code=room.code,
        state=room.state,
        mode=room.mode,
        round_number=room.round_number,
        players=len(room.players),
        humans=[p.name for p in room.players if not p.is_bot],
        bots=[p.name for p in room.players if p.is_bot],
        last_activity=room.last_activity,
    )
