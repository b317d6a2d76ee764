import gc
import random
from collections import defaultdict

import pytest
import pytest_asyncio

import service as service_module
from models import BotMove
from service import CHAT_MAX_LENGTH, GameService
from store import RoomStore


class RecordingTransport:
    def __init__(self):
        self.sent = defaultdict(list)

    async def send(self, connection_id, message):
        self.sent[connection_id].append(message)

    def types(self, connection_id):
        return [m["type"] for m in self.sent[connection_id]]

    def last(self, connection_id, kind):
        return next(m for m in reversed(self.sent[connection_id]) if m["type"] == kind)

    def clear(self):
        self.sent.clear()


@pytest_asyncio.fixture
async def transport():
    return RecordingTransport()


@pytest_asyncio.fixture
async def service(transport):
    svc = GameService(
        RoomStore(),
        transport,
        disconnect_grace=3600,
        bot_delay=(0, 0),
        rng=random.Random(11),
    )
    yield svc
    await svc.shutdown()


async def create_room(service, transport, host="h", name="Ann"):
    await service.handle(host, {"type": "create_room", "name": name})
    return transport.last(host, "room_created")["code"]


async def started_room(service, transport):
    code = await create_room(service, transport)
    await service.handle("b", {"type": "join_room", "code": code, "name": "Ben"})
    await service.handle("c", {"type": "join_room", "code": code.lower(), "name": "Cid"})
    await service.handle("h", {"type": "start_game", "mode": "quick"})
    return code


@pytest.mark.asyncio
async def test_create_room_sends_code_then_state(service, transport):
    code = await create_room(service, transport)
    assert len(code) == 4
    assert transport.types("h") == ["room_created", "state"]
    payload = transport.last("h", "state")["payload"]
    assert payload["code"] == code
    assert payload["hostId"] == "h"
    assert payload["state"] == "lobby"
    assert service.sessions["h"].room_code == code


@pytest.mark.asyncio
async def test_join_broadcasts_state_to_everyone(service, transport):
    code = await create_room(service, transport)
    await service.handle("b", {"type": "join_room", "code": code, "name": "Ben"})
    assert transport.last("b", "room_joined")["code"] == code
    for cid in ("h", "b"):
        payload = transport.last(cid, "state")["payload"]
        assert [p["name"] for p in payload["players"]] == ["Ann", "Ben"]
        assert payload["myId"] == cid


@pytest.mark.asyncio
async def test_errors_are_reported_to_the_sender(service, transport):
    await service.handle("x", {"type": "join_room", "code": "ZZZZ", "name": "Xen"})
    assert transport.last("x", "error")["error"] == "The room does not exist"

    await service.handle("x", {"type": "teleport"})
    assert transport.last("x", "error")["error"] == "Unknown command"

    await service.handle("x", {"type": "create_room", "name": "   "})
    assert transport.last("x", "error")["error"] == "Invalid request"

    await service.handle("x", {"type": "pass"})
    assert transport.last("x", "error")["error"] == "You are not in a room"


@pytest.mark.asyncio
async def test_start_game_deals_and_hides_other_hands(service, transport):
    code = await started_room(service, transport)
    room = await service.store.get(code)
    assert room.state == "playing"
    current = room.current_player.id

    for cid in ("h", "b", "c"):
        payload = transport.last(cid, "state")["payload"]
        mine = next(p for p in payload["players"] if p["id"] == cid)
        others = [p for p in payload["players"] if p["id"] != cid]
        assert mine["hand"] is not None
        assert all(p["hand"] is None for p in others)
        if cid == current:
            assert payload["playableCardIds"] == [card["id"] for card in mine["hand"]]
        else:
            assert payload["playableCardIds"] is None


@pytest.mark.asyncio
async def test_illegal_play_gets_an_explanation(service, transport):
    code = await started_room(service, transport)
    room = await service.store.get(code)
    current = room.current_player
    wrong = next(card.id for card in current.hand if card.id != "spades-7")

    await service.handle(current.id, {"type": "play_cards", "cardIds": [wrong]})
    message = transport.last(current.id, "invalid_move")["message"]
    assert "cannot be played" in message
    assert (await service.store.get(code)).current_player.id == current.id

    await service.handle(current.id, {"type": "play_cards", "cardIds": ["spades-7"]})
    after = await service.store.get(code)
    assert after.tableau["spades"].low == 7
    assert after.current_player_index == (room.current_player_index + 1) % 3


@pytest.mark.asyncio
async def test_select_cards_is_echoed_to_the_current_player_only(service, transport):
    code = await started_room(service, transport)
    room = await service.store.get(code)
    current = room.current_player.id
    other = next(p.id for p in room.players if p.id != current)

    await service.handle(current, {"type": "select_cards", "cardIds": ["spades-7"]})
    await service.handle(other, {"type": "select_cards", "cardIds": ["spades-7"]})
    assert transport.last(current, "cards_selected")["cardIds"] == ["spades-7"]
    assert "cards_selected" not in transport.types(other)


@pytest.mark.asyncio
async def test_bots_play_until_a_human_is_up(service, transport):
    code = await create_room(service, transport)
    await service.handle("h", {"type": "add_bot"})
    await service.handle("h", {"type": "add_bot"})
    await service.handle("h", {"type": "set_bot_difficulty", "difficulty": "smart"})
    await service.handle("h", {"type": "start_game"})
    await service.wait_idle()

    room = await service.store.get(code)
    assert room.has_bots
    assert room.bot_difficulty == "smart"
    assert room.round_ended or not room.current_player.is_bot
    # bots never receive messages
    assert set(transport.sent) == {"h"}


@pytest.mark.asyncio
async def test_next_round_closes_the_summary_first(service, transport):
    code = await started_room(service, transport)
    room = await service.store.get(code)
    room.end_round()
    room.state = "roundEnd"
    await service.store.set(room)
    transport.clear()

    await service.handle("h", {"type": "next_round"})
    assert transport.types("b")[:2] == ["close_modal", "state"]
    assert (await service.store.get(code)).round_number == 2


@pytest.mark.asyncio
async def test_leaving_a_running_game_ends_it_for_everyone(service, transport):
    code = await started_room(service, transport)
    await service.handle("b", {"type": "leave_room"})

    assert transport.last("h", "game_ended") == {"type": "game_ended", "playerName": "Ben", "reason": "left"}
    assert "game_ended" not in transport.types("b")
    assert await service.store.get(code) is None
    assert service.sessions["h"].room_code is None


@pytest.mark.asyncio
async def test_leaving_the_lobby_hands_over_host(service, transport):
    code = await create_room(service, transport)
    await service.handle("b", {"type": "join_room", "code": code, "name": "Ben"})
    await service.handle("h", {"type": "leave_room"})
    room = await service.store.get(code)
    assert room.host_id == "b"
    assert transport.last("b", "state")["payload"]["hostId"] == "b"

    await service.handle("b", {"type": "leave_room"})
    assert await service.store.get(code) is None


@pytest.mark.asyncio
async def test_host_end_game(service, transport):
    code = await started_room(service, transport)
    await service.handle("b", {"type": "host_end_game"})
    assert transport.last("b", "error")["error"] == "Only the host can do that"

    await service.handle("h", {"type": "host_end_game"})
    assert "host_ended_game" in transport.types("b")
    assert "host_ended_game" in transport.types("c")
    assert "host_ended_game" not in transport.types("h")
    assert await service.store.get(code) is None


@pytest.mark.asyncio
async def test_disconnect_then_rejoin_reclaims_the_seat(service, transport):
    code = await started_room(service, transport)
    await service.disconnect("b")
    room = await service.store.get(code)
    assert room.player_by_id("b").connected is False

    await service.handle("b2", {"type": "rejoin_room", "code": code, "name": "ben"})
    assert transport.last("b2", "rejoin_success")["code"] == code
    room = await service.store.get(code)
    assert room.player_by_id("b") is None
    assert room.player_by_id("b2").connected
    assert len(room.player_by_id("b2").hand) > 0


@pytest.mark.asyncio
async def test_rejoin_failures(service, transport):
    await service.handle("x", {"type": "rejoin_room", "code": "QQQQ", "name": "Xen"})
    assert transport.last("x", "rejoin_failed")["message"] == "The room no longer exists"

    code = await started_room(service, transport)
    await service.handle("x", {"type": "rejoin_room", "code": code, "name": "Xen"})
    assert "rejoin_failed" in transport.types("x")


@pytest.mark.asyncio
async def test_grace_period_expiry_evicts_from_the_lobby(transport):
    service = GameService(RoomStore(), transport, disconnect_grace=0, bot_delay=(0, 0))
    code = await create_room(service, transport)
    await service.handle("b", {"type": "join_room", "code": code, "name": "Ben"})
    await service.disconnect("b")
    await service.wait_idle()

    room = await service.store.get(code)
    assert [p.id for p in room.players] == ["h"]
    await service.shutdown()


@pytest.mark.asyncio
async def test_grace_period_expiry_ends_a_running_game(transport):
    service = GameService(RoomStore(), transport, disconnect_grace=0, bot_delay=(0, 0))
    code = await started_room(service, transport)
    await service.disconnect("c")
    await service.wait_idle()

    assert await service.store.get(code) is None
    ended = transport.last("h", "game_ended")
    assert ended["playerName"] == "Cid"
    assert ended["reason"] == "disconnected"
    await service.shutdown()


@pytest.mark.asyncio
async def test_ping_marks_connected(service, transport):
    code = await create_room(service, transport)
    room = await service.store.get(code)
    room.mark_disconnected("h", 1.0)
    await service.store.set(room)

    await service.handle("h", {"type": "ping"})
    assert transport.types("h")[-1] == "pong"
    assert (await service.store.get(code)).player_by_id("h").connected


@pytest.mark.asyncio
async def test_chat_is_trimmed_and_broadcast(service, transport):
    code = await create_room(service, transport)
    await service.handle("b", {"type": "join_room", "code": code, "name": "Ben"})
    await service.handle("b", {"type": "chat_message", "text": "  " + "x" * 300})
    message = transport.last("h", "chat_message")
    assert message["sender"] == "Ben"
    assert message["text"] == "x" * CHAT_MAX_LENGTH

    count = len(transport.sent["h"])
    await service.handle("b", {"type": "chat_message", "text": "   "})
    assert len(transport.sent["h"]) == count


@pytest.mark.asyncio
async def test_matchmaking_flow(service, transport):
    for cid, name in (("m1", "Ann"), ("m2", "Ben"), ("m3", "Cid")):
        await service.handle(cid, {"type": "join_matchmaking", "name": name})
    update = transport.last("m2", "matchmaking_update")
    assert update["queueCount"] == 3
    assert update["position"] == 2
    assert update["hostId"] == "m1"

    await service.handle("m2", {"type": "leave_matchmaking"})
    assert transport.last("m1", "matchmaking_update")["queueCount"] == 2

    await service.handle("m2", {"type": "join_matchmaking", "name": "Ben"})
    await service.handle("m3", {"type": "start_matchmaking_game", "selectedIds": ["m1"]})

    started = transport.last("m3", "matchmaking_game_started")
    assert started["playerName"] == "Cid"
    assert transport.last("m1", "matchmaking_game_started")["code"] == started["code"]
    assert "matchmaking_game_started" not in transport.types("m2")

    room = await service.store.get(started["code"])
    assert room.host_id == "m3"
    assert [p.name for p in room.players] == ["Cid", "Ann"]
    assert service.sessions["m1"].room_code == room.code
    assert transport.last("m2", "matchmaking_update")["queueCount"] == 1


@pytest.mark.asyncio
async def test_disconnect_leaves_matchmaking(service, transport):
    await service.handle("m1", {"type": "join_matchmaking", "name": "Ann"})
    await service.handle("m2", {"type": "join_matchmaking", "name": "Ben"})
    await service.disconnect("m1")
    assert service.matchmaking.connection_ids() == ["m2"]
    assert transport.last("m2", "matchmaking_update")["queueCount"] == 1


@pytest.mark.asyncio
async def test_room_locks_do_not_outlive_their_rooms(service, transport):
    for number in range(500):
        await service.handle("x", {"type": "join_room", "code": f"Q{number:03d}", "name": "Xena"})
    assert transport.last("x", "error")
    gc.collect()
    assert len(service._locks) == 0

    await create_room(service, transport)
    await service.handle("h", {"type": "leave_room"})
    gc.collect()
    assert len(service._locks) == 0


@pytest.mark.asyncio
async def test_bot_falls_back_to_a_legal_move(service, transport, monkeypatch):
    monkeypatch.setattr(service_module, "choose_bot_move", lambda *args, **kwargs: BotMove(action="pass"))
    code = await create_room(service, transport)
    await service.handle("h", {"type": "add_bot"})
    await service.handle("h", {"type": "add_bot"})
    await service.handle("h", {"type": "start_game", "mode": "quick"})
    await service.wait_idle()

    room = await service.store.get(code)
    assert not room.awaiting_bot
    assert room.round_ended or room.current_player.id == "h"


@pytest.mark.asyncio
async def test_matchmaking_suffixes_a_repeated_name(service, transport):
    await service.handle("m1", {"type": "join_matchmaking", "name": "Ann"})
    await service.handle("m2", {"type": "join_matchmaking", "name": "ann"})
    await service.handle("m1", {"type": "start_matchmaking_game"})

    assert transport.last("m1", "matchmaking_game_started")["playerName"] == "Ann"
    assert transport.last("m2", "matchmaking_game_started")["playerName"] == "ann 2"
    assert service.sessions["m2"].name == "ann 2"
