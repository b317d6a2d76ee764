import os
import importlib

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("ORIGIN", "http://localhost:5173")
os.environ.setdefault("BOT_DELAY_MIN_SEC", "0")
os.environ.setdefault("BOT_DELAY_MAX_SEC", "0")
app_mod = importlib.import_module("main")


@pytest.fixture(scope="module")
def client():
    with TestClient(app_mod.app) as c:
        yield c


def open_room(ws, name="Ann"):
    hello = ws.receive_json()
    assert hello["type"] == "connected"
    ws.send_json({"type": "create_room", "name": name})
    created = ws.receive_json()
    assert created["type"] == "room_created"
    state = ws.receive_json()
    assert state["type"] == "state"
    return hello["connectionId"], created["code"], state["payload"]


def test_unknown_room_state_is_404(client):
    r = client.get("/api/game/state/NOPE")
    assert r.status_code == 404


def test_create_and_join_over_websocket(client):
    with client.websocket_connect("/ws") as ws_a:
        a_id, code, payload = open_room(ws_a)
        assert payload["hostId"] == a_id
        assert payload["players"][0]["isMe"] is True

        with client.websocket_connect("/ws") as ws_b:
            b_id = ws_b.receive_json()["connectionId"]
            ws_b.send_json({"type": "join_room", "code": code.lower(), "name": "Ben"})
            assert ws_b.receive_json() == {"type": "room_joined", "code": code}
            b_state = ws_b.receive_json()
            assert b_state["type"] == "state"
            assert b_state["payload"]["myId"] == b_id

            a_state = ws_a.receive_json()
            assert [p["name"] for p in a_state["payload"]["players"]] == ["Ann", "Ben"]

            r = client.get(f"/api/game/state/{code}", headers={"x-user-id": b_id})
            assert r.status_code == 200
            st = r.json()
            assert st["code"] == code
            assert st["state"] == "lobby"
            assert st["myId"] == b_id

            rooms = client.get("/api/rooms").json()
            summary = next(room for room in rooms if room["code"] == code)
            assert summary["humans"] == ["Ann", "Ben"]
            assert client.get("/api/rooms/count").json()["count"] >= 1


def test_ws_invalid_action_returns_error_without_disconnect(client):
    with client.websocket_connect("/ws") as ws:
        open_room(ws)

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "error": "Unknown command"}

        ws.send_json({"type": "start_game"})
        assert ws.receive_json() == {"type": "error", "error": "At least 3 players are required"}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_game_with_bots_over_websocket(client):
    with client.websocket_connect("/ws") as ws:
        me, code, _ = open_room(ws)
        for _ in range(2):
            ws.send_json({"type": "add_bot"})
            assert ws.receive_json()["type"] == "state"
        ws.send_json({"type": "start_game", "mode": "standard"})
        state = ws.receive_json()
        assert state["type"] == "state"
        payload = state["payload"]
        assert payload["state"] == "playing"
        assert payload["mode"] == "standard"
        assert payload["hasBots"] is True
        mine = next(p for p in payload["players"] if p["isMe"])
        assert len(mine["hand"]) in (17, 18)
