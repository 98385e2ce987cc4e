import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from main import app
from services.firestore_service import get_store


@pytest.fixture
def api(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def _as(user_id):
    return {"X-User-Id": user_id}


def _table(api, count=6):
    """Create a game as user-0 and seat user-1..user-{count-1}. Returns (game id, player ids)."""
    created = api.post("/api/games", json={"playerName": "Asha"}, headers=_as("user-0"))
    assert created.status_code == 201
    game_id = created.json()["gameId"]
    player_ids = [created.json()["playerId"]]
    for i in range(1, count):
        joined = api.post(f"/api/games/{game_id}/join", json={"playerName": f"P{i}"}, headers=_as(f"user-{i}"))
        assert joined.status_code == 200
        player_ids.append(joined.json()["playerId"])
    return game_id, player_ids


def _started(api):
    game_id, pids = _table(api)
    resp = api.post(f"/api/games/{game_id}/start", json={"playerId": pids[0]}, headers=_as("user-0"))
    assert resp.status_code == 200
    return game_id, pids


def test_health(api):
    assert api.get("/health").json()["status"] == "ok"


# ── Identity ──────────────────────────────────────────────────


def test_missing_identity_is_401(api, store):
    resp = api.post("/api/games", json={"playerName": "Asha"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "IDENTITY_ABSENT"
    assert store.dump() == {}


# ── Create / join ─────────────────────────────────────────────


def test_create_game(api):
    resp = api.post(
        "/api/games",
        json={"playerName": "Asha", "labelScheme": "english", "roleNames": {"chor": "Bandit"}},
        headers=_as("user-0"),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert len(body["gameId"]) == 6
    assert len(body["playerId"]) == 8


def test_create_game_blank_name(api):
    resp = api.post("/api/games", json={"playerName": "  "}, headers=_as("user-0"))
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "INVALID_NAME"


def test_create_game_unknown_role_label(api, store):
    resp = api.post(
        "/api/games",
        json={"playerName": "Asha", "roleNames": {"wizard": "X"}},
        headers=_as("user-0"),
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "INVALID_LABELS"
    assert store.dump() == {}


def test_join_and_rejoin(api):
    game_id, pids = _table(api, 2)
    again = api.post(f"/api/games/{game_id}/join", json={"playerName": "Other"}, headers=_as("user-1"))
    assert again.json() == {"gameId": game_id, "playerId": pids[1], "reconnected": True}


def test_join_full_game(api):
    game_id, _ = _table(api)
    resp = api.post(f"/api/games/{game_id}/join", json={"playerName": "Seventh"}, headers=_as("user-7"))
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "FULL"


def test_join_unknown_game(api):
    resp = api.post("/api/games/NOPE00/join", json={"playerName": "Asha"}, headers=_as("user-0"))
    assert resp.status_code == 404


# ── Start / view / guess ──────────────────────────────────────


def test_start_requires_host(api):
    game_id, pids = _table(api)
    resp = api.post(f"/api/games/{game_id}/start", json={"playerId": pids[2]}, headers=_as("user-2"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "NOT_HOST"


def test_start_with_someone_elses_seat(api):
    game_id, pids = _table(api)
    resp = api.post(f"/api/games/{game_id}/start", json={"playerId": pids[0]}, headers=_as("user-2"))
    assert resp.status_code == 404


def test_start_short_table(api):
    game_id, pids = _table(api, 3)
    resp = api.post(f"/api/games/{game_id}/start", json={"playerId": pids[0]}, headers=_as("user-0"))
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "NOT_ENOUGH_PLAYERS"


def test_view_hides_other_roles(api):
    game_id, pids = _started(api)
    view = api.get(f"/api/games/{game_id}", headers=_as("user-2")).json()

    assert view["state"] == "playing"
    assert view["me"]["id"] == pids[2]
    assert view["me"]["role"]
    others = [p for p in view["players"] if p["id"] != pids[2]]
    assert all(p["role"] is None for p in others)


def test_view_with_another_players_id_shows_only_your_own_seat(api):
    game_id, pids = _started(api)
    view = api.get(f"/api/games/{game_id}?playerId={pids[2]}", headers=_as("user-1")).json()

    assert view["me"]["id"] == pids[1]
    assert view["me"]["userId"] == "user-1"
    theirs = next(p for p in view["players"] if p["id"] == pids[2])
    if not theirs["isLocked"]:
        assert theirs["role"] is None


def test_view_unknown_game(api):
    assert api.get("/api/games/NOPE00", headers=_as("user-0")).status_code == 404


def _turn_holder(api, game_id, pids):
    view = api.get(f"/api/games/{game_id}", headers=_as("user-0")).json()
    turn = view["currentTurnPlayerId"]
    return pids.index(turn), view["version"]


def test_guess_roundtrip(api):
    game_id, pids = _started(api)
    idx, version = _turn_holder(api, game_id, pids)
    target = pids[(idx + 1) % 6]

    resp = api.post(
        f"/api/games/{game_id}/guess",
        json={"playerId": pids[idx], "targetId": target, "expectedVersion": version},
        headers=_as(f"user-{idx}"),
    )
    assert resp.status_code == 200
    outcome = resp.json()
    assert outcome["actorId"] == pids[idx]
    assert outcome["version"] == version + 1
    assert isinstance(outcome["correct"], bool)


def test_guess_on_stale_snapshot_is_retryable(api):
    game_id, pids = _started(api)
    idx, version = _turn_holder(api, game_id, pids)

    resp = api.post(
        f"/api/games/{game_id}/guess",
        json={"playerId": pids[idx], "targetId": pids[(idx + 1) % 6], "expectedVersion": version - 1},
        headers=_as(f"user-{idx}"),
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["retryable"] is True
    assert resp.json()["detail"]["code"] == "STALE_STATE"


def test_guess_out_of_turn(api):
    game_id, pids = _started(api)
    idx, _ = _turn_holder(api, game_id, pids)
    other = (idx + 1) % 6

    resp = api.post(
        f"/api/games/{game_id}/guess",
        json={"playerId": pids[other], "targetId": pids[idx]},
        headers=_as(f"user-{other}"),
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "NOT_YOUR_TURN"


# ── Leave / users ─────────────────────────────────────────────


def test_leave_and_membership_listing(api):
    game_id, pids = _table(api, 3)
    assert set(api.get("/api/users/me/games", headers=_as("user-2")).json()["games"]) == {game_id}

    resp = api.post(f"/api/games/{game_id}/leave", json={"playerId": pids[2]}, headers=_as("user-2"))
    assert resp.status_code == 204
    assert api.get("/api/users/me/games", headers=_as("user-2")).json()["games"] == {}
    view = api.get(f"/api/games/{game_id}", headers=_as("user-0")).json()
    assert len(view["players"]) == 2


def test_leave_naming_the_hosts_seat_does_not_close_the_lobby(api):
    game_id, pids = _table(api, 3)

    resp = api.post(f"/api/games/{game_id}/leave", json={"playerId": pids[0]}, headers=_as("user-2"))
    assert resp.status_code == 204

    view = api.get(f"/api/games/{game_id}", headers=_as("user-0"))
    assert view.status_code == 200
    assert [p["id"] for p in view.json()["players"]] == pids[:2]


def test_delete_account_closes_hosted_games(api):
    game_id, _ = _table(api, 2)
    resp = api.delete("/api/users/me", headers=_as("user-0"))
    assert resp.json() == {"deleted": True, "closedGames": [game_id]}
    assert api.get(f"/api/games/{game_id}", headers=_as("user-1")).status_code == 404


# ── Quick play ────────────────────────────────────────────────


def test_quick_play_fills_a_game(api):
    responses = [
        api.post("/api/quick-play", json={"playerName": f"Q{i}"}, headers=_as(f"user-{i}")).json()
        for i in range(6)
    ]
    assert len({r["queueId"] for r in responses}) == 1
    assert [r["waiting"] for r in responses[:5]] == [1, 2, 3, 4, 5]
    assert responses[-1]["gameId"]

    game = api.get(f"/api/games/{responses[-1]['gameId']}", headers=_as("user-3")).json()
    assert game["state"] == "lobby"
    assert len(game["players"]) == 6


def test_quick_play_heartbeat_and_leave(api):
    seat = api.post("/api/quick-play", json={"playerName": "Q"}, headers=_as("user-1")).json()
    qid, pid = seat["queueId"], seat["playerId"]

    assert api.post(f"/api/quick-play/{qid}/{pid}/heartbeat", headers=_as("user-1")).status_code == 204
    assert api.delete(f"/api/quick-play/{qid}/{pid}", headers=_as("user-1")).status_code == 204
    assert api.post(f"/api/quick-play/{qid}/{pid}/heartbeat", headers=_as("user-1")).status_code == 404


# ── WebSocket ─────────────────────────────────────────────────


def _receive_until(ws, msg_type, limit=10):
    for _ in range(limit):
        msg = ws.receive_json()
        if msg["type"] == msg_type:
            return msg
    raise AssertionError(f"no {msg_type} message")


def test_ws_connect_snapshot_and_ping(api):
    game_id, pids = _table(api, 3)
    with api.websocket_connect(f"/ws/{game_id}?playerId={pids[1]}&userId=user-1") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["playerId"] == pids[1]
        assert hello["gameState"]["state"] == "lobby"
        assert len(hello["gameState"]["players"]) == 3

        ws.send_text("{not json")
        assert _receive_until(ws, "error")["code"] == "PARSE_ERROR"

        ws.send_json({"type": "ping"})
        assert _receive_until(ws, "pong") == {"type": "pong"}

        ws.send_json({"type": "dance"})
        assert _receive_until(ws, "error")["code"] == "UNKNOWN_TYPE"


def test_ws_host_starts_game(api):
    game_id, pids = _table(api)
    with api.websocket_connect(f"/ws/{game_id}?playerId={pids[0]}&userId=user-0") as ws:
        assert ws.receive_json()["type"] == "connected"
        ws.send_json({"type": "start", "data": {}})
        for _ in range(10):
            msg = _receive_until(ws, "state")
            if msg["gameState"]["state"] == "playing":
                break
        assert msg["gameState"]["me"]["role"]

        ws.send_json({"type": "guess", "data": {}})
        assert _receive_until(ws, "error")["code"] == "NO_TARGET_ID"


def test_ws_non_host_start_is_an_error_frame(api):
    game_id, pids = _table(api)
    with api.websocket_connect(f"/ws/{game_id}?playerId={pids[4]}&userId=user-4") as ws:
        ws.receive_json()
        ws.send_json({"type": "start"})
        err = _receive_until(ws, "error")
        assert err["code"] == "NOT_HOST"
        assert err["retryable"] is False


def test_ws_leave_closes_socket(api):
    game_id, pids = _table(api, 3)
    with api.websocket_connect(f"/ws/{game_id}?playerId={pids[2]}&userId=user-2") as ws:
        ws.receive_json()
        ws.send_json({"type": "leave"})
        assert _receive_until(ws, "left") == {"type": "left"}
    view = api.get(f"/api/games/{game_id}", headers=_as("user-0")).json()
    assert len(view["players"]) == 2


def test_ws_unknown_game_rejected(api):
    with pytest.raises(WebSocketDisconnect):
        with api.websocket_connect("/ws/NOPE00?playerId=X&userId=user-0") as ws:
            ws.receive_json()


def test_ws_without_identity_rejected(api):
    game_id, pids = _table(api, 2)
    with pytest.raises(WebSocketDisconnect):
        with api.websocket_connect(f"/ws/{game_id}?playerId={pids[0]}") as ws:
            ws.receive_json()
