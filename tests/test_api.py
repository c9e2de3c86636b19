from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from collabcanvas.config import feature_flags
from collabcanvas.config.settings import SyncSettings
from collabcanvas.server.app import create_app
from collabcanvas.server.core.hub import CanvasHub

ALICE = {"X-Actor-Id": "alice", "X-Actor-Name": "Alice"}
BOB = {"X-Actor-Id": "bob", "X-Actor-Name": "Bob"}


@pytest.fixture
def api_client():
    app = create_app(hub=CanvasHub(settings=SyncSettings()), enable_cors=False)
    with TestClient(app) as client:
        yield client


def _new_canvas(client: TestClient) -> dict:
    response = client.post("/api/canvases", json={"name": "Board"}, headers=ALICE)
    assert response.status_code == 200
    return response.json()["canvas"]


def _receive_until(ws, message_type: str, limit: int = 20) -> dict:
    for _ in range(limit):
        message = ws.receive_json()
        if message.get("type") == message_type:
            return message
    raise AssertionError(f"no {message_type} message received")


def test_health_and_status(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}
    status = api_client.get("/status").json()
    assert status["ok"] is True
    assert status["hub"]["running"] is True
    assert status["settings"]["lease_timeout"] == 5.0
    assert "enable_collaboration" in status["features"]


def test_request_id_round_trip(api_client: TestClient) -> None:
    response = api_client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"
    assert "X-Process-Time" in response.headers


def test_actor_header_required(api_client: TestClient) -> None:
    response = api_client.get("/api/canvases")
    assert response.status_code == 401
    body = response.json()
    assert body["ok"] is False
    assert body["code"] == "actor_required"


def test_canvas_share_flow(api_client: TestClient) -> None:
    canvas = _new_canvas(api_client)
    assert canvas["ownerId"] == "alice"
    assert canvas["ownerName"] == "Alice"
    assert canvas["shareCodeDisplay"].replace(" ", "") == canvas["shareCode"]

    lookup = api_client.get(f"/api/canvases/share-codes/{canvas['shareCode'].lower()}")
    assert lookup.json()["canvas_id"] == canvas["id"]

    joined = api_client.post(
        "/api/canvases/join", json={"share_code": canvas["shareCodeDisplay"]}, headers=BOB
    )
    assert joined.status_code == 200
    assert joined.json()["canvas"]["collaborators"] == ["bob"]

    again = api_client.post("/api/canvases/join", json={"share_code": canvas["shareCode"]}, headers=BOB)
    assert again.status_code == 400
    assert again.json()["code"] == "share_code_error"

    listing = api_client.get("/api/canvases", headers=BOB).json()
    assert [entry["canvasId"] for entry in listing["shared"]] == [canvas["id"]]
    assert listing["owned"] == []

    renamed = api_client.patch(f"/api/canvases/{canvas['id']}", json={"name": "Renamed"}, headers=BOB)
    assert renamed.json()["canvas"]["name"] == "Renamed"

    denied = api_client.delete(f"/api/canvases/{canvas['id']}", headers=BOB)
    assert denied.status_code == 403
    assert denied.json()["code"] == "permission_denied"

    regenerated = api_client.post(f"/api/canvases/{canvas['id']}/share-code", headers=ALICE).json()
    assert regenerated["share_code"] != canvas["shareCode"]

    removed = api_client.delete(
        f"/api/canvases/{canvas['id']}/collaborators/bob", headers=ALICE
    ).json()
    assert removed["collaborators"] == []

    deleted = api_client.delete(f"/api/canvases/{canvas['id']}", headers=ALICE)
    assert deleted.status_code == 200
    missing = api_client.get(f"/api/canvases/{canvas['id']}", headers=ALICE)
    assert missing.status_code == 404
    assert missing.json()["code"] == "canvas_not_found"


def test_shape_crud_and_history(api_client: TestClient) -> None:
    base = "/api/canvases/c1"
    created = api_client.post(
        f"{base}/shapes", json={"kind": "rectangle", "x": 10, "y": 20, "fill": "#ff0000"}, headers=ALICE
    ).json()
    shape = created["shape"]
    assert (shape["x"], shape["y"], shape["fill"]) == (10, 20, "#ff0000")
    assert shape["createdBy"] == "alice"
    assert created["can_undo"] is True

    updated = api_client.patch(
        f"{base}/shapes/{shape['id']}", json={"fields": {"x": 300}}, headers=ALICE
    ).json()
    assert updated["shape"]["x"] == 300

    undone = api_client.post(f"{base}/history/undo", headers=ALICE).json()
    assert undone["action"]["type"] == "update"
    assert undone["can_redo"] is True
    listed = api_client.get(f"{base}/shapes", headers=BOB).json()["shapes"]
    assert listed[0]["x"] == 10

    bob_history = api_client.get(f"{base}/history", headers=BOB).json()
    assert bob_history["can_undo"] is False

    deleted = api_client.delete(f"{base}/shapes/{shape['id']}", headers=BOB).json()
    assert deleted["deleted"] is True
    assert api_client.get(f"{base}/shapes", headers=ALICE).json()["shapes"] == []


def test_batch_endpoints_and_layers(api_client: TestClient) -> None:
    base = "/api/canvases/c2"
    batch = api_client.post(
        f"{base}/shapes/batch",
        json={"shapes": [{"id": "a", "type": "rectangle"}, {"id": "b", "type": "circle"}, {"id": "c", "type": "text"}]},
        headers=ALICE,
    ).json()
    assert [s["id"] for s in batch["shapes"]] == ["a", "b", "c"]

    updated = api_client.patch(
        f"{base}/shapes/batch",
        json={"updates": [{"id": "a", "fields": {"x": 1}}, {"id": "ghost", "fields": {"x": 2}}]},
        headers=ALICE,
    ).json()
    assert updated["updated"] == 1

    moved = api_client.post(f"{base}/shapes/a/z", json={"move": "front"}, headers=ALICE).json()
    assert moved["moved"] is True
    order = api_client.put(f"{base}/order", json={"ids": ["c", "b", "a"]}, headers=ALICE).json()
    assert order["order"] == ["c", "b", "a"]

    locked = api_client.post(f"{base}/shapes/b/layer-lock", headers=ALICE).json()
    assert locked["shape"]["layerLocked"] is True
    blocked = api_client.patch(f"{base}/shapes/b", json={"fields": {"x": 5}}, headers=BOB)
    assert blocked.status_code == 423
    assert blocked.json()["code"] == "layer_locked"
    permission = api_client.get(f"{base}/shapes/b/permission", headers=BOB).json()
    assert permission["canEdit"] is False

    hidden = api_client.post(f"{base}/shapes/c/visibility", headers=ALICE).json()
    assert hidden["shape"]["visible"] is False

    duplicate = api_client.post(f"{base}/shapes/c/duplicate", headers=ALICE).json()
    assert duplicate["shape"]["id"] != "c"

    removed = api_client.post(f"{base}/shapes/delete", json={"ids": ["a", "c"]}, headers=ALICE).json()
    assert removed["deleted"] == 2


def test_lease_conflict(api_client: TestClient) -> None:
    base = "/api/canvases/c3"
    shape = api_client.post(f"{base}/shapes", json={"kind": "circle"}, headers=ALICE).json()["shape"]
    lock_url = f"{base}/shapes/{shape['id']}/lock"

    assert api_client.post(lock_url, headers=ALICE).json()["granted"] is True
    assert api_client.post(lock_url, headers=BOB).json()["granted"] is False
    permission = api_client.get(f"{base}/shapes/{shape['id']}/permission", headers=BOB).json()
    assert permission["holder"] == "alice"
    assert api_client.delete(f"{base}/shapes/{shape['id']}", headers=BOB).json()["deleted"] is False

    assert api_client.delete(lock_url, headers=BOB).json()["released"] is False
    assert api_client.delete(lock_url, headers=ALICE).json()["released"] is True
    assert api_client.post(lock_url, headers=BOB).json()["granted"] is True
    assert api_client.delete(f"{lock_url}?force=true", headers=ALICE).json()["released"] is True
    assert api_client.post(f"{base}/locks/reap", headers=ALICE).json()["cleared"] == 0


def test_errors_use_common_body(api_client: TestClient) -> None:
    missing = api_client.patch(
        "/api/canvases/c4/shapes/ghost", json={"fields": {"x": 1}}, headers=ALICE
    )
    assert missing.status_code == 404
    body = missing.json()
    assert body["code"] == "shape_not_found"
    assert body["details"] == {"shape_id": "ghost"}
    assert body["request_id"]

    invalid = api_client.post("/api/canvases/c4/shapes", json={"kind": "hexagon"}, headers=ALICE)
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "validation_error"

    bad_move = api_client.post("/api/canvases/c4/shapes/x/z", json={"move": "sideways"}, headers=ALICE)
    assert bad_move.status_code == 422


def test_presence_endpoints(api_client: TestClient) -> None:
    base = "/api/canvases/c5/presence"
    joined = api_client.post(f"{base}/join", json={}, headers=ALICE).json()
    assert joined["session"]["displayName"] == "Alice"
    api_client.post(f"{base}/cursor", json={"x": 4, "y": 8}, headers=ALICE)

    sessions = api_client.get(base, headers=BOB).json()["sessions"]
    assert [(s["actorId"], s["cursorX"], s["cursorY"]) for s in sessions] == [("alice", 4.0, 8.0)]
    assert api_client.get(base, headers=ALICE).json()["sessions"] == []

    assert api_client.post(f"{base}/reap", json={"max_age": 1000}, headers=BOB).json()["removed"] == 0
    api_client.post(f"{base}/leave", headers=ALICE)
    assert api_client.get(base, headers=BOB).json()["sessions"] == []


def test_feature_flags_gate_routes(api_client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(
        feature_flags, "is_enabled", lambda name, **_: name != "enable_collaboration"
    )
    response = api_client.get("/api/canvases/c1/shapes", headers=ALICE)
    assert response.status_code == 403
    assert response.json()["code"] == "collaboration_disabled"

    monkeypatch.setattr(feature_flags, "is_enabled", lambda name, **_: name != "enable_presence")
    response = api_client.get("/api/canvases/c1/presence", headers=ALICE)
    assert response.status_code == 403
    assert response.json()["code"] == "presence_disabled"


def test_websocket_session(api_client: TestClient) -> None:
    with api_client.websocket_connect("/api/canvases/ws1/ws", headers=ALICE) as alice:
        joined = alice.receive_json()
        assert joined["type"] == "session.joined"
        assert joined["actorId"] == "alice"
        assert _receive_until(alice, "shapes.snapshot")["shapes"] == []

        alice.send_json({"type": "ping"})
        assert _receive_until(alice, "pong")["type"] == "pong"

        alice.send_json({"type": "shape.create", "kind": "rectangle", "x": 5, "y": 5})
        ack = _receive_until(alice, "ack")
        assert ack["op"] == "shape.create"
        shape_id = ack["result"]["id"]

        with api_client.websocket_connect("/api/canvases/ws1/ws?actor_id=bob&name=Bob") as bob:
            assert bob.receive_json()["type"] == "session.joined"
            snapshot = _receive_until(bob, "shapes.snapshot")
            assert [s["id"] for s in snapshot["shapes"]] == [shape_id]

            presence = _receive_until(alice, "presence.update")
            assert "bob" in presence["sessions"]

            bob.send_json({"type": "lock.acquire", "id": shape_id})
            assert _receive_until(bob, "ack")["result"] is True
            alice.send_json({"type": "lock.acquire", "id": shape_id})
            assert _receive_until(alice, "ack")["result"] is False

            bob.send_json({"type": "shape.update", "id": "ghost", "fields": {"x": 1}})
            error = _receive_until(bob, "error")
            assert error["code"] == "shape_not_found"
            assert error["op"] == "shape.update"

            bob.send_json({"type": "shape.teleport"})
            assert _receive_until(bob, "error")["error"] == "unknown_message_type"

        alice.send_json({"type": "history.undo"})
        undo = _receive_until(alice, "ack")
        assert undo["result"]["type"] == "create"


def test_websocket_requires_actor(api_client: TestClient) -> None:
    with api_client.websocket_connect("/api/canvases/ws2/ws") as ws:
        message = ws.receive_json()
        assert message == {"type": "error", "error": "actor_required"}


def test_websocket_survives_malformed_messages(api_client: TestClient) -> None:
    with api_client.websocket_connect("/api/canvases/ws3/ws", headers=ALICE) as alice:
        _receive_until(alice, "shapes.snapshot")

        alice.send_json({"type": "cursor.update", "x": "abc", "y": 1})
        error = _receive_until(alice, "error")
        assert (error["op"], error["code"]) == ("cursor.update", "invalid_message")

        alice.send_json({"type": "shape.update", "id": "s1", "fields": [1, 2]})
        error = _receive_until(alice, "error")
        assert (error["op"], error["code"]) == ("shape.update", "invalid_message")

        alice.send_json({"type": "ping"})
        assert _receive_until(alice, "pong")["type"] == "pong"
