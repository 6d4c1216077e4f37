import asyncio
from datetime import datetime

import pytest
from starlette.websockets import WebSocketDisconnect

from tests.conftest import PASSWORD, auth

LISTING = {"name": "Corner Bakery", "description": "Fresh bread daily", "category": "Food"}


def _create(client, token, **overrides):
    return client.post("/api/businesses", json={**LISTING, **overrides}, headers=auth(token))


def test_root_and_database_check(client):
    assert client.get("/").json() == {"message": "Business Directory API running"}
    assert client.get("/test").json()["database"] == "ok"


def test_signup_login_me(client, signup):
    token, user = signup("Alice", plan="Gold")
    assert user["plan"] == "Gold"
    assert user["role"] == "user"
    assert "password_hash" not in user

    resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert resp.json()["success"] is True
    token = resp.json()["data"]["token"]

    me = client.get("/api/auth/me", headers=auth(token)).json()
    assert me == {"success": True, "data": user}
    assert client.post("/api/auth/logout", headers=auth(token)).json() == {"success": True, "data": None}


def test_duplicate_signup_is_conflict(client, signup):
    signup("Alice")
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Alice", "email": "alice@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 409
    assert resp.json() == {"success": False, "message": "Email already exists", "error": "conflict"}


def test_bad_login_is_unauthenticated(client, signup):
    signup("Alice")
    resp = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-one"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthenticated"


def test_validation_envelope(client, signup):
    token, _ = signup("Alice")
    resp = client.post("/api/businesses", json={"name": "No description"}, headers=auth(token))
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "validation"


def test_error_kinds_are_distinct(client, signup):
    owner_token, _ = signup("Olivia")
    business_id = _create(client, owner_token).json()["data"]["id"]

    missing_token = client.post(f"/api/businesses/{business_id}/subscribe")
    assert (missing_token.status_code, missing_token.json()["error"]) == (401, "unauthenticated")

    bad_token = client.post(f"/api/businesses/{business_id}/subscribe", headers=auth("garbage"))
    assert (bad_token.status_code, bad_token.json()["message"]) == (401, "Invalid token")

    own = client.post(f"/api/businesses/{business_id}/subscribe", headers=auth(owner_token))
    assert (own.status_code, own.json()["error"]) == (403, "forbidden")

    missing = client.post("/api/businesses/0123456789abcdef01234567/subscribe", headers=auth(owner_token))
    assert (missing.status_code, missing.json()["error"]) == (404, "not_found")


def test_public_listing_and_filters(client, signup):
    olivia, _ = signup("Olivia", plan="Gold")
    oscar, _ = signup("Oscar")
    _create(client, olivia)
    _create(client, olivia, name="Bike Repair", description="Flats fixed", category="Services")
    _create(client, oscar, name="Night Cafe", description="Bread at night")

    everything = client.get("/api/businesses").json()["data"]
    assert len(everything) == 3
    assert everything[0]["owner"]["kind"] == "resolved"

    bread = client.get("/api/businesses", params={"search": "bread"}).json()["data"]
    assert sorted(b["name"] for b in bread) == ["Corner Bakery", "Night Cafe"]

    services = client.get("/api/businesses", params={"category": "Services"}).json()["data"]
    assert [b["name"] for b in services] == ["Bike Repair"]

    mine = client.get("/api/businesses", params={"onlyOwned": "true"}, headers=auth(oscar)).json()["data"]
    assert [b["name"] for b in mine] == ["Night Cafe"]

    # anonymous callers own nothing, so the flag is ignored
    assert len(client.get("/api/businesses", params={"onlyOwned": "true"}).json()["data"]) == 3


def test_quota_then_upgrade(client, signup):
    token, _ = signup("Sam")
    assert _create(client, token, name="B1").status_code == 201

    blocked = _create(client, token, name="B2")
    assert blocked.status_code == 403
    assert blocked.json()["error"] == "quota_exceeded"

    upgraded = client.post("/api/users/upgrade-plan", json={"plan": "Gold"}, headers=auth(token))
    assert upgraded.json()["data"]["plan"] == "Gold"
    assert _create(client, token, name="B2").status_code == 201
    assert _create(client, token, name="B3").status_code == 201
    assert _create(client, token, name="B4").status_code == 403


def test_invalid_plan_is_rejected(client, signup):
    token, _ = signup("Sam")
    resp = client.post("/api/users/upgrade-plan", json={"plan": "Diamond"}, headers=auth(token))
    assert resp.status_code == 422


def test_update_and_delete_permissions(client, signup):
    owner, _ = signup("Olivia")
    other, _ = signup("Oscar")
    business_id = _create(client, owner).json()["data"]["id"]

    assert client.put(f"/api/businesses/{business_id}", json={"name": "X"}, headers=auth(other)).status_code == 403
    renamed = client.put(f"/api/businesses/{business_id}", json={"name": "Renamed"}, headers=auth(owner))
    assert renamed.json()["data"]["name"] == "Renamed"
    assert renamed.json()["data"]["description"] == LISTING["description"]

    assert client.delete(f"/api/businesses/{business_id}", headers=auth(other)).status_code == 403
    assert client.delete(f"/api/businesses/{business_id}", headers=auth(owner)).json() == {"success": True, "data": None}
    assert client.get(f"/api/businesses/{business_id}").status_code == 404


def test_subscribe_flow(client, signup):
    owner, _ = signup("Olivia")
    fan, fan_user = signup("Fiona")
    business_id = _create(client, owner).json()["data"]["id"]

    assert client.post(f"/api/businesses/{business_id}/subscribe", headers=auth(fan)).status_code == 200
    again = client.post(f"/api/businesses/{business_id}/subscribe", headers=auth(fan))
    assert (again.status_code, again.json()["message"]) == (409, "Already subscribed")

    subscribers = client.get(f"/api/businesses/{business_id}").json()["data"]["subscribers"]
    assert subscribers == [{"kind": "resolved", "id": fan_user["id"], "name": "Fiona"}]

    assert client.delete(f"/api/businesses/{business_id}/subscribe", headers=auth(fan)).status_code == 200
    assert client.get(f"/api/businesses/{business_id}").json()["data"]["subscribers"] == []


def test_review_flow(client, signup):
    owner, _ = signup("Olivia")
    x, x_user = signup("Xavier")
    y, _ = signup("Yara")
    business_id = _create(client, owner).json()["data"]["id"]

    own = client.post(f"/api/businesses/{business_id}/review", json={"comment": "Best"}, headers=auth(owner))
    assert own.status_code == 403

    created = client.post(f"/api/businesses/{business_id}/review", json={"comment": "Great service"}, headers=auth(x))
    assert created.status_code == 201
    review = created.json()["data"]
    assert review["user"] == {"kind": "resolved", "id": x_user["id"], "name": "Xavier"}

    reviews = client.get(f"/api/businesses/{business_id}/reviews").json()["data"]
    assert [r["id"] for r in reviews] == [review["id"]]

    assert client.delete(f"/api/businesses/{business_id}/review/{review['id']}", headers=auth(y)).status_code == 403
    assert client.delete(f"/api/businesses/{business_id}/review/{review['id']}", headers=auth(x)).status_code == 200
    gone = client.delete(f"/api/businesses/{business_id}/review/{review['id']}", headers=auth(y))
    assert (gone.status_code, gone.json()["message"]) == (404, "Review not found")


def test_admin_bootstrap_and_moderation(client, signup):
    owner, _ = signup("Olivia")
    x, _ = signup("Xavier")
    business_id = _create(client, owner).json()["data"]["id"]
    client.post(f"/api/businesses/{business_id}/review", json={"comment": "Spam spam"}, headers=auth(x))

    boot = client.post("/api/init/bootstrap")
    assert boot.status_code == 201
    assert client.post("/api/init/bootstrap").status_code == 409

    login = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "Admin@123"})
    admin = login.json()["data"]["token"]

    assert client.get("/api/admin/reviews", headers=auth(x)).status_code == 403
    flagged = client.get("/api/admin/reviews", params={"search": "spam"}, headers=auth(admin)).json()["data"]
    assert [(r["business_name"], r["comment"]) for r in flagged] == [("Corner Bakery", "Spam spam")]

    assert client.delete(f"/api/businesses/{business_id}/review/{flagged[0]['id']}", headers=auth(admin)).status_code == 200
    assert client.delete(f"/api/businesses/{business_id}", headers=auth(admin)).status_code == 200


def test_saved_businesses_starts_empty(client, signup):
    token, _ = signup("Rita")
    assert client.get("/api/users/saved-businesses", headers=auth(token)).json() == {"success": True, "data": []}


# Live notifications

def test_socket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=garbage"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws"):
            pass


def test_socket_accepts_bearer_header(client, signup):
    token, _ = signup("Alice")
    with client.websocket_connect("/ws", headers=auth(token)) as ws:
        ws.send_json({"event": "ping"})
        assert ws.receive_json() == {"event": "pong"}
        ws.send_json({"event": "dance"})
        assert ws.receive_json()["event"] == "error"


def _join(ws, business_id):
    ws.send_json({"event": "subscribe", "businessId": business_id})
    assert ws.receive_json() == {"event": "subscribed", "businessId": business_id}


def _assert_drained(ws):
    # pong arrives after anything already queued for this socket
    ws.send_json({"event": "ping"})
    assert ws.receive_json() == {"event": "pong"}


def test_update_fans_out_to_joined_clients_only(client, signup):
    owner, _ = signup("Olivia")
    a, _ = signup("Anna")
    b, _ = signup("Ben")
    c, _ = signup("Cleo")
    d, _ = signup("Dan")
    business_id = _create(client, owner).json()["data"]["id"]

    with client.websocket_connect(f"/ws?token={a}") as ws_a, \
            client.websocket_connect(f"/ws?token={b}") as ws_b, \
            client.websocket_connect(f"/ws?token={c}") as never_joined, \
            client.websocket_connect(f"/ws?token={d}") as left:
        _join(ws_a, business_id)
        _join(ws_b, business_id)
        _join(left, business_id)
        left.send_json({"event": "unsubscribe", "businessId": business_id})
        assert left.receive_json() == {"event": "unsubscribed", "businessId": business_id}

        resp = client.put(f"/api/businesses/{business_id}", json={"description": "Now with croissants"}, headers=auth(owner))
        assert resp.status_code == 200

        for ws in (ws_a, ws_b):
            message = ws.receive_json()
            assert message == {
                "event": "notification",
                "data": {
                    "type": "update",
                    "businessId": business_id,
                    "businessName": "Corner Bakery",
                    "message": "Business details have been updated",
                },
            }
            _assert_drained(ws)

        _assert_drained(never_joined)
        _assert_drained(left)


def test_delete_notifies_joined_client(client, signup):
    owner, _ = signup("Olivia")
    a, _ = signup("Anna")
    business_id = _create(client, owner).json()["data"]["id"]

    with client.websocket_connect(f"/ws?token={a}") as ws:
        _join(ws, business_id)
        assert client.delete(f"/api/businesses/{business_id}", headers=auth(owner)).status_code == 200
        message = ws.receive_json()
        assert message["data"]["type"] == "delete"
        assert message["data"]["message"] == "Business has been deleted"


def test_bad_token_on_public_listing_is_rejected(client, signup):
    olivia, _ = signup("Olivia")
    _create(client, olivia)

    resp = client.get("/api/businesses", params={"onlyOwned": "true"}, headers=auth("expired-or-garbage"))

    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthenticated"


def _parse(stamp):
    return datetime.fromisoformat(stamp.replace("Z", "+00:00"))


def test_timestamps_survive_a_reread(client, signup):
    owner, _ = signup("Olivia")
    x, _ = signup("Xavier")
    created = _create(client, owner).json()["data"]
    review = client.post(
        f"/api/businesses/{created['id']}/review", json={"comment": "Great service"}, headers=auth(x)
    ).json()["data"]

    fetched = client.get(f"/api/businesses/{created['id']}").json()["data"]

    for field in ("created_at", "updated_at"):
        assert _parse(fetched[field]) == _parse(created[field])
        assert _parse(fetched[field]).utcoffset().total_seconds() == 0
    assert _parse(fetched["reviews"][0]["created_at"]) == _parse(review["created_at"])


def test_token_resolution_runs_off_the_event_loop(client, app, signup):
    owner, _ = signup("Olivia")
    business_id = _create(client, owner).json()["data"]["id"]
    accounts = app.state.accounts
    resolve = accounts.resolve_token
    on_loop = []

    def recording(token):
        try:
            asyncio.get_running_loop()
            on_loop.append(True)
        except RuntimeError:
            on_loop.append(False)
        return resolve(token)

    accounts.resolve_token = recording

    client.get("/api/auth/me", headers=auth(owner))
    client.get("/api/businesses", headers=auth(owner))
    client.put(f"/api/businesses/{business_id}", json={"name": "Renamed"}, headers=auth(owner))
    with client.websocket_connect(f"/ws?token={owner}") as ws:
        _assert_drained(ws)

    assert on_loop == [False, False, False, False]


def test_socket_survives_binary_frame(client, signup):
    token, _ = signup("Alice")
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_json() == {"event": "error", "message": "Malformed message"}
        ws.send_text("{not json")
        assert ws.receive_json() == {"event": "error", "message": "Malformed message"}
        _assert_drained(ws)


def test_empty_update_is_silent(client, signup):
    owner, _ = signup("Olivia")
    a, _ = signup("Anna")
    created = _create(client, owner).json()["data"]

    with client.websocket_connect(f"/ws?token={a}") as ws:
        _join(ws, created["id"])
        resp = client.put(f"/api/businesses/{created['id']}", json={}, headers=auth(owner))
        assert resp.status_code == 200
        assert _parse(resp.json()["data"]["updated_at"]) == _parse(created["updated_at"])
        _assert_drained(ws)
