"""HTTP gateway: routing, auth gating and structured error bodies."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from main import app, get_services
from tests.helpers import PASSWORD


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _register(client, username):
    resp = client.post("/auth/register", json={"username": username, "password": PASSWORD})
    assert resp.status_code == 201
    return resp.json()


def _login(client, username, password=PASSWORD):
    resp = client.post("/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp.json()


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    assert client.get("/health").json()["status"] == "operational"


def test_register_login_me(client):
    user = _register(client, "alice")
    assert user["state"] == "active"
    session = _login(client, "alice")
    assert session["access"] == {"state": "active", "pending_approvals": []}

    me = client.get("/auth/me", headers=_auth(session["token"])).json()
    assert me["username"] == "alice"
    assert me["access"]["state"] == "active"


def test_error_body_shape(client):
    _register(client, "alice")
    resp = client.post("/auth/login", json={"username": "alice", "password": "nope-nope"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "INVALID_CREDENTIALS", "detail": "Invalid username or password"}

    dup = client.post("/auth/register", json={"username": "alice", "password": PASSWORD})
    assert dup.status_code == 409
    assert dup.json()["error"] == "USER_EXISTS"


def test_missing_and_stale_tokens(client):
    _register(client, "alice")
    assert client.get("/projects").json()["error"] == "INVALID_CREDENTIALS"

    old = _login(client, "alice")["token"]
    changed = client.post(
        "/auth/change-password",
        json={"old_password": PASSWORD, "new_password": "rotated-pass"},
        headers=_auth(old),
    )
    assert changed.status_code == 200

    stale = client.get("/auth/me", headers=_auth(old))
    assert stale.status_code == 401
    assert stale.json()["error"] == "TOKEN_INVALIDATED"
    assert client.get("/auth/me", headers=_auth(changed.json()["token"])).status_code == 200


def test_pending_account_is_gated(client):
    _register(client, "alice")
    _register(client, "bob")
    alice = _login(client, "alice")["token"]
    project = client.post("/projects", json={"name": "Flatshare"}, headers=_auth(alice)).json()
    added = client.post(
        f"/projects/{project['id']}/members",
        json={"username": "bob", "role": "editor"},
        headers=_auth(alice),
    )
    assert added.status_code == 201

    bob = _login(client, "bob")["token"]
    changed = client.post(
        "/auth/change-password",
        json={"old_password": PASSWORD, "new_password": "rotated-pass"},
        headers=_auth(bob),
    ).json()
    assert changed["state"] == "pending_approval"
    bob = changed["token"]

    blocked = client.get("/projects", headers=_auth(bob))
    assert blocked.status_code == 403
    assert blocked.json()["error"] == "ACCOUNT_PENDING"

    mine = client.get("/approvals/my-pending", headers=_auth(bob)).json()
    assert len(mine) == 1
    approval_id = mine[0]["id"]
    assert mine[0]["required_votes"] == 1

    actionable = client.get("/approvals/actionable", headers=_auth(alice)).json()
    assert [a["id"] for a in actionable] == [approval_id]

    voted = client.post(
        f"/approvals/{approval_id}/vote", json={"vote": "approve"}, headers=_auth(alice)
    ).json()
    assert voted["status"] == "approved"
    assert voted["user_restored"] is True
    assert client.get("/projects", headers=_auth(bob)).status_code == 200

    again = client.post(
        f"/approvals/{approval_id}/vote", json={"vote": "approve"}, headers=_auth(alice)
    )
    assert again.status_code == 409
    assert again.json()["error"] == "APPROVAL_NOT_PENDING"


def test_recovery_over_http(client):
    for name in ("alice", "tom", "tina"):
        _register(client, name)
    alice = _login(client, "alice")["token"]
    for name in ("tom", "tina"):
        assert client.post("/trusted-users", json={"username": name}, headers=_auth(alice)).status_code == 201
    assert client.get("/trusted-users/readiness", headers=_auth(alice)).json()["ready"] is True

    token = client.post("/recovery/initiate", json={"username": "alice"}).json()["token"]
    ghost = client.post("/recovery/initiate", json={"username": "ghost"}).json()
    assert set(ghost) == {"token", "status", "expires_at"}

    tom = _login(client, "tom")["token"]
    pending = client.get("/recovery/pending", headers=_auth(tom)).json()
    assert [p["username"] for p in pending] == ["alice"]

    for name in ("tom", "tina"):
        voter = _login(client, name)["token"]
        client.post(f"/recovery/{token}/vote", json={"vote": "approve"}, headers=_auth(voter))
    assert client.get(f"/recovery/{token}/status").json()["status"] == "approved"

    reset = client.post(f"/recovery/{token}/reset", json={"new_password": "brand-new"})
    assert reset.status_code == 200
    assert reset.json()["state"] == "active"
    _login(client, "alice", "brand-new")

    assert client.get("/recovery/nope/status").status_code == 404


def test_history_verify(client):
    _register(client, "alice")
    token = _login(client, "alice")["token"]
    result = client.get("/history/verify", headers=_auth(token)).json()
    assert result["is_valid"] is True
    assert result["total_entries"] == 1


def test_project_history_for_members_only(client):
    for name in ("alice", "bob", "mallory"):
        _register(client, name)
    alice = _login(client, "alice")["token"]
    project_id = client.post("/projects", json={"name": "Trip"}, headers=_auth(alice)).json()["id"]
    client.post("/projects", json={"name": "Other"}, headers=_auth(alice))
    added = client.post(
        f"/projects/{project_id}/members", json={"username": "bob", "role": "editor"}, headers=_auth(alice)
    )
    assert added.status_code == 201

    bob = _login(client, "bob")["token"]
    resp = client.get("/history", params={"project_id": project_id}, headers=_auth(bob))
    assert resp.status_code == 200
    history = resp.json()
    assert [e["action"] for e in history] == ["MEMBER_ADDED", "PROJECT_CREATED"]
    assert {e["actor_username"] for e in history} == {"alice"}
    assert all(e["payload"]["project_id"] == project_id for e in history)

    page = client.get(
        "/history", params={"project_id": project_id, "limit": 1, "offset": 1}, headers=_auth(bob)
    ).json()
    assert [e["action"] for e in page] == ["PROJECT_CREATED"]

    mallory = _login(client, "mallory")["token"]
    denied = client.get("/history", params={"project_id": project_id}, headers=_auth(mallory))
    assert denied.status_code == 403
    assert denied.json()["error"] == "ACCESS_DENIED"
    missing = client.get("/history", params={"project_id": 999}, headers=_auth(alice))
    assert missing.status_code == 404
