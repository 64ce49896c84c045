"""SDK client against the in-process gateway."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from main import app, get_services
from quorum_sdk import QuorumAPIError, QuorumClient
from tests.helpers import PASSWORD


@pytest.fixture
def http(services):
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_client(http):
    def _make() -> QuorumClient:
        return QuorumClient("http://testserver", client=http)

    return _make


def test_login_stores_token(make_client):
    client = make_client()
    client.register("alice", PASSWORD)
    session = client.login("alice", PASSWORD)
    assert client.token == session.token
    assert session.state == "active"
    assert client.me()["username"] == "alice"
    assert client.health()["status"] == "operational"


def test_api_errors_carry_codes(make_client):
    client = make_client()
    with pytest.raises(QuorumAPIError) as exc:
        client.login("nobody", PASSWORD)
    assert exc.value.status_code == 401
    assert exc.value.error == "INVALID_CREDENTIALS"


def test_change_password_and_vote(make_client):
    admin, member = make_client(), make_client()
    admin.register("alice", PASSWORD)
    member.register("bob", PASSWORD)
    admin.login("alice", PASSWORD)
    member.login("bob", PASSWORD)
    project = admin.create_project("Flatshare")
    admin.add_member(project["id"], "bob", role="editor")

    old_token = member.token
    session = member.change_password(PASSWORD, "rotated-pass")
    assert session.state == "pending_approval"
    assert member.token != old_token

    pending = member.my_pending_approvals()
    assert len(pending) == 1
    assert pending[0].project_name == "Flatshare"

    [actionable] = admin.actionable_approvals()
    result = admin.vote(actionable.id, "approve")
    assert result.resolved
    assert result.status == "approved"
    assert member.get_approval(actionable.id).status == "approved"


def test_recovery_flow(make_client):
    owner, tom, tina = make_client(), make_client(), make_client()
    owner.register("alice", PASSWORD)
    owner.login("alice", PASSWORD)
    for c, name in ((tom, "tom"), (tina, "tina")):
        c.register(name, PASSWORD)
        c.login(name, PASSWORD)
        owner.add_trusted_user(name)

    anonymous = make_client()
    token = anonymous.initiate_recovery("alice")
    assert anonymous.recovery_status(token).required_approvals == 2

    assert tom.vote_on_recovery(token, "approve").status == "pending"
    assert tina.vote_on_recovery(token, "approve").status == "approved"
    anonymous.reset_password(token, "brand-new")
    assert anonymous.login("alice", "brand-new").state == "active"

    with pytest.raises(QuorumAPIError) as exc:
        anonymous.reset_password(token, "brand-newer")
    assert exc.value.error == "RECOVERY_NOT_APPROVED"
