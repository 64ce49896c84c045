"""Registration, login, password change and access state."""

from __future__ import annotations

import pytest
from sqlalchemy import text

from quorum.accounts import Active, PendingApproval, Revoked
from quorum.errors import (
    AccountPending,
    AccountRevoked,
    InvalidCredentials,
    InvalidInput,
    PasswordTooWeak,
    TokenInvalidated,
    UserExists,
)
from tests.helpers import PASSWORD


def test_register_starts_active_at_version_one(make_user):
    alice = make_user("alice")
    assert alice["state"] == "active"
    assert alice["token_version"] == 1
    assert "password_hash" not in alice


def test_register_rejects_duplicates_and_bad_input(services, make_user):
    make_user("alice")
    with pytest.raises(UserExists):
        make_user("alice")
    with pytest.raises(InvalidInput):
        services.accounts.register("   ", PASSWORD)
    with pytest.raises(PasswordTooWeak):
        services.accounts.register("bob", "12345")


def test_register_loses_race_to_a_committed_row(services):
    # Another writer committed the username without going through register.
    with services.engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO users (username, password_hash, state, token_version, created_at) "
                "VALUES ('racer', 'x', 'active', 1, '2026-03-01T09:00:00.000000Z')"
            )
        )
    with pytest.raises(UserExists):
        services.accounts.register("racer", PASSWORD)
    assert services.history.entries_for_action("USER_REGISTERED") == []


def test_login_success_and_failures(services, make_user):
    make_user("alice")
    result = services.accounts.login("alice", PASSWORD)
    assert isinstance(result.access, Active)
    assert services.accounts.authenticate(result.credential.token).username == "alice"

    with pytest.raises(InvalidCredentials):
        services.accounts.login("alice", "wrong-password")
    with pytest.raises(InvalidCredentials):
        services.accounts.login("nobody", PASSWORD)


def test_revoked_login_fails_regardless_of_password(services, make_user):
    make_user("alice")
    services.override.revoke("alice")
    with pytest.raises(AccountRevoked):
        services.accounts.login("alice", PASSWORD)
    with pytest.raises(AccountRevoked):
        services.accounts.login("alice", "wrong-password")


def test_change_password_is_a_security_event(services, make_user, make_project):
    alice = make_user("alice")
    bob = make_user("bob")
    make_project("Trip", bob, [alice])
    old = services.accounts.login("alice", PASSWORD).credential.token

    result = services.accounts.change_password(alice["id"], PASSWORD, "new-secret")
    assert result.event.previous_version == 1
    assert result.event.new_version == 2
    assert result.event.state == "pending_approval"
    assert len(result.event.approvals) == 1

    with pytest.raises(TokenInvalidated):
        services.accounts.authenticate(old)
    with pytest.raises(AccountPending):
        services.accounts.authenticate(result.credential.token)
    principal = services.accounts.authenticate(result.credential.token, allow_pending=True)
    assert principal.state == "pending_approval"

    state = services.accounts.access_state(alice["id"])
    assert isinstance(state, PendingApproval)
    assert [a["id"] for a in state.approvals] == [result.event.approvals[0]["id"]]

    assert services.accounts.login("alice", "new-secret").user["state"] == "pending_approval"
    with pytest.raises(InvalidCredentials):
        services.accounts.login("alice", PASSWORD)


def test_change_password_without_projects_stays_active(services, make_user):
    alice = make_user("alice")
    result = services.accounts.change_password(alice["id"], PASSWORD, "new-secret")
    assert result.event.state == "active"
    assert result.event.approvals == []
    assert isinstance(services.accounts.access_state(alice["id"]), Active)


def test_change_password_requires_old_password(services, make_user):
    alice = make_user("alice")
    with pytest.raises(InvalidCredentials):
        services.accounts.change_password(alice["id"], "not-it", "new-secret")
    with pytest.raises(PasswordTooWeak):
        services.accounts.change_password(alice["id"], PASSWORD, "123")
    assert services.tokens.issue(alice["id"]).version == 1


def test_access_state_revoked(services, make_user):
    alice = make_user("alice")
    services.override.revoke("alice")
    assert isinstance(services.accounts.access_state(alice["id"]), Revoked)
