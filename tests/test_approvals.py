"""Approval engine: opening, voting, quorum resolution and read models."""

from __future__ import annotations

import pytest
from sqlalchemy import text

from quorum.approvals import ApprovalStatus
from quorum.errors import (
    AccessDenied,
    AlreadyVoted,
    ApprovalNotFound,
    ApprovalNotPending,
    InvalidVote,
    NotEligibleVoter,
    SoloProjectNoSelfApprove,
)
from quorum.policy import VoteMode
from tests.helpers import PASSWORD


def _status(services, project_id, user_id):
    return services.registry.get_membership(project_id, user_id)["status"]


def _user_state(services, user_id):
    return services.accounts.get_user(user_id)["state"]


def _vote_rows(services, approval_id):
    with services.engine.begin() as conn:
        return conn.execute(
            text("SELECT voter_id, vote FROM approval_votes WHERE approval_id = :a"),
            {"a": approval_id},
        ).fetchall()


@pytest.fixture
def five(make_user, make_project):
    """Project of five: alice (admin) plus four editors."""
    users = {name: make_user(name) for name in ("alice", "bob", "carol", "dave", "erin")}
    project = make_project("Flatshare", users["alice"], [users[n] for n in ("bob", "carol", "dave", "erin")])
    return project, users


def _security_event(services, user):
    return services.accounts.change_password(user["id"], PASSWORD, "rotated-pass").event


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------

def test_open_approval_is_idempotent(services, five):
    project, users = five
    bob = users["bob"]
    first = services.approvals.open_approval(bob["id"], project["id"], "password_change")
    second = services.approvals.open_approval(bob["id"], project["id"], "password_change")
    assert first["id"] == second["id"]
    assert _status(services, project["id"], bob["id"]) == "pending"
    assert len(services.history.entries_for_action("APPROVAL_OPENED")) == 1


def test_security_event_opens_one_approval_per_project(services, make_user, make_project):
    alice, bob = make_user("alice"), make_user("bob")
    p1 = make_project("One", bob, [alice])
    p2 = make_project("Two", bob, [alice])
    event = _security_event(services, alice)
    assert sorted(a["project_id"] for a in event.approvals) == [p1["id"], p2["id"]]
    assert _status(services, p1["id"], alice["id"]) == "pending"
    assert _status(services, p2["id"], alice["id"]) == "pending"
    assert _user_state(services, alice["id"]) == "pending_approval"


# ---------------------------------------------------------------------------
# Quorum resolution
# ---------------------------------------------------------------------------

def test_five_member_quorum(services, five):
    project, users = five
    alice = users["alice"]
    approval_id = _security_event(services, alice).approvals[0]["id"]

    rule = services.approvals.required_votes(project["id"], users["bob"]["id"], alice["id"])
    assert rule.mode == VoteMode.QUORUM
    assert rule.n == 2

    first = services.approvals.cast_vote(approval_id, users["bob"]["id"], "approve")
    assert first.status == "pending"
    assert first.approve_count == 1
    assert _status(services, project["id"], alice["id"]) == "pending"

    second = services.approvals.cast_vote(approval_id, users["carol"]["id"], "approve")
    assert second.resolved
    assert second.status == "approved"
    assert _status(services, project["id"], alice["id"]) == "active"
    assert _user_state(services, alice["id"]) == "active"
    assert second.user_restored

    with pytest.raises(ApprovalNotPending):
        services.approvals.cast_vote(approval_id, users["dave"]["id"], "approve")
    assert len(_vote_rows(services, approval_id)) == 2


def test_regular_rejects_never_resolve(services, five):
    project, users = five
    approval_id = _security_event(services, users["alice"]).approvals[0]["id"]
    for name in ("bob", "carol", "dave", "erin"):
        outcome = services.approvals.cast_vote(approval_id, users[name]["id"], "reject")
        assert outcome.status == "pending"
        assert not outcome.resolved
    assert _status(services, project["id"], users["alice"]["id"]) == "pending"


def test_admin_approve_resolves_instantly(services, five):
    project, users = five
    bob = users["bob"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    outcome = services.approvals.cast_vote(approval_id, users["alice"]["id"], "approve")
    assert outcome.required.mode == VoteMode.ADMIN_INSTANT
    assert outcome.status == "approved"
    assert _status(services, project["id"], bob["id"]) == "active"


def test_admin_reject_resolves_instantly_and_keeps_membership_pending(services, five):
    project, users = five
    bob = users["bob"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    outcome = services.approvals.cast_vote(approval_id, users["alice"]["id"], "reject", "not me")
    assert outcome.status == "rejected"
    assert _status(services, project["id"], bob["id"]) == "pending"
    with pytest.raises(ApprovalNotPending):
        services.approvals.cast_vote(approval_id, users["carol"]["id"], "approve")


def test_revote_replaces_and_identical_repeat_is_refused(services, five):
    _, users = five
    approval_id = _security_event(services, users["bob"]).approvals[0]["id"]
    carol = users["carol"]["id"]

    services.approvals.cast_vote(approval_id, carol, "reject")
    changed = services.approvals.cast_vote(approval_id, carol, "approve")
    assert changed.approve_count == 1
    with pytest.raises(AlreadyVoted):
        services.approvals.cast_vote(approval_id, carol, "approve")

    rows = _vote_rows(services, approval_id)
    assert len(rows) == 1
    assert rows[0].vote == "approve"


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def test_solo_project_cannot_self_approve(services, make_user, make_project):
    solo = make_user("solo")
    make_project("Just me", solo)
    approval_id = _security_event(services, solo).approvals[0]["id"]
    with pytest.raises(SoloProjectNoSelfApprove):
        services.approvals.cast_vote(approval_id, solo["id"], "approve")
    details = services.approvals.get_approval(approval_id, solo["id"])
    assert details.mode == VoteMode.OVERRIDE_ONLY.value
    assert details.required_votes is None
    assert details.can_self_approve is False


def test_subject_of_shared_project_is_not_eligible(services, five):
    _, users = five
    approval_id = _security_event(services, users["bob"]).approvals[0]["id"]
    with pytest.raises(NotEligibleVoter):
        services.approvals.cast_vote(approval_id, users["bob"]["id"], "approve")


def test_outsiders_and_pending_members_cannot_vote(services, five, make_user):
    _, users = five
    outsider = make_user("zed")
    approval_id = _security_event(services, users["bob"]).approvals[0]["id"]
    with pytest.raises(NotEligibleVoter):
        services.approvals.cast_vote(approval_id, outsider["id"], "approve")

    _security_event(services, users["carol"])
    with pytest.raises(NotEligibleVoter):
        services.approvals.cast_vote(approval_id, users["carol"]["id"], "approve")


def test_bad_vote_value_and_unknown_approval(services, five):
    _, users = five
    approval_id = _security_event(services, users["bob"]).approvals[0]["id"]
    with pytest.raises(InvalidVote):
        services.approvals.cast_vote(approval_id, users["carol"]["id"], "maybe")
    with pytest.raises(ApprovalNotFound):
        services.approvals.cast_vote(9999, users["carol"]["id"], "approve")


# ---------------------------------------------------------------------------
# Side effects and audit
# ---------------------------------------------------------------------------

def test_user_returns_active_only_after_every_project_approves(services, make_user, make_project):
    alice, bob = make_user("alice"), make_user("bob")
    make_project("One", bob, [alice])
    make_project("Two", bob, [alice])
    approvals = _security_event(services, alice).approvals

    services.approvals.cast_vote(approvals[0]["id"], bob["id"], "approve")
    assert _user_state(services, alice["id"]) == "pending_approval"
    services.approvals.cast_vote(approvals[1]["id"], bob["id"], "approve")
    assert _user_state(services, alice["id"]) == "active"


def test_each_vote_appends_exactly_one_entry(services, five):
    _, users = five
    approval_id = _security_event(services, users["alice"]).approvals[0]["id"]
    before = len(services.history.entries())
    services.approvals.cast_vote(approval_id, users["bob"]["id"], "approve")
    services.approvals.cast_vote(approval_id, users["carol"]["id"], "approve")
    entries = services.history.entries()[before:]
    assert [e.action for e in entries] == ["APPROVAL_VOTE", "APPROVAL_VOTE"]
    assert entries[0].payload["resolution"] is None
    assert entries[1].payload["resolution"] == "approved"
    assert services.history.verify().is_valid


def test_refused_vote_leaves_no_trace(services, five):
    _, users = five
    approval_id = _security_event(services, users["bob"]).approvals[0]["id"]
    before = len(services.history.entries())
    with pytest.raises(NotEligibleVoter):
        services.approvals.cast_vote(approval_id, users["bob"]["id"], "approve")
    assert len(services.history.entries()) == before
    assert _vote_rows(services, approval_id) == []


def test_resolution_on_already_active_membership_is_reported(services, five):
    project, users = five
    bob = users["bob"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    with services.engine.begin() as conn:
        conn.execute(
            text("UPDATE project_members SET status = 'active' WHERE project_id = :p AND user_id = :u"),
            {"p": project["id"], "u": bob["id"]},
        )
    outcome = services.approvals.cast_vote(approval_id, users["alice"]["id"], "approve")
    assert outcome.status == "approved"
    violations = services.history.entries_for_action("INTEGRITY_VIOLATION")
    assert len(violations) == 1
    assert violations[0].payload["approval_id"] == approval_id


def test_resolution_applies_exactly_once(services, five, monkeypatch):
    project, users = five
    bob = users["bob"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    activations = []
    activate = services.registry.activate

    def counting_activate(conn, project_id, user_id):
        activations.append((project_id, user_id))
        return activate(conn, project_id, user_id)

    monkeypatch.setattr(services.registry, "activate", counting_activate)
    with services.engine.begin() as conn:
        approval = dict(
            conn.execute(
                text("SELECT id, user_id, project_id, status FROM project_approvals WHERE id = :id"),
                {"id": approval_id},
            ).mappings().one()
        )
        assert services.approvals._resolve(conn, approval, ApprovalStatus.APPROVED) is True
        assert services.approvals._resolve(conn, approval, ApprovalStatus.APPROVED) is False
    assert activations == [(project["id"], bob["id"])]
    assert _status(services, project["id"], bob["id"]) == "active"
    assert services.history.entries_for_action("INTEGRITY_VIOLATION") == []


def test_vote_that_loses_the_resolution_race_changes_nothing(services, five, monkeypatch):
    project, users = five
    bob, alice = users["bob"], users["alice"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    resolve = services.approvals._resolve

    def beaten_to_it(conn, approval, target):
        # Another transaction resolves the approval between the read and the CAS.
        conn.execute(
            text("UPDATE project_approvals SET status = 'approved' WHERE id = :id"),
            {"id": approval["id"]},
        )
        return resolve(conn, approval, target)

    monkeypatch.setattr(services.approvals, "_resolve", beaten_to_it)
    outcome = services.approvals.cast_vote(approval_id, alice["id"], "approve")
    assert not outcome.resolved
    assert outcome.status == "approved"
    assert not outcome.user_restored
    assert services.history.entries_for_action("APPROVAL_VOTE")[-1].payload["resolution"] is None
    assert _status(services, project["id"], bob["id"]) == "pending"
    assert _user_state(services, bob["id"]) == "pending_approval"
    assert len(_vote_rows(services, approval_id)) == 1


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def test_read_models(services, five, make_user):
    project, users = five
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    approval_id = _security_event(services, bob).approvals[0]["id"]
    services.approvals.cast_vote(approval_id, carol["id"], "approve", "looks right")

    mine = services.approvals.get_my_pending_approvals(bob["id"])
    assert [a.id for a in mine] == [approval_id]
    assert mine[0].project_name == "Flatshare"
    assert mine[0].username == "bob"
    assert mine[0].vote_count == 1
    assert mine[0].required_votes == 2
    assert mine[0].can_self_approve is True
    assert mine[0].votes[0].voter_username == "carol"
    assert mine[0].votes[0].reason == "looks right"

    # carol already voted; bob cannot vote on his own approval
    assert services.approvals.get_actionable_approvals(carol["id"]) == []
    assert services.approvals.get_actionable_approvals(bob["id"]) == []
    actionable = services.approvals.get_actionable_approvals(alice["id"])
    assert [a.id for a in actionable] == [approval_id]
    assert actionable[0].mode == VoteMode.ADMIN_INSTANT.value
    assert actionable[0].required_votes == 1

    outsider = make_user("zed")
    with pytest.raises(AccessDenied):
        services.approvals.get_approval(approval_id, outsider["id"])
    assert services.approvals.get_approval(approval_id, bob["id"]).status == "pending"


def test_join_request_flow(services, five, make_user):
    project, users = five
    alice = users["alice"]
    newbie = make_user("newbie")
    member = services.approvals.request_membership(project["id"], newbie["id"], "reader", alice["id"])
    assert member["status"] == "pending"

    pending = services.registry.pending_members_for_admin(alice["id"])
    assert [(p["username"], p["approval_id"]) for p in pending] == [("newbie", member["approval_id"])]
    assert services.registry.pending_members_for_admin(users["bob"]["id"]) == []

    services.approvals.cast_vote(member["approval_id"], alice["id"], "approve")
    assert _status(services, project["id"], newbie["id"]) == "active"
    assert services.registry.pending_members_for_admin(alice["id"]) == []
