"""Quorum arithmetic: no database involved."""

from __future__ import annotations

import pytest

from quorum.policy import (
    VoteMode,
    quorum_size,
    recovery_required_approvals,
    required_votes,
)


@pytest.mark.parametrize(
    "members, expected",
    [(2, 1), (3, 1), (4, 2), (5, 2), (10, 4), (100, 33)],
)
def test_quorum_is_ceiling_of_a_third(members, expected):
    assert quorum_size(members) == expected
    rule = required_votes(members)
    assert rule.mode == VoteMode.QUORUM
    assert rule.n == expected


@pytest.mark.parametrize("members", [0, 1])
def test_solo_project_has_no_in_project_quorum(members):
    rule = required_votes(members)
    assert rule.mode == VoteMode.OVERRIDE_ONLY
    assert rule.n is None
    assert not rule.satisfiable
    assert not rule.is_met(1)
    assert not rule.is_met(1000)


def test_solo_project_ignores_admin_flag():
    assert required_votes(1, voter_is_admin=True).mode == VoteMode.OVERRIDE_ONLY


def test_admin_voter_resolves_with_one_vote():
    rule = required_votes(10, voter_is_admin=True)
    assert rule.mode == VoteMode.ADMIN_INSTANT
    assert rule.n == 1
    assert rule.is_met(1)


def test_is_met_threshold():
    rule = required_votes(4)
    assert not rule.is_met(1)
    assert rule.is_met(2)
    assert rule.is_met(3)


@pytest.mark.parametrize("pool, expected", [(0, 2), (1, 2), (3, 2), (6, 2), (7, 3), (12, 4)])
def test_recovery_requires_at_least_two(pool, expected):
    assert recovery_required_approvals(pool) == expected
