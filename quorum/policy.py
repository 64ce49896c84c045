"""
Quorum Policy
Pure arithmetic for how many approving votes resolve an approval.

Mode table:
  ADMIN_INSTANT : a project admin (not the affected user) votes; one vote resolves
  QUORUM        : ceil(QUORUM_RATIO * member_count) distinct approving voters
  OVERRIDE_ONLY : the affected user is the only member; no in-project path,
                  only the privileged admin override can resolve it

No database access here; callers pass in the counts they looked up.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from enum import Enum

QUORUM_RATIO = float(os.environ.get("QUORUM_RATIO", "0.33"))
RECOVERY_MIN_APPROVALS = int(os.environ.get("RECOVERY_MIN_APPROVALS", "2"))


class VoteMode(str, Enum):
    ADMIN_INSTANT = "admin_instant"
    QUORUM = "quorum"
    OVERRIDE_ONLY = "override_only"


@dataclass(frozen=True)
class RequiredVotes:
    mode: VoteMode
    n: int | None  # None when no in-project quorum exists

    @property
    def satisfiable(self) -> bool:
        return self.mode != VoteMode.OVERRIDE_ONLY

    def is_met(self, approve_count: int) -> bool:
        return self.n is not None and approve_count >= self.n


def quorum_size(member_count: int, ratio: float = QUORUM_RATIO) -> int:
    """Return ceil(ratio * member_count).

    Rounded to 9 places first so float noise (0.33 * 100 = 33.000000000000004)
    cannot push an exact product up by one.
    """
    return math.ceil(round(ratio * member_count, 9))


def required_votes(member_count: int, voter_is_admin: bool = False) -> RequiredVotes:
    """
    Compute the resolution rule for a project approval.

    ``member_count`` counts active members plus the affected user; other
    pending members are excluded so a quorum never waits on people who
    cannot vote yet.
    """
    if member_count <= 1:
        return RequiredVotes(mode=VoteMode.OVERRIDE_ONLY, n=None)
    if voter_is_admin:
        return RequiredVotes(mode=VoteMode.ADMIN_INSTANT, n=1)
    return RequiredVotes(mode=VoteMode.QUORUM, n=quorum_size(member_count))


def recovery_required_approvals(pool_size: int) -> int:
    """Approvals a recovery intent needs from a voter pool of ``pool_size``."""
    return max(RECOVERY_MIN_APPROVALS, quorum_size(pool_size))
