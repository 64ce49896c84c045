"""
Approval Engine
Creates, tallies and resolves per-project approval requests opened by
security events (password change, admin reset, completed recovery) and by
join requests.

Flow for a vote:
  1. Lock the approval row (no-op UPDATE) so votes on one approval serialize
  2. Validate voter eligibility and approval state
  3. Upsert the vote (one row per voter)
  4. Recompute the tally under the current quorum rule
  5. Resolve with a conditional UPDATE ... WHERE status = 'pending'
  6. Append exactly one history entry describing the vote and its outcome

Only the writer whose conditional UPDATE changes a row applies the side
effects of a resolution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection, Engine

from quorum.audit import HistoryLog, new_correlation_id
from quorum.db import execute, fetch_all, fetch_one, format_ts, scalar, transaction, utc_now
from quorum.errors import (
    AccessDenied,
    AlreadyVoted,
    ApprovalError,
    ApprovalNotFound,
    ApprovalNotPending,
    InvalidVote,
    NotEligibleVoter,
    SoloProjectNoSelfApprove,
)
from quorum.membership import MemberStatus, MembershipRegistry
from quorum.policy import RequiredVotes, VoteMode, required_votes
from quorum.tokens import TokenVersionGuard
from quorum.users import UserState, get_user, set_state

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EventType(str, Enum):
    PASSWORD_CHANGE = "password_change"
    ADMIN_RESET = "admin_reset"
    RECOVERY_RESET = "recovery_reset"
    JOIN_REQUEST = "join_request"


VOTE_VALUES = ("approve", "reject")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class VoteView:
    voter_id: int
    voter_username: str
    voter_display_name: Optional[str]
    vote: str
    reason: Optional[str]
    voted_at: str


@dataclass
class ApprovalDetails:
    id: int
    user_id: int
    username: str
    display_name: Optional[str]
    project_id: int
    project_name: str
    event_type: str
    status: str
    created_at: str
    resolved_at: Optional[str]
    votes: list[VoteView] = field(default_factory=list)
    vote_count: int = 0
    required_votes: Optional[int] = None
    mode: str = VoteMode.QUORUM.value
    can_self_approve: bool = False


@dataclass
class VoteOutcome:
    approval_id: int
    vote: str
    status: str
    resolved: bool
    approve_count: int
    required: RequiredVotes
    user_restored: bool = False

    def summary(self) -> str:
        need = self.required.n if self.required.n is not None else "override"
        return (
            f"approval {self.approval_id}: {self.vote} recorded, "
            f"{self.approve_count}/{need} approvals, status={self.status}"
        )


@dataclass
class SecurityEventResult:
    user_id: int
    event_type: str
    previous_version: int
    new_version: int
    approvals: list[dict[str, Any]] = field(default_factory=list)
    state: str = UserState.ACTIVE.value


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ApprovalEngine:
    def __init__(
        self,
        engine: Engine,
        history: HistoryLog,
        registry: MembershipRegistry,
        tokens: TokenVersionGuard,
        clock: Callable = utc_now,
    ):
        self._engine = engine
        self._history = history
        self._registry = registry
        self._tokens = tokens
        self._clock = clock

    # -- opening -----------------------------------------------------------

    def open_approval(
        self,
        user_id: int,
        project_id: int,
        event_type: str,
        conn: Optional[Connection] = None,
        actor_user_id: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Return the pending approval for (user, project), creating it if none.

        Opening also marks the membership pending. Calling this twice yields
        the same approval row.
        """
        with transaction(self._engine, conn) as c:
            created = execute(
                c,
                "INSERT INTO project_approvals (user_id, project_id, event_type, status, created_at) "
                "VALUES (:u, :p, :e, 'pending', :t) "
                "ON CONFLICT (user_id, project_id) WHERE status = 'pending' DO NOTHING",
                {"u": user_id, "p": project_id, "e": event_type, "t": format_ts(self._clock())},
            )
            approval = fetch_one(
                c,
                "SELECT id, user_id, project_id, event_type, status, created_at, resolved_at "
                "FROM project_approvals WHERE user_id = :u AND project_id = :p AND status = 'pending'",
                {"u": user_id, "p": project_id},
            )
            self._registry.set_status(c, project_id, user_id, MemberStatus.PENDING)
            if created:
                self._history.append(
                    c,
                    "APPROVAL_OPENED",
                    {
                        "approval_id": approval["id"],
                        "user_id": user_id,
                        "project_id": project_id,
                        "event_type": event_type,
                    },
                    actor_user_id=actor_user_id,
                    correlation_id=correlation_id,
                )
                logger.info(
                    "Opened approval %s for user %s in project %s (%s)",
                    approval["id"], user_id, project_id, event_type,
                )
        return approval

    def security_event(
        self,
        conn: Connection,
        user_id: int,
        event_type: str,
        actor_user_id: Optional[int] = None,
        correlation_id: Optional[str] = None,
        force_pending: bool = False,
    ) -> SecurityEventResult:
        """
        Apply a security event inside ``conn``.

        Bumps the token version, then opens one approval per project the
        user belongs to. The user becomes ``pending_approval`` when at least
        one approval is open, or unconditionally with ``force_pending``.
        """
        correlation_id = correlation_id or new_correlation_id()
        previous, new = self._tokens.bump(conn, user_id)
        approvals = [
            self.open_approval(
                user_id,
                m["project_id"],
                event_type,
                conn=conn,
                actor_user_id=actor_user_id,
                correlation_id=correlation_id,
            )
            for m in self._registry.memberships_for_user(conn, user_id)
        ]
        state = UserState.ACTIVE
        if approvals or force_pending:
            state = UserState.PENDING_APPROVAL
            set_state(conn, user_id, state)
        logger.info(
            "Security event %s for user %s: token v%s -> v%s, %d approval(s) open",
            event_type, user_id, previous, new, len(approvals),
        )
        return SecurityEventResult(
            user_id=user_id,
            event_type=event_type,
            previous_version=previous,
            new_version=new,
            approvals=approvals,
            state=state.value,
        )

    def request_membership(self, project_id: int, user_id: int, role: str, actor_id: int) -> dict[str, Any]:
        """Add a pending member whose activation needs an approval."""
        with self._engine.begin() as conn:
            member = self._registry.insert_member(
                conn, project_id, user_id, role, actor_id, status=MemberStatus.PENDING
            )
            approval = self.open_approval(
                user_id, project_id, EventType.JOIN_REQUEST.value, conn=conn, actor_user_id=actor_id
            )
        member["approval_id"] = approval["id"]
        return member

    # -- policy ------------------------------------------------------------------

    def required_votes(
        self,
        project_id: int,
        voter_id: Optional[int],
        subject_id: int,
        conn: Optional[Connection] = None,
    ) -> RequiredVotes:
        with transaction(self._engine, conn) as c:
            count = self._registry.quorum_member_count(c, project_id, subject_id)
            is_admin = (
                voter_id is not None
                and voter_id != subject_id
                and self._registry.is_active_admin(project_id, voter_id, c)
            )
        return required_votes(count, voter_is_admin=is_admin)

    def _approve_count(self, conn: Connection, approval: dict[str, Any]) -> int:
        """Distinct approving voters who are still active members of the project."""
        return scalar(
            conn,
            "SELECT COUNT(DISTINCT v.voter_id) FROM approval_votes v "
            "JOIN project_members m ON m.project_id = :p AND m.user_id = v.voter_id "
            "WHERE v.approval_id = :a AND v.vote = 'approve' "
            "AND m.status = 'active' AND v.voter_id <> :s",
            {"a": approval["id"], "p": approval["project_id"], "s": approval["user_id"]},
        )

    # -- voting ------------------------------------------------------------------

    def cast_vote(
        self, approval_id: int, voter_id: int, vote: str, reason: Optional[str] = None
    ) -> VoteOutcome:
        if vote not in VOTE_VALUES:
            raise InvalidVote(f"Vote must be 'approve' or 'reject', got '{vote}'")
        try:
            with self._engine.begin() as conn:
                return self._cast_vote(conn, approval_id, voter_id, vote, reason)
        except ApprovalError as e:
            logger.warning(
                "Vote by user %s on approval %s refused: %s", voter_id, approval_id, e.code.value
            )
            raise

    def _cast_vote(
        self,
        conn: Connection,
        approval_id: int,
        voter_id: int,
        vote: str,
        reason: Optional[str],
    ) -> VoteOutcome:
        # Row lock held until commit.
        if execute(conn, "UPDATE project_approvals SET status = status WHERE id = :id", {"id": approval_id}) == 0:
            raise ApprovalNotFound(f"Approval {approval_id} not found")
        approval = fetch_one(
            conn,
            "SELECT id, user_id, project_id, event_type, status FROM project_approvals WHERE id = :id",
            {"id": approval_id},
        )
        subject_id = approval["user_id"]
        project_id = approval["project_id"]

        if voter_id == subject_id:
            if self._registry.other_active_member_count(conn, project_id, subject_id) == 0:
                raise SoloProjectNoSelfApprove(
                    "You are the only member of this project; an administrator must approve"
                )
            raise NotEligibleVoter("You cannot vote on your own approval")
        if not self._registry.is_active_member(project_id, voter_id, conn):
            raise NotEligibleVoter("Only active project members can vote")
        if approval["status"] != ApprovalStatus.PENDING.value:
            raise ApprovalNotPending(f"Approval {approval_id} is already {approval['status']}")

        existing = fetch_one(
            conn,
            "SELECT vote FROM approval_votes WHERE approval_id = :a AND voter_id = :v",
            {"a": approval_id, "v": voter_id},
        )
        if existing is not None and existing["vote"] == vote:
            raise AlreadyVoted(f"You have already voted '{vote}' on this approval")

        execute(
            conn,
            "INSERT INTO approval_votes (approval_id, voter_id, vote, reason, voted_at) "
            "VALUES (:a, :v, :vote, :r, :t) "
            "ON CONFLICT (approval_id, voter_id) DO UPDATE SET "
            "vote = excluded.vote, reason = excluded.reason, voted_at = excluded.voted_at",
            {"a": approval_id, "v": voter_id, "vote": vote, "r": reason, "t": format_ts(self._clock())},
        )

        required = self.required_votes(project_id, voter_id, subject_id, conn)
        approve_count = self._approve_count(conn, approval)

        target: Optional[ApprovalStatus] = None
        if required.mode == VoteMode.ADMIN_INSTANT:
            target = ApprovalStatus.APPROVED if vote == "approve" else ApprovalStatus.REJECTED
        elif required.is_met(approve_count):
            target = ApprovalStatus.APPROVED

        status = approval["status"]
        resolved = False
        restored = False
        if target is not None:
            resolved = self._resolve(conn, approval, target)
            if resolved:
                status = target.value
                restored = self._restore_user_if_clear(conn, subject_id)
            else:
                # Lost the race; the vote stays recorded with no effect.
                status = fetch_one(
                    conn, "SELECT status FROM project_approvals WHERE id = :id", {"id": approval_id}
                )["status"]

        self._history.append(
            conn,
            "APPROVAL_VOTE",
            {
                "approval_id": approval_id,
                "project_id": project_id,
                "user_id": subject_id,
                "vote": vote,
                "replaced": existing is not None,
                "mode": required.mode.value,
                "approve_count": approve_count,
                "required": required.n,
                "resolution": status if resolved else None,
                "user_restored": restored,
            },
            actor_user_id=voter_id,
        )
        if resolved:
            logger.info("Approval %s resolved %s by vote of user %s", approval_id, status, voter_id)

        return VoteOutcome(
            approval_id=approval_id,
            vote=vote,
            status=status,
            resolved=resolved,
            approve_count=approve_count,
            required=required,
            user_restored=restored,
        )

    def _resolve(self, conn: Connection, approval: dict[str, Any], target: ApprovalStatus) -> bool:
        won = execute(
            conn,
            "UPDATE project_approvals SET status = :s, resolved_at = :t "
            "WHERE id = :id AND status = 'pending'",
            {"s": target.value, "t": format_ts(self._clock()), "id": approval["id"]},
        )
        if won != 1:
            return False
        if target == ApprovalStatus.APPROVED:
            activated = self._registry.activate(conn, approval["project_id"], approval["user_id"])
            if activated != 1:
                self._history.report_integrity_violation(
                    conn,
                    {
                        "kind": "membership_not_pending_on_approval",
                        "approval_id": approval["id"],
                        "project_id": approval["project_id"],
                        "user_id": approval["user_id"],
                        "rows": activated,
                    },
                )
        return True

    def _restore_user_if_clear(self, conn: Connection, user_id: int) -> bool:
        """Return a pending_approval user to active once nothing is left open."""
        user = get_user(conn, user_id)
        if user is None or user["state"] != UserState.PENDING_APPROVAL.value:
            return False
        still_open = scalar(
            conn,
            "SELECT COUNT(*) FROM project_approvals WHERE user_id = :u AND status = 'pending'",
            {"u": user_id},
        )
        if still_open:
            return False
        set_state(conn, user_id, UserState.ACTIVE)
        logger.info("User %s has no open approvals left; state restored to active", user_id)
        return True

    def approve_all_open(self, conn: Connection, user_id: int) -> list[int]:
        """Force every pending approval of ``user_id`` to approved and return their ids."""
        rows = fetch_all(
            conn,
            "UPDATE project_approvals SET status = 'approved', resolved_at = :t "
            "WHERE user_id = :u AND status = 'pending' RETURNING id",
            {"t": format_ts(self._clock()), "u": user_id},
        )
        return sorted(r["id"] for r in rows)

    # -- read models ---------------------------------------------------------------

    def _votes(self, conn: Connection, approval_id: int) -> list[VoteView]:
        rows = fetch_all(
            conn,
            "SELECT v.voter_id, u.username, u.display_name, v.vote, v.reason, v.voted_at "
            "FROM approval_votes v JOIN users u ON u.id = v.voter_id "
            "WHERE v.approval_id = :a ORDER BY v.voted_at, v.id",
            {"a": approval_id},
        )
        return [
            VoteView(
                voter_id=r["voter_id"],
                voter_username=r["username"],
                voter_display_name=r["display_name"],
                vote=r["vote"],
                reason=r["reason"],
                voted_at=r["voted_at"],
            )
            for r in rows
        ]

    def _details(self, conn: Connection, row: dict[str, Any], viewer_id: Optional[int]) -> ApprovalDetails:
        votes = self._votes(conn, row["id"])
        required = self.required_votes(row["project_id"], viewer_id, row["user_id"], conn)
        return ApprovalDetails(
            id=row["id"],
            user_id=row["user_id"],
            username=row["username"],
            display_name=row["display_name"],
            project_id=row["project_id"],
            project_name=row["project_name"],
            event_type=row["event_type"],
            status=row["status"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            votes=votes,
            vote_count=self._approve_count(conn, row),
            required_votes=required.n,
            mode=required.mode.value,
            can_self_approve=required.satisfiable,
        )

    _DETAIL_SELECT = (
        "SELECT pa.id, pa.user_id, pa.project_id, pa.event_type, pa.status, pa.created_at, "
        "pa.resolved_at, p.name AS project_name, u.username, u.display_name "
        "FROM project_approvals pa "
        "JOIN projects p ON p.id = pa.project_id "
        "JOIN users u ON u.id = pa.user_id "
    )

    def get_approval(self, approval_id: int, viewer_id: int) -> ApprovalDetails:
        with self._engine.begin() as conn:
            row = fetch_one(conn, self._DETAIL_SELECT + "WHERE pa.id = :id", {"id": approval_id})
            if row is None:
                raise ApprovalNotFound(f"Approval {approval_id} not found")
            if viewer_id != row["user_id"] and not self._registry.is_active_member(
                row["project_id"], viewer_id, conn
            ):
                raise AccessDenied("Not allowed to view this approval")
            viewer = None if viewer_id == row["user_id"] else viewer_id
            return self._details(conn, row, viewer)

    def get_my_pending_approvals(self, user_id: int) -> list[ApprovalDetails]:
        with self._engine.begin() as conn:
            rows = fetch_all(
                conn,
                self._DETAIL_SELECT
                + "WHERE pa.user_id = :u AND pa.status = 'pending' ORDER BY pa.created_at DESC, pa.id DESC",
                {"u": user_id},
            )
            return [self._details(conn, r, None) for r in rows]

    def get_actionable_approvals(self, voter_id: int) -> list[ApprovalDetails]:
        """Pending approvals of others, in the voter's active projects, not yet voted on."""
        with self._engine.begin() as conn:
            rows = fetch_all(
                conn,
                self._DETAIL_SELECT
                + "JOIN project_members me ON me.project_id = pa.project_id AND me.user_id = :v "
                "WHERE pa.status = 'pending' AND pa.user_id <> :v AND me.status = 'active' "
                "AND NOT EXISTS (SELECT 1 FROM approval_votes av "
                "WHERE av.approval_id = pa.id AND av.voter_id = :v) "
                "ORDER BY pa.created_at DESC, pa.id DESC",
                {"v": voter_id},
            )
            return [self._details(conn, r, voter_id) for r in rows]

    def open_approvals_for_user(self, user_id: int, conn: Optional[Connection] = None) -> list[dict[str, Any]]:
        with transaction(self._engine, conn) as c:
            return fetch_all(
                c,
                "SELECT id, project_id, event_type, status, created_at FROM project_approvals "
                "WHERE user_id = :u AND status = 'pending' ORDER BY id",
                {"u": user_id},
            )
