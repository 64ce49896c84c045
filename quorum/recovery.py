"""
Recovery Intent Service
Pre-authentication account recovery approved by trusted people instead of
an email link.

State machine:
    pending -> approved | rejected | expired
    approved -> done | expired

Expiry is lazy: any read past ``expires_at`` persists ``expired`` with a
conditional UPDATE in its own transaction before the caller sees the
intent. Unknown or revoked usernames still receive a well-formed intent
that simply has no voters, so the endpoint does not reveal which accounts
exist.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection, Engine

from quorum.approvals import VOTE_VALUES, ApprovalEngine, EventType, SecurityEventResult
from quorum.audit import HistoryLog
from quorum.credentials import check_password_strength, hash_password
from quorum.db import execute, fetch_all, fetch_one, format_ts, insert_if_absent, parse_ts, utc_now
from quorum.errors import (
    AccountRevoked,
    AlreadyVoted,
    InvalidVote,
    NotEligibleVoter,
    RecoveryError,
    RecoveryExpired,
    RecoveryNotApproved,
    RecoveryNotFound,
    RecoveryNotPending,
    RecoveryRejected,
)
from quorum.policy import RECOVERY_MIN_APPROVALS, recovery_required_approvals
from quorum.trust import TrustRegistry
from quorum.users import UserState, get_user, get_user_by_username, set_password_hash

logger = logging.getLogger(__name__)

RECOVERY_TTL_SECONDS = int(os.environ.get("RECOVERY_TTL_SECONDS", "86400"))
STATS_WINDOW_SECONDS = 86400
HIGH_VOLUME_THRESHOLD = 10


class RecoveryStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    DONE = "done"


# Statuses that still expire when their deadline passes.
_EXPIRABLE = (RecoveryStatus.PENDING.value, RecoveryStatus.APPROVED.value)

_INTENT_COLUMNS = (
    "id, token, user_id, username, status, required_approvals, created_at, expires_at, resolved_at"
)


@dataclass
class RecoveryStatusView:
    token: str
    status: str
    approvals_count: int
    required_approvals: int
    expires_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "status": self.status,
            "approvals_count": self.approvals_count,
            "required_approvals": self.required_approvals,
            "expires_at": self.expires_at,
        }


def _initiated(intent: dict[str, Any]) -> dict[str, Any]:
    return {"token": intent["token"], "status": intent["status"], "expires_at": intent["expires_at"]}


class RecoveryService:
    def __init__(
        self,
        engine: Engine,
        history: HistoryLog,
        trust: TrustRegistry,
        approvals: ApprovalEngine,
        clock: Callable = utc_now,
        ttl_seconds: int | None = None,
    ):
        self._engine = engine
        self._history = history
        self._trust = trust
        self._approvals = approvals
        self._clock = clock
        self._ttl = ttl_seconds if ttl_seconds is not None else RECOVERY_TTL_SECONDS

    # -- voter pool ------------------------------------------------------------

    def _project_admins(self, conn: Connection, user_id: int) -> set[int]:
        rows = fetch_all(
            conn,
            "SELECT DISTINCT pm.user_id FROM project_members pm "
            "JOIN project_members mine ON mine.project_id = pm.project_id "
            "  AND mine.user_id = :u AND mine.status = 'active' "
            "JOIN users v ON v.id = pm.user_id "
            "WHERE pm.role = 'admin' AND pm.status = 'active' "
            "AND pm.user_id <> :u AND v.state = :active",
            {"u": user_id, "active": UserState.ACTIVE.value},
        )
        return {r["user_id"] for r in rows}

    def voter_pool(self, conn: Connection, user_id: Optional[int]) -> tuple[set[int], set[int]]:
        """Return ``(pool, admins)`` for ``user_id``; both empty for unknown users."""
        if user_id is None:
            return set(), set()
        admins = self._project_admins(conn, user_id)
        pool = (self._trust.trusted_ids(conn, user_id) | admins) - {user_id}
        return pool, admins

    def readiness(self, user_id: int) -> dict[str, Any]:
        """Whether a recovery started now could ever reach its threshold."""
        with self._engine.begin() as conn:
            pool, admins = self.voter_pool(conn, user_id)
            trusted = self._trust.trusted_ids(conn, user_id)
        required = recovery_required_approvals(len(pool))
        return {
            "trusted_count": len(trusted),
            "admin_count": len(admins),
            "pool_size": len(pool),
            "required": required,
            "ready": len(pool) >= required,
        }

    def _approvals_count(self, conn: Connection, intent: dict[str, Any], pool: set[int]) -> int:
        rows = fetch_all(
            conn,
            "SELECT voter_id FROM recovery_votes WHERE intent_id = :i AND vote = 'approve'",
            {"i": intent["id"]},
        )
        return len({r["voter_id"] for r in rows} & pool)

    # -- lazy expiry -------------------------------------------------------------

    def _is_past_deadline(self, intent: dict[str, Any]) -> bool:
        return self._clock() > parse_ts(intent["expires_at"])

    def _load(self, conn: Connection, token: str) -> dict[str, Any]:
        intent = fetch_one(
            conn, f"SELECT {_INTENT_COLUMNS} FROM recovery_intents WHERE token = :t", {"t": token}
        )
        if intent is None:
            raise RecoveryNotFound("Recovery request not found")
        return intent

    def _expire(self, conn: Connection, intent: dict[str, Any]) -> bool:
        won = execute(
            conn,
            "UPDATE recovery_intents SET status = 'expired', resolved_at = :now "
            "WHERE id = :id AND status = :old",
            {"now": format_ts(self._clock()), "id": intent["id"], "old": intent["status"]},
        )
        if won:
            self._history.append(
                conn,
                "RECOVERY_EXPIRED",
                {"intent_id": intent["id"], "username": intent["username"], "from": intent["status"]},
            )
            logger.info("Recovery intent %s for '%s' expired", intent["id"], intent["username"])
        return bool(won)

    def _refresh(self, token: str) -> dict[str, Any]:
        """Load an intent, persisting ``expired`` first if its deadline passed."""
        with self._engine.begin() as conn:
            intent = self._load(conn, token)
            if intent["status"] in _EXPIRABLE and self._is_past_deadline(intent):
                self._expire(conn, intent)
                intent = self._load(conn, token)
        return intent

    def _expire_stale_for_username(self, conn: Connection, username: str) -> int:
        stale = fetch_all(
            conn,
            f"SELECT {_INTENT_COLUMNS} FROM recovery_intents "
            "WHERE username = :u AND status IN ('pending', 'approved') AND expires_at < :now",
            {"u": username, "now": format_ts(self._clock())},
        )
        return sum(1 for intent in stale if self._expire(conn, intent))

    def _live_intent(self, conn: Connection, username: str) -> Optional[dict[str, Any]]:
        return fetch_one(
            conn,
            f"SELECT {_INTENT_COLUMNS} FROM recovery_intents "
            "WHERE username = :u AND status = 'pending'",
            {"u": username},
        )

    def _supersede(self, conn: Connection, intent: dict[str, Any]) -> None:
        """Retire a voterless pending intent so a real one can take its place."""
        won = execute(
            conn,
            "UPDATE recovery_intents SET status = 'expired', resolved_at = :now "
            "WHERE id = :id AND status = 'pending'",
            {"now": format_ts(self._clock()), "id": intent["id"]},
        )
        if won:
            self._history.append(
                conn,
                "RECOVERY_SUPERSEDED",
                {"intent_id": intent["id"], "username": intent["username"]},
            )
            logger.info(
                "Recovery intent %s for '%s' had no account behind it; superseded",
                intent["id"], intent["username"],
            )

    # -- operations ----------------------------------------------------------------

    def initiate_recovery(self, username: str) -> dict[str, Any]:
        """
        Start (or resume) a recovery for ``username``.

        The response has the same shape whether or not the account exists.
        """
        username = (username or "").strip()
        now = self._clock()
        with self._engine.begin() as conn:
            self._expire_stale_for_username(conn, username)
            user = get_user_by_username(conn, username)
            recoverable = user is not None and user["state"] != UserState.REVOKED.value

            live = self._live_intent(conn, username)
            if live is not None and live["user_id"] is None and recoverable:
                # Opened before the account existed (or while it was revoked): no voters.
                self._supersede(conn, live)
                live = None
            if live is not None:
                return _initiated(live)

            if recoverable:
                user_id = user["id"]
                pool, _ = self.voter_pool(conn, user_id)
                required = recovery_required_approvals(len(pool))
            else:
                user_id = None
                required = RECOVERY_MIN_APPROVALS

            token = secrets.token_urlsafe(32)
            expires_at = format_ts(now + timedelta(seconds=self._ttl))
            intent_id = insert_if_absent(
                conn,
                "INSERT INTO recovery_intents "
                "(token, user_id, username, status, required_approvals, created_at, expires_at) "
                "VALUES (:tok, :uid, :u, 'pending', :req, :now, :exp) "
                "ON CONFLICT (username) WHERE status = 'pending' DO NOTHING",
                {
                    "tok": token,
                    "uid": user_id,
                    "u": username,
                    "req": required,
                    "now": format_ts(now),
                    "exp": expires_at,
                },
            )
            if intent_id is None:
                # A concurrent initiate committed first; hand out its token.
                return _initiated(self._live_intent(conn, username))
            self._history.append(
                conn,
                "RECOVERY_INITIATED",
                {
                    "intent_id": intent_id,
                    "username": username,
                    "user_id": user_id,
                    "required_approvals": required,
                },
            )
        logger.info("Recovery initiated for '%s' (intent %s)", username, intent_id)
        return {"token": token, "status": RecoveryStatus.PENDING.value, "expires_at": expires_at}

    def get_status(self, token: str) -> RecoveryStatusView:
        intent = self._refresh(token)
        with self._engine.begin() as conn:
            pool, _ = self.voter_pool(conn, intent["user_id"])
            count = self._approvals_count(conn, intent, pool)
        return RecoveryStatusView(
            token=intent["token"],
            status=intent["status"],
            approvals_count=count,
            required_approvals=intent["required_approvals"],
            expires_at=intent["expires_at"],
        )

    def vote_on_recovery(
        self, token: str, voter_id: int, vote: str, reason: Optional[str] = None
    ) -> RecoveryStatusView:
        if vote not in VOTE_VALUES:
            raise InvalidVote(f"Vote must be 'approve' or 'reject', got '{vote}'")
        self._refresh(token)
        try:
            with self._engine.begin() as conn:
                return self._vote(conn, token, voter_id, vote, reason)
        except (RecoveryError, NotEligibleVoter, AlreadyVoted) as e:
            logger.warning("Recovery vote by user %s refused: %s", voter_id, e.code.value)
            raise

    def _vote(
        self, conn: Connection, token: str, voter_id: int, vote: str, reason: Optional[str]
    ) -> RecoveryStatusView:
        execute(conn, "UPDATE recovery_intents SET status = status WHERE token = :t", {"t": token})
        intent = self._load(conn, token)
        if intent["status"] == RecoveryStatus.EXPIRED.value or (
            intent["status"] in _EXPIRABLE and self._is_past_deadline(intent)
        ):
            raise RecoveryExpired("This recovery request has expired")
        if intent["status"] == RecoveryStatus.REJECTED.value:
            raise RecoveryRejected("This recovery request was rejected")
        if intent["status"] != RecoveryStatus.PENDING.value:
            raise RecoveryNotPending(f"This recovery request is already {intent['status']}")

        pool, admins = self.voter_pool(conn, intent["user_id"])
        if voter_id not in pool:
            raise NotEligibleVoter("You are not a trusted voter for this account")

        existing = fetch_one(
            conn,
            "SELECT vote FROM recovery_votes WHERE intent_id = :i AND voter_id = :v",
            {"i": intent["id"], "v": voter_id},
        )
        if existing is not None and existing["vote"] == vote:
            raise AlreadyVoted(f"You have already voted '{vote}' on this request")
        execute(
            conn,
            "INSERT INTO recovery_votes (intent_id, voter_id, vote, reason, voted_at) "
            "VALUES (:i, :v, :vote, :r, :t) "
            "ON CONFLICT (intent_id, voter_id) DO UPDATE SET "
            "vote = excluded.vote, reason = excluded.reason, voted_at = excluded.voted_at",
            {"i": intent["id"], "v": voter_id, "vote": vote, "r": reason, "t": format_ts(self._clock())},
        )

        count = self._approvals_count(conn, intent, pool)
        target: Optional[RecoveryStatus] = None
        if voter_id in admins:
            target = RecoveryStatus.APPROVED if vote == "approve" else RecoveryStatus.REJECTED
        elif count >= intent["required_approvals"]:
            target = RecoveryStatus.APPROVED

        status = intent["status"]
        resolved = False
        if target is not None:
            resolved = bool(
                execute(
                    conn,
                    "UPDATE recovery_intents SET status = :s, resolved_at = :now "
                    "WHERE id = :id AND status = 'pending'",
                    {"s": target.value, "now": format_ts(self._clock()), "id": intent["id"]},
                )
            )
            if resolved:
                status = target.value

        self._history.append(
            conn,
            "RECOVERY_VOTE",
            {
                "intent_id": intent["id"],
                "user_id": intent["user_id"],
                "vote": vote,
                "replaced": existing is not None,
                "admin": voter_id in admins,
                "approvals_count": count,
                "required_approvals": intent["required_approvals"],
                "resolution": status if resolved else None,
            },
            actor_user_id=voter_id,
        )
        if resolved:
            logger.info("Recovery intent %s resolved %s", intent["id"], status)
        return RecoveryStatusView(
            token=token,
            status=status,
            approvals_count=count,
            required_approvals=intent["required_approvals"],
            expires_at=intent["expires_at"],
        )

    def list_pending_recoveries(self, voter_id: int) -> list[dict[str, Any]]:
        """Live pending intents ``voter_id`` may vote on, with their own vote."""
        now = format_ts(self._clock())
        with self._engine.begin() as conn:
            candidates = fetch_all(
                conn,
                "SELECT ri.id, ri.token, ri.user_id, ri.username, ri.status, ri.required_approvals, "
                "ri.created_at, ri.expires_at, u.display_name "
                "FROM recovery_intents ri JOIN users u ON u.id = ri.user_id "
                "WHERE ri.status = 'pending' AND ri.expires_at > :now AND ri.user_id <> :v "
                "ORDER BY ri.created_at DESC",
                {"now": now, "v": voter_id},
            )
            result = []
            for intent in candidates:
                pool, _ = self.voter_pool(conn, intent["user_id"])
                if voter_id not in pool:
                    continue
                mine = fetch_one(
                    conn,
                    "SELECT vote FROM recovery_votes WHERE intent_id = :i AND voter_id = :v",
                    {"i": intent["id"], "v": voter_id},
                )
                result.append({
                    "token": intent["token"],
                    "user_id": intent["user_id"],
                    "username": intent["username"],
                    "display_name": intent["display_name"],
                    "status": intent["status"],
                    "created_at": intent["created_at"],
                    "expires_at": intent["expires_at"],
                    "approvals_count": self._approvals_count(conn, intent, pool),
                    "required_approvals": intent["required_approvals"],
                    "my_vote": mine["vote"] if mine else None,
                })
        return result

    def reset_password_with_token(self, token: str, new_password: str) -> SecurityEventResult:
        """
        Complete an approved recovery.

        Sets the new password, marks the intent done and re-enters the
        security-event path, so every project membership needs approval again.
        """
        self._refresh(token)
        with self._engine.begin() as conn:
            execute(conn, "UPDATE recovery_intents SET status = status WHERE token = :t", {"t": token})
            intent = self._load(conn, token)
            status = intent["status"]
            if status == RecoveryStatus.EXPIRED.value or (
                status in _EXPIRABLE and self._is_past_deadline(intent)
            ):
                raise RecoveryExpired("This recovery request has expired")
            if status == RecoveryStatus.REJECTED.value:
                raise RecoveryRejected("This recovery request was rejected")
            if status != RecoveryStatus.APPROVED.value:
                raise RecoveryNotApproved(f"Recovery request is {status}, not approved")
            check_password_strength(new_password)

            user = get_user(conn, intent["user_id"])
            if user is None or user["state"] == UserState.REVOKED.value:
                raise AccountRevoked("This account has been revoked")

            won = execute(
                conn,
                "UPDATE recovery_intents SET status = 'done', resolved_at = :now "
                "WHERE id = :id AND status = 'approved'",
                {"now": format_ts(self._clock()), "id": intent["id"]},
            )
            if won != 1:
                raise RecoveryNotApproved("Recovery request was already used")

            set_password_hash(conn, user["id"], hash_password(new_password))
            result = self._approvals.security_event(
                conn, user["id"], EventType.RECOVERY_RESET.value, actor_user_id=user["id"]
            )
            self._history.append(
                conn,
                "RECOVERY_COMPLETED",
                {
                    "intent_id": intent["id"],
                    "user_id": user["id"],
                    "token_version": result.new_version,
                    "approvals_opened": [a["id"] for a in result.approvals],
                },
                actor_user_id=user["id"],
            )
        logger.info("Recovery completed for user %s", user["id"])
        return result

    # -- operator actions ------------------------------------------------------------

    def force_resolve(self, username: str, approve: bool) -> dict[str, Any]:
        """Move the user's live pending intent to approved or rejected."""
        target = RecoveryStatus.APPROVED if approve else RecoveryStatus.REJECTED
        with self._engine.begin() as conn:
            self._expire_stale_for_username(conn, username)
            intent = fetch_one(
                conn,
                f"SELECT {_INTENT_COLUMNS} FROM recovery_intents "
                "WHERE username = :u AND status = 'pending' AND user_id IS NOT NULL",
                {"u": username},
            )
            if intent is None:
                raise RecoveryNotFound(f"No pending recovery request for '{username}'")
            won = execute(
                conn,
                "UPDATE recovery_intents SET status = :s, resolved_at = :now "
                "WHERE id = :id AND status = 'pending'",
                {"s": target.value, "now": format_ts(self._clock()), "id": intent["id"]},
            )
            if won != 1:
                raise RecoveryNotPending(f"Recovery request for '{username}' is no longer pending")
            self._history.append(
                conn,
                "RECOVERY_FORCED",
                {"intent_id": intent["id"], "username": username, "status": target.value},
            )
        logger.info("Recovery for '%s' forced to %s", username, target.value)
        intent["status"] = target.value
        return intent

    def list_all_pending(self) -> list[dict[str, Any]]:
        now = format_ts(self._clock())
        with self._engine.begin() as conn:
            intents = fetch_all(
                conn,
                f"SELECT {_INTENT_COLUMNS} FROM recovery_intents "
                "WHERE status = 'pending' AND expires_at > :now ORDER BY created_at",
                {"now": now},
            )
            for intent in intents:
                pool, _ = self.voter_pool(conn, intent["user_id"])
                intent["approvals_count"] = self._approvals_count(conn, intent, pool)
        return intents

    def stats(self) -> dict[str, Any]:
        """Counts over the last day, plus usernames with repeated attempts."""
        since = format_ts(self._clock() - timedelta(seconds=STATS_WINDOW_SECONDS))
        with self._engine.begin() as conn:
            rows = fetch_all(
                conn,
                "SELECT status, COUNT(*) AS n FROM recovery_intents "
                "WHERE created_at > :since GROUP BY status",
                {"since": since},
            )
            repeated = fetch_all(
                conn,
                "SELECT username, COUNT(*) AS attempts FROM recovery_intents "
                "WHERE created_at > :since GROUP BY username HAVING COUNT(*) > 1 "
                "ORDER BY attempts DESC, username",
                {"since": since},
            )
        by_status = {s.value: 0 for s in RecoveryStatus}
        for r in rows:
            by_status[r["status"]] = r["n"]
        total = sum(by_status.values())
        return {
            "total": total,
            "by_status": by_status,
            "high_volume": total > HIGH_VOLUME_THRESHOLD,
            "repeated": [(r["username"], r["attempts"]) for r in repeated],
        }
