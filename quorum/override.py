"""
Privileged Admin Override
Operator actions that bypass quorum entirely. Every action is idempotent:
repeating it on an account already in the target state reports a no-op and
writes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.engine import Engine

from quorum.approvals import ApprovalEngine, EventType
from quorum.audit import HistoryLog
from quorum.credentials import generate_temp_password, hash_password
from quorum.db import fetch_all
from quorum.membership import MemberStatus, MembershipRegistry
from quorum.recovery import RecoveryService
from quorum.tokens import TokenVersionGuard
from quorum.users import UserState, require_user, set_password_hash, set_state

logger = logging.getLogger(__name__)


@dataclass
class OverrideReport:
    """Outcome of one override action, printable by the CLI."""
    action: str
    username: str
    changed: bool
    previous_state: str
    new_state: str
    previous_version: int
    new_version: int
    memberships_affected: int = 0
    approvals_affected: int = 0
    temp_password: Optional[str] = None

    def summary(self) -> str:
        if not self.changed:
            return f"User '{self.username}' is already {self.new_state}"
        lines = [
            f"User '{self.username}' {self.action}",
            f"Previous state: {self.previous_state}",
            f"New state: {self.new_state}",
        ]
        if self.new_version != self.previous_version:
            lines.append(
                f"Token version: {self.previous_version} -> {self.new_version} "
                "(all tokens invalidated)"
            )
        else:
            lines.append(f"Token version: {self.new_version} (unchanged)")
        if self.action == "approved":
            lines.append(f"Project memberships activated: {self.memberships_affected}")
        elif self.action == "password reset":
            lines.append(f"Project memberships set to pending: {self.memberships_affected}")
            lines.append(f"Approvals opened: {self.approvals_affected}")
        if self.temp_password is not None:
            lines.append(f"Temporary password: {self.temp_password}")
        return "\n".join(lines)


class AdminOverride:
    def __init__(
        self,
        engine: Engine,
        history: HistoryLog,
        tokens: TokenVersionGuard,
        registry: MembershipRegistry,
        approvals: ApprovalEngine,
        recovery: RecoveryService,
    ):
        self._engine = engine
        self._history = history
        self._tokens = tokens
        self._registry = registry
        self._approvals = approvals
        self._recovery = recovery

    def list_users(self) -> list[dict[str, Any]]:
        with self._engine.begin() as conn:
            return fetch_all(
                conn,
                "SELECT u.id, u.username, u.display_name, u.state, u.token_version, u.created_at, "
                "(SELECT COUNT(*) FROM project_members pm WHERE pm.user_id = u.id) AS projects, "
                "(SELECT COUNT(*) FROM project_approvals pa "
                " WHERE pa.user_id = u.id AND pa.status = 'pending') AS open_approvals "
                "FROM users u ORDER BY u.id",
            )

    def reset_password(self, username: str) -> OverrideReport:
        """
        Issue a temporary password and put the account back behind approval.

        A solo project's approval can only be cleared by ``approve``.
        """
        temp_password = generate_temp_password()
        with self._engine.begin() as conn:
            user = require_user(conn, username)
            set_password_hash(conn, user["id"], hash_password(temp_password))
            event = self._approvals.security_event(
                conn, user["id"], EventType.ADMIN_RESET.value, force_pending=True
            )
            self._history.append(
                conn,
                "ADMIN_PASSWORD_RESET",
                {
                    "user_id": user["id"],
                    "previous_state": user["state"],
                    "token_version": event.new_version,
                    "approvals_opened": [a["id"] for a in event.approvals],
                },
            )
        logger.info("Admin reset password for '%s'", username)
        return OverrideReport(
            action="password reset",
            username=username,
            changed=True,
            previous_state=user["state"],
            new_state=event.state,
            previous_version=event.previous_version,
            new_version=event.new_version,
            memberships_affected=len(event.approvals),
            approvals_affected=len(event.approvals),
            temp_password=temp_password,
        )

    def approve(self, username: str) -> OverrideReport:
        """Activate the user, every membership and every open approval."""
        with self._engine.begin() as conn:
            user = require_user(conn, username)
            open_count = len(self._approvals.open_approvals_for_user(user["id"], conn))
            pending_members = sum(
                1 for m in self._registry.memberships_for_user(conn, user["id"])
                if m["status"] == MemberStatus.PENDING.value
            )
            if user["state"] == UserState.ACTIVE.value and not open_count and not pending_members:
                return self._noop("approved", user)

            set_state(conn, user["id"], UserState.ACTIVE)
            activated = self._registry.set_all_status(conn, user["id"], MemberStatus.ACTIVE)
            resolved_ids = self._approvals.approve_all_open(conn, user["id"])
            self._history.append(
                conn,
                "ADMIN_APPROVED",
                {
                    "user_id": user["id"],
                    "previous_state": user["state"],
                    "memberships_activated": activated,
                    "approvals_resolved": resolved_ids,
                },
            )
        logger.info("Admin approved '%s' (%d memberships activated)", username, activated)
        return OverrideReport(
            action="approved",
            username=username,
            changed=True,
            previous_state=user["state"],
            new_state=UserState.ACTIVE.value,
            previous_version=user["token_version"],
            new_version=user["token_version"],
            memberships_affected=activated,
            approvals_affected=len(resolved_ids),
        )

    def revoke(self, username: str) -> OverrideReport:
        with self._engine.begin() as conn:
            user = require_user(conn, username)
            if user["state"] == UserState.REVOKED.value:
                return self._noop("revoked", user)
            set_state(conn, user["id"], UserState.REVOKED)
            previous, new = self._tokens.bump(conn, user["id"])
            self._history.append(
                conn,
                "ADMIN_REVOKED",
                {"user_id": user["id"], "previous_state": user["state"], "token_version": new},
            )
        logger.info("Admin revoked '%s'", username)
        return OverrideReport(
            action="revoked",
            username=username,
            changed=True,
            previous_state=user["state"],
            new_state=UserState.REVOKED.value,
            previous_version=previous,
            new_version=new,
        )

    def approve_recovery(self, username: str) -> dict[str, Any]:
        return self._recovery.force_resolve(username, approve=True)

    def block_recovery(self, username: str) -> dict[str, Any]:
        return self._recovery.force_resolve(username, approve=False)

    def recovery_stats(self) -> dict[str, Any]:
        stats = self._recovery.stats()
        stats["pending"] = self._recovery.list_all_pending()
        return stats

    @staticmethod
    def _noop(action: str, user: dict[str, Any]) -> OverrideReport:
        return OverrideReport(
            action=action,
            username=user["username"],
            changed=False,
            previous_state=user["state"],
            new_state=user["state"],
            previous_version=user["token_version"],
            new_version=user["token_version"],
        )
