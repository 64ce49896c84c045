"""
Accounts: registration, login, password change and the per-request access
decision.

A user's access state is one of three shapes:

    Active                     -- full access
    PendingApproval(approvals) -- may only see and act on approvals
    Revoked                    -- no access at all
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from sqlalchemy.engine import Engine

from quorum.approvals import ApprovalEngine, EventType, SecurityEventResult
from quorum.audit import HistoryLog
from quorum.credentials import check_password_strength, hash_password, verify_password
from quorum.db import format_ts, insert_if_absent, utc_now
from quorum.errors import (
    AccountPending,
    AccountRevoked,
    InvalidCredentials,
    InvalidInput,
    UserExists,
    UserNotFound,
)
from quorum.tokens import Credential, Principal, TokenVersionGuard
from quorum.users import UserState, get_user, get_user_by_username, set_password_hash

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 100


# ---------------------------------------------------------------------------
# Access state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Active:
    kind: str = "active"


@dataclass(frozen=True)
class PendingApproval:
    approvals: tuple = ()
    kind: str = "pending_approval"


@dataclass(frozen=True)
class Revoked:
    kind: str = "revoked"


AccessState = Union[Active, PendingApproval, Revoked]


def public_user(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "username": row["username"],
        "display_name": row["display_name"],
        "state": row["state"],
        "token_version": row["token_version"],
        "created_at": row["created_at"],
    }


@dataclass
class LoginResult:
    credential: Credential
    user: dict[str, Any]
    access: AccessState


@dataclass
class PasswordChangeResult:
    credential: Credential
    event: SecurityEventResult


class AccountService:
    def __init__(
        self,
        engine: Engine,
        history: HistoryLog,
        tokens: TokenVersionGuard,
        approvals: ApprovalEngine,
        clock: Callable = utc_now,
    ):
        self._engine = engine
        self._history = history
        self._tokens = tokens
        self._approvals = approvals
        self._clock = clock

    def register(self, username: str, password: str, display_name: Optional[str] = None) -> dict[str, Any]:
        username = (username or "").strip()
        if not username or len(username) > MAX_USERNAME_LENGTH:
            raise InvalidInput(f"Username must be 1-{MAX_USERNAME_LENGTH} characters")
        check_password_strength(password)
        password_hash = hash_password(password)

        with self._engine.begin() as conn:
            user_id = insert_if_absent(
                conn,
                "INSERT INTO users (username, display_name, password_hash, state, token_version, created_at) "
                "VALUES (:u, :d, :h, 'active', 1, :t) ON CONFLICT (username) DO NOTHING",
                {"u": username, "d": display_name, "h": password_hash, "t": format_ts(self._clock())},
            )
            if user_id is None:
                raise UserExists(f"Username '{username}' is taken")
            self._history.append(
                conn, "USER_REGISTERED", {"user_id": user_id, "username": username}, actor_user_id=user_id
            )
            user = get_user(conn, user_id)
        logger.info("Registered user %s (%s)", user_id, username)
        return public_user(user)

    def login(self, username: str, password: str) -> LoginResult:
        with self._engine.begin() as conn:
            user = get_user_by_username(conn, (username or "").strip())
        if user is None:
            raise InvalidCredentials("Invalid username or password")
        if user["state"] == UserState.REVOKED.value:
            logger.warning("Login attempt for revoked user %s", user["id"])
            raise AccountRevoked("This account has been revoked")
        if not verify_password(password, user["password_hash"]):
            raise InvalidCredentials("Invalid username or password")

        credential = self._tokens.issue(user["id"])
        return LoginResult(
            credential=credential,
            user=public_user(user),
            access=self.access_state(user["id"]),
        )

    def change_password(self, user_id: int, old_password: str, new_password: str) -> PasswordChangeResult:
        """
        Authenticated password change: a security event.

        Every existing session dies with the version bump; the returned
        credential carries the new version.
        """
        check_password_strength(new_password)
        with self._engine.begin() as conn:
            user = get_user(conn, user_id)
            if user is None:
                raise UserNotFound(f"User {user_id} not found")
            if user["state"] == UserState.REVOKED.value:
                raise AccountRevoked("This account has been revoked")
            if not verify_password(old_password, user["password_hash"]):
                raise InvalidCredentials("Current password is incorrect")
            set_password_hash(conn, user_id, hash_password(new_password))
            event = self._approvals.security_event(
                conn, user_id, EventType.PASSWORD_CHANGE.value, actor_user_id=user_id
            )
            self._history.append(
                conn,
                "PASSWORD_CHANGED",
                {
                    "user_id": user_id,
                    "token_version": event.new_version,
                    "approvals_opened": [a["id"] for a in event.approvals],
                },
                actor_user_id=user_id,
            )
            credential = self._tokens.issue(user_id, conn)
        return PasswordChangeResult(credential=credential, event=event)

    def access_state(self, user_id: int) -> AccessState:
        with self._engine.begin() as conn:
            user = get_user(conn, user_id)
            if user is None:
                raise UserNotFound(f"User {user_id} not found")
            if user["state"] == UserState.REVOKED.value:
                return Revoked()
            if user["state"] == UserState.PENDING_APPROVAL.value:
                return PendingApproval(approvals=tuple(self._approvals.open_approvals_for_user(user_id, conn)))
            return Active()

    def authenticate(self, token: str, allow_pending: bool = False) -> Principal:
        """Validate a bearer credential and apply the account-state gate."""
        principal = self._tokens.validate(token)
        if principal.state == UserState.REVOKED.value:
            raise AccountRevoked("This account has been revoked")
        if principal.state == UserState.PENDING_APPROVAL.value and not allow_pending:
            raise AccountPending("Your account is awaiting approval")
        return principal

    def get_user(self, user_id: int) -> dict[str, Any]:
        with self._engine.begin() as conn:
            user = get_user(conn, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return public_user(user)
