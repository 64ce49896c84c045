"""
Trusted users: people a user declares as allowed to vouch for their
account recovery, in addition to the admins of their projects. Readiness
is computed over the whole voter pool by RecoveryService.readiness.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.engine import Connection, Engine

from quorum.audit import HistoryLog
from quorum.db import execute, fetch_all, format_ts, utc_now
from quorum.errors import InvalidInput, UserExists, UserNotFound
from quorum.users import UserState, require_user

logger = logging.getLogger(__name__)


class TrustRegistry:
    def __init__(self, engine: Engine, history: HistoryLog, clock: Callable = utc_now):
        self._engine = engine
        self._history = history
        self._clock = clock

    def add_trusted(self, user_id: int, trusted_username: str) -> dict[str, Any]:
        with self._engine.begin() as conn:
            trusted = require_user(conn, trusted_username)
            if trusted["id"] == user_id:
                raise InvalidInput("You cannot add yourself as a trusted user")
            added = execute(
                conn,
                "INSERT INTO trusted_users (user_id, trusted_user_id, created_at) "
                "VALUES (:u, :t, :now) ON CONFLICT (user_id, trusted_user_id) DO NOTHING",
                {"u": user_id, "t": trusted["id"], "now": format_ts(self._clock())},
            )
            if not added:
                raise UserExists(f"'{trusted_username}' is already a trusted user")
            self._history.append(
                conn,
                "TRUSTED_USER_ADDED",
                {"user_id": user_id, "trusted_user_id": trusted["id"]},
                actor_user_id=user_id,
            )
        logger.info("User %s now trusts user %s", user_id, trusted["id"])
        return {
            "user_id": trusted["id"],
            "username": trusted["username"],
            "display_name": trusted["display_name"],
        }

    def remove_trusted(self, user_id: int, trusted_user_id: int) -> None:
        with self._engine.begin() as conn:
            removed = execute(
                conn,
                "DELETE FROM trusted_users WHERE user_id = :u AND trusted_user_id = :t",
                {"u": user_id, "t": trusted_user_id},
            )
            if not removed:
                raise UserNotFound(f"User {trusted_user_id} is not in your trusted list")
            self._history.append(
                conn,
                "TRUSTED_USER_REMOVED",
                {"user_id": user_id, "trusted_user_id": trusted_user_id},
                actor_user_id=user_id,
            )

    def list_trusted(self, user_id: int) -> list[dict[str, Any]]:
        with self._engine.begin() as conn:
            return fetch_all(
                conn,
                "SELECT t.trusted_user_id AS user_id, u.username, u.display_name, t.created_at "
                "FROM trusted_users t JOIN users u ON u.id = t.trusted_user_id "
                "WHERE t.user_id = :u ORDER BY u.username",
                {"u": user_id},
            )

    def trusted_ids(self, conn: Connection, user_id: int) -> set[int]:
        """Active trusted users of ``user_id``."""
        rows = fetch_all(
            conn,
            "SELECT t.trusted_user_id FROM trusted_users t JOIN users u ON u.id = t.trusted_user_id "
            "WHERE t.user_id = :u AND u.state = :active",
            {"u": user_id, "active": UserState.ACTIVE.value},
        )
        return {r["trusted_user_id"] for r in rows}

