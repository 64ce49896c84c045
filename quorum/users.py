"""User rows and account states."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from sqlalchemy.engine import Connection

from quorum.db import execute, fetch_one
from quorum.errors import UserNotFound


class UserState(str, Enum):
    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    REVOKED = "revoked"


_USER_COLUMNS = "id, username, display_name, password_hash, state, token_version, created_at"


def get_user(conn: Connection, user_id: int) -> Optional[dict[str, Any]]:
    return fetch_one(conn, f"SELECT {_USER_COLUMNS} FROM users WHERE id = :id", {"id": user_id})


def get_user_by_username(conn: Connection, username: str) -> Optional[dict[str, Any]]:
    return fetch_one(
        conn,
        f"SELECT {_USER_COLUMNS} FROM users WHERE username = :u",
        {"u": username},
    )


def require_user(conn: Connection, username: str) -> dict[str, Any]:
    user = get_user_by_username(conn, username)
    if user is None:
        raise UserNotFound(f"User '{username}' not found")
    return user


def set_state(conn: Connection, user_id: int, state: UserState) -> int:
    return execute(
        conn,
        "UPDATE users SET state = :s WHERE id = :id",
        {"s": state.value, "id": user_id},
    )


def set_password_hash(conn: Connection, user_id: int, password_hash: str) -> int:
    return execute(
        conn,
        "UPDATE users SET password_hash = :h WHERE id = :id",
        {"h": password_hash, "id": user_id},
    )
