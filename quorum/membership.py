"""
Membership Registry
Per-project roster of memberships, their roles and their activation status.

Roles:   admin | editor | reader
Status:  active | pending

A membership's ``status`` is only flipped by approval resolution, by a
security event or by the privileged override; the helpers that do so take
the caller's open connection so the change commits with its audit entry.
Admin checks are plain per-request lookups with no caching.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection, Engine

from quorum.audit import HistoryLog
from quorum.db import (
    execute,
    fetch_all,
    fetch_one,
    format_ts,
    insert_returning_id,
    scalar,
    transaction,
    utc_now,
)
from quorum.errors import AccessDenied, InvalidInput, ProjectNotFound, UserExists, UserNotFound
from quorum.users import get_user

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    READER = "reader"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"


def _parse_role(role: str) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise InvalidInput(f"Unknown role '{role}'; expected admin, editor or reader")


class MembershipRegistry:
    def __init__(self, engine: Engine, history: HistoryLog, clock: Callable = utc_now):
        self._engine = engine
        self._history = history
        self._clock = clock

    # -- lookups -----------------------------------------------------------

    def get_project(self, project_id: int, conn: Optional[Connection] = None) -> dict[str, Any]:
        with transaction(self._engine, conn) as c:
            row = fetch_one(
                c,
                "SELECT id, name, created_by, created_at FROM projects WHERE id = :id",
                {"id": project_id},
            )
        if row is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return row

    def get_membership(
        self, project_id: int, user_id: int, conn: Optional[Connection] = None
    ) -> Optional[dict[str, Any]]:
        with transaction(self._engine, conn) as c:
            return fetch_one(
                c,
                "SELECT project_id, user_id, role, status, joined_at FROM project_members "
                "WHERE project_id = :p AND user_id = :u",
                {"p": project_id, "u": user_id},
            )

    def is_active_member(self, project_id: int, user_id: int, conn: Optional[Connection] = None) -> bool:
        m = self.get_membership(project_id, user_id, conn)
        return m is not None and m["status"] == MemberStatus.ACTIVE.value

    def is_active_admin(self, project_id: int, user_id: int, conn: Optional[Connection] = None) -> bool:
        m = self.get_membership(project_id, user_id, conn)
        return (
            m is not None
            and m["status"] == MemberStatus.ACTIVE.value
            and m["role"] == Role.ADMIN.value
        )

    def quorum_member_count(self, conn: Connection, project_id: int, subject_id: int) -> int:
        """Active members plus the affected user, whatever their status."""
        return scalar(
            conn,
            "SELECT COUNT(*) FROM project_members "
            "WHERE project_id = :p AND (status = 'active' OR user_id = :u)",
            {"p": project_id, "u": subject_id},
        )

    def other_active_member_count(self, conn: Connection, project_id: int, user_id: int) -> int:
        return scalar(
            conn,
            "SELECT COUNT(*) FROM project_members "
            "WHERE project_id = :p AND status = 'active' AND user_id <> :u",
            {"p": project_id, "u": user_id},
        )

    def memberships_for_user(self, conn: Connection, user_id: int) -> list[dict[str, Any]]:
        return fetch_all(
            conn,
            "SELECT project_id, user_id, role, status, joined_at FROM project_members "
            "WHERE user_id = :u ORDER BY project_id",
            {"u": user_id},
        )

    def active_admin_projects(self, conn: Connection, user_id: int) -> list[int]:
        rows = fetch_all(
            conn,
            "SELECT project_id FROM project_members "
            "WHERE user_id = :u AND role = 'admin' AND status = 'active' ORDER BY project_id",
            {"u": user_id},
        )
        return [r["project_id"] for r in rows]

    # -- status transitions (caller's transaction) -----------------------------

    def set_status(self, conn: Connection, project_id: int, user_id: int, status: MemberStatus) -> int:
        return execute(
            conn,
            "UPDATE project_members SET status = :s WHERE project_id = :p AND user_id = :u",
            {"s": status.value, "p": project_id, "u": user_id},
        )

    def activate(self, conn: Connection, project_id: int, user_id: int) -> int:
        """Flip a pending membership to active. Returns rows changed."""
        return execute(
            conn,
            "UPDATE project_members SET status = 'active' "
            "WHERE project_id = :p AND user_id = :u AND status = 'pending'",
            {"p": project_id, "u": user_id},
        )

    def set_all_status(self, conn: Connection, user_id: int, status: MemberStatus) -> int:
        return execute(
            conn,
            "UPDATE project_members SET status = :s WHERE user_id = :u AND status <> :s",
            {"s": status.value, "u": user_id},
        )

    # -- management ------------------------------------------------------------

    def create_project(self, name: str, creator_id: int) -> dict[str, Any]:
        """Create a project; the creator becomes its first active admin."""
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Project name must not be empty")
        now = format_ts(self._clock())
        with self._engine.begin() as conn:
            if get_user(conn, creator_id) is None:
                raise UserNotFound(f"User {creator_id} not found")
            project_id = insert_returning_id(
                conn,
                "INSERT INTO projects (name, created_by, created_at) VALUES (:n, :u, :t)",
                {"n": name, "u": creator_id, "t": now},
            )
            execute(
                conn,
                "INSERT INTO project_members (project_id, user_id, role, status, joined_at) "
                "VALUES (:p, :u, 'admin', 'active', :t)",
                {"p": project_id, "u": creator_id, "t": now},
            )
            self._history.append(
                conn,
                "PROJECT_CREATED",
                {"project_id": project_id, "name": name},
                actor_user_id=creator_id,
            )
        logger.info("Project %s '%s' created by user %s", project_id, name, creator_id)
        return {"id": project_id, "name": name, "created_by": creator_id, "created_at": now}

    def insert_member(
        self,
        conn: Connection,
        project_id: int,
        user_id: int,
        role: str,
        actor_id: int,
        status: MemberStatus = MemberStatus.ACTIVE,
    ) -> dict[str, Any]:
        """Insert a membership inside ``conn`` after checking the actor is an admin."""
        parsed = _parse_role(role)
        self.get_project(project_id, conn)
        if not self.is_active_admin(project_id, actor_id, conn):
            raise AccessDenied("Only an active project admin can add members")
        if get_user(conn, user_id) is None:
            raise UserNotFound(f"User {user_id} not found")
        if self.get_membership(project_id, user_id, conn) is not None:
            raise UserExists(f"User {user_id} is already a member of project {project_id}")

        now = format_ts(self._clock())
        execute(
            conn,
            "INSERT INTO project_members (project_id, user_id, role, status, joined_at) "
            "VALUES (:p, :u, :r, :s, :t)",
            {"p": project_id, "u": user_id, "r": parsed.value, "s": status.value, "t": now},
        )
        self._history.append(
            conn,
            "MEMBER_ADDED",
            {"project_id": project_id, "user_id": user_id, "role": parsed.value, "status": status.value},
            actor_user_id=actor_id,
        )
        return {
            "project_id": project_id,
            "user_id": user_id,
            "role": parsed.value,
            "status": status.value,
            "joined_at": now,
        }

    def add_member(self, project_id: int, user_id: int, role: str, actor_id: int) -> dict[str, Any]:
        """Admin path: add an immediately active member."""
        with self._engine.begin() as conn:
            member = self.insert_member(conn, project_id, user_id, role, actor_id)
        logger.info("User %s added to project %s as %s", user_id, project_id, member["role"])
        return member

    def set_role(self, project_id: int, user_id: int, role: str, actor_id: int) -> dict[str, Any]:
        parsed = _parse_role(role)
        with self._engine.begin() as conn:
            if not self.is_active_admin(project_id, actor_id, conn):
                raise AccessDenied("Only an active project admin can change roles")
            current = self.get_membership(project_id, user_id, conn)
            if current is None:
                raise UserNotFound(f"User {user_id} is not a member of project {project_id}")
            if current["role"] != parsed.value:
                execute(
                    conn,
                    "UPDATE project_members SET role = :r WHERE project_id = :p AND user_id = :u",
                    {"r": parsed.value, "p": project_id, "u": user_id},
                )
                self._history.append(
                    conn,
                    "MEMBER_ROLE_CHANGED",
                    {
                        "project_id": project_id,
                        "user_id": user_id,
                        "old_role": current["role"],
                        "new_role": parsed.value,
                    },
                    actor_user_id=actor_id,
                )
            current["role"] = parsed.value
        return current

    def list_members(self, project_id: int, viewer_id: int) -> list[dict[str, Any]]:
        with self._engine.begin() as conn:
            self.get_project(project_id, conn)
            if self.get_membership(project_id, viewer_id, conn) is None:
                raise AccessDenied("Not a member of this project")
            return fetch_all(
                conn,
                "SELECT pm.user_id, u.username, u.display_name, pm.role, pm.status, pm.joined_at "
                "FROM project_members pm JOIN users u ON u.id = pm.user_id "
                "WHERE pm.project_id = :p ORDER BY pm.joined_at, pm.user_id",
                {"p": project_id},
            )

    def project_history(
        self,
        project_id: int,
        viewer_id: int,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """History entries for a project; only its active members may read them."""
        if limit < 1 or offset < 0:
            raise InvalidInput("limit must be positive and offset non-negative")
        with self._engine.begin() as conn:
            self.get_project(project_id, conn)
            if not self.is_active_member(project_id, viewer_id, conn):
                raise AccessDenied("Only active project members can read its history")
            return self._history.project_history(project_id, limit, offset, action, conn=conn)

    def projects_for_user(self, user_id: int) -> list[dict[str, Any]]:
        with self._engine.begin() as conn:
            return fetch_all(
                conn,
                "SELECT p.id, p.name, pm.role, pm.status FROM projects p "
                "JOIN project_members pm ON pm.project_id = p.id "
                "WHERE pm.user_id = :u ORDER BY p.id",
                {"u": user_id},
            )

    def pending_members_for_admin(self, admin_id: int) -> list[dict[str, Any]]:
        """Pending memberships in projects where ``admin_id`` is an active admin."""
        with self._engine.begin() as conn:
            return fetch_all(
                conn,
                "SELECT pm.project_id, p.name AS project_name, pm.user_id, u.username, "
                "u.display_name, pm.role, pm.joined_at, pa.id AS approval_id, pa.event_type "
                "FROM project_members pm "
                "JOIN project_members me ON me.project_id = pm.project_id "
                "  AND me.user_id = :a AND me.role = 'admin' AND me.status = 'active' "
                "JOIN projects p ON p.id = pm.project_id "
                "JOIN users u ON u.id = pm.user_id "
                "LEFT JOIN project_approvals pa ON pa.project_id = pm.project_id "
                "  AND pa.user_id = pm.user_id AND pa.status = 'pending' "
                "WHERE pm.status = 'pending' AND pm.user_id <> :a "
                "ORDER BY pm.project_id, pm.user_id",
                {"a": admin_id},
            )
