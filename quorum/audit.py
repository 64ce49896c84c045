"""
History Log
Append-only, hash-chained record of every security-relevant mutation.

Each entry stores ``entry_hash = SHA-256(prev_hash || canonical(body))``
where ``body`` is the entry's content (created_at, correlation_id, actor,
action, payload) serialized as canonical JSON. The first entry chains to
the literal ``GENESIS``.

Writers call ``HistoryLog.append`` inside their own transaction so the
audit entry commits (or rolls back) together with the state change it
describes. Verification is a pure function over a list of entries and
needs no database.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from sqlalchemy.engine import Connection, Engine

from quorum.db import (
    GENESIS_HASH,
    execute,
    fetch_all,
    fetch_one,
    format_ts,
    insert_returning_id,
    transaction,
    utc_now,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HistoryEntry:
    id: int
    created_at: str
    correlation_id: str
    actor_user_id: Optional[int]
    action: str
    payload: dict[str, Any]
    prev_hash: str
    entry_hash: str


@dataclass
class ChainVerification:
    is_valid: bool
    total_entries: int
    first_broken_index: Optional[int] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def entry_body(
    created_at: str,
    correlation_id: str,
    actor_user_id: Optional[int],
    action: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "created_at": created_at,
        "correlation_id": correlation_id,
        "actor_user_id": actor_user_id,
        "action": action,
        "payload": payload,
    }


def compute_entry_hash(prev_hash: str, body: dict[str, Any]) -> str:
    """Return ``sha256:<hex>`` of prev_hash followed by the canonical body."""
    material = prev_hash + canonical_json(body)
    return "sha256:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def verify_chain(entries: Iterable[HistoryEntry]) -> ChainVerification:
    """Walk ``entries`` in order and recompute every link.

    Reports the index (0-based) of the first entry whose ``prev_hash`` does
    not point at its predecessor or whose ``entry_hash`` does not match its
    content.
    """
    expected_prev = GENESIS_HASH
    count = 0
    for index, entry in enumerate(entries):
        count += 1
        body = entry_body(
            entry.created_at,
            entry.correlation_id,
            entry.actor_user_id,
            entry.action,
            entry.payload,
        )
        if entry.prev_hash != expected_prev:
            return ChainVerification(
                is_valid=False,
                total_entries=index + 1,
                first_broken_index=index,
                message=f"Entry {entry.id} does not link to its predecessor",
            )
        if compute_entry_hash(entry.prev_hash, body) != entry.entry_hash:
            return ChainVerification(
                is_valid=False,
                total_entries=index + 1,
                first_broken_index=index,
                message=f"Entry {entry.id} content does not match its hash",
            )
        expected_prev = entry.entry_hash

    if count == 0:
        return ChainVerification(is_valid=True, total_entries=0, message="History log is empty")
    return ChainVerification(
        is_valid=True,
        total_entries=count,
        message=f"All {count} entries verified",
    )


def new_correlation_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class HistoryLog:
    """
    Append-only writer and reader for the history_log table.

    All security-relevant writes go through ``append`` so that every
    component shares one chain.
    """

    def __init__(self, engine: Engine, clock: Callable = utc_now):
        self._engine = engine
        self._clock = clock

    def append(
        self,
        conn: Connection,
        action: str,
        payload: dict[str, Any],
        actor_user_id: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """
        Append one entry inside the caller's transaction and return its id.

        The head row is updated first: that write lock is held until the
        caller commits, so two appends can never chain to the same parent.
        """
        execute(conn, "UPDATE history_head SET entry_count = entry_count + 1 WHERE id = 1")
        head = fetch_one(conn, "SELECT entry_hash FROM history_head WHERE id = 1")
        if head is None:
            raise RuntimeError("history_head row missing; run init_schema first")

        prev_hash = head["entry_hash"]
        created_at = format_ts(self._clock())
        correlation_id = correlation_id or new_correlation_id()
        body = entry_body(created_at, correlation_id, actor_user_id, action, payload)
        entry_hash = compute_entry_hash(prev_hash, body)

        entry_id = insert_returning_id(
            conn,
            "INSERT INTO history_log "
            "(created_at, correlation_id, actor_user_id, action, payload, prev_hash, entry_hash) "
            "VALUES (:created_at, :correlation_id, :actor, :action, :payload, :prev, :hash)",
            {
                "created_at": created_at,
                "correlation_id": correlation_id,
                "actor": actor_user_id,
                "action": action,
                "payload": canonical_json(payload),
                "prev": prev_hash,
                "hash": entry_hash,
            },
        )
        execute(
            conn,
            "UPDATE history_head SET entry_hash = :h WHERE id = 1",
            {"h": entry_hash},
        )
        logger.debug("history %s #%s %s", action, entry_id, entry_hash[:19])
        return entry_id

    def report_integrity_violation(self, conn: Connection, detail: dict[str, Any]) -> int:
        """Record a state that should be impossible by construction."""
        logger.error("Integrity violation: %s", detail)
        return self.append(conn, "INTEGRITY_VIOLATION", detail)

    def entries(self, conn: Optional[Connection] = None) -> list[HistoryEntry]:
        with transaction(self._engine, conn) as c:
            rows = fetch_all(
                c,
                "SELECT id, created_at, correlation_id, actor_user_id, action, "
                "payload, prev_hash, entry_hash FROM history_log ORDER BY id ASC",
            )
        return [_row_to_entry(r) for r in rows]

    def entries_for_action(self, action: str) -> list[HistoryEntry]:
        return [e for e in self.entries() if e.action == action]

    def project_history(
        self,
        project_id: int,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> list[dict[str, Any]]:
        """
        Entries whose payload names ``project_id``, newest first.

        Payloads are canonical JSON, so a LIKE on ``"project_id":<id>``
        narrows the scan; the decoded payload is checked exactly afterwards.
        Each item carries the actor's username (None for system entries).
        """
        sql = (
            "SELECT h.id, h.created_at, h.correlation_id, h.actor_user_id, h.action, "
            "h.payload, h.prev_hash, h.entry_hash, u.username AS actor_username "
            "FROM history_log h LEFT JOIN users u ON u.id = h.actor_user_id "
            "WHERE h.payload LIKE :pattern"
        )
        params: dict[str, Any] = {"pattern": f'%"project_id":{int(project_id)}%'}
        if action:
            sql += " AND h.action = :action"
            params["action"] = action
        with transaction(self._engine, conn) as c:
            rows = fetch_all(c, sql + " ORDER BY h.id DESC", params)

        matched = []
        for row in rows:
            entry = _row_to_entry(row)
            if entry.payload.get("project_id") != project_id:
                continue
            matched.append({
                "id": entry.id,
                "created_at": entry.created_at,
                "action": entry.action,
                "actor_user_id": entry.actor_user_id,
                "actor_username": row["actor_username"],
                "payload": entry.payload,
                "entry_hash": entry.entry_hash,
            })
        return matched[offset:offset + limit]

    def verify(self) -> ChainVerification:
        result = verify_chain(self.entries())
        if not result.is_valid:
            logger.error("History chain broken: %s", result.message)
        return result


def _row_to_entry(row: dict[str, Any]) -> HistoryEntry:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return HistoryEntry(
        id=row["id"],
        created_at=row["created_at"],
        correlation_id=row["correlation_id"],
        actor_user_id=row["actor_user_id"],
        action=row["action"],
        payload=payload,
        prev_hash=row["prev_hash"],
        entry_hash=row["entry_hash"],
    )
