"""
Token Version Guard

Every session credential embeds the user's ``token_version`` at issue time.
Validation re-reads the authoritative version from the database on every
call, so a single ``bump`` invalidates every credential issued before it
with no grace window and no cache to flush.

Credential format: ``<base64url(json claims)>.<base64url(hmac-sha256)>``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection, Engine

from quorum.db import execute, fetch_one, transaction, utc_now
from quorum.errors import InvalidCredentials, TokenInvalidated, UserNotFound

logger = logging.getLogger(__name__)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-in-production")
SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS", "86400"))


@dataclass(frozen=True)
class Credential:
    token: str
    user_id: int
    version: int
    expires_at: int


@dataclass(frozen=True)
class Principal:
    """The user behind a validated credential, as currently stored."""
    user_id: int
    username: str
    state: str
    token_version: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenVersionGuard:
    """Issues, validates and invalidates session credentials."""

    def __init__(
        self,
        engine: Engine,
        secret: str | None = None,
        ttl_seconds: int | None = None,
        clock: Callable = utc_now,
    ):
        self._engine = engine
        self._secret = (secret or SESSION_SECRET).encode("utf-8")
        self._ttl = ttl_seconds if ttl_seconds is not None else SESSION_TTL_SECONDS
        self._clock = clock

    # -- signing -----------------------------------------------------------

    def _sign(self, payload_segment: str) -> str:
        digest = hmac.new(self._secret, payload_segment.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest)

    def _decode(self, token: str) -> dict[str, Any]:
        try:
            payload_segment, signature = token.split(".")
        except ValueError:
            raise InvalidCredentials("Malformed session token")
        if not hmac.compare_digest(self._sign(payload_segment).encode("ascii"), signature.encode("utf-8")):
            raise InvalidCredentials("Session token signature mismatch")
        try:
            claims = json.loads(_b64decode(payload_segment))
        except (ValueError, UnicodeDecodeError):
            raise InvalidCredentials("Malformed session token")
        if not isinstance(claims, dict) or not {"sub", "ver", "exp"} <= claims.keys():
            raise InvalidCredentials("Malformed session token")
        return claims

    # -- contract ------------------------------------------------------------

    def issue(self, user_id: int, conn: Optional[Connection] = None) -> Credential:
        """Issue a credential carrying the user's current token_version."""
        with transaction(self._engine, conn) as c:
            row = fetch_one(c, "SELECT token_version FROM users WHERE id = :id", {"id": user_id})
        if row is None:
            raise UserNotFound(f"User {user_id} not found")

        now = self._clock()
        expires_at = int((now + timedelta(seconds=self._ttl)).timestamp())
        claims = {
            "sub": user_id,
            "ver": row["token_version"],
            "iat": int(now.timestamp()),
            "exp": expires_at,
        }
        payload_segment = _b64encode(
            json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
        )
        token = f"{payload_segment}.{self._sign(payload_segment)}"
        return Credential(
            token=token,
            user_id=user_id,
            version=row["token_version"],
            expires_at=expires_at,
        )

    def validate(self, token: str, conn: Optional[Connection] = None) -> Principal:
        """
        Resolve ``token`` to its user.

        Raises InvalidCredentials for forged, expired or orphaned tokens and
        TokenInvalidated when the embedded version is stale.
        """
        claims = self._decode(token)
        if claims["exp"] < int(self._clock().timestamp()):
            raise InvalidCredentials("Session token expired")

        with transaction(self._engine, conn) as c:
            row = fetch_one(
                c,
                "SELECT id, username, state, token_version FROM users WHERE id = :id",
                {"id": claims["sub"]},
            )
        if row is None:
            raise InvalidCredentials("Unknown user")
        if claims["ver"] != row["token_version"]:
            logger.info(
                "Rejected stale token for user %s (token v%s, current v%s)",
                row["id"], claims["ver"], row["token_version"],
            )
            raise TokenInvalidated("Session has been invalidated; please log in again")
        return Principal(
            user_id=row["id"],
            username=row["username"],
            state=row["state"],
            token_version=row["token_version"],
        )

    def bump(self, conn: Connection, user_id: int) -> tuple[int, int]:
        """
        Atomically increment the user's token_version.

        Runs inside the caller's transaction as a single read-modify-write
        statement. Returns ``(previous, new)``.
        """
        updated = execute(
            conn,
            "UPDATE users SET token_version = token_version + 1 WHERE id = :id",
            {"id": user_id},
        )
        if updated != 1:
            raise UserNotFound(f"User {user_id} not found")
        new_version = fetch_one(
            conn, "SELECT token_version FROM users WHERE id = :id", {"id": user_id}
        )["token_version"]
        logger.info("token_version for user %s -> %s", user_id, new_version)
        return new_version - 1, new_version
