"""
Credential Store helpers.

Password hashes are argon2id strings produced by argon2-cffi. The rest of
the engine only ever calls ``hash_password`` / ``verify_password``.
"""

from __future__ import annotations

import os
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from quorum.errors import PasswordTooWeak

MIN_PASSWORD_LENGTH = int(os.environ.get("MIN_PASSWORD_LENGTH", "6"))
TEMP_PASSWORD_BYTES = int(os.environ.get("TEMP_PASSWORD_BYTES", "12"))

_hasher = PasswordHasher(
    time_cost=int(os.environ.get("ARGON2_TIME_COST", "3")),
    memory_cost=int(os.environ.get("ARGON2_MEMORY_COST", "65536")),
    parallelism=int(os.environ.get("ARGON2_PARALLELISM", "4")),
)


def check_password_strength(password: str) -> None:
    """Raise PasswordTooWeak if ``password`` is below the minimum length."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordTooWeak(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe check of ``password`` against a stored argon2 hash."""
    try:
        return _hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


def generate_temp_password() -> str:
    """Return a URL-safe temporary password for admin resets."""
    return secrets.token_urlsafe(TEMP_PASSWORD_BYTES)
