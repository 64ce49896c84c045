"""
Structured error codes for the recovery and approval engine.

Every failure the engine reports to a caller carries an ErrorCode so that a
UI or CLI can render a precise message without parsing free text.

Two families:
  - AuthError: terminal for the request (re-authenticate or wait).
  - ApprovalError / RecoveryError: recoverable at the caller's discretion.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    # Authentication family
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_PENDING = "ACCOUNT_PENDING"
    ACCOUNT_REVOKED = "ACCOUNT_REVOKED"
    TOKEN_INVALIDATED = "TOKEN_INVALIDATED"
    # Approval family
    ALREADY_VOTED = "ALREADY_VOTED"
    NOT_ELIGIBLE_VOTER = "NOT_ELIGIBLE_VOTER"
    APPROVAL_NOT_PENDING = "APPROVAL_NOT_PENDING"
    APPROVAL_NOT_FOUND = "APPROVAL_NOT_FOUND"
    SOLO_PROJECT_NO_SELF_APPROVE = "SOLO_PROJECT_NO_SELF_APPROVE"
    INVALID_VOTE = "INVALID_VOTE"
    # Recovery family
    RECOVERY_EXPIRED = "RECOVERY_EXPIRED"
    RECOVERY_REJECTED = "RECOVERY_REJECTED"
    RECOVERY_NOT_FOUND = "RECOVERY_NOT_FOUND"
    RECOVERY_NOT_PENDING = "RECOVERY_NOT_PENDING"
    RECOVERY_NOT_APPROVED = "RECOVERY_NOT_APPROVED"
    # Accounts / registry
    PASSWORD_TOO_WEAK = "PASSWORD_TOO_WEAK"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_EXISTS = "USER_EXISTS"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    INVALID_INPUT = "INVALID_INPUT"


# HTTP status used by the gateway for each code.
HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.TOKEN_INVALIDATED: 401,
    ErrorCode.ACCOUNT_PENDING: 403,
    ErrorCode.ACCOUNT_REVOKED: 403,
    ErrorCode.ALREADY_VOTED: 409,
    ErrorCode.NOT_ELIGIBLE_VOTER: 403,
    ErrorCode.APPROVAL_NOT_PENDING: 409,
    ErrorCode.APPROVAL_NOT_FOUND: 404,
    ErrorCode.SOLO_PROJECT_NO_SELF_APPROVE: 403,
    ErrorCode.INVALID_VOTE: 400,
    ErrorCode.RECOVERY_EXPIRED: 410,
    ErrorCode.RECOVERY_REJECTED: 409,
    ErrorCode.RECOVERY_NOT_FOUND: 404,
    ErrorCode.RECOVERY_NOT_PENDING: 409,
    ErrorCode.RECOVERY_NOT_APPROVED: 409,
    ErrorCode.PASSWORD_TOO_WEAK: 400,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.USER_EXISTS: 409,
    ErrorCode.PROJECT_NOT_FOUND: 404,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.INVALID_INPUT: 400,
}


class EngineError(Exception):
    """Base class for every structured engine failure."""

    code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(self, message: str = "", code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.code.value
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 400)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code.value, "detail": self.message}


# ---------------------------------------------------------------------------
# Authentication family (terminal)
# ---------------------------------------------------------------------------

class AuthError(EngineError):
    code = ErrorCode.INVALID_CREDENTIALS


class InvalidCredentials(AuthError):
    code = ErrorCode.INVALID_CREDENTIALS


class AccountPending(AuthError):
    code = ErrorCode.ACCOUNT_PENDING


class AccountRevoked(AuthError):
    code = ErrorCode.ACCOUNT_REVOKED


class TokenInvalidated(AuthError):
    code = ErrorCode.TOKEN_INVALIDATED


# ---------------------------------------------------------------------------
# Approval family (recoverable)
# ---------------------------------------------------------------------------

class ApprovalError(EngineError):
    code = ErrorCode.APPROVAL_NOT_PENDING


class AlreadyVoted(ApprovalError):
    code = ErrorCode.ALREADY_VOTED


class NotEligibleVoter(ApprovalError):
    code = ErrorCode.NOT_ELIGIBLE_VOTER


class ApprovalNotPending(ApprovalError):
    code = ErrorCode.APPROVAL_NOT_PENDING


class ApprovalNotFound(ApprovalError):
    code = ErrorCode.APPROVAL_NOT_FOUND


class SoloProjectNoSelfApprove(ApprovalError):
    code = ErrorCode.SOLO_PROJECT_NO_SELF_APPROVE


class InvalidVote(ApprovalError):
    code = ErrorCode.INVALID_VOTE


# ---------------------------------------------------------------------------
# Recovery family (recoverable)
# ---------------------------------------------------------------------------

class RecoveryError(EngineError):
    code = ErrorCode.RECOVERY_NOT_PENDING


class RecoveryExpired(RecoveryError):
    code = ErrorCode.RECOVERY_EXPIRED


class RecoveryRejected(RecoveryError):
    code = ErrorCode.RECOVERY_REJECTED


class RecoveryNotFound(RecoveryError):
    code = ErrorCode.RECOVERY_NOT_FOUND


class RecoveryNotPending(RecoveryError):
    code = ErrorCode.RECOVERY_NOT_PENDING


class RecoveryNotApproved(RecoveryError):
    code = ErrorCode.RECOVERY_NOT_APPROVED


# ---------------------------------------------------------------------------
# Accounts / registry
# ---------------------------------------------------------------------------

class PasswordTooWeak(EngineError):
    code = ErrorCode.PASSWORD_TOO_WEAK


class UserNotFound(EngineError):
    code = ErrorCode.USER_NOT_FOUND


class UserExists(EngineError):
    code = ErrorCode.USER_EXISTS


class ProjectNotFound(EngineError):
    code = ErrorCode.PROJECT_NOT_FOUND


class AccessDenied(EngineError):
    code = ErrorCode.ACCESS_DENIED


class InvalidInput(EngineError):
    code = ErrorCode.INVALID_INPUT
