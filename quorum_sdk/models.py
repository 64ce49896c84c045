"""
Quorum SDK: Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class Session(BaseModel):
    """Result of POST /auth/login or /auth/change-password."""
    token: str
    user_id: int | None = None
    state: str                  # active | pending_approval
    pending_approvals: list[dict] = []
    raw: dict                   # full response body


class ApprovalSummary(BaseModel):
    """One entry of /approvals/my-pending, /approvals/actionable or /approvals/{id}."""
    id: int
    user_id: int
    username: str
    project_id: int
    project_name: str
    event_type: str
    status: str                 # pending | approved | rejected
    vote_count: int
    required_votes: int | None = None
    mode: str
    can_self_approve: bool
    votes: list[dict] = []


class VoteResult(BaseModel):
    """Result of POST /approvals/{id}/vote."""
    approval_id: int
    status: str
    resolved: bool
    approve_count: int
    required_votes: int | None = None
    raw: dict


class RecoveryStatus(BaseModel):
    """Result of the recovery status and vote endpoints."""
    token: str
    status: str                 # pending | approved | rejected | expired | done
    approvals_count: int
    required_approvals: int
    expires_at: str
