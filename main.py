"""
Quorum Gateway
HTTP surface for account recovery and per-project approvals.

Every route resolves the caller from a Bearer session token whose embedded
token_version is checked against the database on each request. Accounts
awaiting approval may only reach their own profile and the approval
endpoints; everything else answers ACCOUNT_PENDING.

Engine failures are raised as EngineError subclasses and rendered by a
single exception handler as ``{"error": CODE, "detail": message}``.

Run:  uvicorn main:app --port 8000
"""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from quorum.accounts import AccessState
from quorum.approvals import ApprovalDetails, VoteOutcome
from quorum.errors import EngineError, InvalidCredentials
from quorum.services import Services, build_services
from quorum.tokens import Principal
from quorum.users import require_user

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("quorum.gateway")

# ---------------------------------------------------------------------------
# App + shared services
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Quorum Recovery Gateway",
    version="0.1.0",
)

_services: Optional[Services] = None


def get_services() -> Services:
    """Build the engine once per process; tests override this dependency."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    logger.info("%s %s -> %s", request.method, request.url.path, exc.code.value)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    username: str
    password: str
    display_name: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class VoteRequest(BaseModel):
    vote: str
    reason: Optional[str] = None


class InitiateRecoveryRequest(BaseModel):
    username: str


class ResetPasswordRequest(BaseModel):
    new_password: str


class TrustedUserRequest(BaseModel):
    username: str


class ProjectRequest(BaseModel):
    name: str


class AddMemberRequest(BaseModel):
    username: str
    role: str = "reader"
    requires_approval: bool = False


class RoleRequest(BaseModel):
    role: str


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def _bearer_token(authorization: str) -> str:
    if not authorization.startswith("Bearer "):
        raise InvalidCredentials("Missing Bearer token")
    return authorization[len("Bearer "):]


def current_user(
    authorization: str = Header(""),
    services: Services = Depends(get_services),
) -> Principal:
    """Active, non-revoked caller."""
    return services.accounts.authenticate(_bearer_token(authorization))


def current_user_allow_pending(
    authorization: str = Header(""),
    services: Services = Depends(get_services),
) -> Principal:
    """Caller who may still be awaiting approval."""
    return services.accounts.authenticate(_bearer_token(authorization), allow_pending=True)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _access(state: AccessState) -> dict[str, Any]:
    return {
        "state": state.kind,
        "pending_approvals": list(getattr(state, "approvals", ())),
    }


def _approval(details: ApprovalDetails) -> dict[str, Any]:
    return dataclasses.asdict(details)


def _outcome(outcome: VoteOutcome) -> dict[str, Any]:
    return {
        "approval_id": outcome.approval_id,
        "vote": outcome.vote,
        "status": outcome.status,
        "resolved": outcome.resolved,
        "approve_count": outcome.approve_count,
        "required_votes": outcome.required.n,
        "mode": outcome.required.mode.value,
        "user_restored": outcome.user_restored,
    }


# ---------------------------------------------------------------------------
# Endpoints: health + auth
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "operational", "service": "quorum-gateway"}


@app.post("/auth/register", status_code=201)
def register(request: RegisterRequest, services: Services = Depends(get_services)):
    return services.accounts.register(request.username, request.password, request.display_name)


@app.post("/auth/login")
def login(request: LoginRequest, services: Services = Depends(get_services)):
    result = services.accounts.login(request.username, request.password)
    return {
        "token": result.credential.token,
        "expires_at": result.credential.expires_at,
        "user": result.user,
        "access": _access(result.access),
    }


@app.post("/auth/change-password")
def change_password(
    request: ChangePasswordRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    """
    Authenticated password change.

    All previous sessions are invalidated; the response carries the only
    valid token. Every project membership goes back behind approval.
    """
    result = services.accounts.change_password(
        principal.user_id, request.old_password, request.new_password
    )
    return {
        "token": result.credential.token,
        "token_version": result.event.new_version,
        "state": result.event.state,
        "approvals": result.event.approvals,
    }


@app.get("/auth/me")
def me(
    principal: Principal = Depends(current_user_allow_pending),
    services: Services = Depends(get_services),
):
    user = services.accounts.get_user(principal.user_id)
    user["access"] = _access(services.accounts.access_state(principal.user_id))
    return user


# ---------------------------------------------------------------------------
# Endpoints: approvals
# ---------------------------------------------------------------------------

@app.get("/approvals/my-pending")
def my_pending_approvals(
    principal: Principal = Depends(current_user_allow_pending),
    services: Services = Depends(get_services),
):
    return [_approval(a) for a in services.approvals.get_my_pending_approvals(principal.user_id)]


@app.get("/approvals/actionable")
def actionable_approvals(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return [_approval(a) for a in services.approvals.get_actionable_approvals(principal.user_id)]


@app.get("/approvals/pending-members")
def pending_members(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.registry.pending_members_for_admin(principal.user_id)


@app.get("/approvals/{approval_id}")
def get_approval(
    approval_id: int,
    principal: Principal = Depends(current_user_allow_pending),
    services: Services = Depends(get_services),
):
    return _approval(services.approvals.get_approval(approval_id, principal.user_id))


@app.post("/approvals/{approval_id}/vote")
def vote_on_approval(
    approval_id: int,
    request: VoteRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    outcome = services.approvals.cast_vote(
        approval_id, principal.user_id, request.vote, request.reason
    )
    return _outcome(outcome)


# ---------------------------------------------------------------------------
# Endpoints: recovery (initiate / status / reset need no session)
# ---------------------------------------------------------------------------

@app.post("/recovery/initiate")
def initiate_recovery(request: InitiateRecoveryRequest, services: Services = Depends(get_services)):
    return services.recovery.initiate_recovery(request.username)


@app.get("/recovery/pending")
def pending_recoveries(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.recovery.list_pending_recoveries(principal.user_id)


@app.get("/recovery/{token}/status")
def recovery_status(token: str, services: Services = Depends(get_services)):
    return services.recovery.get_status(token).to_dict()


@app.post("/recovery/{token}/vote")
def vote_on_recovery(
    token: str,
    request: VoteRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    view = services.recovery.vote_on_recovery(token, principal.user_id, request.vote, request.reason)
    return view.to_dict()


@app.post("/recovery/{token}/reset")
def reset_with_token(
    token: str,
    request: ResetPasswordRequest,
    services: Services = Depends(get_services),
):
    event = services.recovery.reset_password_with_token(token, request.new_password)
    return {
        "status": "done",
        "state": event.state,
        "token_version": event.new_version,
        "approvals_opened": len(event.approvals),
        "message": "Password updated. Log in with your new password.",
    }


# ---------------------------------------------------------------------------
# Endpoints: trusted users
# ---------------------------------------------------------------------------

@app.get("/trusted-users")
def list_trusted_users(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.trust.list_trusted(principal.user_id)


@app.get("/trusted-users/readiness")
def trusted_users_readiness(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.recovery.readiness(principal.user_id)


@app.post("/trusted-users", status_code=201)
def add_trusted_user(
    request: TrustedUserRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.trust.add_trusted(principal.user_id, request.username)


@app.delete("/trusted-users/{trusted_user_id}")
def remove_trusted_user(
    trusted_user_id: int,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    services.trust.remove_trusted(principal.user_id, trusted_user_id)
    return {"removed": trusted_user_id}


# ---------------------------------------------------------------------------
# Endpoints: projects + members
# ---------------------------------------------------------------------------

@app.get("/projects")
def list_projects(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.registry.projects_for_user(principal.user_id)


@app.post("/projects", status_code=201)
def create_project(
    request: ProjectRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.registry.create_project(request.name, principal.user_id)


@app.get("/projects/{project_id}/members")
def list_members(
    project_id: int,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.registry.list_members(project_id, principal.user_id)


@app.post("/projects/{project_id}/members", status_code=201)
def add_member(
    project_id: int,
    request: AddMemberRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Add a member directly, or as a join request that needs approval."""
    with services.engine.begin() as conn:
        user_id = require_user(conn, request.username)["id"]
    if request.requires_approval:
        return services.approvals.request_membership(project_id, user_id, request.role, principal.user_id)
    return services.registry.add_member(project_id, user_id, request.role, principal.user_id)


@app.put("/projects/{project_id}/members/{user_id}")
def set_member_role(
    project_id: int,
    user_id: int,
    request: RoleRequest,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    return services.registry.set_role(project_id, user_id, request.role, principal.user_id)


# ---------------------------------------------------------------------------
# Endpoints: history
# ---------------------------------------------------------------------------

@app.get("/history/verify")
def verify_history(
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    result = services.history.verify()
    return dataclasses.asdict(result)


@app.get("/history")
def project_history(
    project_id: int,
    limit: int = 50,
    offset: int = 0,
    action: Optional[str] = None,
    principal: Principal = Depends(current_user),
    services: Services = Depends(get_services),
):
    """A project's history entries, newest first, with actor usernames."""
    return services.registry.project_history(project_id, principal.user_id, limit, offset, action)
