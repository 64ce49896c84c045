"""
Quorum SDK: Client
Thin synchronous wrapper over the Quorum recovery gateway.
"""

from __future__ import annotations

from typing import Any

import httpx

from quorum_sdk.models import ApprovalSummary, RecoveryStatus, Session, VoteResult


class QuorumAPIError(Exception):
    """Non-2xx response from the gateway, carrying its structured error code."""

    def __init__(self, status_code: int, error: str, detail: str = ""):
        self.status_code = status_code
        self.error = error
        self.detail = detail
        super().__init__(f"{status_code} {error}: {detail}")


class QuorumClient:
    """
    Client for the Quorum gateway.

    Holds at most one session token; ``login`` and ``change_password``
    replace it with the token the gateway returns.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        """
        Args:
            base_url: Base URL of the gateway (e.g. "http://localhost:8000")
            token: Existing session token, if any
            timeout: HTTP request timeout in seconds
            client: Pre-built httpx.Client to send requests through
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.Client(timeout=timeout)

    # -- transport ---------------------------------------------------------

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        resp = self._client.request(method, f"{self.base_url}{path}", json=json, headers=headers)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            if isinstance(body, dict):
                raise QuorumAPIError(resp.status_code, body.get("error", "HTTP_ERROR"), str(body.get("detail", "")))
            raise QuorumAPIError(resp.status_code, "HTTP_ERROR")
        return body

    # -- auth ---------------------------------------------------------------

    def register(self, username: str, password: str, display_name: str | None = None) -> dict:
        return self._request(
            "POST",
            "/auth/register",
            {"username": username, "password": password, "display_name": display_name},
        )

    def login(self, username: str, password: str) -> Session:
        body = self._request("POST", "/auth/login", {"username": username, "password": password})
        self.token = body["token"]
        return Session(
            token=body["token"],
            user_id=body["user"]["id"],
            state=body["access"]["state"],
            pending_approvals=body["access"]["pending_approvals"],
            raw=body,
        )

    def change_password(self, old_password: str, new_password: str) -> Session:
        body = self._request(
            "POST",
            "/auth/change-password",
            {"old_password": old_password, "new_password": new_password},
        )
        self.token = body["token"]
        return Session(
            token=body["token"],
            state=body["state"],
            pending_approvals=body["approvals"],
            raw=body,
        )

    def me(self) -> dict:
        return self._request("GET", "/auth/me")

    # -- approvals ------------------------------------------------------------

    def my_pending_approvals(self) -> list[ApprovalSummary]:
        return [ApprovalSummary(**a) for a in self._request("GET", "/approvals/my-pending")]

    def actionable_approvals(self) -> list[ApprovalSummary]:
        return [ApprovalSummary(**a) for a in self._request("GET", "/approvals/actionable")]

    def get_approval(self, approval_id: int) -> ApprovalSummary:
        return ApprovalSummary(**self._request("GET", f"/approvals/{approval_id}"))

    def vote(self, approval_id: int, vote: str, reason: str | None = None) -> VoteResult:
        body = self._request(
            "POST", f"/approvals/{approval_id}/vote", {"vote": vote, "reason": reason}
        )
        return VoteResult(
            approval_id=body["approval_id"],
            status=body["status"],
            resolved=body["resolved"],
            approve_count=body["approve_count"],
            required_votes=body["required_votes"],
            raw=body,
        )

    # -- recovery ---------------------------------------------------------------

    def initiate_recovery(self, username: str) -> str:
        """Start a recovery and return its token."""
        return self._request("POST", "/recovery/initiate", {"username": username})["token"]

    def recovery_status(self, token: str) -> RecoveryStatus:
        return RecoveryStatus(**self._request("GET", f"/recovery/{token}/status"))

    def vote_on_recovery(self, token: str, vote: str, reason: str | None = None) -> RecoveryStatus:
        return RecoveryStatus(
            **self._request("POST", f"/recovery/{token}/vote", {"vote": vote, "reason": reason})
        )

    def reset_password(self, token: str, new_password: str) -> dict:
        return self._request("POST", f"/recovery/{token}/reset", {"new_password": new_password})

    # -- trusted users / projects ---------------------------------------------------

    def add_trusted_user(self, username: str) -> dict:
        return self._request("POST", "/trusted-users", {"username": username})

    def create_project(self, name: str) -> dict:
        return self._request("POST", "/projects", {"name": name})

    def add_member(self, project_id: int, username: str, role: str = "reader") -> dict:
        return self._request(
            "POST", f"/projects/{project_id}/members", {"username": username, "role": role}
        )

    def health(self) -> dict:
        """Check gateway health via GET /health."""
        return self._request("GET", "/health")
