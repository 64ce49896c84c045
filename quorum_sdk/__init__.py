"""Python client for the Quorum recovery gateway."""

from quorum_sdk.client import QuorumAPIError, QuorumClient
from quorum_sdk.models import ApprovalSummary, RecoveryStatus, Session, VoteResult

__all__ = [
    "ApprovalSummary",
    "QuorumAPIError",
    "QuorumClient",
    "RecoveryStatus",
    "Session",
    "VoteResult",
]
