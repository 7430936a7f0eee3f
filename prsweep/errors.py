"""Errors raised while sweeping pull requests."""

from typing import Optional


class SweepError(Exception):
    """Base exception for all sweep errors."""

    code = "SWEEP_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{self.code}] {message}")


# Failures of a single pull request's actions.


class ApprovalActionFailed(SweepError):
    """Raised when submitting the approving review is rejected."""

    code = "APPROVAL_FAILED"


class MergeActionFailed(SweepError):
    """Raised when the merge call is rejected (closed, already merged, blocked...)."""

    code = "MERGE_FAILED"


class TransportError(SweepError):
    """Raised on network errors, unexpected HTTP statuses or GraphQL errors."""

    code = "TRANSPORT_ERROR"
