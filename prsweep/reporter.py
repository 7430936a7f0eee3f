import logging
from typing import Optional

from .metrics import pull_outcomes_total
from .models import PullRequestRef, PullResult, PullState, SkipReason

logger = logging.getLogger(__name__)


class Reporter:
    """Records what happened to each pull request: logs it and counts it."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def skip(
        self, ref: PullRequestRef, reason: SkipReason, detail: str = "", log_data: Optional[dict] = None
    ) -> PullResult:
        self.log.info("%s: %s. Skipping", ref.url, detail or reason.value, extra={"pr": log_data or {}})
        pull_outcomes_total.labels(outcome="skipped", reason=reason.value).inc()
        return PullResult(ref=ref, state=PullState.SKIPPED, reason=reason, detail=detail)

    def merged(self, ref: PullRequestRef, log_data: Optional[dict] = None) -> PullResult:
        self.log.info("pull request merged: %s", ref.url, extra={"pr": log_data or {}})
        pull_outcomes_total.labels(outcome="merged", reason="").inc()
        return PullResult(ref=ref, state=PullState.MERGED)

    def error(self, ref: PullRequestRef, cause: BaseException) -> PullResult:
        self.log.warning("%s: failed: %s", ref.url, cause)
        pull_outcomes_total.labels(outcome="failed", reason=type(cause).__name__).inc()
        return PullResult(ref=ref, state=PullState.FAILED, detail=str(cause))
