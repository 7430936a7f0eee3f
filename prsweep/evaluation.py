import logging
from typing import Optional

from .checks import CISignal, signal_for
from .metrics import approvals_total
from .models import (
    EligibilityOutcome,
    Mergeable,
    PullRequestRef,
    ReviewDecision,
    SkipReason,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)


def evaluate(snapshot: StatusSnapshot, signal: Optional[CISignal] = None) -> EligibilityOutcome:
    """Run the gates in order and stop at the first one that fails.

    An unmet review gate comes back as ``AWAITING_APPROVAL``; ``escalate`` may
    still turn it into a merge.
    """
    if not snapshot.viewer_can_update:
        return EligibilityOutcome.skip(SkipReason.NO_WRITE_PERMISSION, "you cannot update this PR")

    signal = signal or signal_for(snapshot)
    failing = signal.failures(snapshot)
    if failing:
        return EligibilityOutcome.skip(SkipReason.CHECKS_NOT_SUCCESSFUL, "; ".join(failing))

    # UNKNOWN means GitHub is still computing mergeability
    if snapshot.mergeable != Mergeable.MERGEABLE:
        return EligibilityOutcome.skip(
            SkipReason.NOT_MERGEABLE, f'mergeable status is "{snapshot.mergeable.value}"'
        )

    if snapshot.review_decision == ReviewDecision.APPROVED:
        return EligibilityOutcome.proceed()
    return EligibilityOutcome.skip(SkipReason.AWAITING_APPROVAL, "awaiting approval")


def can_self_approve(snapshot: StatusSnapshot) -> bool:
    return not (snapshot.viewer_did_author or snapshot.viewer_did_approve)


def escalate(gh, ref: PullRequestRef, snapshot: StatusSnapshot) -> EligibilityOutcome:
    """Approve the pull request as the acting identity, then re-read the review decision.

    Errors from the approval call propagate to the caller.
    """
    if not can_self_approve(snapshot):
        logger.debug(
            "Not approving %s: viewer_did_author=%s viewer_did_approve=%s",
            ref.slug,
            snapshot.viewer_did_author,
            snapshot.viewer_did_approve,
        )
        return EligibilityOutcome.skip(SkipReason.AWAITING_APPROVAL, "awaiting approval")

    logger.debug("Approving %s at commit %s", ref.slug, snapshot.latest_commit_id)
    try:
        gh.submit_approval(ref, snapshot.latest_commit_id)
    except Exception:
        approvals_total.labels(result="error").inc()
        raise
    approvals_total.labels(result="success").inc()

    # Branch protection may require more approvals than ours
    decision = gh.fetch_review_decision(ref)
    logger.debug("Review decision for %s after approval: %s", ref.slug, decision)
    if decision == ReviewDecision.APPROVED:
        return EligibilityOutcome.proceed()
    return EligibilityOutcome.skip(SkipReason.AWAITING_APPROVAL, "awaiting approval")
