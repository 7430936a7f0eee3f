import logging
from typing import Callable, Optional

from .evaluation import escalate, evaluate
from .metrics import (
    merge_attempts_total,
    pulls_evaluated_total,
    sweeps_total,
    worker_processing_seconds,
)
from .models import PullRequestRef, PullResult, SkipReason, SweepSummary
from .reporter import Reporter

logger = logging.getLogger(__name__)

MERGE_METHOD = "squash"


class SweepContext:
    """Collaborators for one sweep: the GitHub client and the reporter.

    ``heartbeat``, when given, is called before each pull request and must
    return False once the caller no longer owns the repository.
    """

    def __init__(self, gh, reporter: Optional[Reporter] = None, heartbeat: Optional[Callable[[], bool]] = None):
        self.gh = gh
        self.reporter = reporter or Reporter()
        self.heartbeat = heartbeat


def process_pull_request(ctx: SweepContext, ref: PullRequestRef) -> PullResult:
    """Fetch, evaluate, maybe approve, maybe merge one pull request.

    Expected skips come back as SKIPPED results. Errors raised by the GitHub
    client propagate; ``run_sweep`` turns them into FAILED results.
    """
    gh, reporter = ctx.gh, ctx.reporter

    with worker_processing_seconds.labels(phase="fetch").time():
        snapshot = gh.fetch_status_snapshot(ref)
    pulls_evaluated_total.inc()
    log_data = snapshot.log_data(ref.number)
    logger.debug("Snapshot for %s: %s", ref.slug, log_data)

    outcome = evaluate(snapshot)
    if outcome.is_skip and outcome.reason == SkipReason.AWAITING_APPROVAL:
        with worker_processing_seconds.labels(phase="escalate").time():
            outcome = escalate(gh, ref, snapshot)
    if outcome.is_skip:
        return reporter.skip(ref, outcome.reason, outcome.detail, log_data)

    logger.debug("Merging %s with method=%s", ref.slug, MERGE_METHOD)
    try:
        with worker_processing_seconds.labels(phase="merge").time():
            msg = gh.merge_pull_request(ref, commit_title=ref.title, merge_method=MERGE_METHOD)
    except Exception:
        merge_attempts_total.labels(method=MERGE_METHOD, result="error").inc()
        raise
    merge_attempts_total.labels(method=MERGE_METHOD, result="success").inc()
    logger.debug("Merge success for %s: %s", ref.slug, msg)
    return reporter.merged(ref, log_data)


def run_sweep(ctx: SweepContext, owner: str, repo: str, author: Optional[str] = None) -> SweepSummary:
    """Process every open pull request of ``owner/repo``, one at a time, in listing order.

    A failure to list pull requests is raised. A failure while processing one
    pull request is reported and the sweep moves on to the next.
    """
    author = author or None
    logger.debug("Listing open pull requests for %s/%s author=%s", owner, repo, author)
    try:
        refs = ctx.gh.list_open_pull_requests(owner, repo, author=author)
    except Exception:
        sweeps_total.labels(result="error").inc()
        raise

    summary = SweepSummary(owner=owner, repo=repo, author=author)
    for ref in refs:
        if ctx.heartbeat is not None and not ctx.heartbeat():
            logger.warning("Lost lock while sweeping %s/%s; stopping before %s", owner, repo, ref.slug)
            summary.interrupted = True
            break
        try:
            result = process_pull_request(ctx, ref)
        except Exception as e:
            logger.debug("Processing %s raised %r", ref.slug, e, exc_info=True)
            result = ctx.reporter.error(ref, e)
        summary.results.append(result)

    sweeps_total.labels(result="interrupted" if summary.interrupted else "ok").inc()
    logger.info(
        "Sweep of %s/%s finished: pulls=%d merged=%d failed=%d",
        owner,
        repo,
        len(summary.results),
        len(summary.merged),
        len(summary.failed),
    )
    return summary
