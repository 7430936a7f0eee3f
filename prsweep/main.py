import hmac
import hashlib
import json
import uuid
import asyncio
import logging
from typing import Any, Dict, Optional
from fastapi import FastAPI, Request, Response, Header, HTTPException

from .config import SETTINGS
from .metrics import (
    metrics_response,
    webhook_requests_total,
    webhook_invalid_signatures_total,
    webhook_parse_failures_total,
)
from .models import SweepRequest
from .queue import Queue
from .github import GitHubClient
from .worker import SweepContext, run_sweep

logger = logging.getLogger(__name__)

app = FastAPI(title="PR Sweep Service", version=SETTINGS.service_version)

# Events after which a pull request in the repository may have become mergeable
SWEEP_EVENTS = ("pull_request", "pull_request_review", "check_suite", "check_run", "status")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": SETTINGS.service_version}


@app.get("/readyz")
async def readyz():
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    content_type, data = metrics_response()
    return Response(content=data, media_type=content_type)


def verify_signature(secret: str, body: bytes, signature256: Optional[str]) -> bool:
    if not signature256:
        return False
    try:
        algo, sig = signature256.split("=", 1)
        if algo != "sha256":
            return False
    except ValueError:
        return False
    mac = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    expected = mac.hexdigest()
    return hmac.compare_digest(expected, sig)


def extract_sweep_request(event: str, payload: Dict[str, Any]) -> Optional[SweepRequest]:
    if event not in SWEEP_EVENTS:
        return None
    # CI events only matter once the run has finished
    if event in ("check_suite", "check_run") and payload.get("action") != "completed":
        return None
    if event == "pull_request" and payload.get("action") == "closed":
        return None
    repo = payload.get("repository") or {}
    inst = (payload.get("installation") or {}).get("id")
    owner = (repo.get("owner") or {}).get("login")
    if not (inst and owner and repo.get("name")):
        return None
    return SweepRequest(
        installation_id=int(inst),
        owner=owner,
        repo=repo["name"],
        sender=(payload.get("sender") or {}).get("login"),
        author=SETTINGS.author or None,
    )


async def _sweep_queued(q: Queue, installation_id: int, owner: str, repo: str, worker_id: str) -> bool:
    """Run sweeps until the queue is empty. Returns False if the lock was lost."""

    def heartbeat() -> bool:
        return q.refresh_lock(owner, repo, worker_id)

    while True:
        item = q.pop(installation_id, owner, repo)
        if not item:
            logger.debug("Queue empty for %s/%s; stopping drain", owner, repo)
            return True
        ctx = SweepContext(GitHubClient(installation_id), heartbeat=heartbeat)
        try:
            summary = await asyncio.to_thread(run_sweep, ctx, owner, repo, item.author)
            logger.debug("Sweep result for %s/%s: %s", owner, repo, summary.model_dump(mode="json"))
            if summary.interrupted:
                return False
        except Exception as e:
            # Listing failed; the next event for this repository queues a new sweep
            logger.warning("Sweep of %s/%s failed: %s", owner, repo, e)
        if not heartbeat():
            logger.warning("Lost lock while draining %s/%s; stopping", owner, repo)
            return False


async def _drain_repo(q: Queue, installation_id: int, owner: str, repo: str):
    while True:
        worker_id = str(uuid.uuid4())
        logger.debug("Drain start for %s/%s (installation=%s, worker_id=%s)", owner, repo, installation_id, worker_id)
        if not q.acquire_lock(owner, repo, worker_id):
            # The lock holder drains whatever is queued once its current sweep ends
            logger.debug("Drain skipped: %s/%s is already being swept", owner, repo)
            return
        try:
            held = await _sweep_queued(q, installation_id, owner, repo, worker_id)
        finally:
            q.release_lock(owner, repo, worker_id)
            logger.debug("Drain finished for %s/%s (worker_id=%s)", owner, repo, worker_id)
        # A request queued between the last pop and the release found the lock taken
        if not held or not q.pending(installation_id, owner, repo):
            return


@app.post("/webhook")
async def webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    event = x_github_event or "unknown"
    action = "unknown"
    body = await request.body()

    if not SETTINGS.webhook_secret or not verify_signature(SETTINGS.webhook_secret, body, x_hub_signature_256):
        webhook_invalid_signatures_total.inc()
        webhook_requests_total.labels(event=event, action=action, code="401").inc()
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except ValueError:
        webhook_parse_failures_total.labels(event=event).inc()
        webhook_requests_total.labels(event=event, action=action, code="400").inc()
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    action = payload.get("action", "unknown")
    logger.debug("Webhook delivery=%s event=%s action=%s", x_github_delivery, event, action)

    sweep = extract_sweep_request(event, payload)
    if sweep is None:
        webhook_requests_total.labels(event=event, action=action, code="202").inc()
        return Response(status_code=202)

    q = Queue()
    q.enqueue(sweep)
    asyncio.create_task(_drain_repo(q, sweep.installation_id, sweep.owner, sweep.repo))

    webhook_requests_total.labels(event=event, action=action, code="202").inc()
    return Response(status_code=202)
