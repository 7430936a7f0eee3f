import hmac
import hashlib
import json

import pytest
from fastapi.testclient import TestClient

from prsweep import main as mainmod
from prsweep.config import SETTINGS
from prsweep.main import app, extract_sweep_request

SECRET = "test-secret"


def sign(secret: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    return "sha256=" + mac.hexdigest()


def payload(action="completed", **extra):
    data = {
        "action": action,
        "repository": {"name": "repo", "owner": {"login": "octo"}},
        "installation": {"id": 77},
        "sender": {"login": "ci-bot"},
    }
    data.update(extra)
    return data


@pytest.fixture
def captured(monkeypatch):
    monkeypatch.setattr(SETTINGS, "webhook_secret", SECRET)
    calls = {"enqueued": [], "drained": []}

    async def noop_drain(q, installation_id, owner, repo):
        calls["drained"].append((installation_id, owner, repo))

    class FakeQueue:
        def enqueue(self, request):
            calls["enqueued"].append(request)
            return True

    monkeypatch.setattr(mainmod, "_drain_repo", noop_drain)
    monkeypatch.setattr(mainmod, "Queue", lambda: FakeQueue())
    return calls


def post(client, event, data, secret=SECRET):
    body = json.dumps(data).encode("utf-8")
    return client.post(
        "/webhook",
        content=body,
        headers={"X-GitHub-Event": event, "X-Hub-Signature-256": sign(secret, body), "X-GitHub-Delivery": "1"},
    )


def test_metrics_endpoint_exposes_prometheus():
    client = TestClient(app)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "service_info" in r.text


def test_healthz():
    r = TestClient(app).get("/healthz")
    assert r.json()["status"] == "ok"


def test_webhook_invalid_signature_401(captured):
    r = post(TestClient(app), "pull_request", payload("opened"), secret="wrong")
    assert r.status_code == 401
    assert captured["enqueued"] == []


def test_webhook_invalid_json_400(captured):
    body = b"not json"
    r = TestClient(app).post(
        "/webhook",
        content=body,
        headers={"X-GitHub-Event": "status", "X-Hub-Signature-256": sign(SECRET, body)},
    )
    assert r.status_code == 400


def test_check_suite_completed_enqueues_repository_sweep(captured):
    r = post(TestClient(app), "check_suite", payload("completed", check_suite={"head_sha": "abc"}))
    assert r.status_code == 202
    [req] = captured["enqueued"]
    assert (req.installation_id, req.owner, req.repo, req.sender) == (77, "octo", "repo", "ci-bot")


def test_review_submitted_enqueues(captured):
    post(TestClient(app), "pull_request_review", payload("submitted"))
    assert len(captured["enqueued"]) == 1


def test_unrelated_event_is_accepted_but_ignored(captured):
    r = post(TestClient(app), "push", payload("pushed"))
    assert r.status_code == 202
    assert captured["enqueued"] == []


@pytest.mark.parametrize(
    "event,action",
    [("check_suite", "requested"), ("check_run", "created"), ("pull_request", "closed")],
)
def test_extract_ignores_non_actionable(event, action):
    assert extract_sweep_request(event, payload(action)) is None


def test_extract_uses_configured_author(monkeypatch):
    monkeypatch.setattr(SETTINGS, "author", "renovate[bot]")
    req = extract_sweep_request("status", payload("success"))
    assert req.author == "renovate[bot]"


def test_extract_requires_installation():
    data = payload("opened")
    del data["installation"]
    assert extract_sweep_request("pull_request", data) is None


def test_drain_sweeps_queued_repository_and_releases_lock(monkeypatch):
    import asyncio

    import fakeredis

    from prsweep.models import SweepRequest, SweepSummary
    from prsweep.queue import Queue

    fr = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr("redis.Redis.from_url", lambda url, decode_responses=True: fr)
    monkeypatch.setattr(mainmod, "GitHubClient", lambda inst: ("gh", inst))
    sweeps = []

    def fake_run_sweep(ctx, owner, repo, author=None):
        sweeps.append((ctx.gh, owner, repo, author))
        return SweepSummary(owner=owner, repo=repo, author=author)

    monkeypatch.setattr(mainmod, "run_sweep", fake_run_sweep)

    q = Queue()
    q.enqueue(SweepRequest(installation_id=77, owner="octo", repo="repo", author="dev"))
    asyncio.run(mainmod._drain_repo(q, 77, "octo", "repo"))

    assert sweeps == [(("gh", 77), "octo", "repo", "dev")]
    assert q.acquire_lock("octo", "repo", "next") is True


def test_drain_skips_when_repository_locked(monkeypatch):
    import asyncio

    import fakeredis

    from prsweep.models import SweepRequest
    from prsweep.queue import Queue

    fr = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr("redis.Redis.from_url", lambda url, decode_responses=True: fr)

    def fail_run_sweep(*args, **kwargs):
        raise AssertionError("must not sweep while another worker holds the lock")

    monkeypatch.setattr(mainmod, "run_sweep", fail_run_sweep)

    q = Queue()
    q.enqueue(SweepRequest(installation_id=77, owner="octo", repo="repo"))
    assert q.acquire_lock("octo", "repo", "other-worker")
    asyncio.run(mainmod._drain_repo(q, 77, "octo", "repo"))
    # the request stays queued for the lock holder
    assert q.pop(77, "octo", "repo") is not None


def test_drain_keeps_lock_alive_across_a_long_sweep(monkeypatch):
    import asyncio
    import time

    import fakeredis

    from prsweep.models import PullRequestRef, SweepRequest, StatusSnapshot
    from prsweep.queue import Queue

    fr = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr("redis.Redis.from_url", lambda url, decode_responses=True: fr)
    monkeypatch.setattr(SETTINGS, "redis_lock_ttl_seconds", 1)
    q = Queue()
    intruder = []

    class SlowGH:
        def list_open_pull_requests(self, owner, repo, author=None):
            return [
                PullRequestRef(owner=owner, repo=repo, number=n, title=f"pr {n}", url=f"https://github.com/{owner}/{repo}/pull/{n}")
                for n in range(1, 5)
            ]

        def fetch_status_snapshot(self, ref):
            time.sleep(0.6)
            intruder.append(q.acquire_lock("octo", "repo", "intruder"))
            return StatusSnapshot(mergeable="CONFLICTING", viewer_can_update=True)

    monkeypatch.setattr(mainmod, "GitHubClient", lambda inst: SlowGH())

    q.enqueue(SweepRequest(installation_id=77, owner="octo", repo="repo"))
    asyncio.run(mainmod._drain_repo(q, 77, "octo", "repo"))

    # 2.4s of work against a 1s TTL; nobody else got the lock meanwhile
    assert intruder == [False, False, False, False]
    assert q.acquire_lock("octo", "repo", "next") is True


def test_drain_picks_up_request_queued_during_release(monkeypatch):
    import asyncio

    import fakeredis

    from prsweep.models import SweepRequest, SweepSummary
    from prsweep.queue import Queue

    fr = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr("redis.Redis.from_url", lambda url, decode_responses=True: fr)
    monkeypatch.setattr(mainmod, "GitHubClient", lambda inst: ("gh", inst))
    sweeps = []

    def fake_run_sweep(ctx, owner, repo, author=None):
        sweeps.append(author)
        return SweepSummary(owner=owner, repo=repo, author=author)

    monkeypatch.setattr(mainmod, "run_sweep", fake_run_sweep)

    q = Queue()
    release = q.release_lock
    late = [SweepRequest(installation_id=77, owner="octo", repo="repo", author="late")]

    def racing_release(owner, repo, worker_id):
        # a webhook lands after the last pop but before the lock is released
        if late:
            q.enqueue(late.pop())
        release(owner, repo, worker_id)

    monkeypatch.setattr(q, "release_lock", racing_release)

    q.enqueue(SweepRequest(installation_id=77, owner="octo", repo="repo", author="first"))
    asyncio.run(mainmod._drain_repo(q, 77, "octo", "repo"))

    assert sweeps == ["first", "late"]
    assert q.pending(77, "octo", "repo") == 0
