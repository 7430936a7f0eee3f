import json
import time
import logging
from typing import Optional, Tuple
import redis

from .config import SETTINGS
from .metrics import (
    sweeps_enqueued_total,
    sweeps_deduped_total,
    queue_depth,
    redis_latency_seconds,
    worker_lock_failed_total,
    worker_active,
)
from .models import SweepRequest

logger = logging.getLogger(__name__)

_COMPARE_AND_EXPIRE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
else
    return 0
end
"""

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class Queue:
    """Pending sweep requests per repository, plus the lock that serialises sweeps.

    At most one request waits per repository: a sweep always looks at every
    open pull request, so a second request adds nothing until the first is
    taken.
    """

    def __init__(self):
        self.r = redis.Redis.from_url(SETTINGS.redis_url, decode_responses=True)

    def _keys(self, installation_id: int, owner: str, repo: str) -> Tuple[str, str]:
        q = SETTINGS.redis_key("queue", str(installation_id), f"{owner}/{repo}")
        de = SETTINGS.redis_key("dedupe", str(installation_id))
        return q, de

    def _lock_key(self, owner: str, repo: str) -> str:
        # One lock per repository, whichever installation triggered the sweep
        return SETTINGS.redis_key("lock", f"{owner}/{repo}")

    def enqueue(self, request: SweepRequest) -> bool:
        q, de = self._keys(request.installation_id, request.owner, request.repo)
        member = f"{request.owner}/{request.repo}"
        t0 = time.perf_counter()
        try:
            if not self.r.sadd(de, member):
                sweeps_deduped_total.labels(owner=request.owner, repo=request.repo).inc()
                return False
            payload = request.model_dump()
            payload["ts"] = time.time()
            self.r.rpush(q, json.dumps(payload))
        finally:
            redis_latency_seconds.labels(op="enqueue").observe(time.perf_counter() - t0)
        sweeps_enqueued_total.labels(owner=request.owner, repo=request.repo).inc()
        queue_depth.inc()
        return True

    def pop(self, installation_id: int, owner: str, repo: str) -> Optional[SweepRequest]:
        q, de = self._keys(installation_id, owner, repo)
        t0 = time.perf_counter()
        try:
            data = self.r.lpop(q)
            if data is None:
                return None
            # Taken now; later events must queue a fresh sweep
            self.r.srem(de, f"{owner}/{repo}")
        finally:
            redis_latency_seconds.labels(op="lpop").observe(time.perf_counter() - t0)
        queue_depth.dec()
        item = json.loads(data)
        logger.debug("Popped sweep request for %s/%s queued_for=%.1fs", owner, repo, time.time() - item.pop("ts", time.time()))
        return SweepRequest(**item)

    def pending(self, installation_id: int, owner: str, repo: str) -> int:
        q, _ = self._keys(installation_id, owner, repo)
        return int(self.r.llen(q))

    # --- Lock management ---
    def acquire_lock(self, owner: str, repo: str, worker_id: str) -> bool:
        lock = self._lock_key(owner, repo)
        t0 = time.perf_counter()
        try:
            ok = self.r.set(lock, worker_id, nx=True, ex=SETTINGS.redis_lock_ttl_seconds)
        finally:
            redis_latency_seconds.labels(op="acquire_lock").observe(time.perf_counter() - t0)
        if ok:
            worker_active.labels(owner=owner, repo=repo).set(1)
            return True
        worker_lock_failed_total.labels(owner=owner, repo=repo).inc()
        return False

    def refresh_lock(self, owner: str, repo: str, worker_id: str) -> bool:
        lock = self._lock_key(owner, repo)
        t0 = time.perf_counter()
        try:
            res = self.r.eval(_COMPARE_AND_EXPIRE, 1, lock, worker_id, SETTINGS.redis_lock_ttl_seconds)
        finally:
            redis_latency_seconds.labels(op="refresh_lock").observe(time.perf_counter() - t0)
        return bool(res)

    def release_lock(self, owner: str, repo: str, worker_id: str) -> None:
        lock = self._lock_key(owner, repo)
        try:
            self.r.eval(_COMPARE_AND_DELETE, 1, lock, worker_id)
        except redis.RedisError as e:
            # The lock expires on its own after the TTL
            logger.warning("Failed to release lock for %s/%s: %s", owner, repo, e)
        finally:
            worker_active.labels(owner=owner, repo=repo).set(0)
