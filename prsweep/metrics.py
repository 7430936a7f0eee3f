import os
from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest, Counter, Gauge, Histogram

try:
    from prometheus_client import multiprocess
except ImportError:  # pragma: no cover
    multiprocess = None  # type: ignore


def build_registry() -> CollectorRegistry:
    """Build a Prometheus registry, supporting multiprocess if PROMETHEUS_MULTIPROC_DIR is set."""
    registry = CollectorRegistry()
    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir and multiprocess is not None:
        multiprocess.MultiProcessCollector(registry)
    return registry


REGISTRY: CollectorRegistry = build_registry()

# Webhook ingress metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests received",
    labelnames=("event", "action", "code"),
    registry=REGISTRY,
)
webhook_invalid_signatures_total = Counter(
    "webhook_invalid_signatures_total",
    "Webhook requests with invalid HMAC signatures",
    registry=REGISTRY,
)
webhook_parse_failures_total = Counter(
    "webhook_parse_failures_total",
    "Webhook payload parse failures",
    labelnames=("event",),
    registry=REGISTRY,
)

# Sweep queue metrics
sweeps_enqueued_total = Counter(
    "sweeps_enqueued_total",
    "Sweep requests accepted and enqueued (after dedupe)",
    labelnames=("owner", "repo"),
    registry=REGISTRY,
)
sweeps_deduped_total = Counter(
    "sweeps_deduped_total",
    "Sweep requests dropped because one is already queued",
    labelnames=("owner", "repo"),
    registry=REGISTRY,
)
queue_depth = Gauge(
    "queue_depth",
    "Sweep requests waiting across all repositories",
    registry=REGISTRY,
)
redis_latency_seconds = Histogram(
    "redis_latency_seconds",
    "Round-trip latency for Redis operations",
    labelnames=("op",),
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)
worker_lock_failed_total = Counter(
    "worker_lock_failed_total",
    "Sweeps deferred because another worker holds the repository lock",
    labelnames=("owner", "repo"),
    registry=REGISTRY,
)
worker_active = Gauge(
    "worker_active",
    "1 when a worker holds the repository lock and is sweeping; 0 otherwise",
    labelnames=("owner", "repo"),
    registry=REGISTRY,
)

# Sweep and decision metrics
sweeps_total = Counter(
    "sweeps_total",
    "Repository sweeps by result",
    labelnames=("result",),
    registry=REGISTRY,
)
pulls_evaluated_total = Counter(
    "pulls_evaluated_total",
    "Pull requests whose status was fetched and evaluated",
    registry=REGISTRY,
)
pull_outcomes_total = Counter(
    "pull_outcomes_total",
    "Final per-pull-request outcome (skipped/merged/failed) and skip reason",
    labelnames=("outcome", "reason"),
    registry=REGISTRY,
)
approvals_total = Counter(
    "approvals_total",
    "Self-approval attempts by result",
    labelnames=("result",),
    registry=REGISTRY,
)
merge_attempts_total = Counter(
    "merge_attempts_total",
    "Merge attempts by method and result",
    labelnames=("method", "result"),
    registry=REGISTRY,
)
worker_processing_seconds = Histogram(
    "worker_processing_seconds",
    "Pipeline phase durations",
    labelnames=("phase",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub API remaining requests as last reported",
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def metrics_response():
    data = generate_latest(REGISTRY)
    return CONTENT_TYPE_LATEST, data
