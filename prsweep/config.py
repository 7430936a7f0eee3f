import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _graphql_url(api_url: str) -> str:
    # GitHub Enterprise Server serves REST at /api/v3 and GraphQL at /api/graphql
    if api_url.endswith("/api/v3"):
        return api_url[: -len("/v3")] + "/graphql"
    return f"{api_url}/graphql"


class Settings:
    # Auth: a plain token wins; otherwise GitHub App installation tokens are minted
    github_token: str
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    webhook_secret: str

    # Server config
    host: str = "0.0.0.0"
    port: int
    log_level: str

    # Sweep behaviour
    author: str
    ci_rollup: bool

    # Redis config (service mode only)
    redis_url: str
    redis_namespace: str
    redis_lock_ttl_seconds: int

    # General
    github_api_url: str
    github_graphql_url: str
    service_version: str

    # Transport
    http_timeout_seconds: float
    max_retries: int
    backoff_base_seconds: float
    backoff_factor: float
    max_backoff_seconds: float

    def __init__(self) -> None:
        self.github_token = os.getenv("GITHUB_TOKEN", "").strip()
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY is a path to the PEM file; a PEM string is accepted as-is.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()

        self.port = int(os.getenv("PORT", "8080"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        self.author = os.getenv("SWEEP_AUTHOR", "").strip()
        self.ci_rollup = _env_bool("CI_ROLLUP", "true")

        # Redis
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.redis_namespace = os.getenv("REDIS_NAMESPACE", "prsweep")
        self.redis_lock_ttl_seconds = int(os.getenv("REDIS_LOCK_TTL_SECONDS", "300"))

        # GitHub
        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.github_graphql_url = os.getenv("GITHUB_GRAPHQL_URL", "").rstrip("/") or _graphql_url(
            self.github_api_url
        )
        self.service_version = os.getenv("SERVICE_VERSION", "dev")

        # Retries apply to idempotent reads only; writes are attempted once
        self.http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "60"))
        self.max_retries = int(os.getenv("MAX_RETRIES", "3"))
        self.backoff_base_seconds = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2"))
        self.max_backoff_seconds = float(os.getenv("MAX_BACKOFF_SECONDS", "30"))

    def redis_key(self, *parts: str) -> str:
        return f"{self.redis_namespace}:" + ":".join(parts)


SETTINGS = Settings()
