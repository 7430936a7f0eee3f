import time
import logging
from typing import Any, Dict, List, Optional, Tuple
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS
from .errors import ApprovalActionFailed, MergeActionFailed, TransportError
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
)
from .models import (
    CheckRun,
    Mergeable,
    PullRequestRef,
    ReviewDecision,
    StatusContext,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

# Installation tokens are refreshed this many seconds before they expire
TOKEN_SAFETY_MARGIN_SECONDS = 120

_PR_HEADER = """
query prStatus($htmlUrl: URI!) {
  resource(url: $htmlUrl) {
    ... on PullRequest {
      mergeable
      reviewDecision
      viewerCanUpdate
      viewerDidAuthor
      latestOpinionatedReviews(first: 10, writersOnly: true) {
        nodes {
          viewerDidAuthor
        }
      }
      commits(last: 1) {
        nodes {
          commit {
            oid
"""

_PR_FOOTER = """
          }
        }
      }
    }
  }
}
"""

ROLLUP_FIELDS = """
            statusCheckRollup {
              state
            }
"""

DETAILED_FIELDS = """
            checkSuites(first: 50) {
              pageInfo {
                hasNextPage
              }
              nodes {
                checkRuns(first: 100) {
                  pageInfo {
                    hasNextPage
                  }
                  nodes {
                    name
                    conclusion
                    permalink
                  }
                }
              }
            }
            status {
              contexts {
                context
                state
                targetUrl
                description
              }
            }
"""

ROLLUP_STATUS_QUERY = _PR_HEADER + ROLLUP_FIELDS + _PR_FOOTER
DETAILED_STATUS_QUERY = _PR_HEADER + DETAILED_FIELDS + _PR_FOOTER

REVIEW_DECISION_QUERY = """
query prReviewDecision($htmlUrl: URI!) {
  resource(url: $htmlUrl) {
    ... on PullRequest {
      reviewDecision
    }
  }
}
"""


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict):
        return str(payload.get("message") or payload)
    return str(payload)


def _nodes(obj: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [n for n in ((obj or {}).get("nodes") or []) if n]


def _has_next_page(obj: Optional[Dict[str, Any]]) -> bool:
    return bool(((obj or {}).get("pageInfo") or {}).get("hasNextPage"))


def parse_status_snapshot(resource: Dict[str, Any], rollup_requested: bool) -> StatusSnapshot:
    """Build a StatusSnapshot from the ``resource`` of a prStatus query."""
    viewer_did_approve = any(n.get("viewerDidAuthor") for n in _nodes(resource.get("latestOpinionatedReviews")))
    commits = _nodes(resource.get("commits"))
    commit = (commits[0].get("commit") or {}) if commits else {}

    check_runs: List[CheckRun] = []
    truncated = _has_next_page(commit.get("checkSuites"))
    for suite in _nodes(commit.get("checkSuites")):
        truncated = truncated or _has_next_page(suite.get("checkRuns"))
        for run in _nodes(suite.get("checkRuns")):
            check_runs.append(
                CheckRun(name=run.get("name") or "", conclusion=run.get("conclusion"), permalink=run.get("permalink"))
            )
    contexts = [
        StatusContext(
            context=c.get("context") or "",
            state=c.get("state"),
            target_url=c.get("targetUrl"),
            description=c.get("description"),
        )
        for c in ((commit.get("status") or {}).get("contexts") or [])
    ]
    rollup = commit.get("statusCheckRollup") or {}

    return StatusSnapshot(
        mergeable=resource.get("mergeable") or Mergeable.UNKNOWN,
        review_decision=resource.get("reviewDecision"),
        viewer_can_update=bool(resource.get("viewerCanUpdate")),
        viewer_did_author=bool(resource.get("viewerDidAuthor")),
        viewer_did_approve=viewer_did_approve,
        latest_commit_id=commit.get("oid"),
        check_runs=check_runs,
        checks_truncated=truncated,
        status_contexts=contexts,
        combined_state=rollup.get("state"),
        rollup_requested=rollup_requested,
    )


class GitHubClient:
    """REST + GraphQL access for one acting identity.

    Authenticates with ``token`` (or ``GITHUB_TOKEN``) when given, otherwise
    with an installation token minted for the configured GitHub App.
    """

    # installation_id -> (token, expiry epoch); shared by all clients in the process
    _tok_cache: Dict[int, Tuple[str, float]] = {}

    def __init__(self, installation_id: Optional[int] = None, token: Optional[str] = None, ci_rollup: Optional[bool] = None):
        self.installation_id = installation_id
        self._static_token = token if token is not None else (SETTINGS.github_token if installation_id is None else "")
        self.base_url = SETTINGS.github_api_url
        self.graphql_url = SETTINGS.github_graphql_url
        self.ci_rollup = SETTINGS.ci_rollup if ci_rollup is None else ci_rollup

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": SETTINGS.app_id,
        }
        return jwt.encode(payload, SETTINGS.app_private_key.encode("utf-8"), algorithm="RS256")

    def _installation_token(self) -> str:
        cached = self._tok_cache.get(self.installation_id)  # type: ignore[arg-type]
        if cached and time.time() < cached[1] - TOKEN_SAFETY_MARGIN_SECONDS:
            return cached[0]
        url = f"{self.base_url}/app/installations/{self.installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {self._app_jwt()}",
            "Accept": "application/vnd.github+json",
        }
        endpoint = "POST /app/installations/{id}/access_tokens"
        start = time.perf_counter()
        logger.debug(
            "github.request: method=POST path=%s installation=%s phase=token_exchange",
            _safe_url(url),
            self.installation_id,
        )
        resp = httpx.post(url, headers=headers, timeout=30)
        duration = time.perf_counter() - start
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
        logger.debug(
            "github.response: method=POST path=%s status=%s duration_ms=%d installation=%s phase=token_exchange",
            _safe_url(url),
            resp.status_code,
            int(duration * 1000),
            self.installation_id,
        )
        if resp.status_code >= 400:
            raise TransportError(
                f"token exchange failed for installation {self.installation_id}: {_error_message(resp)}",
                status_code=resp.status_code,
            )
        data = resp.json()
        token = data.get("token")
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        else:
            expiry = time.time() + 3600
        self._tok_cache[self.installation_id] = (token, expiry)  # type: ignore[index]
        return token

    def _headers(self) -> Dict[str, str]:
        token = self._static_token or self._installation_token()
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "pr-sweep/1.0",
        }

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        idempotent: Optional[bool] = None,
    ) -> httpx.Response:
        """Send one API request.

        Idempotent requests (GETs by default) are retried on network errors and
        5xx responses; writes are attempted exactly once. Network errors that
        survive the retries are raised as TransportError.
        """
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method.upper()} {_safe_url(path) if path.startswith('http') else '/' + path.lstrip('/')}"
        if idempotent is None:
            idempotent = method.upper() == "GET"
        max_attempts = max(1, SETTINGS.max_retries) if idempotent else 1

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            logger.debug(
                "github.request: method=%s path=%s params=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                _param_keys(params),
                attempts,
            )
            try:
                resp = httpx.request(
                    method, url, headers=self._headers(), params=params, json=data, timeout=SETTINGS.http_timeout_seconds
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._record_rate_limit(resp)
                logger.debug(
                    "github.response: method=%s path=%s status=%s duration_ms=%d rl_remaining=%s attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    resp.status_code,
                    int(duration * 1000),
                    resp.headers.get("X-RateLimit-Remaining"),
                    attempts,
                )
            else:
                logger.debug(
                    "github.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    exc,
                    int(duration * 1000),
                    attempts,
                )

            retryable = exc is not None or (resp is not None and resp.status_code >= 500)
            if not retryable or attempts >= max_attempts:
                if exc is not None:
                    raise TransportError(f"{method.upper()} {_safe_url(url)} failed: {exc}") from exc
                return resp  # type: ignore[return-value]

            sleep_s = min(
                SETTINGS.backoff_base_seconds * (SETTINGS.backoff_factor ** (attempts - 1)),
                SETTINGS.max_backoff_seconds,
            )
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                sleep_s,
                attempts,
            )
            time.sleep(sleep_s)

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            github_rate_limit_remaining.set(int(remaining))
        except ValueError:
            pass

    def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        # Queries are reads even though they are POSTed
        r = self.request("POST", self.graphql_url, data={"query": query, "variables": variables}, idempotent=True)
        if r.status_code != 200:
            raise TransportError(f"GraphQL request failed: {_error_message(r)}", status_code=r.status_code)
        payload = r.json()
        if payload.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in payload["errors"])
            raise TransportError(f"GraphQL errors: {messages}", status_code=r.status_code)
        return payload.get("data") or {}

    # --- Collaborator operations ---
    def list_open_pull_requests(self, owner: str, repo: str, author: Optional[str] = None) -> List[PullRequestRef]:
        refs: List[PullRequestRef] = []
        page = 1
        while True:
            params = {"state": "open", "per_page": 100, "page": page}
            r = self.request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
            if r.status_code != 200:
                raise TransportError(
                    f"listing pull requests for {owner}/{repo} failed: {_error_message(r)}",
                    status_code=r.status_code,
                )
            batch = r.json()
            for p in batch:
                login = (p.get("user") or {}).get("login")
                if author and login != author:
                    continue
                refs.append(
                    PullRequestRef(
                        owner=owner,
                        repo=repo,
                        number=p["number"],
                        title=p.get("title") or "",
                        author=login,
                        url=p["html_url"],
                    )
                )
            if len(batch) < 100:
                break
            page += 1
        return refs

    def fetch_status_snapshot(self, ref: PullRequestRef) -> StatusSnapshot:
        query = ROLLUP_STATUS_QUERY if self.ci_rollup else DETAILED_STATUS_QUERY
        data = self.graphql(query, {"htmlUrl": ref.url})
        resource = data.get("resource")
        if not resource:
            raise TransportError(f"{ref.url} did not resolve to a pull request")
        return parse_status_snapshot(resource, rollup_requested=self.ci_rollup)

    def fetch_review_decision(self, ref: PullRequestRef) -> Optional[ReviewDecision]:
        data = self.graphql(REVIEW_DECISION_QUERY, {"htmlUrl": ref.url})
        decision = (data.get("resource") or {}).get("reviewDecision")
        return ReviewDecision(decision) if decision else None

    def submit_approval(self, ref: PullRequestRef, commit_id: Optional[str]) -> None:
        body: Dict[str, Any] = {"event": "APPROVE"}
        if commit_id:
            body["commit_id"] = commit_id
        r = self.request("POST", f"/repos/{ref.owner}/{ref.repo}/pulls/{ref.number}/reviews", data=body)
        if r.status_code not in (200, 201):
            raise ApprovalActionFailed(
                f"Approval failed for PR #{ref.number}: {r.status_code} {_error_message(r)}",
                status_code=r.status_code,
            )

    def merge_pull_request(self, ref: PullRequestRef, commit_title: str, merge_method: str = "squash") -> str:
        data = {
            "commit_title": commit_title,
            "merge_method": merge_method,
        }
        r = self.request("PUT", f"/repos/{ref.owner}/{ref.repo}/pulls/{ref.number}/merge", data=data)
        if r.status_code in (200, 201):
            return f"Merged PR #{ref.number} via {merge_method}"
        raise MergeActionFailed(
            f"Merge failed for PR #{ref.number}: {r.status_code} {_error_message(r)}",
            status_code=r.status_code,
        )
