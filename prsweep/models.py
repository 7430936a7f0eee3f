from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Mergeable(str, Enum):
    MERGEABLE = "MERGEABLE"
    CONFLICTING = "CONFLICTING"
    UNKNOWN = "UNKNOWN"


class ReviewDecision(str, Enum):
    APPROVED = "APPROVED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"


class CheckConclusion(str, Enum):
    SUCCESS = "SUCCESS"
    NEUTRAL = "NEUTRAL"
    SKIPPED = "SKIPPED"
    FAILURE = "FAILURE"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    STARTUP_FAILURE = "STARTUP_FAILURE"
    STALE = "STALE"


class StatusState(str, Enum):
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    EXPECTED = "EXPECTED"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class SkipReason(str, Enum):
    NO_WRITE_PERMISSION = "NO_WRITE_PERMISSION"
    CHECKS_NOT_SUCCESSFUL = "CHECKS_NOT_SUCCESSFUL"
    NOT_MERGEABLE = "NOT_MERGEABLE"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"


class PullRequestRef(BaseModel):
    """An open pull request as listed for one sweep."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int
    title: str
    author: Optional[str] = None
    url: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


class CheckRun(BaseModel):
    name: str
    # None while the run is queued or in progress
    conclusion: Optional[CheckConclusion] = None
    permalink: Optional[str] = None


class StatusContext(BaseModel):
    context: str
    state: StatusState
    target_url: Optional[str] = None
    description: Optional[str] = None


class StatusSnapshot(BaseModel):
    mergeable: Mergeable = Mergeable.UNKNOWN
    review_decision: Optional[ReviewDecision] = None
    viewer_can_update: bool = False
    viewer_did_author: bool = False
    viewer_did_approve: bool = False
    latest_commit_id: Optional[str] = None
    check_runs: List[CheckRun] = Field(default_factory=list)
    # True when check suites or runs did not fit in one page of the query
    checks_truncated: bool = False
    status_contexts: List[StatusContext] = Field(default_factory=list)
    # Precomputed statusCheckRollup state, when the query asked for it
    combined_state: Optional[StatusState] = None
    # Whether the query asked for the rollup at all; a requested-but-null rollup
    # means the head commit has no CI signals yet
    rollup_requested: bool = False

    def log_data(self, number: int) -> dict:
        return {
            "number": number,
            "reviewDecision": self.review_decision.value if self.review_decision else None,
            "mergeable": self.mergeable.value,
            "combinedStatus": self.combined_state.value if self.combined_state else None,
            "viewerCanUpdate": self.viewer_can_update,
        }


class EligibilityOutcome(BaseModel):
    """Either ``skip`` with a reason, or ``merge``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["skip", "merge"]
    reason: Optional[SkipReason] = None
    detail: str = ""

    @classmethod
    def skip(cls, reason: SkipReason, detail: str = "") -> "EligibilityOutcome":
        return cls(kind="skip", reason=reason, detail=detail)

    @classmethod
    def proceed(cls) -> "EligibilityOutcome":
        return cls(kind="merge")

    @property
    def is_skip(self) -> bool:
        return self.kind == "skip"


class PullState(str, Enum):
    SKIPPED = "SKIPPED"
    MERGED = "MERGED"
    FAILED = "FAILED"


class PullResult(BaseModel):
    ref: PullRequestRef
    state: PullState
    reason: Optional[SkipReason] = None
    detail: str = ""


class SweepSummary(BaseModel):
    owner: str
    repo: str
    author: Optional[str] = None
    results: List[PullResult] = Field(default_factory=list)
    # Stopped early because the repository lock was lost
    interrupted: bool = False

    def count(self, state: PullState) -> int:
        return sum(1 for r in self.results if r.state == state)

    @property
    def merged(self) -> List[PullResult]:
        return [r for r in self.results if r.state == PullState.MERGED]

    @property
    def failed(self) -> List[PullResult]:
        return [r for r in self.results if r.state == PullState.FAILED]


class SweepRequest(BaseModel):
    """A queued request to sweep one repository (service mode)."""

    installation_id: int
    owner: str
    repo: str
    sender: Optional[str] = None
    author: Optional[str] = None
