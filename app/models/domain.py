"""Domain data models for the CI remediation control loop."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckStatus(str, Enum):
    """Lifecycle status of a check run as reported by GitHub."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WAITING = "waiting"
    REQUESTED = "requested"
    PENDING = "pending"


class CheckConclusion(str, Enum):
    """Terminal conclusion of a completed check run."""

    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    ACTION_REQUIRED = "action_required"
    STALE = "stale"
    STARTUP_FAILURE = "startup_failure"


PASSING_CONCLUSIONS = frozenset({CheckConclusion.SUCCESS, CheckConclusion.NEUTRAL, CheckConclusion.SKIPPED})


class ReviewState(str, Enum):
    APPROVED = "APPROVED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    COMMENTED = "COMMENTED"
    PENDING = "PENDING"
    DISMISSED = "DISMISSED"


class FailureClass(str, Enum):
    """Categories assigned to a failing check by the triage analyzer."""

    LINT = "lint"
    TEST = "test"
    BUILD = "build"
    E2E = "e2e"
    INFRA = "infra"
    DEPLOY = "deploy"
    UNKNOWN = "unknown"


class NextAction(str, Enum):
    RERUN = "RERUN"
    PROMPT = "PROMPT"
    HOLD = "HOLD"


class ChecksRollup(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class ReviewsRollup(str, Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"


class StopDecisionType(str, Enum):
    CONTINUE = "CONTINUE"
    HOLD = "HOLD"
    KILL = "KILL"


class StopReasonCode(str, Enum):
    JOB_ATTEMPT_CEILING = "JOB_ATTEMPT_CEILING"
    PR_ATTEMPT_CEILING = "PR_ATTEMPT_CEILING"
    STUCK_SAME_FAILURE = "STUCK_SAME_FAILURE"
    INFRA_TRANSIENT = "INFRA_TRANSIENT"


class RecommendedNextStep(str, Enum):
    PROMPT = "PROMPT"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    FIX_REQUIRED = "FIX_REQUIRED"
    WAIT = "WAIT"


class RerunMode(str, Enum):
    FAILED_ONLY = "FAILED_ONLY"
    ALL_JOBS = "ALL_JOBS"


class RerunDecision(str, Enum):
    RERUN_TRIGGERED = "RERUN_TRIGGERED"
    NOOP = "NOOP"
    BLOCKED = "BLOCKED"


class JobRerunAction(str, Enum):
    RERUN = "RERUN"
    # Also used for jobs still queued or running; the reason names their status.
    SKIPPED_ALREADY_SUCCEEDED = "SKIPPED_ALREADY_SUCCEEDED"
    BLOCKED_ATTEMPT_CEILING = "BLOCKED_ATTEMPT_CEILING"
    FAILED_TO_TRIGGER = "FAILED_TO_TRIGGER"


class PollStatus(str, Enum):
    """How the review-and-wait loop ended."""

    TERMINATED_EARLY = "terminated_early"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    NOT_STARTED = "not_started"


class WaitDecision(str, Enum):
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


class MergeDecision(str, Enum):
    MERGED = "MERGED"
    BLOCKED_REGISTRY = "BLOCKED_REGISTRY"
    BLOCKED_PRECONDITIONS = "BLOCKED_PRECONDITIONS"
    BLOCKED_PRODUCTION = "BLOCKED_PRODUCTION"
    BLOCKED_NO_APPROVAL = "BLOCKED_NO_APPROVAL"


class MergeMethod(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


class ActionType(str, Enum):
    """Registry action names consulted by the control loop."""

    RERUN_FAILED_JOBS = "rerun_failed_jobs"
    REQUEST_REVIEW = "request_review"
    MERGE_PR = "merge_pr"
    CHECKS_TRIAGE = "checks_triage"
    STOP_DECISION = "stop_decision"


# --- Evidence snapshots -----------------------------------------------------------------


class CheckEvidence(BaseModel):
    """Immutable snapshot of one check run at fetch time."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    status: str
    conclusion: Optional[str] = None
    completed_at: Optional[datetime] = None
    url: Optional[str] = None
    run_id: Optional[int] = None
    output_title: Optional[str] = None
    output_summary: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == CheckStatus.COMPLETED.value

    @property
    def is_passing(self) -> bool:
        return self.is_completed and self.conclusion in {c.value for c in PASSING_CONCLUSIONS}


class ReviewEvidence(BaseModel):
    """Immutable snapshot of one review."""

    model_config = ConfigDict(frozen=True)

    id: int
    reviewer: str
    state: str
    submitted_at: Optional[datetime] = None
    url: Optional[str] = None


class JobStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    name: str
    status: Optional[str] = None
    conclusion: Optional[str] = None


class JobEvidence(BaseModel):
    """Snapshot of one workflow job (GitHub Actions jobs share ids with check runs)."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    run_id: Optional[int] = None
    status: str
    conclusion: Optional[str] = None
    run_attempt: int = 1
    steps: tuple[JobStep, ...] = ()
    url: Optional[str] = None


class PullRequestSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    head_sha: str
    head_ref: Optional[str] = None
    mergeable: Optional[bool] = None
    draft: bool = False
    state: str = "open"
    labels: tuple[str, ...] = ()
    requested_reviewers: tuple[str, ...] = ()


# --- Triage -----------------------------------------------------------------------------


class LogExcerpt(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    source: str = Field(description="job_log, output_summary, output_title or synthetic.")
    truncated: bool = False
    byte_count: int = 0
    step_count: int = 0


class FailureV1(BaseModel):
    """A classified, evidence-bearing failure for one check run."""

    model_config = ConfigDict(frozen=True)

    check_id: int
    check_name: str
    conclusion: Optional[str] = None
    run_id: Optional[int] = None
    failure_class: FailureClass
    failed_steps: tuple[str, ...] = ()
    url: Optional[str] = None
    excerpt: LogExcerpt
    excerpt_hash: str
    failure_signal: str
    primary_signal: str
    next_action: NextAction
    rationale: str


class TriageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall: ChecksRollup
    failing_checks: int
    failing_runs: int


class TriageReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    pr_number: int
    head_sha: str
    workflow_run_id: Optional[int] = None
    failures: tuple[FailureV1, ...] = ()
    summary: TriageSummary
    aggregate_signal: Optional[str] = Field(
        None, description="Single signal over every failure, used for stuck detection across retries."
    )


# --- Stop decision ----------------------------------------------------------------------


class AttemptCounters(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_job_attempts: int = Field(0, ge=0)
    total_pr_attempts: int = Field(0, ge=0)


class StopThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_reruns_per_job: int = Field(2, ge=0)
    max_total_reruns_per_pr: int = Field(5, ge=0)
    stuck_window_minutes: int = Field(30, ge=0)


class StopDecisionEvidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_counts: AttemptCounters
    thresholds: StopThresholds
    applied_rules: tuple[str, ...] = ()
    failure_class: Optional[FailureClass] = None
    minutes_since_first_failure: Optional[int] = None
    signal_history_length: int = 0


class StopDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: StopDecisionType
    reason_code: Optional[StopReasonCode] = None
    reasons: tuple[str, ...] = ()
    recommended_next_step: RecommendedNextStep
    evidence: StopDecisionEvidence


# --- Rerun ------------------------------------------------------------------------------


class JobRerunStatus(BaseModel):
    job_id: int
    job_name: str
    prior_conclusion: Optional[str] = None
    action: JobRerunAction
    attempt_number: int
    reason: Optional[str] = None


class RerunMetadata(BaseModel):
    total_jobs: int = 0
    rerun_jobs: int = 0
    blocked_jobs: int = 0
    skipped_jobs: int = 0
    failed_jobs: int = 0
    effective_max_attempts: Optional[int] = None


class RerunResult(BaseModel):
    decision: RerunDecision
    reasons: list[str] = Field(default_factory=list)
    run_id: Optional[int] = None
    jobs: list[JobRerunStatus] = Field(default_factory=list)
    metadata: RerunMetadata = Field(default_factory=RerunMetadata)
    audit_event_id: Optional[str] = None


# --- Review and wait --------------------------------------------------------------------


class WaitRollup(BaseModel):
    model_config = ConfigDict(frozen=True)

    checks: ChecksRollup = ChecksRollup.YELLOW
    reviews: ReviewsRollup = ReviewsRollup.PENDING
    mergeable: Optional[bool] = None


class PollingStats(BaseModel):
    total_polls: int = 0
    failed_polls: int = 0
    elapsed_seconds: float = 0.0
    timed_out: bool = False
    terminated_early: bool = False
    termination_reason: Optional[str] = None
    status: PollStatus = PollStatus.NOT_STARTED


class WaitEvidence(BaseModel):
    checks: list[CheckEvidence] = Field(default_factory=list)
    reviews: list[ReviewEvidence] = Field(default_factory=list)


class ReviewWaitResult(BaseModel):
    decision: WaitDecision
    reasons: list[str] = Field(default_factory=list)
    requested_reviewers: list[str] = Field(default_factory=list)
    rollup: WaitRollup = Field(default_factory=WaitRollup)
    evidence: WaitEvidence = Field(default_factory=WaitEvidence)
    polling_stats: PollingStats = Field(default_factory=PollingStats)
    audit_event_id: Optional[str] = None


# --- Merge ------------------------------------------------------------------------------


class PreconditionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    head_sha: Optional[str] = None
    head_ref: Optional[str] = None
    checks: ChecksRollup = ChecksRollup.YELLOW
    reviews: ReviewsRollup = ReviewsRollup.PENDING
    mergeable: Optional[bool] = None
    draft: bool = False
    labels: tuple[str, ...] = ()
    blocking_labels: tuple[str, ...] = ()
    failing_checks: tuple[str, ...] = ()
    pending_checks: tuple[str, ...] = ()
    approvals: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()

    @property
    def satisfied(self) -> bool:
        return not self.missing


class MergeOutcome(BaseModel):
    decision: MergeDecision
    merged: bool = False
    branch_deleted: bool = False
    merge_method: Optional[MergeMethod] = None
    commit_sha: Optional[str] = None
    reasons: list[str] = Field(default_factory=list)
    precondition_snapshot: Optional[PreconditionSnapshot] = None
    audit_event_id: Optional[str] = None


# --- Collaborators ----------------------------------------------------------------------


class ActionConfig(BaseModel):
    """Per-action configuration inside a repository's registry entry."""

    enabled: bool = False
    max_retries: Optional[int] = Field(None, ge=0)
    merge_method: Optional[MergeMethod] = None
    branch_delete_enabled: bool = False
    blocking_labels: list[str] = Field(default_factory=list)


class RegistryEntry(BaseModel):
    """Active action registry for one repository."""

    registry_id: str
    repository: str
    version: int = 1
    actions: dict[str, ActionConfig] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def action(self, action: ActionType | str) -> Optional[ActionConfig]:
        key = action.value if isinstance(action, ActionType) else action
        return self.actions.get(key)


class AuthorizationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    registry_found: bool
    action: str
    reason: str
    registry_id: Optional[str] = None
    registry_version: Optional[int] = None
    config: Optional[ActionConfig] = None


class Lawbook(BaseModel):
    """Versioned policy document supplying stop thresholds."""

    version: str
    stop_rules: StopThresholds = Field(default_factory=StopThresholds)
    notes: Optional[str] = None


class AuditRecord(BaseModel):
    """One append-only row per decision-producing call."""

    audit_event_id: str
    registry_id: Optional[str] = None
    registry_version: Optional[int] = None
    action_type: str
    action_status: str
    repository: str
    resource_type: str = "pull_request"
    resource_number: int
    validation_result: dict = Field(default_factory=dict)
    actor: str = "system"
    request_id: str
    lawbook_hash: Optional[str] = None
    created_at: datetime
    payload_sha256: Optional[str] = None
    signatures: list[dict] = Field(default_factory=list)
