"""Stop decision engine: turn attempt history into CONTINUE, HOLD or KILL."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from app.core.context import CallContext
from app.models.domain import (
    ActionType,
    AttemptCounters,
    FailureClass,
    RecommendedNextStep,
    StopDecision,
    StopDecisionEvidence,
    StopDecisionType,
    StopReasonCode,
    StopThresholds,
)
from app.repositories.attempt_ledger import AttemptLedger
from app.services.lawbook import LawbookProvider
from app.telemetry.audit import AuditSink
from app.telemetry.metrics import record_decision

_logger = logging.getLogger(__name__)

RULE_JOB_CEILING = "JOB_ATTEMPT_CEILING"
RULE_PR_CEILING = "PR_ATTEMPT_CEILING"
RULE_STUCK = "STUCK_SAME_FAILURE"
RULE_INFRA = "INFRA_TRANSIENT"
RULE_DEFAULT = "DEFAULT_CONTINUE"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def evaluate_stop_decision(
    counters: AttemptCounters,
    thresholds: StopThresholds,
    *,
    failure_class: FailureClass | None = None,
    signal_history: Sequence[str] = (),
    first_failure_at: datetime | None = None,
    last_changed_at: datetime | None = None,
    now: datetime | None = None,
) -> StopDecision:
    """Evaluate the stop rules in fixed priority order; the first matching rule decides.

    ``signal_history`` is oldest first and its last entry is the current failure signal.
    The function performs no I/O and returns a decision for every input.
    """

    now = _utc(now or datetime.now(timezone.utc))
    since = first_failure_at or last_changed_at
    minutes_since: Optional[int] = None
    elapsed_seconds = 0.0
    if since is not None:
        elapsed_seconds = max((now - _utc(since)).total_seconds(), 0.0)
        minutes_since = int(elapsed_seconds // 60)

    applied: list[str] = []

    def decide(
        decision: StopDecisionType,
        reason_code: Optional[StopReasonCode],
        next_step: RecommendedNextStep,
        reasons: list[str],
    ) -> StopDecision:
        return StopDecision(
            decision=decision,
            reason_code=reason_code,
            reasons=tuple(reasons),
            recommended_next_step=next_step,
            evidence=StopDecisionEvidence(
                attempt_counts=counters,
                thresholds=thresholds,
                applied_rules=tuple(applied),
                failure_class=failure_class,
                minutes_since_first_failure=minutes_since,
                signal_history_length=len(signal_history),
            ),
        )

    applied.append(RULE_JOB_CEILING)
    if counters.current_job_attempts >= thresholds.max_reruns_per_job:
        return decide(
            StopDecisionType.KILL,
            StopReasonCode.JOB_ATTEMPT_CEILING,
            RecommendedNextStep.MANUAL_REVIEW,
            [
                f"Job attempts {counters.current_job_attempts} reached the per-job ceiling "
                f"of {thresholds.max_reruns_per_job}",
                "Further reruns of this job are not permitted; a human must review the failure",
            ],
        )

    applied.append(RULE_PR_CEILING)
    if counters.total_pr_attempts >= thresholds.max_total_reruns_per_pr:
        return decide(
            StopDecisionType.KILL,
            StopReasonCode.PR_ATTEMPT_CEILING,
            RecommendedNextStep.MANUAL_REVIEW,
            [
                f"Total PR attempts {counters.total_pr_attempts} reached the per-PR ceiling "
                f"of {thresholds.max_total_reruns_per_pr}",
                "The pull request has exhausted its rerun budget; a human must review it",
            ],
        )

    applied.append(RULE_STUCK)
    same_signal = len(signal_history) >= 2 and signal_history[-1] == signal_history[-2]
    window_seconds = thresholds.stuck_window_minutes * 60
    if same_signal and since is not None and elapsed_seconds > window_seconds:
        return decide(
            StopDecisionType.HOLD,
            StopReasonCode.STUCK_SAME_FAILURE,
            RecommendedNextStep.FIX_REQUIRED,
            [
                f"Failure signal {signal_history[-1]} is unchanged from the previous attempt",
                f"{minutes_since} minutes since first failure exceeds the stuck window of "
                f"{thresholds.stuck_window_minutes} minutes",
                "Retrying will not make progress; a code or configuration fix is required",
            ],
        )

    attempts_note = (
        f"Attempts {counters.current_job_attempts}/{thresholds.max_reruns_per_job} for the job and "
        f"{counters.total_pr_attempts}/{thresholds.max_total_reruns_per_pr} for the PR are below the ceilings"
    )

    applied.append(RULE_INFRA)
    if failure_class == FailureClass.INFRA:
        return decide(
            StopDecisionType.CONTINUE,
            StopReasonCode.INFRA_TRANSIENT,
            RecommendedNextStep.WAIT,
            [attempts_note, "Infrastructure failures are usually transient; wait and rerun automatically"],
        )

    applied.append(RULE_DEFAULT)
    reasons = [attempts_note]
    if same_signal:
        reasons.append(
            f"Failure signal unchanged but still within the stuck window of {thresholds.stuck_window_minutes} minutes"
        )
    reasons.append("Run the fix-suggestion flow before retrying")
    return decide(StopDecisionType.CONTINUE, None, RecommendedNextStep.PROMPT, reasons)


class StopDecisionService:
    """Binds the pure engine to the active lawbook, the attempt ledger and the audit trail."""

    def __init__(
        self,
        lawbook: LawbookProvider,
        ledger: AttemptLedger,
        audit: AuditSink | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lawbook = lawbook
        self._ledger = ledger
        self._audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def decide(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        counters: AttemptCounters | None = None,
        failure_class: FailureClass | None = None,
        signal_history: Sequence[str] | None = None,
        first_failure_at: datetime | None = None,
        last_changed_at: datetime | None = None,
        run_id: int | None = None,
        job_name: str | None = None,
        context: CallContext | None = None,
    ) -> StopDecision:
        repository = f"{owner}/{repo}"
        thresholds = self._lawbook.active().stop_rules

        if counters is None:
            if job_name:
                job_attempts = self._ledger.job_attempts(repository, pr_number, run_id, job_name)
            else:
                job_attempts = self._ledger.max_job_attempts(repository, pr_number)
            counters = AttemptCounters(
                current_job_attempts=job_attempts,
                total_pr_attempts=self._ledger.total_pr_attempts(repository, pr_number),
            )
        if signal_history is None:
            history = self._ledger.history(repository, pr_number)
            signal_history = history.signals
            first_failure_at = first_failure_at or history.first_failure_at
            last_changed_at = last_changed_at or history.last_changed_at

        decision = evaluate_stop_decision(
            counters,
            thresholds,
            failure_class=failure_class,
            signal_history=signal_history,
            first_failure_at=first_failure_at,
            last_changed_at=last_changed_at,
            now=self._clock(),
        )
        _logger.info(
            "Stop decision for %s#%s: %s (%s)",
            repository,
            pr_number,
            decision.decision.value,
            decision.reason_code.value if decision.reason_code else "no reason code",
        )
        record_decision("stop_decision", decision.decision.value)
        if self._audit is not None and context is not None:
            self._audit.record(
                action_type=ActionType.STOP_DECISION.value,
                action_status=decision.decision.value,
                repository=repository,
                pr_number=pr_number,
                request_id=context.request_id,
                lawbook_hash=context.lawbook_hash,
                actor=context.actor,
                validation_result=decision.model_dump(mode="json"),
            )
        return decision

