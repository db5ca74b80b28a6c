from __future__ import annotations

from datetime import timedelta

from app.models.domain import (
    AttemptCounters,
    FailureClass,
    Lawbook,
    RecommendedNextStep,
    StopDecisionType,
    StopReasonCode,
    StopThresholds,
)
from app.services.lawbook import LawbookProvider
from app.services.stop_decision import (
    RULE_DEFAULT,
    RULE_INFRA,
    RULE_JOB_CEILING,
    RULE_PR_CEILING,
    RULE_STUCK,
    StopDecisionService,
    evaluate_stop_decision,
)

from conftest import BASE_TIME

THRESHOLDS = StopThresholds(max_reruns_per_job=2, max_total_reruns_per_pr=5, stuck_window_minutes=30)


def test_job_ceiling_kills():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=3, total_pr_attempts=3), THRESHOLDS, now=BASE_TIME
    )
    assert decision.decision == StopDecisionType.KILL
    assert decision.reason_code == StopReasonCode.JOB_ATTEMPT_CEILING
    assert decision.recommended_next_step == RecommendedNextStep.MANUAL_REVIEW
    assert decision.evidence.applied_rules == (RULE_JOB_CEILING,)


def test_pr_ceiling_kills_after_job_rule():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=1, total_pr_attempts=5), THRESHOLDS, now=BASE_TIME
    )
    assert decision.decision == StopDecisionType.KILL
    assert decision.reason_code == StopReasonCode.PR_ATTEMPT_CEILING
    assert decision.evidence.applied_rules == (RULE_JOB_CEILING, RULE_PR_CEILING)


def test_same_signal_beyond_window_holds():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=1, total_pr_attempts=1),
        THRESHOLDS,
        failure_class=FailureClass.INFRA,
        signal_history=["aaaa", "bbbb", "bbbb"],
        first_failure_at=BASE_TIME,
        now=BASE_TIME + timedelta(minutes=31),
    )
    assert decision.decision == StopDecisionType.HOLD
    assert decision.reason_code == StopReasonCode.STUCK_SAME_FAILURE
    assert decision.recommended_next_step == RecommendedNextStep.FIX_REQUIRED
    assert decision.evidence.minutes_since_first_failure == 31
    assert decision.evidence.applied_rules[-1] == RULE_STUCK


def test_same_signal_within_window_continues():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=1, total_pr_attempts=1),
        THRESHOLDS,
        signal_history=["bbbb", "bbbb"],
        first_failure_at=BASE_TIME,
        now=BASE_TIME + timedelta(minutes=30),
    )
    assert decision.decision == StopDecisionType.CONTINUE
    assert decision.reason_code is None
    assert decision.recommended_next_step == RecommendedNextStep.PROMPT


def test_changed_signal_is_not_stuck():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=1, total_pr_attempts=1),
        THRESHOLDS,
        signal_history=["aaaa", "bbbb"],
        first_failure_at=BASE_TIME,
        now=BASE_TIME + timedelta(hours=5),
    )
    assert decision.decision == StopDecisionType.CONTINUE


def test_infra_failure_waits():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=0, total_pr_attempts=0),
        THRESHOLDS,
        failure_class=FailureClass.INFRA,
        now=BASE_TIME,
    )
    assert decision.decision == StopDecisionType.CONTINUE
    assert decision.reason_code == StopReasonCode.INFRA_TRANSIENT
    assert decision.recommended_next_step == RecommendedNextStep.WAIT
    assert decision.evidence.applied_rules == (RULE_JOB_CEILING, RULE_PR_CEILING, RULE_STUCK, RULE_INFRA)


def test_default_continues_with_prompt():
    decision = evaluate_stop_decision(
        AttemptCounters(current_job_attempts=1, total_pr_attempts=2),
        THRESHOLDS,
        failure_class=FailureClass.TEST,
        now=BASE_TIME,
    )
    assert decision.decision == StopDecisionType.CONTINUE
    assert decision.reason_code is None
    assert decision.recommended_next_step == RecommendedNextStep.PROMPT
    assert decision.evidence.applied_rules[-1] == RULE_DEFAULT
    assert decision.reasons


def test_service_reads_counters_from_ledger_and_lawbook(store, ledger, audit, context):
    LawbookProvider(store).publish(
        Lawbook(version="strict", stop_rules=StopThresholds(max_reruns_per_job=1, max_total_reruns_per_pr=9))
    )
    ledger.record_rerun_attempt("acme/api", 7, 900, "build")
    service = StopDecisionService(LawbookProvider(store), ledger, audit, clock=lambda: BASE_TIME)

    decision = service.decide("acme", "api", 7, run_id=900, job_name="build", context=context)
    other_job = service.decide("acme", "api", 7, run_id=900, job_name="lint")

    assert decision.decision == StopDecisionType.KILL
    assert decision.evidence.attempt_counts.current_job_attempts == 1
    assert decision.evidence.thresholds.max_reruns_per_job == 1
    assert other_job.decision == StopDecisionType.CONTINUE
    records = store.list_audit(action_type="stop_decision")
    assert len(records) == 1
    assert records[0].action_status == "KILL"


def test_service_uses_recorded_signal_history(store, ledger):
    ledger.record_failure_signal("acme/api", 7, "sig", observed_at=BASE_TIME)
    ledger.record_rerun_attempt("acme/api", 7, 900, "build")
    ledger.record_failure_signal("acme/api", 7, "sig", observed_at=BASE_TIME + timedelta(minutes=5))
    service = StopDecisionService(
        LawbookProvider(store), ledger, clock=lambda: BASE_TIME + timedelta(minutes=45)
    )

    decision = service.decide("acme", "api", 7)

    assert decision.decision == StopDecisionType.HOLD
    assert decision.reason_code == StopReasonCode.STUCK_SAME_FAILURE
    assert decision.evidence.signal_history_length == 2
