from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, settings as hypothesis_settings
from hypothesis import strategies as st

from app.models.domain import (
    AttemptCounters,
    FailureClass,
    RecommendedNextStep,
    StopDecisionType,
    StopReasonCode,
    StopThresholds,
)
from app.services.stop_decision import evaluate_stop_decision

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

counters_strategy = st.builds(
    AttemptCounters,
    current_job_attempts=st.integers(min_value=0, max_value=20),
    total_pr_attempts=st.integers(min_value=0, max_value=40),
)
thresholds_strategy = st.builds(
    StopThresholds,
    max_reruns_per_job=st.integers(min_value=0, max_value=10),
    max_total_reruns_per_pr=st.integers(min_value=0, max_value=20),
    stuck_window_minutes=st.integers(min_value=0, max_value=120),
)
history_strategy = st.lists(st.sampled_from(["aaaa", "bbbb", "cccc"]), max_size=6)
failure_class_strategy = st.one_of(st.none(), st.sampled_from(list(FailureClass)))
elapsed_strategy = st.one_of(st.none(), st.integers(min_value=0, max_value=600))


@st.composite
def below_ceiling_strategy(draw):
    thresholds = draw(
        st.builds(
            StopThresholds,
            max_reruns_per_job=st.integers(min_value=1, max_value=10),
            max_total_reruns_per_pr=st.integers(min_value=1, max_value=20),
            stuck_window_minutes=st.integers(min_value=0, max_value=120),
        )
    )
    counters = AttemptCounters(
        current_job_attempts=draw(st.integers(min_value=0, max_value=thresholds.max_reruns_per_job - 1)),
        total_pr_attempts=draw(st.integers(min_value=0, max_value=thresholds.max_total_reruns_per_pr - 1)),
    )
    return counters, thresholds


@hypothesis_settings(max_examples=200, deadline=None)
@given(counters_strategy, thresholds_strategy, history_strategy, failure_class_strategy, elapsed_strategy)
def test_ceilings_always_kill(counters, thresholds, history, failure_class, elapsed):
    first_failure_at = NOW - timedelta(minutes=elapsed) if elapsed is not None else None
    decision = evaluate_stop_decision(
        counters,
        thresholds,
        failure_class=failure_class,
        signal_history=history,
        first_failure_at=first_failure_at,
        now=NOW,
    )

    over_ceiling = (
        counters.current_job_attempts >= thresholds.max_reruns_per_job
        or counters.total_pr_attempts >= thresholds.max_total_reruns_per_pr
    )
    assert (decision.decision == StopDecisionType.KILL) == over_ceiling
    if decision.decision == StopDecisionType.CONTINUE:
        assert decision.reason_code in (None, StopReasonCode.INFRA_TRANSIENT)
    assert decision.evidence.applied_rules
    assert decision.reasons


@hypothesis_settings(max_examples=200, deadline=None)
@given(below_ceiling_strategy(), history_strategy, failure_class_strategy, elapsed_strategy)
def test_below_ceilings_only_a_stuck_signal_holds(limits, history, failure_class, elapsed):
    counters, thresholds = limits
    first_failure_at = NOW - timedelta(minutes=elapsed) if elapsed is not None else None

    decision = evaluate_stop_decision(
        counters,
        thresholds,
        failure_class=failure_class,
        signal_history=history,
        first_failure_at=first_failure_at,
        now=NOW,
    )

    repeated = len(history) >= 2 and history[-1] == history[-2]
    stuck = repeated and elapsed is not None and elapsed > thresholds.stuck_window_minutes
    if stuck:
        assert decision.decision == StopDecisionType.HOLD
        assert decision.reason_code == StopReasonCode.STUCK_SAME_FAILURE
        assert decision.recommended_next_step == RecommendedNextStep.FIX_REQUIRED
    else:
        assert decision.decision == StopDecisionType.CONTINUE
        expected_step = RecommendedNextStep.WAIT if failure_class == FailureClass.INFRA else RecommendedNextStep.PROMPT
        assert decision.recommended_next_step == expected_step


@hypothesis_settings(max_examples=100, deadline=None)
@given(counters_strategy, thresholds_strategy, history_strategy, failure_class_strategy, elapsed_strategy)
def test_decision_is_deterministic(counters, thresholds, history, failure_class, elapsed):
    first_failure_at = NOW - timedelta(minutes=elapsed) if elapsed is not None else None
    kwargs = dict(failure_class=failure_class, signal_history=history, first_failure_at=first_failure_at, now=NOW)
    assert evaluate_stop_decision(counters, thresholds, **kwargs) == evaluate_stop_decision(
        counters, thresholds, **kwargs
    )
