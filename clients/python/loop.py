"""Drive one triage -> stop decision -> rerun pass against the remediation API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .client import RemediationClient

OUTCOME_GREEN = "green"
OUTCOME_RERUN = "rerun_triggered"
OUTCOME_HALTED = "halted"
OUTCOME_NEEDS_FIX = "needs_fix"
OUTCOME_PENDING = "pending"


@dataclass
class CycleResult:
    outcome: str
    triage: Dict[str, Any]
    stop_decision: Optional[Dict[str, Any]] = None
    rerun: Optional[Dict[str, Any]] = None


def dominant_failure(failures: list[dict]) -> Optional[dict]:
    """Pick the failure that drives the decision.

    Infra failures only dominate when nothing else is failing; otherwise the
    lowest check id among the non-infra failures wins so repeated passes agree.
    """
    if not failures:
        return None
    ordered = sorted(failures, key=lambda failure: failure["check_id"])
    for failure in ordered:
        if failure["failure_class"] != "infra":
            return failure
    return ordered[0]


def run_remediation_cycle(
    client: RemediationClient,
    owner: str,
    repo: str,
    pr_number: int,
    *,
    workflow_run_id: int | None = None,
    max_attempts: int | None = None,
) -> CycleResult:
    triage = client.triage_checks(owner, repo, pr_number, workflow_run_id=workflow_run_id)
    report = triage["report"]
    overall = report["summary"]["overall"]
    if overall == "GREEN":
        return CycleResult(outcome=OUTCOME_GREEN, triage=triage)

    failure = dominant_failure(report["failures"])
    if failure is None:
        return CycleResult(outcome=OUTCOME_PENDING, triage=triage)

    decision = client.stop_decision(
        owner,
        repo,
        pr_number,
        failure_class=failure["failure_class"],
        run_id=failure.get("run_id"),
        job_name=failure["check_name"],
        request_id=triage["request_id"],
    )
    verdict = decision["stop_decision"]
    if verdict["decision"] != "CONTINUE":
        return CycleResult(outcome=OUTCOME_HALTED, triage=triage, stop_decision=decision)

    retryable = verdict["recommended_next_step"] == "WAIT" or all(
        item["next_action"] == "RERUN" for item in report["failures"]
    )
    if not retryable:
        return CycleResult(outcome=OUTCOME_NEEDS_FIX, triage=triage, stop_decision=decision)

    rerun = client.rerun_failed_jobs(
        owner,
        repo,
        pr_number,
        run_id=failure.get("run_id") or workflow_run_id,
        max_attempts=max_attempts,
        request_id=triage["request_id"],
    )
    outcome = OUTCOME_RERUN if rerun["result"]["decision"] == "RERUN_TRIGGERED" else OUTCOME_HALTED
    return CycleResult(outcome=outcome, triage=triage, stop_decision=decision, rerun=rerun)
