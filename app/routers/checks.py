"""API routes for checks triage, stop decisions and job reruns."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from app.core.config import settings
from app.core.context import CallContext
from app.dependencies import get_call_context, get_rerun_service, get_stop_decision_service, get_triage_service
from app.schemas.checks import (
    RerunRequest,
    RerunResponse,
    StopDecisionRequest,
    StopDecisionResponse,
    TriageResponse,
)
from app.schemas.common import envelope
from app.services.rerun import RerunService
from app.services.stop_decision import StopDecisionService
from app.services.triage import TriageService

NAME_PATTERN = r"^[A-Za-z0-9_.-]{1,100}$"

router = APIRouter(prefix=f"{settings.api_v1_prefix}/github", tags=["checks"])


@router.get("/{owner}/{repo}/prs/{pr_number}/checks/triage", response_model=TriageResponse)
def triage_checks(
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    pr_number: int = Path(..., ge=1),
    workflow_run_id: int | None = Query(None, ge=1, description="Restrict triage to one workflow run."),
    max_log_bytes: int = Query(
        settings.triage_default_max_log_bytes, ge=1024, le=settings.triage_max_log_bytes_cap
    ),
    max_steps: int = Query(settings.triage_default_max_steps, ge=1, le=settings.triage_max_steps_cap),
    service: TriageService = Depends(get_triage_service),
    context: CallContext = Depends(get_call_context),
) -> TriageResponse:
    report = service.triage(
        owner,
        repo,
        pr_number,
        workflow_run_id=workflow_run_id,
        max_log_bytes=max_log_bytes,
        max_steps=max_steps,
        context=context,
    )
    return TriageResponse(report=report, **envelope(context))


@router.post("/{owner}/{repo}/prs/{pr_number}/checks/stop-decision", response_model=StopDecisionResponse)
def decide_stop(
    payload: StopDecisionRequest,
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    pr_number: int = Path(..., ge=1),
    service: StopDecisionService = Depends(get_stop_decision_service),
    context: CallContext = Depends(get_call_context),
) -> StopDecisionResponse:
    decision = service.decide(
        owner,
        repo,
        pr_number,
        counters=payload.attempt_counts,
        failure_class=payload.failure_class,
        signal_history=payload.signal_history,
        first_failure_at=payload.first_failure_at,
        last_changed_at=payload.last_changed_at,
        run_id=payload.run_id,
        job_name=payload.job_name,
        context=context,
    )
    return StopDecisionResponse(stop_decision=decision, **envelope(context))


@router.post("/{owner}/{repo}/prs/{pr_number}/checks/rerun", response_model=RerunResponse)
def rerun_failed_jobs(
    payload: RerunRequest,
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    pr_number: int = Path(..., ge=1),
    service: RerunService = Depends(get_rerun_service),
    context: CallContext = Depends(get_call_context),
) -> RerunResponse:
    result = service.rerun(
        owner,
        repo,
        pr_number,
        run_id=payload.run_id,
        mode=payload.mode,
        max_attempts=payload.max_attempts,
        context=context,
    )
    return RerunResponse(result=result, **envelope(context))
