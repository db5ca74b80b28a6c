"""API schemas for checks triage, stop decisions and job reruns."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.models.domain import (
    AttemptCounters,
    FailureClass,
    RerunMode,
    RerunResult,
    StopDecision,
    TriageReport,
)
from app.schemas.common import ResponseEnvelope


class TriageResponse(ResponseEnvelope):
    """Response for GET /v1/github/{owner}/{repo}/prs/{pr_number}/checks/triage."""

    report: TriageReport


class StopDecisionRequest(BaseModel):
    """Request body for POST .../checks/stop-decision.

    Omitted counters and signal history are read from the attempt ledger.
    """

    attempt_counts: Optional[AttemptCounters] = None
    failure_class: Optional[FailureClass] = None
    signal_history: Optional[list[str]] = Field(
        None, max_length=50, description="Failure signals, oldest first; the last entry is the current one."
    )
    first_failure_at: Optional[datetime] = None
    last_changed_at: Optional[datetime] = None
    run_id: Optional[int] = Field(None, ge=1)
    job_name: Optional[str] = Field(None, max_length=200)


class StopDecisionResponse(ResponseEnvelope):
    stop_decision: StopDecision


class RerunRequest(BaseModel):
    """Request body for POST .../checks/rerun."""

    run_id: Optional[int] = Field(None, ge=1)
    mode: RerunMode = RerunMode.FAILED_ONLY
    max_attempts: Optional[int] = Field(None, ge=1, le=10, description="Advisory; the registry cap wins.")


class RerunResponse(ResponseEnvelope):
    result: RerunResult
