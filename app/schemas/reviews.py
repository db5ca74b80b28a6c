"""API schemas for review requests, waiting and merging."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import BaseModel, Field, StringConstraints

from app.models.domain import MergeOutcome, ReviewWaitResult
from app.schemas.common import ResponseEnvelope

GitHubLogin = Annotated[str, StringConstraints(pattern=r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")]


class ReviewWaitRequest(BaseModel):
    """Request body for POST .../request-review-and-wait.

    ``max_wait_seconds`` and ``poll_seconds`` are clamped server-side.
    """

    reviewers: list[GitHubLogin] = Field(default_factory=list, max_length=15)
    max_wait_seconds: Optional[int] = Field(None, ge=0)
    poll_seconds: Optional[int] = Field(None, ge=1)


class ReviewWaitResponse(ResponseEnvelope):
    result: ReviewWaitResult


class MergeRequest(BaseModel):
    """Request body for POST .../merge."""

    approval_token: Optional[str] = Field(None, max_length=4096)


class MergeResponse(ResponseEnvelope):
    outcome: MergeOutcome
