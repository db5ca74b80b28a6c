"""API routes for review-and-wait and the merge gate."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Path, Request

from app.core.config import settings
from app.core.context import CallContext
from app.dependencies import get_call_context, get_merge_gate_service, get_review_wait_service
from app.routers.checks import NAME_PATTERN
from app.schemas.common import envelope
from app.schemas.reviews import MergeRequest, MergeResponse, ReviewWaitRequest, ReviewWaitResponse
from app.services.merge_gate import MergeGateService
from app.services.review_wait import ReviewWaitService

DISCONNECT_CHECK_SECONDS = 1.0

router = APIRouter(prefix=f"{settings.api_v1_prefix}/github", tags=["pull-requests"])


async def _cancel_on_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_CHECK_SECONDS)


@router.post("/{owner}/{repo}/prs/{pr_number}/request-review-and-wait", response_model=ReviewWaitResponse)
async def request_review_and_wait(
    payload: ReviewWaitRequest,
    request: Request,
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    pr_number: int = Path(..., ge=1),
    service: ReviewWaitService = Depends(get_review_wait_service),
    context: CallContext = Depends(get_call_context),
) -> ReviewWaitResponse:
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
    try:
        result = await service.request_and_wait(
            owner,
            repo,
            pr_number,
            payload.reviewers,
            max_wait_seconds=payload.max_wait_seconds,
            poll_seconds=payload.poll_seconds,
            cancel_event=cancel_event,
            context=context,
        )
    finally:
        watcher.cancel()
    return ReviewWaitResponse(result=result, **envelope(context))


@router.post("/{owner}/{repo}/prs/{pr_number}/merge", response_model=MergeResponse)
def merge_pull_request(
    payload: MergeRequest,
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    pr_number: int = Path(..., ge=1),
    service: MergeGateService = Depends(get_merge_gate_service),
    context: CallContext = Depends(get_call_context),
) -> MergeResponse:
    outcome = service.merge(owner, repo, pr_number, approval_token=payload.approval_token, context=context)
    return MergeResponse(outcome=outcome, **envelope(context))
