"""API routes for the active lawbook."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.config import settings
from app.core.identifiers import new_request_id
from app.dependencies import get_lawbook_provider
from app.models.domain import Lawbook
from app.schemas.admin import LawbookResponse
from app.services.lawbook import LawbookProvider, lawbook_hash

router = APIRouter(prefix=f"{settings.api_v1_prefix}/lawbook", tags=["lawbook"])


@router.get("", response_model=LawbookResponse)
def get_lawbook(provider: LawbookProvider = Depends(get_lawbook_provider)) -> LawbookResponse:
    lawbook = provider.active()
    return LawbookResponse(lawbook=lawbook, lawbook_hash=lawbook_hash(lawbook), request_id=new_request_id())


@router.put("", response_model=LawbookResponse)
def put_lawbook(payload: Lawbook, provider: LawbookProvider = Depends(get_lawbook_provider)) -> LawbookResponse:
    lawbook, digest = provider.publish(payload)
    return LawbookResponse(lawbook=lawbook, lawbook_hash=digest, request_id=new_request_id())
