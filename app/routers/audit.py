"""API routes for reading the audit trail."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.core.config import settings
from app.core.identifiers import new_request_id
from app.dependencies import get_store
from app.models.domain import ActionType
from app.repositories.redis_store import RedisWarehouse
from app.schemas.admin import AuditListResponse

router = APIRouter(prefix=f"{settings.api_v1_prefix}/audit", tags=["audit"])


@router.get("", response_model=AuditListResponse)
def list_audit_records(
    repository: str | None = Query(None, pattern=r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"),
    action_type: ActionType | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    store: RedisWarehouse = Depends(get_store),
) -> AuditListResponse:
    records = store.list_audit(
        repository=repository,
        action_type=action_type.value if action_type else None,
        limit=limit,
    )
    return AuditListResponse(records=records, count=len(records), request_id=new_request_id())
