"""API routes for per-repository action registries."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, status

from app.core.config import settings
from app.core.identifiers import new_request_id
from app.dependencies import get_registry_service
from app.routers.checks import NAME_PATTERN
from app.schemas.admin import RegistryResponse, RegistryUpsertRequest
from app.services.registry import RegistryService

router = APIRouter(prefix=f"{settings.api_v1_prefix}/registry", tags=["registry"])


@router.get("/{owner}/{repo}", response_model=RegistryResponse)
def get_registry(
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    registry: RegistryService = Depends(get_registry_service),
) -> RegistryResponse:
    entry = registry.get_active(f"{owner}/{repo}")
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No registry for this repository")
    return RegistryResponse(entry=entry, request_id=new_request_id())


@router.put("/{owner}/{repo}", response_model=RegistryResponse)
def put_registry(
    payload: RegistryUpsertRequest,
    owner: str = Path(..., pattern=NAME_PATTERN),
    repo: str = Path(..., pattern=NAME_PATTERN),
    registry: RegistryService = Depends(get_registry_service),
) -> RegistryResponse:
    entry = registry.upsert(
        f"{owner}/{repo}",
        {action.value: config for action, config in payload.actions.items()},
        updated_by=payload.updated_by,
    )
    return RegistryResponse(entry=entry, request_id=new_request_id())
