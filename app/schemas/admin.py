"""API schemas for the registry, lawbook and audit endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from app.models.domain import ActionConfig, ActionType, AuditRecord, Lawbook, RegistryEntry


class RegistryUpsertRequest(BaseModel):
    """Request body for PUT /v1/registry/{owner}/{repo}; replaces every action."""

    actions: dict[ActionType, ActionConfig] = Field(default_factory=dict)
    updated_by: Optional[str] = Field(None, max_length=200)


class RegistryResponse(BaseModel):
    entry: RegistryEntry
    request_id: str


class LawbookResponse(BaseModel):
    lawbook: Lawbook
    lawbook_hash: str
    request_id: str


class AuditListResponse(BaseModel):
    records: list[AuditRecord]
    count: int
    request_id: str
