"""Response envelope shared by every control loop endpoint."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from app.core.context import CallContext


class ResponseEnvelope(BaseModel):
    """Echoed on every response for compliance traceability."""

    request_id: str
    lawbook_hash: Optional[str] = Field(None, description="SHA-256 of the lawbook in force for this call.")
    deployment_env: str


def envelope(context: CallContext) -> dict:
    return {
        "request_id": context.request_id,
        "lawbook_hash": context.lawbook_hash,
        "deployment_env": context.deployment_env,
    }
