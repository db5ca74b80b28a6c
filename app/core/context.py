"""Per-call correlation data threaded through the control loop services."""

from __future__ import annotations

from dataclasses import dataclass

from app.core.config import settings
from app.core.identifiers import new_request_id


@dataclass(frozen=True)
class CallContext:
    request_id: str
    lawbook_hash: str | None = None
    deployment_env: str = "staging"
    actor: str = "system"


def new_context(
    request_id: str | None = None,
    *,
    lawbook_hash: str | None = None,
    actor: str | None = None,
) -> CallContext:
    return CallContext(
        request_id=request_id or new_request_id(),
        lawbook_hash=lawbook_hash,
        deployment_env=settings.deployment_tag,
        actor=actor or "system",
    )
