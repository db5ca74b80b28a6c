"""Per-repository action registry: who may do what, with which limits."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.config import settings
from app.core.identifiers import new_registry_id
from app.models.domain import ActionConfig, ActionType, AuthorizationResult, RegistryEntry
from app.repositories.redis_store import RedisWarehouse

_logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RegistryService:
    """Reads and versions registry entries and answers authorization questions.

    Production is fail-closed: a repository without an entry may not act. Outside production a
    missing entry is treated as permissive defaults, and the reason says so.
    """

    def __init__(self, warehouse: RedisWarehouse, *, production: bool | None = None) -> None:
        self._warehouse = warehouse
        self._production = settings.is_production if production is None else production

    def get_active(self, repository: str) -> RegistryEntry | None:
        return self._warehouse.get_registry(repository)

    def upsert(
        self,
        repository: str,
        actions: dict[str, ActionConfig],
        *,
        updated_by: str | None = None,
    ) -> RegistryEntry:
        current = self._warehouse.get_registry(repository)
        entry = RegistryEntry(
            registry_id=current.registry_id if current else new_registry_id(),
            repository=repository.lower(),
            version=(current.version + 1) if current else 1,
            actions=actions,
            updated_at=_now(),
            updated_by=updated_by,
        )
        self._warehouse.put_registry(entry)
        _logger.info("Registry for %s now at version %d", entry.repository, entry.version)
        return entry

    def authorize(self, repository: str, action: ActionType) -> AuthorizationResult:
        entry = self._warehouse.get_registry(repository)
        if entry is None:
            if self._production:
                return AuthorizationResult(
                    allowed=False,
                    registry_found=False,
                    action=action.value,
                    reason=f"No active registry for {repository}; production is fail-closed",
                )
            return AuthorizationResult(
                allowed=True,
                registry_found=False,
                action=action.value,
                reason=f"No active registry for {repository}; permissive defaults outside production",
                config=ActionConfig(enabled=True),
            )

        config = entry.action(action)
        if config is None or not config.enabled:
            return AuthorizationResult(
                allowed=False,
                registry_found=True,
                action=action.value,
                reason=f"Action {action.value} is not enabled in registry v{entry.version}",
                registry_id=entry.registry_id,
                registry_version=entry.version,
                config=config,
            )
        return AuthorizationResult(
            allowed=True,
            registry_found=True,
            action=action.value,
            reason=f"Action {action.value} enabled in registry v{entry.version}",
            registry_id=entry.registry_id,
            registry_version=entry.version,
            config=config,
        )
