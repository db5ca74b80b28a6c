"""Redis-backed persistence for registries, lawbooks and the audit log."""

from __future__ import annotations

from typing import Optional

from redis import Redis

from app.models.domain import AuditRecord, Lawbook, RegistryEntry

_AUDIT_LOG_KEY = "audit:log"
_LAWBOOK_KEY = "lawbook:active"


class RedisWarehouse:
    """Stores registry entries, the active lawbook and audit records in Redis."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    def get_registry(self, repository: str) -> Optional[RegistryEntry]:
        data = self._client.get(self._registry_key(repository))
        if not data:
            return None
        return RegistryEntry.model_validate_json(data)

    def put_registry(self, entry: RegistryEntry) -> None:
        self._client.set(self._registry_key(entry.repository), entry.model_dump_json())
        self._client.sadd("registry:index", entry.repository.lower())

    def list_registry_repositories(self) -> list[str]:
        return sorted(self._client.smembers("registry:index"))

    def get_lawbook(self) -> Optional[Lawbook]:
        data = self._client.get(_LAWBOOK_KEY)
        if not data:
            return None
        return Lawbook.model_validate_json(data)

    def put_lawbook(self, lawbook: Lawbook) -> None:
        self._client.set(_LAWBOOK_KEY, lawbook.model_dump_json())

    def append_audit(self, record: AuditRecord) -> None:
        payload = record.model_dump_json()
        pipeline = self._client.pipeline()
        pipeline.rpush(_AUDIT_LOG_KEY, payload)
        pipeline.rpush(self._audit_repo_key(record.repository), payload)
        pipeline.execute()

    def list_audit(
        self,
        *,
        repository: str | None = None,
        action_type: str | None = None,
        limit: int = 50,
    ) -> list[AuditRecord]:
        key = self._audit_repo_key(repository) if repository else _AUDIT_LOG_KEY
        entries = self._client.lrange(key, 0, -1)
        records: list[AuditRecord] = []
        for blob in reversed(entries):
            record = AuditRecord.model_validate_json(blob)
            if action_type and record.action_type != action_type:
                continue
            records.append(record)
            if len(records) >= limit:
                break
        return records

    @staticmethod
    def _registry_key(repository: str) -> str:
        return f"registry:{repository.lower()}"

    @staticmethod
    def _audit_repo_key(repository: str) -> str:
        return f"audit:repo:{repository.lower()}"
