"""Append-only audit trail for decision-producing calls."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Optional

from nacl.signing import SigningKey

from app.core.errors import AuditWriteError
from app.core.identifiers import new_audit_event_id
from app.models.domain import AuditRecord, AuthorizationResult
from app.repositories.redis_store import RedisWarehouse
from app.telemetry.event_sink import EventSink, NullEventSink

_logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def canonical_bytes(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def load_signing_key(encoded: str | None) -> SigningKey | None:
    if not encoded:
        return None
    try:
        return SigningKey(base64.b64decode(encoded))
    except (binascii.Error, ValueError):
        _logger.warning("Ignoring malformed audit signing key")
        return None


class AuditSink:
    """Seals audit records, stores them in Redis and mirrors them to an event sink.

    A record written with ``required=True`` must land in the warehouse or the call raises
    :class:`AuditWriteError`; every other write is best effort and only logged on failure.
    """

    def __init__(
        self,
        warehouse: RedisWarehouse,
        sink: EventSink | None = None,
        *,
        signing_key: SigningKey | None = None,
        key_id: str | None = None,
    ) -> None:
        self._warehouse = warehouse
        self._sink = sink or NullEventSink()
        self._signing_key = signing_key
        self._key_id = key_id or "audit-key"

    def record(
        self,
        *,
        action_type: str,
        action_status: str,
        repository: str,
        pr_number: int,
        request_id: str,
        validation_result: dict | None = None,
        authorization: AuthorizationResult | None = None,
        lawbook_hash: str | None = None,
        actor: str = "system",
        required: bool = False,
    ) -> Optional[AuditRecord]:
        record = self._seal(
            AuditRecord(
                audit_event_id=new_audit_event_id(),
                registry_id=authorization.registry_id if authorization else None,
                registry_version=authorization.registry_version if authorization else None,
                action_type=action_type,
                action_status=action_status,
                repository=repository,
                resource_number=pr_number,
                validation_result=validation_result or {},
                actor=actor,
                request_id=request_id,
                lawbook_hash=lawbook_hash,
                created_at=_now(),
            )
        )
        try:
            self._warehouse.append_audit(record)
        except Exception as exc:
            if required:
                raise AuditWriteError(
                    f"Audit write failed for {action_type} on {repository}#{pr_number}",
                    resource=f"{repository}#{pr_number}",
                ) from exc
            _logger.exception("Audit write failed for %s on %s#%s", action_type, repository, pr_number)
            return None

        try:
            self._sink.publish(record.model_dump(mode="json"))
        except Exception:
            _logger.exception("Audit mirror publish failed for %s", record.audit_event_id)
        return record

    def _seal(self, record: AuditRecord) -> AuditRecord:
        body = record.model_dump(mode="json", exclude={"payload_sha256", "signatures"})
        payload = canonical_bytes(body)
        signatures: list[dict] = []
        if self._signing_key is not None:
            signature = self._signing_key.sign(payload).signature
            signatures.append({"keyid": self._key_id, "sig": base64.b64encode(signature).decode()})
        return record.model_copy(update={"payload_sha256": sha256(payload).hexdigest(), "signatures": signatures})


def verify_audit_record(record: AuditRecord) -> bool:
    """Check that a stored record still hashes to its sealed digest."""

    body = record.model_dump(mode="json", exclude={"payload_sha256", "signatures"})
    return sha256(canonical_bytes(body)).hexdigest() == record.payload_sha256
