"""Active lawbook lookup and hashing."""

from __future__ import annotations

import logging
from hashlib import sha256

from app.core.config import settings
from app.models.domain import Lawbook, StopThresholds
from app.repositories.redis_store import RedisWarehouse
from app.telemetry.audit import canonical_bytes

_logger = logging.getLogger(__name__)


def default_lawbook() -> Lawbook:
    return Lawbook(
        version=settings.lawbook_version,
        stop_rules=StopThresholds(
            max_reruns_per_job=settings.lawbook_max_reruns_per_job,
            max_total_reruns_per_pr=settings.lawbook_max_total_reruns_per_pr,
            stuck_window_minutes=settings.lawbook_stuck_window_minutes,
        ),
        notes="Built-in defaults",
    )


def lawbook_hash(lawbook: Lawbook) -> str:
    return sha256(canonical_bytes(lawbook.model_dump(mode="json"))).hexdigest()


class LawbookProvider:
    """Serves the stored lawbook, falling back to configured defaults."""

    def __init__(self, warehouse: RedisWarehouse) -> None:
        self._warehouse = warehouse

    def active(self) -> Lawbook:
        stored = self._warehouse.get_lawbook()
        if stored is None:
            return default_lawbook()
        return stored

    def active_hash(self) -> str:
        return lawbook_hash(self.active())

    def publish(self, lawbook: Lawbook) -> tuple[Lawbook, str]:
        self._warehouse.put_lawbook(lawbook)
        digest = lawbook_hash(lawbook)
        _logger.info("Published lawbook %s (%s)", lawbook.version, digest[:12])
        return lawbook, digest
