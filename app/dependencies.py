"""Application dependency wiring."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from redis import Redis

from app.core.config import settings
from app.core.context import CallContext, new_context
from app.github.evidence import GitHubEvidenceCollector
from app.repositories.attempt_ledger import AttemptLedger
from app.repositories.redis_store import RedisWarehouse
from app.services.lawbook import LawbookProvider
from app.services.merge_gate import MergeGateService
from app.services.registry import RegistryService
from app.services.rerun import RerunService
from app.services.review_wait import ReviewWaitService
from app.services.stop_decision import StopDecisionService
from app.services.triage import TriageService
from app.telemetry import AuditSink, EventSink, load_signing_key, sink_from_settings


@lru_cache
def get_redis_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True)


@lru_cache
def get_store() -> RedisWarehouse:
    return RedisWarehouse(get_redis_client())


@lru_cache
def get_attempt_ledger() -> AttemptLedger:
    return AttemptLedger(get_redis_client())


@lru_cache
def get_event_sink() -> EventSink:
    return sink_from_settings()


@lru_cache
def get_audit_sink() -> AuditSink:
    return AuditSink(
        get_store(),
        get_event_sink(),
        signing_key=load_signing_key(settings.audit_signing_key),
        key_id=settings.audit_key_id,
    )


@lru_cache
def get_registry_service() -> RegistryService:
    return RegistryService(get_store())


@lru_cache
def get_lawbook_provider() -> LawbookProvider:
    return LawbookProvider(get_store())


@lru_cache
def _build_collector() -> GitHubEvidenceCollector:
    return GitHubEvidenceCollector(
        settings.github_token or "",
        base_url=settings.github_base_url,
        timeout_seconds=settings.github_timeout_seconds,
        per_page=settings.github_per_page,
        max_check_runs=settings.github_max_check_runs,
    )


def get_github_collector() -> GitHubEvidenceCollector:
    if not settings.github_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="GitHub access is not configured (REMEDIATION_GITHUB_TOKEN)",
        )
    return _build_collector()


def get_triage_service() -> TriageService:
    return TriageService(get_github_collector(), ledger=get_attempt_ledger(), audit=get_audit_sink())


@lru_cache
def get_stop_decision_service() -> StopDecisionService:
    return StopDecisionService(get_lawbook_provider(), get_attempt_ledger(), get_audit_sink())


def get_rerun_service() -> RerunService:
    return RerunService(get_github_collector(), get_registry_service(), get_attempt_ledger(), get_audit_sink())


def get_review_wait_service() -> ReviewWaitService:
    return ReviewWaitService(get_github_collector(), get_registry_service(), get_audit_sink())


def get_merge_gate_service() -> MergeGateService:
    return MergeGateService(get_github_collector(), get_registry_service(), get_audit_sink())


def get_call_context(
    x_request_id: str | None = Header(None, max_length=128),
    x_actor: str | None = Header(None, max_length=200),
    lawbook: LawbookProvider = Depends(get_lawbook_provider),
) -> CallContext:
    return new_context(x_request_id, lawbook_hash=lawbook.active_hash(), actor=x_actor)
