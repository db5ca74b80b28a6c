from __future__ import annotations

import base64

import pytest
from nacl.signing import SigningKey

from app.core.config import Settings
from app.core.errors import AuditWriteError, UpstreamNotFoundError, UpstreamTransientError
from app.models.domain import ActionConfig, MergeDecision, MergeMethod
from app.services.merge_gate import MergeGateService, approval_message, verify_approval_token
from app.telemetry import AuditSink

from conftest import make_check, make_review

TOKEN = "approved-by-release-manager"


class _BrokenWarehouse:
    def append_audit(self, record):
        raise ConnectionError("redis down")


@pytest.fixture
def ready(collector):
    collector.checks = [make_check(11, "build"), make_check(12, "lint")]
    collector.reviews = [make_review(1, "octocat", "APPROVED")]
    return collector


@pytest.fixture
def staging_settings(monkeypatch):
    custom = Settings(deployment_env="staging")
    monkeypatch.setattr("app.services.merge_gate.settings", custom)
    return custom


def _signed_token(signing_key: SigningKey, key_id: str, owner: str, repo: str, pr_number: int) -> str:
    signature = signing_key.sign(approval_message(owner, repo, pr_number)).signature
    return f"{key_id}.{base64.b64encode(signature).decode()}"


def test_missing_token_blocks_even_when_ready(ready, staging_registry, audit, staging_settings):
    outcome = MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7)

    assert outcome.decision == MergeDecision.BLOCKED_NO_APPROVAL
    assert outcome.merged is False
    assert outcome.precondition_snapshot.satisfied
    assert ready.merge_calls == []


def _unreachable(owner, repo, pr_number):
    raise UpstreamTransientError("GitHub unreachable", resource=f"{owner}/{repo}#{pr_number}")


def test_missing_token_blocks_while_github_is_unreachable(ready, staging_registry, audit, staging_settings):
    ready.fetch_pull = _unreachable

    outcome = MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7)

    assert outcome.decision == MergeDecision.BLOCKED_NO_APPROVAL
    assert outcome.precondition_snapshot is None
    assert ready.merge_calls == []


def test_production_block_does_not_depend_on_github(ready, production_registry, audit, monkeypatch):
    monkeypatch.setattr(
        "app.services.merge_gate.settings", Settings(deployment_env="production", production_merge_enabled=False)
    )
    production_registry.upsert("acme/api", {"merge_pr": ActionConfig(enabled=True)})

    def missing(owner, repo, pr_number):
        raise UpstreamNotFoundError("Not found: acme/api#7", resource="acme/api#7")

    ready.fetch_pull = missing

    outcome = MergeGateService(ready, production_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)

    assert outcome.decision == MergeDecision.BLOCKED_PRODUCTION
    assert outcome.precondition_snapshot is None


def test_approved_merge_still_requires_a_snapshot(ready, staging_registry, audit, staging_settings):
    ready.fetch_pull = _unreachable

    with pytest.raises(UpstreamTransientError):
        MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)
    assert ready.merge_calls == []


def test_missing_registry_in_production_blocks_without_snapshot(ready, production_registry, audit, staging_settings):
    outcome = MergeGateService(ready, production_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)

    assert outcome.decision == MergeDecision.BLOCKED_REGISTRY
    assert outcome.precondition_snapshot is None
    assert ready.calls == []


def test_production_merges_disabled(ready, production_registry, audit, monkeypatch):
    monkeypatch.setattr(
        "app.services.merge_gate.settings", Settings(deployment_env="production", production_merge_enabled=False)
    )
    production_registry.upsert("acme/api", {"merge_pr": ActionConfig(enabled=True)})

    outcome = MergeGateService(ready, production_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)

    assert outcome.decision == MergeDecision.BLOCKED_PRODUCTION
    assert outcome.precondition_snapshot is not None
    assert ready.merge_calls == []


def test_unmet_preconditions_are_listed(ready, staging_registry, audit, staging_settings):
    ready.pull = ready.pull.model_copy(update={"draft": True, "labels": ("WIP", "backend")})
    ready.checks = [make_check(11, "build", conclusion="failure"), make_check(12, "lint", status="queued")]

    outcome = MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)

    assert outcome.decision == MergeDecision.BLOCKED_PRECONDITIONS
    snapshot = outcome.precondition_snapshot
    assert snapshot.failing_checks == ("build",)
    assert snapshot.pending_checks == ("lint",)
    assert snapshot.blocking_labels == ("WIP",)
    assert "Checks are RED, not GREEN" in outcome.reasons
    assert "Pull request is a draft" in outcome.reasons
    assert ready.merge_calls == []


def test_signed_approval_merges_and_deletes_branch(ready, staging_registry, audit, store, monkeypatch):
    signing_key = SigningKey.generate()
    public = base64.b64encode(bytes(signing_key.verify_key)).decode()
    monkeypatch.setattr("app.services.merge_gate.settings", Settings(approval_public_keys={"release": public}))
    staging_registry.upsert(
        "acme/api",
        {"merge_pr": ActionConfig(enabled=True, merge_method=MergeMethod.REBASE, branch_delete_enabled=True)},
    )
    token = _signed_token(signing_key, "release", "Acme", "API", 7)

    outcome = MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7, approval_token=token)

    assert outcome.decision == MergeDecision.MERGED
    assert outcome.merged is True
    assert outcome.commit_sha == "mergedsha"
    assert outcome.branch_deleted is True
    assert ready.merge_calls == [{"method": MergeMethod.REBASE, "sha": "abc123"}]
    assert ready.deleted_branches == ["feature/fix"]
    statuses = [record.action_status for record in store.list_audit(action_type="merge_pr")]
    assert statuses == ["MERGE_AUTHORIZED"]


def test_signed_approval_merges_with_full_audit_trail(ready, staging_registry, audit, store, context, monkeypatch):
    monkeypatch.setattr("app.services.merge_gate.settings", Settings())

    outcome = MergeGateService(ready, staging_registry, audit).merge(
        "acme", "api", 7, approval_token=TOKEN, context=context
    )

    assert outcome.decision == MergeDecision.MERGED
    assert outcome.merge_method == MergeMethod.SQUASH
    assert outcome.branch_deleted is False
    records = store.list_audit(action_type="merge_pr")
    assert [record.action_status for record in records] == ["MERGED", "MERGE_AUTHORIZED"]
    assert outcome.audit_event_id == records[1].audit_event_id


def test_approval_signed_for_another_pull_request_is_rejected(monkeypatch):
    signing_key = SigningKey.generate()
    public = base64.b64encode(bytes(signing_key.verify_key)).decode()
    monkeypatch.setattr("app.services.merge_gate.settings", Settings(approval_public_keys={"release": public}))

    ok, reason = verify_approval_token(_signed_token(signing_key, "release", "acme", "api", 8), "acme", "api", 7)
    assert ok is False
    assert "invalid" in reason

    ok, reason = verify_approval_token("unknown.c2ln", "acme", "api", 7)
    assert ok is False
    assert "not trusted" in reason

    ok, _ = verify_approval_token("no-separator", "acme", "api", 7)
    assert ok is False


def test_short_unsigned_token_is_rejected(staging_settings):
    ok, reason = verify_approval_token("short", "acme", "api", 7)
    assert ok is False
    assert "shorter" in reason


def test_github_refusal_reports_preconditions(ready, staging_registry, audit, staging_settings):
    ready.merge_result = (False, None, "Head branch was modified. Review and try the merge again.")

    outcome = MergeGateService(ready, staging_registry, audit).merge("acme", "api", 7, approval_token=TOKEN)

    assert outcome.decision == MergeDecision.BLOCKED_PRECONDITIONS
    assert outcome.merged is False
    assert "Head branch was modified" in outcome.reasons[0]


def test_merge_refused_when_audit_cannot_be_written(ready, staging_registry, staging_settings):
    service = MergeGateService(ready, staging_registry, AuditSink(_BrokenWarehouse()))

    with pytest.raises(AuditWriteError):
        service.merge("acme", "api", 7, approval_token=TOKEN)
    assert ready.merge_calls == []


def test_merge_refused_without_audit_sink(ready, staging_registry, staging_settings):
    with pytest.raises(AuditWriteError):
        MergeGateService(ready, staging_registry).merge("acme", "api", 7, approval_token=TOKEN)
    assert ready.merge_calls == []
