from __future__ import annotations

from app.core.errors import UpstreamTransientError
from app.models.domain import ActionConfig, JobRerunAction, RerunDecision, RerunMode
from app.services.rerun import RerunService

from conftest import make_check, make_job


def _enable(registry, **config):
    registry.upsert("acme/api", {"rerun_failed_jobs": ActionConfig(enabled=True, **config)}, updated_by="ops")


def test_production_without_registry_blocks_before_touching_jobs(collector, production_registry, ledger):
    collector.jobs[900] = [make_job(11, "build")]
    service = RerunService(collector, production_registry, ledger)

    result = service.rerun("acme", "api", 7, run_id=900)

    assert result.decision == RerunDecision.BLOCKED
    assert result.jobs == []
    assert collector.rerun_calls == []
    assert collector.calls == []


def test_disabled_action_blocks(collector, staging_registry, ledger):
    staging_registry.upsert("acme/api", {"rerun_failed_jobs": ActionConfig(enabled=False)})
    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7, run_id=900)
    assert result.decision == RerunDecision.BLOCKED
    assert "not enabled" in result.reasons[0]


def test_reruns_failed_jobs_and_skips_the_rest(collector, staging_registry, ledger, audit, store, context):
    collector.jobs[900] = [
        make_job(11, "build"),
        make_job(12, "lint", conclusion="success"),
        make_job(13, "test", status="in_progress", conclusion=None),
    ]
    service = RerunService(collector, staging_registry, ledger, audit)

    result = service.rerun("acme", "api", 7, run_id=900, context=context)

    assert result.decision == RerunDecision.RERUN_TRIGGERED
    actions = {status.job_id: status for status in result.jobs}
    assert actions[11].action == JobRerunAction.RERUN
    assert actions[11].attempt_number == 1
    assert actions[12].action == JobRerunAction.SKIPPED_ALREADY_SUCCEEDED
    assert actions[12].reason == "Job concluded success"
    assert actions[13].action == JobRerunAction.SKIPPED_ALREADY_SUCCEEDED
    assert actions[13].reason == "Job is still in_progress and has not succeeded; skipped until it finishes"
    assert collector.rerun_calls == [11]
    assert ledger.job_attempts("acme/api", 7, 900, "build") == 1
    assert ledger.total_pr_attempts("acme/api", 7) == 1
    assert any("permissive defaults" in reason for reason in result.reasons)
    assert result.metadata.rerun_jobs == 1
    assert result.metadata.skipped_jobs == 2
    assert result.audit_event_id == store.list_audit(action_type="rerun_failed_jobs")[0].audit_event_id


def test_all_jobs_mode_reruns_successful_jobs(collector, staging_registry, ledger):
    collector.jobs[900] = [make_job(12, "lint", conclusion="success")]
    result = RerunService(collector, staging_registry, ledger).rerun(
        "acme", "api", 7, run_id=900, mode=RerunMode.ALL_JOBS
    )
    assert result.decision == RerunDecision.RERUN_TRIGGERED
    assert collector.rerun_calls == [12]


def test_registry_ceiling_blocks_further_attempts(collector, staging_registry, ledger):
    _enable(staging_registry, max_retries=1)
    ledger.record_rerun_attempt("acme/api", 7, 900, "build")
    collector.jobs[900] = [make_job(11, "build")]

    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7, run_id=900, max_attempts=5)

    assert result.decision == RerunDecision.BLOCKED
    assert result.jobs[0].action == JobRerunAction.BLOCKED_ATTEMPT_CEILING
    assert result.metadata.effective_max_attempts == 1
    assert "Registry caps retries at 1; requested 5" in result.reasons
    assert collector.rerun_calls == []


def test_github_run_attempt_counts_toward_ceiling(collector, staging_registry, ledger):
    _enable(staging_registry)
    collector.jobs[900] = [make_job(11, "build", run_attempt=3)]

    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7, run_id=900, max_attempts=2)

    assert result.jobs[0].action == JobRerunAction.BLOCKED_ATTEMPT_CEILING
    assert result.jobs[0].attempt_number == 2


def test_trigger_failure_is_reported_per_job(collector, staging_registry, ledger):
    collector.jobs[900] = [make_job(11, "build"), make_job(14, "e2e")]
    collector.rerun_errors[11] = UpstreamTransientError("GitHub API error 502")

    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7, run_id=900)

    actions = {status.job_id: status.action for status in result.jobs}
    assert actions == {11: JobRerunAction.FAILED_TO_TRIGGER, 14: JobRerunAction.RERUN}
    assert result.decision == RerunDecision.RERUN_TRIGGERED
    assert result.metadata.failed_jobs == 1
    assert ledger.job_attempts("acme/api", 7, 900, "build") == 0


def test_only_failed_trigger_is_noop(collector, staging_registry, ledger):
    collector.jobs[900] = [make_job(11, "build")]
    collector.rerun_errors[11] = UpstreamTransientError("GitHub API error 502")

    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7, run_id=900)

    assert result.decision == RerunDecision.NOOP
    assert result.jobs[0].reason.startswith("transient:")


def test_runs_discovered_from_failing_checks(collector, staging_registry, ledger):
    collector.checks = [
        make_check(11, "build", conclusion="failure", run_id=900),
        make_check(21, "docs", conclusion="success", run_id=901),
    ]
    collector.jobs[900] = [make_job(11, "build")]
    collector.jobs[901] = [make_job(21, "docs", conclusion="success", run_id=901)]

    result = RerunService(collector, staging_registry, ledger).rerun("acme", "api", 7)

    assert result.run_id == 900
    assert ("list_jobs", 901) not in collector.calls
    assert collector.rerun_calls == [11]
