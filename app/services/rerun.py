"""Job rerun executor: bounded reruns of failed jobs under the registry ceiling."""

from __future__ import annotations

import logging

from redis.exceptions import RedisError

from app.core.config import settings
from app.core.context import CallContext
from app.core.errors import RemediationError
from app.github.evidence import GitHubEvidenceCollector
from app.models.domain import (
    ActionType,
    AuthorizationResult,
    CheckStatus,
    JobEvidence,
    JobRerunAction,
    JobRerunStatus,
    RerunDecision,
    RerunMetadata,
    RerunMode,
    RerunResult,
)
from app.repositories.attempt_ledger import AttemptLedger
from app.services.registry import RegistryService
from app.services.rollup import FAILING_CONCLUSIONS, is_failing
from app.telemetry.audit import AuditSink
from app.telemetry.metrics import record_decision, record_reruns

_logger = logging.getLogger(__name__)

MAX_ATTEMPTS_CAP = 10


def effective_ceiling(requested: int, authorization: AuthorizationResult) -> int:
    """The registry cap is a hard ceiling; the caller's request only ever lowers it."""

    ceiling = requested
    if authorization.config is not None and authorization.config.max_retries is not None:
        ceiling = min(ceiling, authorization.config.max_retries)
    return ceiling


class RerunService:
    """Reruns failed jobs of a pull request's workflow runs."""

    def __init__(
        self,
        collector: GitHubEvidenceCollector,
        registry: RegistryService,
        ledger: AttemptLedger,
        audit: AuditSink | None = None,
    ) -> None:
        self._collector = collector
        self._registry = registry
        self._ledger = ledger
        self._audit = audit

    def rerun(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        run_id: int | None = None,
        mode: RerunMode = RerunMode.FAILED_ONLY,
        max_attempts: int | None = None,
        context: CallContext | None = None,
    ) -> RerunResult:
        repository = f"{owner}/{repo}"
        requested = max(1, min(max_attempts or settings.rerun_default_max_attempts, MAX_ATTEMPTS_CAP))

        authorization = self._registry.authorize(repository, ActionType.RERUN_FAILED_JOBS)
        if not authorization.allowed:
            _logger.warning("Rerun for %s#%s blocked: %s", repository, pr_number, authorization.reason)
            result = RerunResult(decision=RerunDecision.BLOCKED, reasons=[authorization.reason], run_id=run_id)
            return self._finish(result, repository, pr_number, authorization, context)

        ceiling = effective_ceiling(requested, authorization)
        reasons: list[str] = []
        if ceiling < requested:
            reasons.append(f"Registry caps retries at {ceiling}; requested {requested}")
        if not authorization.registry_found:
            reasons.append(authorization.reason)

        run_ids = [run_id] if run_id is not None else self._discover_runs(owner, repo, pr_number, mode)
        statuses: list[JobRerunStatus] = []
        for current_run in run_ids:
            for job in self._collector.list_jobs(owner, repo, current_run):
                statuses.append(self._process_job(owner, repo, pr_number, current_run, job, mode, ceiling))

        result = RerunResult(
            decision=RerunDecision.NOOP,
            reasons=reasons,
            run_id=run_ids[0] if len(run_ids) == 1 else run_id,
            jobs=statuses,
            metadata=RerunMetadata(
                total_jobs=len(statuses),
                rerun_jobs=sum(1 for status in statuses if status.action == JobRerunAction.RERUN),
                blocked_jobs=sum(1 for status in statuses if status.action == JobRerunAction.BLOCKED_ATTEMPT_CEILING),
                skipped_jobs=sum(1 for status in statuses if status.action == JobRerunAction.SKIPPED_ALREADY_SUCCEEDED),
                failed_jobs=sum(1 for status in statuses if status.action == JobRerunAction.FAILED_TO_TRIGGER),
                effective_max_attempts=ceiling,
            ),
        )
        meta = result.metadata
        if meta.rerun_jobs:
            result.decision = RerunDecision.RERUN_TRIGGERED
            reasons.append(f"Triggered rerun for {meta.rerun_jobs} job(s)")
        elif meta.blocked_jobs and not meta.failed_jobs:
            result.decision = RerunDecision.BLOCKED
            reasons.append(f"All eligible jobs blocked ({meta.blocked_jobs} job(s) reached {ceiling} attempts)")
        elif meta.failed_jobs:
            reasons.append(f"Rerun could not be triggered for {meta.failed_jobs} job(s)")
        else:
            reasons.append("No jobs eligible for rerun")
        if not run_ids:
            reasons.append("No workflow runs found for the pull request head")

        record_reruns(meta.rerun_jobs)
        return self._finish(result, repository, pr_number, authorization, context)

    def _discover_runs(self, owner: str, repo: str, pr_number: int, mode: RerunMode) -> list[int]:
        pull = self._collector.fetch_pull(owner, repo, pr_number)
        checks = self._collector.list_check_runs(owner, repo, pull.head_sha)
        if mode == RerunMode.FAILED_ONLY:
            checks = [check for check in checks if is_failing(check)]
        return sorted({check.run_id for check in checks if check.run_id is not None})

    def _process_job(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        run_id: int,
        job: JobEvidence,
        mode: RerunMode,
        ceiling: int,
    ) -> JobRerunStatus:
        repository = f"{owner}/{repo}"
        completed = job.status == CheckStatus.COMPLETED.value
        failed = completed and job.conclusion in FAILING_CONCLUSIONS
        attempts = max(self._ledger.job_attempts(repository, pr_number, run_id, job.name), job.run_attempt - 1)

        if not completed or (mode == RerunMode.FAILED_ONLY and not failed):
            return JobRerunStatus(
                job_id=job.id,
                job_name=job.name,
                prior_conclusion=job.conclusion,
                action=JobRerunAction.SKIPPED_ALREADY_SUCCEEDED,
                attempt_number=attempts,
                reason=(
                    f"Job is still {job.status} and has not succeeded; skipped until it finishes"
                    if not completed
                    else f"Job concluded {job.conclusion}"
                ),
            )
        if attempts >= ceiling:
            return JobRerunStatus(
                job_id=job.id,
                job_name=job.name,
                prior_conclusion=job.conclusion,
                action=JobRerunAction.BLOCKED_ATTEMPT_CEILING,
                attempt_number=attempts,
                reason=f"{attempts} attempt(s) already made; ceiling is {ceiling}",
            )

        try:
            self._collector.rerun_job(owner, repo, job.id)
        except RemediationError as exc:
            _logger.warning("Rerun trigger failed for job %s (%s): %s", job.id, exc.kind, exc)
            return JobRerunStatus(
                job_id=job.id,
                job_name=job.name,
                prior_conclusion=job.conclusion,
                action=JobRerunAction.FAILED_TO_TRIGGER,
                attempt_number=attempts,
                reason=f"{exc.kind}: {exc}",
            )

        attempt_number = attempts + 1
        try:
            recorded = self._ledger.record_rerun_attempt(repository, pr_number, run_id, job.name)
            attempt_number = max(attempt_number, recorded)
        except RedisError:
            _logger.exception("Rerun of job %s triggered but the attempt was not recorded", job.id)
        return JobRerunStatus(
            job_id=job.id,
            job_name=job.name,
            prior_conclusion=job.conclusion,
            action=JobRerunAction.RERUN,
            attempt_number=attempt_number,
        )

    def _finish(
        self,
        result: RerunResult,
        repository: str,
        pr_number: int,
        authorization: AuthorizationResult,
        context: CallContext | None,
    ) -> RerunResult:
        _logger.info(
            "Rerun for %s#%s: %s (%d rerun, %d blocked, %d skipped, %d failed)",
            repository,
            pr_number,
            result.decision.value,
            result.metadata.rerun_jobs,
            result.metadata.blocked_jobs,
            result.metadata.skipped_jobs,
            result.metadata.failed_jobs,
        )
        record_decision("rerun", result.decision.value)
        if self._audit is not None and context is not None:
            record = self._audit.record(
                action_type=ActionType.RERUN_FAILED_JOBS.value,
                action_status=result.decision.value,
                repository=repository,
                pr_number=pr_number,
                request_id=context.request_id,
                authorization=authorization,
                lawbook_hash=context.lawbook_hash,
                actor=context.actor,
                validation_result={
                    "authorization": authorization.reason,
                    "run_id": result.run_id,
                    "reasons": result.reasons,
                    "jobs": [status.model_dump(mode="json") for status in result.jobs],
                },
            )
            if record is not None:
                result.audit_event_id = record.audit_event_id
        return result
