from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import fakeredis
import pytest

from app.core.context import CallContext
from app.core.errors import RemediationError, UpstreamNotFoundError
from app.models.domain import (
    CheckEvidence,
    JobEvidence,
    JobStep,
    MergeMethod,
    PullRequestSnapshot,
    ReviewEvidence,
)
from app.repositories.attempt_ledger import AttemptLedger
from app.repositories.redis_store import RedisWarehouse
from app.services.registry import RegistryService
from app.telemetry import AuditSink

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_check(
    check_id: int,
    name: str,
    *,
    status: str = "completed",
    conclusion: Optional[str] = "success",
    run_id: Optional[int] = 900,
    summary: Optional[str] = None,
    title: Optional[str] = None,
) -> CheckEvidence:
    return CheckEvidence(
        id=check_id,
        name=name,
        status=status,
        conclusion=conclusion if status == "completed" else None,
        run_id=run_id,
        url=f"https://github.com/acme/api/runs/{check_id}",
        output_summary=summary,
        output_title=title,
    )


def make_job(
    job_id: int,
    name: str,
    *,
    status: str = "completed",
    conclusion: Optional[str] = "failure",
    run_id: int = 900,
    run_attempt: int = 1,
    failed_step: Optional[str] = None,
) -> JobEvidence:
    steps = (JobStep(number=1, name=failed_step, status="completed", conclusion="failure"),) if failed_step else ()
    return JobEvidence(
        id=job_id,
        name=name,
        run_id=run_id,
        status=status,
        conclusion=conclusion,
        run_attempt=run_attempt,
        steps=steps,
    )


def make_review(review_id: int, reviewer: str, state: str, minutes: int = 0) -> ReviewEvidence:
    return ReviewEvidence(
        id=review_id,
        reviewer=reviewer,
        state=state,
        submitted_at=BASE_TIME + timedelta(minutes=minutes),
    )


class FakeCollector:
    """In-memory stand-in for the GitHub evidence collector."""

    def __init__(self) -> None:
        self.pull = PullRequestSnapshot(number=7, head_sha="abc123", head_ref="feature/fix", mergeable=True)
        self.checks: list[CheckEvidence] = []
        self.jobs: dict[int, list[JobEvidence]] = {}
        self.logs: dict[int, bytes] = {}
        self.reviews: list[ReviewEvidence] = []
        self.rerun_errors: dict[int, RemediationError] = {}
        self.log_errors: dict[int, RemediationError] = {}
        self.merge_result: tuple[bool, Optional[str], str] = (True, "mergedsha", "Pull Request successfully merged")
        self.calls: list[tuple] = []
        self.rerun_calls: list[int] = []
        self.merge_calls: list[dict] = []
        self.deleted_branches: list[str] = []
        self.requested: list[str] = []
        self.missing_runs: set[int] = set()

    def fetch_pull(self, owner, repo, pr_number):
        self.calls.append(("fetch_pull", pr_number))
        return self.pull

    def list_check_runs(self, owner, repo, head_sha, *, run_id=None):
        self.calls.append(("list_check_runs", head_sha, run_id))
        return [check for check in self.checks if run_id is None or check.run_id == run_id]

    def fetch_workflow_run(self, owner, repo, run_id):
        self.calls.append(("fetch_workflow_run", run_id))
        if run_id in self.missing_runs:
            resource = f"{owner}/{repo} run {run_id}"
            raise UpstreamNotFoundError(f"Not found: {resource}", resource=resource)
        return self.pull.head_sha

    def list_jobs(self, owner, repo, run_id):
        self.calls.append(("list_jobs", run_id))
        return list(self.jobs.get(run_id, []))

    def download_job_log(self, owner, repo, job_id, max_bytes):
        self.calls.append(("download_job_log", job_id))
        if job_id in self.log_errors:
            raise self.log_errors[job_id]
        data = self.logs.get(job_id, b"")
        return data[-max_bytes:], len(data) > max_bytes

    def list_reviews(self, owner, repo, pr_number):
        self.calls.append(("list_reviews", pr_number))
        return list(self.reviews)

    def request_reviewers(self, owner, repo, pr_number, reviewers):
        fresh = [reviewer for reviewer in reviewers if reviewer not in self.requested]
        self.requested.extend(fresh)
        return fresh

    def rerun_job(self, owner, repo, job_id):
        if job_id in self.rerun_errors:
            raise self.rerun_errors[job_id]
        self.rerun_calls.append(job_id)

    def merge(self, owner, repo, pr_number, *, method: MergeMethod, expected_head_sha=None):
        self.merge_calls.append({"method": method, "sha": expected_head_sha})
        return self.merge_result

    def delete_branch(self, owner, repo, ref):
        self.deleted_branches.append(ref)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(redis_client) -> RedisWarehouse:
    return RedisWarehouse(redis_client)


@pytest.fixture
def ledger(redis_client) -> AttemptLedger:
    return AttemptLedger(redis_client)


@pytest.fixture
def audit(store) -> AuditSink:
    return AuditSink(store)


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def staging_registry(store) -> RegistryService:
    return RegistryService(store, production=False)


@pytest.fixture
def production_registry(store) -> RegistryService:
    return RegistryService(store, production=True)


@pytest.fixture
def context() -> CallContext:
    return CallContext(request_id="rq_test", lawbook_hash="lb_hash", deployment_env="staging", actor="tester")
