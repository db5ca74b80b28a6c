"""GitHub-backed evidence collection and write actions for pull requests."""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Iterable, Optional, Sequence

import requests
from github import Github, GithubException
from github.Auth import Token

from app.core.errors import classify_upstream_error
from app.models.domain import (
    CheckEvidence,
    JobEvidence,
    JobStep,
    MergeMethod,
    PullRequestSnapshot,
    ReviewEvidence,
)

_logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"/actions/runs/(?P<run_id>\d+)")
DEFAULT_API_URL = "https://api.github.com"
# Hard ceiling on bytes read from a log stream regardless of the requested excerpt size.
MAX_LOG_DOWNLOAD_BYTES = 32 * 1024 * 1024
LOG_CHUNK_SIZE = 16 * 1024


def run_id_from_url(*urls: Optional[str]) -> Optional[int]:
    for url in urls:
        if not url:
            continue
        match = RUN_ID_PATTERN.search(url)
        if match:
            return int(match.group("run_id"))
    return None


class GitHubEvidenceCollector:
    """Fetch check, job, log and review evidence and perform PR write actions."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        timeout_seconds: float = 15.0,
        per_page: int = 100,
        max_check_runs: int = 500,
        session: requests.Session | None = None,
    ) -> None:
        auth = Token(token)
        if base_url:
            self._client = Github(auth=auth, base_url=base_url.rstrip("/"), timeout=int(timeout_seconds), per_page=per_page)
        else:
            self._client = Github(auth=auth, timeout=int(timeout_seconds), per_page=per_page)
        self._api_url = (base_url or DEFAULT_API_URL).rstrip("/")
        self._timeout = timeout_seconds
        self._max_check_runs = max(max_check_runs, 1)
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    def close(self) -> None:
        self._session.close()
        self._client.close()

    def fetch_pull(self, owner: str, repo: str, pr_number: int) -> PullRequestSnapshot:
        resource = f"{owner}/{repo}#{pr_number}"
        try:
            pull = self._get_repo(owner, repo).get_pull(pr_number)
            requested = [user.login for user in (pull.requested_reviewers or []) if getattr(user, "login", None)]
            return PullRequestSnapshot(
                number=pull.number,
                head_sha=pull.head.sha,
                head_ref=getattr(pull.head, "ref", None),
                mergeable=pull.mergeable,
                draft=bool(getattr(pull, "draft", False)),
                state=pull.state or "open",
                labels=tuple(label.name for label in pull.labels),
                requested_reviewers=tuple(sorted(requested)),
            )
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc

    def list_check_runs(
        self,
        owner: str,
        repo: str,
        head_sha: str,
        *,
        run_id: int | None = None,
    ) -> list[CheckEvidence]:
        resource = f"{owner}/{repo}@{head_sha}"
        checks: list[CheckEvidence] = []
        try:
            commit = self._get_repo(owner, repo).get_commit(head_sha)
            for run in commit.get_check_runs():
                evidence = self._to_check_evidence(run)
                if run_id is not None and evidence.run_id != run_id:
                    continue
                checks.append(evidence)
                if len(checks) >= self._max_check_runs:
                    _logger.warning("Check run listing for %s truncated at %d entries", resource, self._max_check_runs)
                    break
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc
        return sorted(checks, key=lambda check: check.id)

    def fetch_workflow_run(self, owner: str, repo: str, run_id: int) -> str:
        """Confirm a workflow run exists and return the head SHA it ran against."""

        resource = f"{owner}/{repo} run {run_id}"
        try:
            run = self._get_repo(owner, repo).get_workflow_run(run_id)
            return run.head_sha
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc

    def list_jobs(self, owner: str, repo: str, run_id: int) -> list[JobEvidence]:
        resource = f"{owner}/{repo} run {run_id}"
        try:
            run = self._get_repo(owner, repo).get_workflow_run(run_id)
            jobs = [self._to_job_evidence(job, run_id) for job in run.jobs()]
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc
        return sorted(jobs, key=lambda job: job.id)

    def download_job_log(self, owner: str, repo: str, job_id: int, max_bytes: int) -> tuple[bytes, bool]:
        """Stream a job log, keeping only its last ``max_bytes`` bytes.

        Returns the tail and whether anything was dropped.
        """

        resource = f"{owner}/{repo} job {job_id} logs"
        url = f"{self._api_url}/repos/{owner}/{repo}/actions/jobs/{job_id}/logs"
        tail: deque[bytes] = deque()
        kept = 0
        read = 0
        truncated = False
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=LOG_CHUNK_SIZE):
                    if not chunk:
                        continue
                    read += len(chunk)
                    tail.append(chunk)
                    kept += len(chunk)
                    while kept - len(tail[0]) >= max_bytes:
                        kept -= len(tail.popleft())
                        truncated = True
                    if read >= MAX_LOG_DOWNLOAD_BYTES:
                        truncated = True
                        break
        except requests.RequestException as exc:
            raise classify_upstream_error(exc, resource) from exc
        data = b"".join(tail)
        if len(data) > max_bytes:
            data = data[-max_bytes:]
            truncated = True
        return data, truncated

    def list_reviews(self, owner: str, repo: str, pr_number: int) -> list[ReviewEvidence]:
        resource = f"{owner}/{repo}#{pr_number} reviews"
        try:
            pull = self._get_repo(owner, repo).get_pull(pr_number)
            reviews = [
                ReviewEvidence(
                    id=review.id,
                    reviewer=getattr(review.user, "login", None) or "unknown",
                    state=(review.state or "").upper(),
                    submitted_at=getattr(review, "submitted_at", None),
                    url=getattr(review, "html_url", None),
                )
                for review in pull.get_reviews()
            ]
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc
        return sorted(reviews, key=lambda review: review.id)

    def request_reviewers(self, owner: str, repo: str, pr_number: int, reviewers: Sequence[str]) -> list[str]:
        """Request reviews from anyone not already requested; returns the newly requested logins."""

        resource = f"{owner}/{repo}#{pr_number} review request"
        try:
            pull = self._get_repo(owner, repo).get_pull(pr_number)
            already = {user.login.lower() for user in (pull.requested_reviewers or []) if getattr(user, "login", None)}
            pending = _dedupe(reviewer for reviewer in reviewers if reviewer.lower() not in already)
            if pending:
                pull.create_review_request(reviewers=pending)
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc
        return pending

    def rerun_job(self, owner: str, repo: str, job_id: int) -> None:
        resource = f"{owner}/{repo} job {job_id} rerun"
        url = f"{self._api_url}/repos/{owner}/{repo}/actions/jobs/{job_id}/rerun"
        try:
            response = self._session.post(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise classify_upstream_error(exc, resource) from exc

    def merge(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        method: MergeMethod,
        expected_head_sha: str | None = None,
    ) -> tuple[bool, Optional[str], str]:
        resource = f"{owner}/{repo}#{pr_number} merge"
        try:
            pull = self._get_repo(owner, repo).get_pull(pr_number)
            if expected_head_sha:
                status = pull.merge(merge_method=method.value, sha=expected_head_sha)
            else:
                status = pull.merge(merge_method=method.value)
        except GithubException as exc:
            # 405: not mergeable, 409: head moved since the preconditions were read.
            if exc.status in (405, 409):
                data = exc.data if isinstance(exc.data, dict) else {}
                return False, None, str(data.get("message") or f"GitHub refused the merge ({exc.status})")
            raise classify_upstream_error(exc, resource) from exc
        except requests.RequestException as exc:
            raise classify_upstream_error(exc, resource) from exc
        return bool(status.merged), getattr(status, "sha", None), getattr(status, "message", "") or ""

    def delete_branch(self, owner: str, repo: str, ref: str) -> None:
        resource = f"{owner}/{repo} heads/{ref}"
        try:
            self._get_repo(owner, repo).get_git_ref(f"heads/{ref}").delete()
        except (GithubException, requests.RequestException) as exc:
            raise classify_upstream_error(exc, resource) from exc

    def _get_repo(self, owner: str, repo: str):
        return self._client.get_repo(f"{owner}/{repo}")

    @staticmethod
    def _to_check_evidence(run) -> CheckEvidence:
        output = getattr(run, "output", None)
        html_url = getattr(run, "html_url", None)
        details_url = getattr(run, "details_url", None)
        return CheckEvidence(
            id=run.id,
            name=run.name,
            status=run.status or "queued",
            conclusion=getattr(run, "conclusion", None),
            completed_at=getattr(run, "completed_at", None),
            url=html_url or details_url,
            run_id=run_id_from_url(details_url, html_url),
            output_title=getattr(output, "title", None) if output else None,
            output_summary=getattr(output, "summary", None) if output else None,
        )

    @staticmethod
    def _to_job_evidence(job, run_id: int) -> JobEvidence:
        raw = getattr(job, "raw_data", None) or {}
        steps = tuple(
            JobStep(
                number=step.number,
                name=step.name,
                status=getattr(step, "status", None),
                conclusion=getattr(step, "conclusion", None),
            )
            for step in (getattr(job, "steps", None) or [])
        )
        return JobEvidence(
            id=job.id,
            name=job.name,
            run_id=getattr(job, "run_id", None) or run_id,
            status=job.status or "queued",
            conclusion=getattr(job, "conclusion", None),
            run_attempt=int(raw.get("run_attempt") or 1),
            steps=steps,
            url=getattr(job, "html_url", None),
        )


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        ordered.append(value)
    return ordered
