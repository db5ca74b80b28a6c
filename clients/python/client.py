from __future__ import annotations

from typing import Any, Dict, Iterable

import httpx

# Slack added to the server-side wait budget before the HTTP call itself gives up.
WAIT_TIMEOUT_MARGIN_SECONDS = 30.0
DEFAULT_MAX_WAIT_SECONDS = 900
DEFAULT_POLL_SECONDS = 15


def pr_path(api_prefix: str, owner: str, repo: str, pr_number: int) -> str:
    return f"{api_prefix}/github/{owner}/{repo}/prs/{pr_number}"


def wait_timeout(max_wait_seconds: int | None, poll_seconds: int | None) -> float:
    return float(
        (max_wait_seconds if max_wait_seconds is not None else DEFAULT_MAX_WAIT_SECONDS)
        + (poll_seconds if poll_seconds is not None else DEFAULT_POLL_SECONDS)
        + WAIT_TIMEOUT_MARGIN_SECONDS
    )


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class RemediationClient:
    """Synchronous client for the CI remediation API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_prefix: str = "v1",
        timeout: float = 30.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        normalized_base = base_url.rstrip("/") + "/"
        self._prefix = api_prefix.strip("/")
        self._client = httpx.Client(
            base_url=normalized_base,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def __enter__(self) -> "RemediationClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _pr(self, owner: str, repo: str, pr_number: int) -> str:
        return pr_path(self._prefix, owner, repo, pr_number)

    @staticmethod
    def _headers(request_id: str | None) -> Dict[str, str]:
        return {"X-Request-ID": request_id} if request_id else {}

    def triage_checks(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        workflow_run_id: int | None = None,
        max_log_bytes: int | None = None,
        max_steps: int | None = None,
        request_id: str | None = None,
    ) -> dict:
        params = _drop_none(
            {"workflow_run_id": workflow_run_id, "max_log_bytes": max_log_bytes, "max_steps": max_steps}
        )
        response = self._client.get(
            f"{self._pr(owner, repo, pr_number)}/checks/triage", params=params, headers=self._headers(request_id)
        )
        response.raise_for_status()
        return response.json()

    def stop_decision(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        attempt_counts: Dict[str, int] | None = None,
        failure_class: str | None = None,
        signal_history: Iterable[str] | None = None,
        run_id: int | None = None,
        job_name: str | None = None,
        request_id: str | None = None,
    ) -> dict:
        payload = _drop_none(
            {
                "attempt_counts": attempt_counts,
                "failure_class": failure_class,
                "signal_history": list(signal_history) if signal_history is not None else None,
                "run_id": run_id,
                "job_name": job_name,
            }
        )
        response = self._client.post(
            f"{self._pr(owner, repo, pr_number)}/checks/stop-decision",
            json=payload,
            headers=self._headers(request_id),
        )
        response.raise_for_status()
        return response.json()

    def rerun_failed_jobs(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        run_id: int | None = None,
        mode: str = "FAILED_ONLY",
        max_attempts: int | None = None,
        request_id: str | None = None,
    ) -> dict:
        payload = _drop_none({"run_id": run_id, "mode": mode, "max_attempts": max_attempts})
        response = self._client.post(
            f"{self._pr(owner, repo, pr_number)}/checks/rerun", json=payload, headers=self._headers(request_id)
        )
        response.raise_for_status()
        return response.json()

    def request_review_and_wait(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        reviewers: Iterable[str],
        *,
        max_wait_seconds: int | None = None,
        poll_seconds: int | None = None,
        request_id: str | None = None,
    ) -> dict:
        payload = _drop_none(
            {"reviewers": list(reviewers), "max_wait_seconds": max_wait_seconds, "poll_seconds": poll_seconds}
        )
        response = self._client.post(
            f"{self._pr(owner, repo, pr_number)}/request-review-and-wait",
            json=payload,
            headers=self._headers(request_id),
            timeout=wait_timeout(max_wait_seconds, poll_seconds),
        )
        response.raise_for_status()
        return response.json()

    def merge(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        approval_token: str | None = None,
        request_id: str | None = None,
    ) -> dict:
        response = self._client.post(
            f"{self._pr(owner, repo, pr_number)}/merge",
            json=_drop_none({"approval_token": approval_token}),
            headers=self._headers(request_id),
        )
        response.raise_for_status()
        return response.json()

    def get_registry(self, owner: str, repo: str) -> dict:
        response = self._client.get(f"{self._prefix}/registry/{owner}/{repo}")
        response.raise_for_status()
        return response.json()

    def put_registry(self, owner: str, repo: str, actions: Dict[str, Dict[str, Any]], *, updated_by: str | None = None) -> dict:
        response = self._client.put(
            f"{self._prefix}/registry/{owner}/{repo}",
            json=_drop_none({"actions": actions, "updated_by": updated_by}),
        )
        response.raise_for_status()
        return response.json()

    def get_lawbook(self) -> dict:
        response = self._client.get(f"{self._prefix}/lawbook")
        response.raise_for_status()
        return response.json()

    def list_audit(self, *, repository: str | None = None, action_type: str | None = None, limit: int = 50) -> dict:
        params = _drop_none({"repository": repository, "action_type": action_type, "limit": limit})
        response = self._client.get(f"{self._prefix}/audit", params=params)
        response.raise_for_status()
        return response.json()

    def healthcheck(self) -> dict:
        response = self._client.get("healthz")
        response.raise_for_status()
        return response.json()
