from __future__ import annotations

from typing import Any, Dict, Iterable

import httpx

from .client import _drop_none, pr_path, wait_timeout


class AsyncRemediationClient:
    """Async variant of the CI remediation API client."""

    def __init__(
        self,
        base_url: str,
        *,
        api_prefix: str = "v1",
        timeout: float = 30.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        normalized_base = base_url.rstrip("/") + "/"
        self._prefix = api_prefix.strip("/")
        self._client = httpx.AsyncClient(
            base_url=normalized_base,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "AsyncRemediationClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def triage_checks(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        workflow_run_id: int | None = None,
        max_log_bytes: int | None = None,
        max_steps: int | None = None,
    ) -> dict:
        params = _drop_none(
            {"workflow_run_id": workflow_run_id, "max_log_bytes": max_log_bytes, "max_steps": max_steps}
        )
        response = await self._client.get(
            f"{pr_path(self._prefix, owner, repo, pr_number)}/checks/triage", params=params
        )
        response.raise_for_status()
        return response.json()

    async def stop_decision(self, owner: str, repo: str, pr_number: int, **payload: Any) -> dict:
        response = await self._client.post(
            f"{pr_path(self._prefix, owner, repo, pr_number)}/checks/stop-decision", json=_drop_none(payload)
        )
        response.raise_for_status()
        return response.json()

    async def rerun_failed_jobs(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        run_id: int | None = None,
        mode: str = "FAILED_ONLY",
        max_attempts: int | None = None,
    ) -> dict:
        payload = _drop_none({"run_id": run_id, "mode": mode, "max_attempts": max_attempts})
        response = await self._client.post(f"{pr_path(self._prefix, owner, repo, pr_number)}/checks/rerun", json=payload)
        response.raise_for_status()
        return response.json()

    async def request_review_and_wait(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        reviewers: Iterable[str],
        *,
        max_wait_seconds: int | None = None,
        poll_seconds: int | None = None,
    ) -> dict:
        payload = _drop_none(
            {"reviewers": list(reviewers), "max_wait_seconds": max_wait_seconds, "poll_seconds": poll_seconds}
        )
        response = await self._client.post(
            f"{pr_path(self._prefix, owner, repo, pr_number)}/request-review-and-wait",
            json=payload,
            timeout=wait_timeout(max_wait_seconds, poll_seconds),
        )
        response.raise_for_status()
        return response.json()

    async def merge(self, owner: str, repo: str, pr_number: int, *, approval_token: str | None = None) -> dict:
        response = await self._client.post(
            f"{pr_path(self._prefix, owner, repo, pr_number)}/merge",
            json=_drop_none({"approval_token": approval_token}),
        )
        response.raise_for_status()
        return response.json()

    async def list_audit(self, *, repository: str | None = None, action_type: str | None = None, limit: int = 50) -> dict:
        params = _drop_none({"repository": repository, "action_type": action_type, "limit": limit})
        response = await self._client.get(f"{self._prefix}/audit", params=params)
        response.raise_for_status()
        return response.json()

    async def healthcheck(self) -> dict:
        response = await self._client.get("healthz")
        response.raise_for_status()
        return response.json()
