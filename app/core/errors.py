"""Error taxonomy shared by the control loop services."""

from __future__ import annotations

import requests
from github import GithubException, RateLimitExceededException


class RemediationError(Exception):
    """Base class for infrastructure failures surfaced to callers."""

    kind = "error"

    def __init__(self, message: str, *, resource: str | None = None) -> None:
        super().__init__(message)
        self.resource = resource


class UpstreamNotFoundError(RemediationError):
    """The PR, workflow run or repository does not exist upstream."""

    kind = "not_found"


class UpstreamAccessDeniedError(RemediationError):
    """The app lacks permission on the repository."""

    kind = "access_denied"


class UpstreamRejectedError(RemediationError):
    """GitHub refused the request as invalid; repeating it will not help."""

    kind = "rejected"


class UpstreamTransientError(RemediationError):
    """Timeouts, rate limits and 5xx responses; the call itself may be retried."""

    kind = "transient"


class AuditWriteError(RemediationError):
    """A required audit record could not be persisted."""

    kind = "audit_unavailable"


REJECTED_STATUSES = frozenset({400, 409, 410, 422})


def _github_message(exc: GithubException) -> str:
    data = exc.data if isinstance(exc.data, dict) else {}
    return str(data.get("message") or exc.status)


def classify_upstream_error(exc: Exception, resource: str) -> RemediationError:
    """Map a GitHub or transport exception onto the service taxonomy."""

    if isinstance(exc, RemediationError):
        return exc
    if isinstance(exc, RateLimitExceededException):
        return UpstreamTransientError(f"GitHub rate limit exceeded for {resource}", resource=resource)
    if isinstance(exc, GithubException):
        status = exc.status or 0
        if status == 404:
            return UpstreamNotFoundError(f"Not found: {resource}", resource=resource)
        if status in (401, 403):
            return UpstreamAccessDeniedError(f"Repository access denied: {resource}", resource=resource)
        if status in REJECTED_STATUSES:
            return UpstreamRejectedError(
                f"GitHub rejected the request for {resource}: {_github_message(exc)}", resource=resource
            )
        return UpstreamTransientError(f"GitHub API error {status} for {resource}", resource=resource)
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status == 404:
            return UpstreamNotFoundError(f"Not found: {resource}", resource=resource)
        if status in (401, 403):
            return UpstreamAccessDeniedError(f"Repository access denied: {resource}", resource=resource)
        if status in REJECTED_STATUSES:
            return UpstreamRejectedError(f"HTTP {status} rejected for {resource}", resource=resource)
        return UpstreamTransientError(f"HTTP {status} for {resource}", resource=resource)
    if isinstance(exc, (requests.RequestException, TimeoutError, ConnectionError)):
        return UpstreamTransientError(f"Transport failure for {resource}: {exc}", resource=resource)
    return UpstreamTransientError(f"Unexpected upstream failure for {resource}: {exc}", resource=resource)
