"""Review-and-wait poller: request reviews, then poll until a terminal rollup or the deadline."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from app.core.config import settings
from app.core.context import CallContext
from app.core.errors import UpstreamTransientError
from app.github.evidence import GitHubEvidenceCollector
from app.models.domain import (
    ActionType,
    AuthorizationResult,
    ChecksRollup,
    PollingStats,
    PollStatus,
    ReviewsRollup,
    ReviewWaitResult,
    WaitDecision,
    WaitEvidence,
    WaitRollup,
)
from app.services.registry import RegistryService
from app.services.rollup import rollup_checks, rollup_reviews
from app.telemetry.audit import AuditSink
from app.telemetry.metrics import record_decision, record_wait

_logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def clamp_wait(max_wait_seconds: int | None, poll_seconds: int | None) -> tuple[int, int]:
    max_wait = max_wait_seconds if max_wait_seconds is not None else settings.wait_default_max_seconds
    poll = poll_seconds if poll_seconds is not None else settings.wait_default_poll_seconds
    max_wait = max(0, min(max_wait, settings.wait_max_seconds_cap))
    poll = max(settings.wait_min_poll_seconds, min(poll, settings.wait_max_poll_seconds))
    return max_wait, poll


def termination_reason(rollup: WaitRollup) -> Optional[str]:
    if rollup.checks == ChecksRollup.RED:
        return "checks_failed"
    if rollup.reviews == ReviewsRollup.CHANGES_REQUESTED:
        return "changes_requested"
    if rollup.checks == ChecksRollup.GREEN and rollup.reviews == ReviewsRollup.APPROVED:
        return "success"
    return None


class ReviewWaitService:
    """Cooperative polling loop bound to a deadline and a cancel event.

    Blocking GitHub calls run in worker threads. ``clock`` and ``sleep`` are injectable so the
    schedule can be driven without real time passing; the default sleep wakes early when the
    cancel event is set.
    """

    def __init__(
        self,
        collector: GitHubEvidenceCollector,
        registry: RegistryService,
        audit: AuditSink | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._collector = collector
        self._registry = registry
        self._audit = audit
        self._clock = clock or time.monotonic
        self._sleep = sleep

    async def request_and_wait(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        reviewers: Sequence[str],
        *,
        max_wait_seconds: int | None = None,
        poll_seconds: int | None = None,
        cancel_event: asyncio.Event | None = None,
        context: CallContext | None = None,
    ) -> ReviewWaitResult:
        repository = f"{owner}/{repo}"
        max_wait, poll = clamp_wait(max_wait_seconds, poll_seconds)
        cancel_event = cancel_event or asyncio.Event()

        authorization = self._registry.authorize(repository, ActionType.REQUEST_REVIEW)
        if not authorization.allowed:
            result = ReviewWaitResult(decision=WaitDecision.BLOCKED, reasons=[authorization.reason])
            return self._finish(result, repository, pr_number, authorization, context)

        requested = await asyncio.to_thread(
            self._collector.request_reviewers, owner, repo, pr_number, list(reviewers)
        )
        reasons = [f"Requested review from {', '.join(requested)}" if requested else "All reviewers already requested"]

        started = self._clock()
        deadline = started + max_wait
        stats = PollingStats()
        rollup = WaitRollup()
        evidence = WaitEvidence()

        while True:
            if cancel_event.is_set():
                stats.status = PollStatus.CANCELLED
                stats.termination_reason = "cancelled"
                break

            stats.total_polls += 1
            try:
                rollup, evidence = await asyncio.to_thread(self._poll_once, owner, repo, pr_number, reviewers)
            except UpstreamTransientError as exc:
                stats.failed_polls += 1
                _logger.warning("Poll %d for %s#%s failed: %s", stats.total_polls, repository, pr_number, exc)
            else:
                reason = termination_reason(rollup)
                if reason is not None:
                    stats.terminated_early = True
                    stats.termination_reason = reason
                    stats.status = PollStatus.TERMINATED_EARLY
                    break

            now = self._clock()
            if now >= deadline:
                stats.timed_out = True
                stats.termination_reason = "timeout"
                stats.status = PollStatus.TIMED_OUT
                break
            await self._wait(min(poll, max(deadline - now, 0.0)), cancel_event)

        stats.elapsed_seconds = round(self._clock() - started, 3)
        reasons.append(self._describe(stats, rollup))
        result = ReviewWaitResult(
            decision=WaitDecision.COMPLETED,
            reasons=reasons,
            requested_reviewers=list(requested),
            rollup=rollup,
            evidence=evidence,
            polling_stats=stats,
        )
        record_wait(stats.total_polls, stats.elapsed_seconds, stats.status.value)
        return self._finish(result, repository, pr_number, authorization, context)

    def _poll_once(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        reviewers: Sequence[str],
    ) -> tuple[WaitRollup, WaitEvidence]:
        pull = self._collector.fetch_pull(owner, repo, pr_number)
        checks = self._collector.list_check_runs(owner, repo, pull.head_sha)
        reviews = self._collector.list_reviews(owner, repo, pr_number)
        rollup = WaitRollup(
            checks=rollup_checks(checks),
            reviews=rollup_reviews(reviews, reviewers),
            mergeable=pull.mergeable,
        )
        return rollup, WaitEvidence(checks=checks, reviews=reviews)

    async def _wait(self, seconds: float, cancel_event: asyncio.Event) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    @staticmethod
    def _describe(stats: PollingStats, rollup: WaitRollup) -> str:
        if stats.status == PollStatus.CANCELLED:
            return f"Cancelled after {stats.total_polls} poll(s); returning last rollup"
        if stats.status == PollStatus.TIMED_OUT:
            return (
                f"Timed out after {stats.total_polls} poll(s) with checks {rollup.checks.value} "
                f"and reviews {rollup.reviews.value}"
            )
        return f"Terminated early ({stats.termination_reason}) after {stats.total_polls} poll(s)"

    def _finish(
        self,
        result: ReviewWaitResult,
        repository: str,
        pr_number: int,
        authorization: AuthorizationResult,
        context: CallContext | None,
    ) -> ReviewWaitResult:
        status = result.polling_stats.status.value if result.decision == WaitDecision.COMPLETED else "blocked"
        _logger.info("Review wait for %s#%s finished: %s", repository, pr_number, status)
        record_decision("review_wait", status)
        if self._audit is not None and context is not None:
            record = self._audit.record(
                action_type=ActionType.REQUEST_REVIEW.value,
                action_status=status,
                repository=repository,
                pr_number=pr_number,
                request_id=context.request_id,
                authorization=authorization,
                lawbook_hash=context.lawbook_hash,
                actor=context.actor,
                validation_result={
                    "authorization": authorization.reason,
                    "requested_reviewers": result.requested_reviewers,
                    "rollup": result.rollup.model_dump(mode="json"),
                    "polling_stats": result.polling_stats.model_dump(mode="json"),
                },
            )
            if record is not None:
                result.audit_event_id = record.audit_event_id
        return result
