"""Aggregate check and review evidence into rollup states."""

from __future__ import annotations

from typing import Iterable, Sequence

from app.models.domain import (
    CheckConclusion,
    CheckEvidence,
    ChecksRollup,
    ReviewEvidence,
    ReviewsRollup,
    ReviewState,
)

FAILING_CONCLUSIONS = frozenset(
    {
        CheckConclusion.FAILURE.value,
        CheckConclusion.TIMED_OUT.value,
        CheckConclusion.ACTION_REQUIRED.value,
        CheckConclusion.CANCELLED.value,
        CheckConclusion.STARTUP_FAILURE.value,
    }
)

# COMMENTED and PENDING reviews never replace an earlier decisive review.
_DECISIVE_STATES = frozenset(
    {ReviewState.APPROVED.value, ReviewState.CHANGES_REQUESTED.value, ReviewState.DISMISSED.value}
)


def is_failing(check: CheckEvidence) -> bool:
    return check.is_completed and check.conclusion in FAILING_CONCLUSIONS


def rollup_checks(checks: Sequence[CheckEvidence]) -> ChecksRollup:
    if any(is_failing(check) for check in checks):
        return ChecksRollup.RED
    if checks and all(check.is_passing for check in checks):
        return ChecksRollup.GREEN
    return ChecksRollup.YELLOW


def failing_check_names(checks: Iterable[CheckEvidence]) -> tuple[str, ...]:
    return tuple(sorted(check.name for check in checks if is_failing(check)))


def pending_check_names(checks: Iterable[CheckEvidence]) -> tuple[str, ...]:
    return tuple(sorted(check.name for check in checks if not check.is_completed))


def latest_review_states(reviews: Sequence[ReviewEvidence]) -> dict[str, str]:
    """Latest decisive review state per reviewer (lower-cased login)."""

    ordered = sorted(reviews, key=lambda review: (review.submitted_at is None, review.submitted_at, review.id))
    states: dict[str, str] = {}
    for review in ordered:
        if review.state in _DECISIVE_STATES:
            states[review.reviewer.lower()] = review.state
    return states


def approvers(reviews: Sequence[ReviewEvidence]) -> tuple[str, ...]:
    return tuple(
        sorted(reviewer for reviewer, state in latest_review_states(reviews).items() if state == ReviewState.APPROVED.value)
    )


def rollup_reviews(reviews: Sequence[ReviewEvidence], requested: Sequence[str] = ()) -> ReviewsRollup:
    states = latest_review_states(reviews)
    if any(state == ReviewState.CHANGES_REQUESTED.value for state in states.values()):
        return ReviewsRollup.CHANGES_REQUESTED
    approved = {reviewer for reviewer, state in states.items() if state == ReviewState.APPROVED.value}
    wanted = {reviewer.lower() for reviewer in requested}
    if wanted:
        return ReviewsRollup.APPROVED if wanted <= approved else ReviewsRollup.PENDING
    return ReviewsRollup.APPROVED if approved else ReviewsRollup.PENDING
