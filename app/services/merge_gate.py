"""Merge gate: fail-closed guards in front of a pull request merge."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from app.core.config import settings
from app.core.context import CallContext
from app.core.errors import AuditWriteError, RemediationError
from app.github.evidence import GitHubEvidenceCollector
from app.models.domain import (
    ActionConfig,
    ActionType,
    AuthorizationResult,
    ChecksRollup,
    MergeDecision,
    MergeMethod,
    MergeOutcome,
    PreconditionSnapshot,
    ReviewsRollup,
)
from app.services.registry import RegistryService
from app.services.rollup import (
    approvers,
    failing_check_names,
    pending_check_names,
    rollup_checks,
    rollup_reviews,
)
from app.telemetry.audit import AuditSink
from app.telemetry.metrics import record_decision

_logger = logging.getLogger(__name__)


def approval_message(owner: str, repo: str, pr_number: int) -> bytes:
    return f"merge:{owner}/{repo}#{pr_number}".lower().encode("utf-8")


def verify_approval_token(token: Optional[str], owner: str, repo: str, pr_number: int) -> tuple[bool, str]:
    """Check a human-asserted approval token.

    With ``approval_public_keys`` configured the token must be ``<key_id>.<base64 signature>``
    over :func:`approval_message`; otherwise any sufficiently long token is accepted.
    """

    if not token or not token.strip():
        return False, "No approval token supplied; merges require explicit human approval"
    token = token.strip()
    keys = settings.approval_public_keys
    if keys:
        key_id, sep, signature = token.partition(".")
        if not sep or not signature:
            return False, "Approval token must be '<key_id>.<signature>'"
        public_key = keys.get(key_id)
        if not public_key:
            return False, f"Approval key '{key_id}' is not trusted"
        try:
            VerifyKey(base64.b64decode(public_key)).verify(
                approval_message(owner, repo, pr_number), base64.b64decode(signature)
            )
        except (BadSignatureError, ValueError, binascii.Error):
            return False, "Approval token signature is invalid for this pull request"
        return True, f"Approval signed by {key_id}"
    if len(token) < settings.approval_token_min_length:
        return False, f"Approval token shorter than {settings.approval_token_min_length} characters"
    return True, "Approval token accepted"


class MergeGateService:
    """Validates guards in order and merges only when every one of them passes."""

    def __init__(
        self,
        collector: GitHubEvidenceCollector,
        registry: RegistryService,
        audit: AuditSink | None = None,
    ) -> None:
        self._collector = collector
        self._registry = registry
        self._audit = audit

    def snapshot(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        config: ActionConfig | None = None,
    ) -> PreconditionSnapshot:
        pull = self._collector.fetch_pull(owner, repo, pr_number)
        checks = self._collector.list_check_runs(owner, repo, pull.head_sha)
        reviews = self._collector.list_reviews(owner, repo, pr_number)

        blocking = {label.lower() for label in settings.merge_blocking_labels}
        if config is not None:
            blocking.update(label.lower() for label in config.blocking_labels)
        present = tuple(sorted(label for label in pull.labels if label.lower() in blocking))
        checks_rollup = rollup_checks(checks)
        reviews_rollup = rollup_reviews(reviews)

        missing: list[str] = []
        if pull.state != "open":
            missing.append(f"Pull request is {pull.state}")
        if checks_rollup != ChecksRollup.GREEN:
            missing.append(f"Checks are {checks_rollup.value}, not GREEN")
        if reviews_rollup != ReviewsRollup.APPROVED:
            missing.append(f"Reviews are {reviews_rollup.value}, not APPROVED")
        if pull.mergeable is not True:
            missing.append("GitHub does not report the pull request as mergeable")
        if pull.draft:
            missing.append("Pull request is a draft")
        if present:
            missing.append(f"Blocking labels present: {', '.join(present)}")

        return PreconditionSnapshot(
            head_sha=pull.head_sha,
            head_ref=pull.head_ref,
            checks=checks_rollup,
            reviews=reviews_rollup,
            mergeable=pull.mergeable,
            draft=pull.draft,
            labels=tuple(sorted(pull.labels)),
            blocking_labels=present,
            failing_checks=failing_check_names(checks),
            pending_checks=pending_check_names(checks),
            approvals=approvers(reviews),
            missing=tuple(missing),
        )

    def _snapshot_if_reachable(
        self, owner: str, repo: str, pr_number: int, config: ActionConfig | None
    ) -> PreconditionSnapshot | None:
        try:
            return self.snapshot(owner, repo, pr_number, config)
        except RemediationError as exc:
            _logger.warning("Precondition snapshot for %s/%s#%s unavailable (%s)", owner, repo, pr_number, exc.kind)
            return None

    def merge(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        approval_token: str | None = None,
        context: CallContext | None = None,
    ) -> MergeOutcome:
        repository = f"{owner}/{repo}"

        authorization = self._registry.authorize(repository, ActionType.MERGE_PR)
        if not authorization.allowed:
            outcome = MergeOutcome(decision=MergeDecision.BLOCKED_REGISTRY, reasons=[authorization.reason])
            return self._finish(outcome, repository, pr_number, authorization, context)

        config = authorization.config
        method = (config.merge_method if config and config.merge_method else None) or MergeMethod(
            settings.default_merge_method
        )

        if settings.is_production and not settings.production_merge_enabled:
            outcome = MergeOutcome(
                decision=MergeDecision.BLOCKED_PRODUCTION,
                merge_method=method,
                reasons=["Production merges are disabled; set REMEDIATION_PRODUCTION_MERGE_ENABLED to allow them"],
                precondition_snapshot=self._snapshot_if_reachable(owner, repo, pr_number, config),
            )
            return self._finish(outcome, repository, pr_number, authorization, context)

        approved, approval_reason = verify_approval_token(approval_token, owner, repo, pr_number)
        if not approved:
            outcome = MergeOutcome(
                decision=MergeDecision.BLOCKED_NO_APPROVAL,
                merge_method=method,
                reasons=[approval_reason],
                precondition_snapshot=self._snapshot_if_reachable(owner, repo, pr_number, config),
            )
            return self._finish(outcome, repository, pr_number, authorization, context)

        snapshot = self.snapshot(owner, repo, pr_number, config)

        if not snapshot.satisfied:
            outcome = MergeOutcome(
                decision=MergeDecision.BLOCKED_PRECONDITIONS,
                merge_method=method,
                reasons=list(snapshot.missing),
                precondition_snapshot=snapshot,
            )
            return self._finish(outcome, repository, pr_number, authorization, context)

        if self._audit is None:
            raise AuditWriteError("No audit sink configured; refusing an unauditable merge", resource=repository)
        intent = self._audit.record(
            action_type=ActionType.MERGE_PR.value,
            action_status="MERGE_AUTHORIZED",
            repository=repository,
            pr_number=pr_number,
            request_id=context.request_id if context else "unknown",
            authorization=authorization,
            lawbook_hash=context.lawbook_hash if context else None,
            actor=context.actor if context else "system",
            validation_result={
                "approval": approval_reason,
                "merge_method": method.value,
                "precondition_snapshot": snapshot.model_dump(mode="json"),
            },
            required=True,
        )

        merged, commit_sha, message = self._collector.merge(
            owner, repo, pr_number, method=method, expected_head_sha=snapshot.head_sha
        )
        if not merged:
            outcome = MergeOutcome(
                decision=MergeDecision.BLOCKED_PRECONDITIONS,
                merge_method=method,
                reasons=[f"GitHub did not merge the pull request: {message}"],
                precondition_snapshot=snapshot,
                audit_event_id=intent.audit_event_id if intent else None,
            )
            return self._finish(outcome, repository, pr_number, authorization, context)

        outcome = MergeOutcome(
            decision=MergeDecision.MERGED,
            merged=True,
            merge_method=method,
            commit_sha=commit_sha,
            reasons=[approval_reason, f"Merged with method {method.value}"],
            precondition_snapshot=snapshot,
            audit_event_id=intent.audit_event_id if intent else None,
        )
        if config is not None and config.branch_delete_enabled:
            self._delete_branch(owner, repo, snapshot.head_ref, outcome)
        return self._finish(outcome, repository, pr_number, authorization, context)

    def _delete_branch(self, owner: str, repo: str, ref: str | None, outcome: MergeOutcome) -> None:
        if not ref:
            outcome.reasons.append("Head branch unknown; nothing deleted")
            return
        try:
            self._collector.delete_branch(owner, repo, ref)
        except RemediationError as exc:
            _logger.exception("Branch deletion failed for %s/%s heads/%s", owner, repo, ref)
            outcome.reasons.append(f"Branch deletion failed ({exc.kind})")
            return
        outcome.branch_deleted = True
        outcome.reasons.append(f"Deleted branch {ref}")

    def _finish(
        self,
        outcome: MergeOutcome,
        repository: str,
        pr_number: int,
        authorization: AuthorizationResult,
        context: CallContext | None,
    ) -> MergeOutcome:
        _logger.info("Merge gate for %s#%s: %s", repository, pr_number, outcome.decision.value)
        record_decision("merge_gate", outcome.decision.value)
        if self._audit is not None and context is not None:
            record = self._audit.record(
                action_type=ActionType.MERGE_PR.value,
                action_status=outcome.decision.value,
                repository=repository,
                pr_number=pr_number,
                request_id=context.request_id,
                authorization=authorization,
                lawbook_hash=context.lawbook_hash,
                actor=context.actor,
                validation_result={
                    "authorization": authorization.reason,
                    "reasons": outcome.reasons,
                    "merged": outcome.merged,
                    "commit_sha": outcome.commit_sha,
                    "branch_deleted": outcome.branch_deleted,
                },
            )
            if record is not None and outcome.audit_event_id is None:
                outcome.audit_event_id = record.audit_event_id
        return outcome
