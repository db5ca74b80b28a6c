"""Checks triage: classify failing checks with bounded, normalized log evidence."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from hashlib import sha256
from typing import Iterable, Optional, Sequence

from redis.exceptions import RedisError

from app.core.config import settings
from app.core.context import CallContext
from app.core.errors import RemediationError
from app.github.evidence import GitHubEvidenceCollector
from app.models.domain import (
    ActionType,
    CheckConclusion,
    CheckEvidence,
    ChecksRollup,
    FailureClass,
    FailureV1,
    JobEvidence,
    LogExcerpt,
    NextAction,
    TriageReport,
    TriageSummary,
)
from app.repositories.attempt_ledger import AttemptLedger
from app.telemetry.audit import AuditSink
from app.telemetry.metrics import record_decision

_logger = logging.getLogger(__name__)

MIN_LOG_BYTES = 1024
MIN_STEPS = 1
PRIMARY_SIGNAL_MAX_CHARS = 200
HASH_LENGTH = 16

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_GROUP_MARKER = re.compile(r"^(?:\S+[ \t])?##\[group\]", re.MULTILINE)
_TIMESTAMP = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?")
_CLOCK = re.compile(r"\d{2}:\d{2}:\d{2}(?:\.\d+)?")
_LINE_NUMBER = re.compile(r"^\s*\d+\s*[|:]", re.MULTILINE)
_ADDRESS = re.compile(r"0x[0-9a-fA-F]+")

_ERROR_LINE_PATTERNS = (
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"failed:", re.IGNORECASE),
    re.compile(r"failure:", re.IGNORECASE),
    re.compile(r"exception:", re.IGNORECASE),
    re.compile("[✗×❌]"),
    re.compile(r"FAIL"),
    re.compile(r"ERROR"),
)
_TRANSIENT_WORDS = ("rate limit", "timeout", "timed out", "network", "quota", "econnrefused", "econnreset")


@dataclass(frozen=True)
class ClassificationRule:
    failure_class: FailureClass
    name_pattern: re.Pattern
    log_pattern: re.Pattern


# Evaluated in order; name rules for every class run before any log rule.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        FailureClass.LINT,
        re.compile(r"\b(lint|eslint|ruff|flake8|pylint|prettier|format|style|stylelint|golangci)\b", re.IGNORECASE),
        re.compile(
            r"(eslint|prettier --check|ruff check|flake8|pylint|golangci-lint|stylelint|\d+ problems? \(\d+ errors?"
            r"|would reformat|Code style issues)",
            re.IGNORECASE,
        ),
    ),
    ClassificationRule(
        FailureClass.E2E,
        re.compile(r"\b(e2e|end-to-end|playwright|cypress|selenium|browser)\b", re.IGNORECASE),
        re.compile(r"(playwright|cypress|selenium|webdriver|chromium|page\.goto|browserType\.launch)", re.IGNORECASE),
    ),
    ClassificationRule(
        FailureClass.TEST,
        re.compile(r"\b(test|tests|unit|pytest|jest|vitest|spec|coverage)\b", re.IGNORECASE),
        re.compile(
            r"(Tests?:\s+\d+ failed|\d+ failed, \d+ passed|FAILED tests?/|AssertionError|assert .* ==|jest|vitest"
            r"|pytest|--- FAIL:|expect\(.*\)\.to)",
            re.IGNORECASE,
        ),
    ),
    ClassificationRule(
        FailureClass.BUILD,
        re.compile(r"\b(build|compile|typecheck|tsc|webpack|bundle|docker build)\b", re.IGNORECASE),
        re.compile(
            r"(error TS\d+|error\[E\d+\]|error CS\d+|compilation failed|cannot find module|Module not found"
            r"|undefined reference|SyntaxError|BUILD FAILED|make: \*\*\*|npm ERR! code ELIFECYCLE|tsc)",
            re.IGNORECASE,
        ),
    ),
    ClassificationRule(
        FailureClass.DEPLOY,
        re.compile(r"\b(deploy|deployment|release|publish|rollout|cdk|terraform|helm)\b", re.IGNORECASE),
        re.compile(
            r"(cdk deploy|terraform apply|helm upgrade|kubectl apply|UPDATE_ROLLBACK|CREATE_FAILED|deployment failed"
            r"|ROLLBACK_COMPLETE)",
            re.IGNORECASE,
        ),
    ),
    ClassificationRule(
        FailureClass.INFRA,
        re.compile(r"\b(infra|runner|setup|cache|checkout)\b", re.IGNORECASE),
        re.compile(
            r"(ECONNRESET|ECONNREFUSED|ETIMEDOUT|rate limit|503 Service Unavailable|502 Bad Gateway|No space left on device"
            r"|runner has received a shutdown signal|lost communication with the server|timed out|network is unreachable"
            r"|Could not resolve host)",
            re.IGNORECASE,
        ),
    ),
)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def bound_log(
    raw: bytes | str, max_bytes: int, max_steps: int, *, clipped: bool = False
) -> tuple[str, bool, int, int]:
    """Cap a log to its last ``max_bytes`` bytes and last ``max_steps`` step sections.

    Returns ``(text, truncated, byte_count, step_count)``. When the byte cap cuts into a line,
    that partial first line is dropped. Pass ``clipped=True`` when ``raw`` is already a tail
    cut by the downloader.
    """

    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    truncated = clipped
    if len(data) > max_bytes:
        data = data[-max_bytes:]
        truncated = True
    text = data.decode("utf-8", errors="replace")
    if truncated and "\n" in text:
        text = text.split("\n", 1)[1]
    text = _ANSI_ESCAPE.sub("", text)

    starts = [match.start() for match in _GROUP_MARKER.finditer(text)]
    if not starts or starts[0] != 0:
        starts.insert(0, 0)
    sections = [text[start:end] for start, end in zip(starts, starts[1:] + [len(text)])]
    sections = [section for section in sections if section.strip()]
    if len(sections) > max_steps:
        sections = sections[-max_steps:]
        truncated = True
    bounded = "".join(sections)
    return bounded, truncated, len(bounded.encode("utf-8")), len(sections)


def normalize_excerpt(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = _TIMESTAMP.sub("<TIMESTAMP>", text)
    text = _CLOCK.sub("<TIME>", text)
    text = _LINE_NUMBER.sub("<LINE>:", text)
    text = _ADDRESS.sub("<ADDR>", text)
    text = text.replace("\t", "  ")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip()


def hash_excerpt(text: str) -> str:
    return sha256(normalize_excerpt(text).encode("utf-8")).hexdigest()[:HASH_LENGTH]


def failure_signal(check_name: str, conclusion: Optional[str], excerpt_hash: str) -> str:
    material = f"{check_name}\n{conclusion or 'none'}\n{excerpt_hash}"
    return sha256(material.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def combine_signals(signals: Iterable[str]) -> Optional[str]:
    """One signal for a whole triage report, independent of check ordering."""

    ordered = sorted(signals)
    if not ordered:
        return None
    return sha256("\n".join(ordered).encode("utf-8")).hexdigest()[:HASH_LENGTH]


def classify_failure(
    check_name: str,
    failed_steps: Sequence[str],
    conclusion: Optional[str],
    excerpt: str,
) -> FailureClass:
    names = " ".join([check_name, *failed_steps])
    for rule in CLASSIFICATION_RULES:
        if rule.name_pattern.search(names):
            return rule.failure_class
    if conclusion == CheckConclusion.TIMED_OUT.value:
        return FailureClass.INFRA
    for rule in CLASSIFICATION_RULES:
        if rule.log_pattern.search(excerpt):
            return rule.failure_class
    return FailureClass.UNKNOWN


def extract_primary_signal(excerpt: str, check_name: str) -> str:
    lines = [line.strip() for line in excerpt.split("\n") if line.strip()]
    for line in lines:
        if any(pattern.search(line) for pattern in _ERROR_LINE_PATTERNS):
            return line[:PRIMARY_SIGNAL_MAX_CHARS]
    if lines:
        return lines[0][:PRIMARY_SIGNAL_MAX_CHARS]
    return f"Check failed: {check_name}"


def recommend_next_action(
    failure_class: FailureClass,
    conclusion: Optional[str],
    primary_signal: str,
) -> tuple[NextAction, str]:
    if conclusion in (CheckConclusion.TIMED_OUT.value, CheckConclusion.CANCELLED.value):
        return NextAction.RERUN, "Check timed out or was cancelled, likely transient"
    if failure_class in (FailureClass.INFRA, FailureClass.DEPLOY):
        return NextAction.HOLD, "Infrastructure or deployment issue may require manual intervention"
    lowered = primary_signal.lower()
    if any(word in lowered for word in _TRANSIENT_WORDS):
        return NextAction.RERUN, "Transient network or quota issue detected"
    return NextAction.PROMPT, f"{failure_class.value} failure is likely fixable by a code change"


def summarize(failures: Sequence[FailureV1]) -> TriageSummary:
    if not failures:
        overall = ChecksRollup.GREEN
    elif all(failure.next_action == NextAction.RERUN for failure in failures):
        overall = ChecksRollup.YELLOW
    else:
        overall = ChecksRollup.RED
    runs = {failure.run_id for failure in failures if failure.run_id is not None}
    return TriageSummary(overall=overall, failing_checks=len(failures), failing_runs=len(runs))


class TriageService:
    """Builds a deterministic :class:`TriageReport` for a pull request."""

    def __init__(
        self,
        collector: GitHubEvidenceCollector,
        *,
        ledger: AttemptLedger | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self._collector = collector
        self._ledger = ledger
        self._audit = audit

    def triage(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        workflow_run_id: int | None = None,
        max_log_bytes: int | None = None,
        max_steps: int | None = None,
        context: CallContext | None = None,
    ) -> TriageReport:
        max_log_bytes = clamp(
            max_log_bytes or settings.triage_default_max_log_bytes, MIN_LOG_BYTES, settings.triage_max_log_bytes_cap
        )
        max_steps = clamp(max_steps or settings.triage_default_max_steps, MIN_STEPS, settings.triage_max_steps_cap)

        pull = self._collector.fetch_pull(owner, repo, pr_number)
        if workflow_run_id is not None:
            self._collector.fetch_workflow_run(owner, repo, workflow_run_id)
        checks = self._collector.list_check_runs(owner, repo, pull.head_sha, run_id=workflow_run_id)
        jobs_by_run: dict[int, dict[int, JobEvidence]] = {}

        failures = []
        for check in sorted(checks, key=lambda item: item.id):
            if not check.is_completed or check.is_passing:
                continue
            job = self._job_for(owner, repo, check, jobs_by_run)
            failures.append(self._analyze(owner, repo, check, job, max_log_bytes, max_steps))

        report = TriageReport(
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            head_sha=pull.head_sha,
            workflow_run_id=workflow_run_id,
            failures=tuple(failures),
            summary=summarize(failures),
            aggregate_signal=combine_signals(failure.failure_signal for failure in failures),
        )
        self._remember_signal(owner, repo, pr_number, report)
        record_decision("triage", report.summary.overall.value)
        if self._audit is not None and context is not None:
            self._audit.record(
                action_type=ActionType.CHECKS_TRIAGE.value,
                action_status=report.summary.overall.value,
                repository=f"{owner}/{repo}",
                pr_number=pr_number,
                request_id=context.request_id,
                lawbook_hash=context.lawbook_hash,
                actor=context.actor,
                validation_result={
                    "head_sha": report.head_sha,
                    "failing_checks": report.summary.failing_checks,
                    "failure_classes": sorted({failure.failure_class.value for failure in failures}),
                    "aggregate_signal": report.aggregate_signal,
                },
            )
        return report

    def _job_for(
        self,
        owner: str,
        repo: str,
        check: CheckEvidence,
        cache: dict[int, dict[int, JobEvidence]],
    ) -> Optional[JobEvidence]:
        if check.run_id is None:
            return None
        if check.run_id not in cache:
            try:
                cache[check.run_id] = {job.id: job for job in self._collector.list_jobs(owner, repo, check.run_id)}
            except RemediationError as exc:
                if exc.kind == "access_denied":
                    raise
                _logger.warning("Jobs for run %s unavailable (%s); continuing without step data", check.run_id, exc)
                cache[check.run_id] = {}
        return cache[check.run_id].get(check.id)

    def _analyze(
        self,
        owner: str,
        repo: str,
        check: CheckEvidence,
        job: Optional[JobEvidence],
        max_log_bytes: int,
        max_steps: int,
    ) -> FailureV1:
        excerpt = self._excerpt(owner, repo, check, max_log_bytes, max_steps)
        failed_steps = tuple(
            step.name
            for step in (job.steps if job else ())
            if step.conclusion and step.conclusion not in ("success", "skipped", "neutral")
        )
        failure_class = classify_failure(check.name, failed_steps, check.conclusion, excerpt.text)
        excerpt_hash = hash_excerpt(excerpt.text)
        primary = extract_primary_signal(excerpt.text, check.name)
        next_action, rationale = recommend_next_action(failure_class, check.conclusion, primary)
        return FailureV1(
            check_id=check.id,
            check_name=check.name,
            conclusion=check.conclusion,
            run_id=check.run_id,
            failure_class=failure_class,
            failed_steps=failed_steps,
            url=check.url,
            excerpt=excerpt,
            excerpt_hash=excerpt_hash,
            failure_signal=failure_signal(check.name, check.conclusion, excerpt_hash),
            primary_signal=primary,
            next_action=next_action,
            rationale=rationale,
        )

    def _excerpt(
        self,
        owner: str,
        repo: str,
        check: CheckEvidence,
        max_log_bytes: int,
        max_steps: int,
    ) -> LogExcerpt:
        candidates: list[tuple[str, bytes | str, bool]] = []
        if check.run_id is not None:
            try:
                raw, clipped = self._collector.download_job_log(owner, repo, check.id, max_log_bytes)
                candidates.append(("job_log", raw, clipped))
            except RemediationError as exc:
                _logger.warning("Log for check %s unavailable (%s); using check output", check.id, exc.kind)
        candidates.append(("output_summary", check.output_summary or "", False))
        candidates.append(("output_title", check.output_title or "", False))

        for source, raw, clipped in candidates:
            text, truncated, byte_count, step_count = bound_log(raw, max_log_bytes, max_steps, clipped=clipped)
            if text.strip():
                return LogExcerpt(
                    text=text,
                    source=source,
                    truncated=truncated,
                    byte_count=byte_count,
                    step_count=step_count,
                )
        synthetic = f"Check {check.name} concluded {check.conclusion or 'without a conclusion'}"
        return LogExcerpt(text=synthetic, source="synthetic", byte_count=len(synthetic.encode("utf-8")), step_count=1)

    def _remember_signal(self, owner: str, repo: str, pr_number: int, report: TriageReport) -> None:
        if self._ledger is None or (report.aggregate_signal is None and report.workflow_run_id is not None):
            return
        try:
            if report.aggregate_signal is None:
                self._ledger.clear_failure_signals(f"{owner}/{repo}", pr_number)
            else:
                self._ledger.record_failure_signal(f"{owner}/{repo}", pr_number, report.aggregate_signal)
        except RedisError:
            _logger.exception("Could not record failure signal for %s/%s#%s", owner, repo, pr_number)
