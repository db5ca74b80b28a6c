from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from clients.python import RemediationClient, run_remediation_cycle
from clients.python.loop import OUTCOME_GREEN, OUTCOME_PENDING, OUTCOME_RERUN, CycleResult

PASSING_OUTCOMES = {OUTCOME_GREEN, OUTCOME_PENDING, OUTCOME_RERUN}


def split_repository(value: str) -> tuple[str, str]:
    owner, sep, repo = value.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise argparse.ArgumentTypeError(f"expected owner/repo, got {value!r}")
    return owner, repo


def summarize(result: CycleResult) -> dict:
    summary = {
        "outcome": result.outcome,
        "request_id": result.triage.get("request_id"),
        "overall": result.triage["report"]["summary"]["overall"],
        "failures": [
            {
                "check_name": failure["check_name"],
                "failure_class": failure["failure_class"],
                "next_action": failure["next_action"],
            }
            for failure in result.triage["report"]["failures"]
        ],
    }
    if result.stop_decision is not None:
        verdict = result.stop_decision["stop_decision"]
        summary["stop_decision"] = {
            "decision": verdict["decision"],
            "reason_code": verdict.get("reason_code"),
            "recommended_next_step": verdict["recommended_next_step"],
        }
    if result.rerun is not None:
        summary["rerun"] = {
            "decision": result.rerun["result"]["decision"],
            "jobs": [job["job_name"] for job in result.rerun["result"]["jobs"] if job["action"] == "RERUN"],
        }
    return summary


def main(argv: list[str] | None = None, *, transport=None) -> int:
    parser = argparse.ArgumentParser(description="Run one CI remediation cycle for a pull request")
    parser.add_argument("--api-url", required=True)
    parser.add_argument("--api-token", required=True)
    parser.add_argument("--repo", required=True, type=split_repository)
    parser.add_argument("--pr", required=True, type=int)
    parser.add_argument("--run-id", type=int, default=None)
    parser.add_argument("--max-attempts", type=int, default=None)
    args = parser.parse_args(argv)

    owner, repo = args.repo
    headers = {"Authorization": f"Bearer {args.api_token}"}
    with RemediationClient(args.api_url, headers=headers, transport=transport) as client:
        result = run_remediation_cycle(
            client,
            owner,
            repo,
            args.pr,
            workflow_run_id=args.run_id,
            max_attempts=args.max_attempts,
        )

    summary = summarize(result)
    write_response_path = os.getenv("REMEDIATION_WRITE_RESPONSE_PATH")
    if write_response_path:
        out_path = Path(write_response_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(summary, indent=2) + "\n", encoding="utf-8")
    print(json.dumps(summary, indent=2))
    return 0 if result.outcome in PASSING_OUTCOMES else 1


if __name__ == "__main__":
    raise SystemExit(main())
