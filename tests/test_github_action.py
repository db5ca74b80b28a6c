from __future__ import annotations

import importlib.util
import json
from pathlib import Path

import httpx
import pytest

RUN_PATH = Path(__file__).resolve().parents[1] / "clients" / "github-action" / "run.py"


def _load_action():
    spec = importlib.util.spec_from_file_location("remediation_action", RUN_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _handler(stop: str):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer tkn"
        if request.url.path.endswith("/checks/triage"):
            failure = {
                "check_id": 3,
                "check_name": "build",
                "run_id": 44,
                "failure_class": "build",
                "next_action": "PROMPT",
            }
            return httpx.Response(
                200,
                json={"request_id": "rq_1", "report": {"summary": {"overall": "RED"}, "failures": [failure]}},
            )
        return httpx.Response(
            200,
            json={
                "stop_decision": {
                    "decision": stop,
                    "reason_code": "JOB_ATTEMPT_CEILING" if stop == "KILL" else None,
                    "recommended_next_step": "MANUAL_REVIEW" if stop == "KILL" else "PROMPT",
                }
            },
        )

    return handler


def test_action_fails_when_loop_halts(tmp_path, monkeypatch, capsys):
    action = _load_action()
    out = tmp_path / "out" / "summary.json"
    monkeypatch.setenv("REMEDIATION_WRITE_RESPONSE_PATH", str(out))

    code = action.main(
        ["--api-url", "http://svc", "--api-token", "tkn", "--repo", "acme/api", "--pr", "7"],
        transport=httpx.MockTransport(_handler("KILL")),
    )

    assert code == 1
    summary = json.loads(out.read_text(encoding="utf-8"))
    assert summary["outcome"] == "halted"
    assert summary["stop_decision"]["reason_code"] == "JOB_ATTEMPT_CEILING"
    assert json.loads(capsys.readouterr().out)["overall"] == "RED"


def test_action_reports_needs_fix(monkeypatch):
    action = _load_action()
    monkeypatch.delenv("REMEDIATION_WRITE_RESPONSE_PATH", raising=False)

    code = action.main(
        ["--api-url", "http://svc", "--api-token", "tkn", "--repo", "acme/api", "--pr", "7"],
        transport=httpx.MockTransport(_handler("CONTINUE")),
    )

    assert code == 1


def test_action_rejects_malformed_repository():
    action = _load_action()
    with pytest.raises(SystemExit):
        action.main(["--api-url", "http://svc", "--api-token", "t", "--repo", "acme", "--pr", "7"])
