from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from surfwright.cli import main
from surfwright.config import StateHandle, SurfwrightConfig


@pytest.fixture
def run_cli(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    config = SurfwrightConfig(state=StateHandle.at(tmp_path / "state"))

    def run(*argv: str) -> tuple[int, dict]:
        code = main(list(argv), config_factory=lambda: config)
        out = capsys.readouterr().out.strip().splitlines()
        assert len(out) == 1, out
        return code, json.loads(out[0])

    return run


VALID_PLAN = {
    "steps": [
        {"id": "open", "url": "https://example.test", "as": "page"},
        {"id": "repeat-until", "step": {"id": "count", "selector": ".row"}, "untilPath": "count", "untilGte": 3},
    ],
    "result": {"url": "steps.page.url"},
    "require": {"truthy": ["result.url"]},
}


def test_doctor_accepts_valid_plan(run_cli) -> None:
    code, report = run_cli("run", "--plan-json", json.dumps(VALID_PLAN), "--doctor")
    assert code == 0
    assert report["ok"] is True
    assert report["mode"] == "doctor"
    assert report["valid"] is True
    assert report["stepCount"] == 2
    assert report["resultMapFields"] == 1
    assert report["requireChecks"] == 1
    assert report["issues"] == []
    assert "repeat-until" in report["supportedSteps"]


def test_doctor_flags_invalid_plan(run_cli) -> None:
    plan = {"steps": [{"id": "open"}, {"id": "warp"}, {"id": "list", "as": "x"}, {"id": "list", "as": "x"}]}
    code, report = run_cli("run", "--plan-json", json.dumps(plan), "--doctor")
    assert code == 1
    assert report["valid"] is False
    assert [issue["path"] for issue in report["issues"]] == ["steps[0].url", "steps[1].id", "steps[3].as"]


def test_lint_errors_fail_run_before_touching_sessions(run_cli, tmp_path: Path) -> None:
    code, report = run_cli("run", "--plan-json", json.dumps({"steps": [{"id": "click"}]}))
    assert code == 1
    assert report["ok"] is False
    assert report["code"] == "E_QUERY_INVALID"
    assert report["message"] == "plan lint failed: steps[0] click requires text or selector"
    assert not (tmp_path / "state").exists()


def test_missing_plan_source(run_cli) -> None:
    code, report = run_cli("run", "--doctor")
    assert code == 1
    assert report["code"] == "E_QUERY_INVALID"
    assert report["message"] == "Provide one plan source: --plan, --plan-json, or --replay"


def test_plan_from_stdin(run_cli, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(VALID_PLAN)))
    code, report = run_cli("run", "--plan", "-", "--doctor")
    assert code == 0
    assert report["source"] == "stdin"


def test_bad_arguments_are_structured_errors(run_cli) -> None:
    code, report = run_cli("run", "--timeout-ms", "-5", "--doctor")
    assert code == 1
    assert report["code"] == "E_QUERY_INVALID"

    code, report = run_cli("launch-rockets")
    assert code == 1
    assert report["code"] == "E_QUERY_INVALID"


def test_maintenance_commands_on_empty_state(run_cli) -> None:
    code, report = run_cli("target", "prune", "--max-per-session", "10")
    assert code == 0
    assert report["maxPerSession"] == 10
    assert report["remaining"] == 0

    code, report = run_cli("state", "reconcile")
    assert code == 0
    assert report["sessions"]["scanned"] == 0

    code, report = run_cli("session", "list")
    assert code == 0
    assert report == {"ok": True, "activeSessionId": None, "sessions": []}

    code, report = run_cli("session", "clear", "--keep-processes")
    assert code == 0
    assert report["cleared"] == 0


def test_use_unknown_session(run_cli) -> None:
    code, report = run_cli("session", "use", "s-9")
    assert code == 1
    assert report["code"] == "E_SESSION_NOT_FOUND"
    assert report["retryable"] is False


def test_unexpected_errors_become_internal(run_cli, monkeypatch: pytest.MonkeyPatch) -> None:
    from surfwright import cli

    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(cli, "target_prune", boom)
    code, report = run_cli("target", "prune")
    assert code == 1
    assert report["code"] == "E_INTERNAL"
    assert report["message"] == "RuntimeError: disk on fire"


def test_prune_flags_are_accepted(run_cli) -> None:
    code, report = run_cli("session", "prune", "--keep-attached-unreachable", "--drop-managed-unreachable")
    assert code == 0
    assert report["scanned"] == 0

    code, report = run_cli("state", "reconcile", "--keep-attached-unreachable", "--max-per-session", "3")
    assert code == 0
    assert report["targets"]["maxPerSession"] == 3
