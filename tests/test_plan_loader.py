from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from surfwright.errors import SurfwrightError
from surfwright.plan import load_plan

PLAN = {"steps": [{"id": "open", "url": "https://example.test"}], "result": {"url": "last.url"}}


def _code_and_message(**kwargs) -> tuple[str, str]:
    with pytest.raises(SurfwrightError) as exc:
        load_plan(**kwargs)
    return exc.value.code, exc.value.message


def test_exactly_one_source_is_required(tmp_path: Path) -> None:
    assert _code_and_message() == ("E_QUERY_INVALID", "Provide one plan source: --plan, --plan-json, or --replay")
    code, message = _code_and_message(plan_json=json.dumps(PLAN), replay_path=str(tmp_path / "r.json"))
    assert code == "E_QUERY_INVALID"
    assert message.startswith("Use exactly one plan source")


def test_inline_json_and_file(tmp_path: Path) -> None:
    loaded = load_plan(plan_json=json.dumps(PLAN))
    assert loaded.source == "inline-json"
    assert loaded.replay is None
    assert loaded.steps == PLAN["steps"]

    path = tmp_path / "plan.json"
    path.write_text(json.dumps(PLAN), encoding="utf-8")
    loaded = load_plan(plan_path=str(path))
    assert loaded.source == str(path)
    assert loaded.plan["result"] == {"url": "last.url"}


def test_stdin_plan() -> None:
    loaded = load_plan(plan_path="-", stdin_text=json.dumps(PLAN))
    assert loaded.source == "stdin"
    assert _code_and_message(plan_path="-", stdin_text="   \n") == ("E_QUERY_INVALID", "stdin plan is empty")


def test_replay_envelope(tmp_path: Path) -> None:
    artifact = tmp_path / "run.json"
    artifact.write_text(
        json.dumps({"kind": "run-artifact", "createdAt": "2024-05-01T10:00:00.000Z", "label": "smoke", "plan": PLAN}),
        encoding="utf-8",
    )
    loaded = load_plan(replay_path=str(artifact))
    assert loaded.source == f"replay:{artifact}"
    assert loaded.replay_dict() == {"path": str(artifact), "recordedAt": "2024-05-01T10:00:00.000Z", "label": "smoke"}
    assert loaded.steps == PLAN["steps"]


def test_malformed_plans() -> None:
    assert _code_and_message(plan_json="{nope") == ("E_QUERY_INVALID", "plan-json is not valid JSON")
    assert _code_and_message(plan_json="[]") == ("E_QUERY_INVALID", "plan-json must be a JSON object")
    assert _code_and_message(plan_json='{"steps": []}') == (
        "E_QUERY_INVALID",
        "plan.steps must be a non-empty array",
    )
    assert _code_and_message(plan_json='{"steps": [{"id": "list"}], "x": NaN}')[1] == "plan-json is not valid JSON"


def test_missing_file_is_query_invalid(tmp_path: Path) -> None:
    code, message = _code_and_message(plan_path=str(tmp_path / "absent.json"))
    assert code == "E_QUERY_INVALID"
    assert "could not be read" in message


def test_negative_zero_literal_survives() -> None:
    loaded = load_plan(plan_json='{"steps": [{"id": "list", "assert": {"equals": {"n": -0}}}]}')
    value = loaded.steps[0]["assert"]["equals"]["n"]
    assert value == 0
    assert math.copysign(1.0, value) == -1.0
