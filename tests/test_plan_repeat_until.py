from __future__ import annotations

import asyncio
import json

import pytest

from surfwright.errors import SurfwrightError
from surfwright.plan import execute_plan, load_plan


def _counts(*values: int) -> list[dict]:
    return [{"ok": True, "sessionId": "s-1", "targetId": "t-1", "count": value} for value in values]


def _run(ops, repeat: dict, *, before: list[dict] | None = None) -> dict:
    steps = before or [{"id": "open", "url": "https://a.test"}]
    plan = {
        "steps": [*steps, {"id": "repeat-until", "as": "grow", **repeat}],
        "result": {"last": "steps.grow.last.count"},
    }
    loaded = load_plan(plan_json=json.dumps(plan))
    return asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000, session_id="s-1"))


def _open() -> list[dict]:
    return [{"ok": True, "sessionId": "s-1", "targetId": "t-1"}]


def test_until_gte_stops_at_first_match(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=_counts(1, 2, 3, 4))
    report = _run(ops, {"step": {"id": "count", "selector": ".row"}, "untilPath": "count", "untilGte": 3})
    grow = report["steps"][-1]["report"]
    assert grow["repeat"] == {
        "maxAttempts": 5,
        "attemptsRun": 3,
        "satisfied": True,
        "until": {"kind": "gte", "path": "count", "threshold": 3},
    }
    assert [attempt["value"] for attempt in grow["attempts"]] == [1, 2, 3]
    assert [attempt["matched"] for attempt in grow["attempts"]] == [False, False, True]
    assert grow["attempts"][1]["delta"] == 1
    assert len(ops.params_for("count")) == 3
    assert report["result"] == {"last": 3}


def test_exhausted_attempts_are_not_an_error(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=_counts(1, 2))
    report = _run(
        ops,
        {"step": {"id": "count", "selector": ".row"}, "untilPath": "count", "untilGte": 10, "maxAttempts": 2},
    )
    grow = report["steps"][-1]["report"]
    assert grow["repeat"]["satisfied"] is False
    assert grow["repeat"]["attemptsRun"] == 2
    assert grow["last"]["count"] == 2


def test_exhausted_attempts_can_fail_through_assert(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=_counts(1))
    with pytest.raises(SurfwrightError) as exc:
        _run(
            ops,
            {
                "step": {"id": "count", "selector": ".row"},
                "untilPath": "count",
                "untilEquals": 9,
                "maxAttempts": 1,
                "assert": {"equals": {"repeat.satisfied": True}},
            },
        )
    assert exc.value.code == "E_ASSERT_FAILED"
    assert exc.value.message == "Assertion failed at steps[1] repeat.satisfied: expected true but got false"


def test_until_changed_ignores_first_attempt(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=_counts(5, 5, 7))
    report = _run(ops, {"step": {"id": "count", "selector": ".row"}, "untilPath": "count", "untilChanged": True})
    grow = report["steps"][-1]["report"]
    assert grow["repeat"]["attemptsRun"] == 3
    assert grow["repeat"]["satisfied"] is True


def test_until_delta_gte(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=_counts(1, 2, 4))
    report = _run(ops, {"step": {"id": "count", "selector": ".row"}, "untilPath": "count", "untilDeltaGte": 2})
    grow = report["steps"][-1]["report"]
    assert [attempt.get("delta") for attempt in grow["attempts"]] == [None, 1, 2]
    assert grow["repeat"]["until"] == {"kind": "delta-gte", "path": "count", "threshold": 2}


def test_until_equals_compares_structures(fake_ops) -> None:
    reports = [
        {"ok": True, "targetId": "t-1", "state": {"tags": ["a"]}},
        {"ok": True, "targetId": "t-1", "state": {"tags": ["a", "b"]}},
    ]
    ops = fake_ops(open=_open(), eval_js=reports)
    report = _run(
        ops,
        {
            "step": {"id": "eval", "expression": "window.state"},
            "untilPath": "state",
            "untilEquals": {"tags": ["a", "b"]},
        },
    )
    assert report["steps"][-1]["report"]["repeat"]["attemptsRun"] == 2


def test_nested_templates_resolve_per_attempt(fake_ops) -> None:
    ops = fake_ops(count=_counts(0, 1, 2))
    _run(
        ops,
        {"step": {"id": "count", "selector": ".row-{{last.count}}"}, "untilPath": "count", "untilGte": 2},
        before=[{"id": "count", "selector": ".row", "targetId": "t-1"}],
    )
    selectors = [params.selector for params in ops.params_for("count")]
    assert selectors == [".row", ".row-0", ".row-1"]


def test_nested_assertion_failure_aborts(fake_ops) -> None:
    ops = fake_ops(open=_open(), count=[{"ok": False, "targetId": "t-1", "count": 0}])
    with pytest.raises(SurfwrightError) as exc:
        _run(
            ops,
            {
                "step": {"id": "count", "selector": ".row", "assert": {"truthy": ["ok"]}},
                "untilPath": "count",
                "untilGte": 1,
            },
        )
    assert exc.value.code == "E_ASSERT_FAILED"
    assert exc.value.message == "Assertion failed at steps[1].step ok: expected truthy value"
    assert len(ops.params_for("count")) == 1
