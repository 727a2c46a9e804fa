from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from surfwright.config import StateHandle
from surfwright.errors import SurfwrightError
from surfwright.plan import PlanRun, execute_plan, load_plan
from surfwright.plan.loader import LoadedPlan


def _plan(plan: dict) -> LoadedPlan:
    return load_plan(plan_json=json.dumps(plan))


def _page(session_id: str = "s-1", target_id: str = "t-1", **extra) -> dict:
    return {"ok": True, "sessionId": session_id, "targetId": target_id, **extra}


def test_context_propagates_between_steps(fake_ops) -> None:
    ops = fake_ops(
        open=[_page(url="https://example.test/")],
        count=[_page(count=3)],
        click=lambda params: _page(clicked={"text": params.text}),
    )
    loaded = _plan(
        {
            "steps": [
                {"id": "open", "url": "https://example.test/"},
                {"id": "count", "selector": ".item", "as": "items"},
                {"id": "click", "text": "{{steps.items.count}} items", "nth": 2},
                {"id": "find", "selector": "li", "limit": "{{steps.items.count}}"},
            ]
        }
    )
    report = asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=4000, session_id="s-0"))

    assert ops.params_for("open")[0].session_id == "s-0"
    count_params = ops.params_for("count")[0]
    assert (count_params.session_id, count_params.target_id, count_params.timeout_ms) == ("s-1", "t-1", 4000)
    click_params = ops.params_for("click")[0]
    assert click_params.text == "3 items"
    assert click_params.index == 1
    assert ops.params_for("find")[0].limit == 3

    assert report["ok"] is True
    assert (report["sessionId"], report["targetId"]) == ("s-1", "t-1")
    assert [step["id"] for step in report["steps"]] == ["open", "count", "click", "find"]
    assert report["steps"][1]["as"] == "items"
    phases = [event["phase"] for event in report["timeline"]]
    assert phases[0] == "run.start"
    assert phases[-1] == "run.end"
    assert phases.count("step.start") == phases.count("step.end") == 4


def test_step_without_target_is_rejected(fake_ops) -> None:
    ops = fake_ops()
    loaded = _plan({"steps": [{"id": "snapshot"}]})
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    assert exc.value.code == "E_QUERY_INVALID"
    assert exc.value.message == "steps[0] requires targetId (or previous step must set one)"
    assert ops.calls == []


def test_explicit_target_overrides_context(fake_ops) -> None:
    ops = fake_ops(open=[_page(target_id="t-1")])
    loaded = _plan(
        {"steps": [{"id": "open", "url": "https://a.test"}, {"id": "read", "targetId": "t-7", "frameScope": "all"}]}
    )
    asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    read_params = ops.params_for("read")[0]
    assert (read_params.target_id, read_params.frame_scope) == ("t-7", "all")


def test_step_assertion_failure_aborts_and_keeps_timeline(fake_ops) -> None:
    ops = fake_ops(open=[_page()], count=[_page(count=3)])
    loaded = _plan(
        {
            "steps": [
                {"id": "open", "url": "https://a.test"},
                {"id": "count", "selector": "li", "assert": {"equals": {"count": 5}}},
                {"id": "list"},
            ]
        }
    )
    run = PlanRun(loaded, ops=ops, timeout_ms=1000)
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(run.execute())
    assert exc.value.code == "E_ASSERT_FAILED"
    assert exc.value.message == "Assertion failed at steps[1] count: expected 5 but got 3"
    assert run.ctx.timeline[-1]["phase"] == "step.assert-failed"
    assert ops.params_for("list_targets") == []


def test_unresolved_template_is_query_invalid(fake_ops) -> None:
    ops = fake_ops(open=[_page()])
    steps = [{"id": "open", "url": "https://a.test"}, {"id": "click", "text": "{{steps.ghost.text}}"}]
    loaded = _plan({"steps": steps})
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    assert exc.value.code == "E_QUERY_INVALID"
    assert exc.value.message == "Unresolved template {{steps.ghost.text}} at steps[1].text"


def test_lint_errors_block_execution(fake_ops) -> None:
    ops = fake_ops()
    loaded = _plan({"steps": [{"id": "list", "as": "a"}, {"id": "list", "as": "a"}]})
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    assert exc.value.code == "E_QUERY_INVALID"
    assert exc.value.message == "plan lint failed: steps[1].as duplicate alias: a"
    assert ops.calls == []


def test_result_projection_and_require(fake_ops) -> None:
    ops = fake_ops(open=[_page(title="Example")], count=[_page(count=4)])
    loaded = _plan(
        {
            "steps": [
                {"id": "open", "url": "https://a.test", "as": "page"},
                {"id": "count", "selector": "a", "as": "links"},
            ],
            "result": {"title": "steps.page.title", "links": "steps.links.count", "absent": "steps.links.nope"},
            "require": {"gte": {"result.links": 4}, "equals": {"result.absent": None}},
        }
    )
    report = asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    assert report["result"] == {"title": "Example", "links": 4, "absent": None}
    assert report["require"]["total"] == 2
    assert report["require"]["failed"] == 0


def test_require_failure_raises(fake_ops) -> None:
    ops = fake_ops(count=[_page(count=1)])
    loaded = _plan(
        {
            "steps": [{"id": "count", "selector": "a", "targetId": "t-1", "as": "links"}],
            "result": {"links": "steps.links.count"},
            "require": {"gte": {"result.links": 2}},
        }
    )
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(execute_plan(loaded, ops=ops, timeout_ms=1000))
    assert exc.value.code == "E_ASSERT_FAILED"
    assert exc.value.message == "Assertion failed at require result.links: expected number >= 2 but got 1"


def test_non_object_report_is_internal_error(fake_ops) -> None:
    ops = fake_ops(list_targets=lambda params: ["not", "a", "report"])
    with pytest.raises(SurfwrightError) as exc:
        asyncio.run(execute_plan(_plan({"steps": [{"id": "list"}]}), ops=ops, timeout_ms=1000))
    assert exc.value.code == "E_INTERNAL"


def test_ndjson_log_full_mode(fake_ops, tmp_path: Path) -> None:
    ops = fake_ops(open=[_page()])
    log_path = tmp_path / "logs" / "run.ndjson"
    report = asyncio.run(
        execute_plan(
            _plan({"steps": [{"id": "open", "url": "https://a.test"}]}),
            ops=ops,
            timeout_ms=1000,
            log_ndjson=str(log_path),
            log_mode="full",
        )
    )
    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [event["phase"] for event in events] == ["run.start", "step.start", "step.end", "step.report", "run.end"]
    assert "step.report" not in [event["phase"] for event in report["timeline"]]
    assert report["logNdjson"] == {"path": str(log_path.resolve()), "mode": "full"}


def test_ndjson_log_minimal_mode(fake_ops, tmp_path: Path) -> None:
    ops = fake_ops(open=[_page()])
    log_path = tmp_path / "run.ndjson"
    log_path.write_text("stale\n", encoding="utf-8")
    asyncio.run(
        execute_plan(
            _plan({"steps": [{"id": "open", "url": "https://a.test"}]}),
            ops=ops,
            timeout_ms=1000,
            log_ndjson=str(log_path),
        )
    )
    phases = [json.loads(line)["phase"] for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert phases == ["run.start", "step.start", "step.end", "run.end"]


def test_record_then_replay(fake_ops, tmp_path: Path) -> None:
    ops = fake_ops(open=[_page()])
    handle = StateHandle.at(tmp_path / "state")
    plan = {"steps": [{"id": "open", "url": "https://a.test"}]}
    report = asyncio.run(
        execute_plan(
            _plan(plan),
            ops=ops,
            timeout_ms=1000,
            record=True,
            record_label="Smoke Test!",
            handle=handle,
        )
    )
    artifact = report["artifact"]
    path = Path(artifact["path"])
    assert path.parent == handle.runs_dir
    assert "-smoke-test-" in path.name
    envelope = json.loads(path.read_text(encoding="utf-8"))
    assert envelope["kind"] == "run-artifact"
    assert envelope["plan"] == plan
    assert "artifact" not in envelope["report"]

    replayed = load_plan(replay_path=str(path))
    assert replayed.replay.label == "Smoke Test!"
    assert replayed.replay.recorded_at == artifact["createdAt"]
    again = asyncio.run(execute_plan(replayed, ops=ops, timeout_ms=1000))
    assert again["replay"]["path"] == str(path)
    assert len(ops.params_for("open")) == 2


def test_record_path_override(fake_ops, tmp_path: Path) -> None:
    ops = fake_ops(open=[_page()])
    out = tmp_path / "out" / "artifact.json"
    report = asyncio.run(
        execute_plan(
            _plan({"steps": [{"id": "open", "url": "https://a.test"}]}),
            ops=ops,
            timeout_ms=1000,
            record=True,
            record_path=str(out),
        )
    )
    assert report["artifact"]["path"] == str(out)
    assert out.exists()
