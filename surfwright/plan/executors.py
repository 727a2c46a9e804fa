"""Step executors: validate a resolved step, build typed params, call the Ops binding."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import query_invalid
from . import params as p
from .ops import PlanOps
from .repeat_until import run_repeat_until
from .steps import StepKind


@dataclass(frozen=True)
class StepInput:
    step: dict[str, Any]
    index: int
    label: str
    timeout_ms: int
    target_id: str | None
    frame_scope: str | None
    session_id: str | None
    ops: PlanOps
    scope: dict[str, Any]

    def string(self, key: str) -> str | None:
        return p.parse_optional_string(self.step.get(key), f"{self.label}.{key}")

    def integer(self, key: str) -> int | None:
        return p.parse_optional_integer(self.step.get(key), f"{self.label}.{key}")

    def flag(self, key: str) -> bool:
        return bool(self.step.get(key))

    @property
    def persist_state(self) -> bool:
        return not self.step.get("noPersist")

    def require_target_id(self) -> str:
        if not self.target_id:
            raise query_invalid(f"{self.label} requires targetId (or previous step must set one)")
        return self.target_id

    def target_fields(self) -> dict[str, Any]:
        return {
            "target_id": self.require_target_id(),
            "timeout_ms": self.timeout_ms,
            "session_id": self.session_id,
            "frame_scope": self.frame_scope,
            "persist_state": self.persist_state,
        }

    def query_fields(self) -> dict[str, Any]:
        return {
            "text": self.string("text"),
            "selector": self.string("selector"),
            "contains": self.string("contains"),
            "visible_only": self.flag("visibleOnly"),
        }

    def post_action_checks(self) -> p.PostActionChecks:
        return p.PostActionChecks(
            wait_for_text=self.string("waitForText"),
            wait_for_selector=self.string("waitForSelector"),
            wait_network_idle=self.flag("waitNetworkIdle"),
            wait_timeout_ms=self.integer("waitTimeoutMs"),
            proof=self.flag("proof"),
            assert_url_prefix=self.string("assertUrlPrefix"),
            assert_selector=self.string("assertSelector"),
            assert_text=self.string("assertText"),
        )


Executor = Callable[[StepInput], Awaitable[dict[str, Any]]]


def parse_click_index(inp: StepInput) -> int | None:
    """0-based element index from `index`, or from 1-based `nth`."""
    index = inp.integer("index")
    nth = inp.integer("nth")
    if index is not None and index < 0:
        raise query_invalid(f"{inp.label}.index must be a non-negative integer")
    if nth is not None and nth < 1:
        raise query_invalid(f"{inp.label}.nth must be a positive integer")
    if index is not None and nth is not None:
        raise query_invalid(f"{inp.label} cannot set both index and nth")
    return nth - 1 if nth is not None else index


async def _open(inp: StepInput) -> dict[str, Any]:
    url = inp.string("url")
    if not url:
        raise query_invalid(f"{inp.label}.url is required for open")
    return await inp.ops.open(p.OpenParams(url, inp.timeout_ms, inp.session_id, reuse=inp.string("reuse")))


async def _list(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.list_targets(p.ListParams(inp.timeout_ms, inp.session_id, inp.persist_state))


async def _snapshot(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.snapshot(
        p.SnapshotParams(**inp.target_fields(), selector=inp.string("selector"), visible_only=inp.flag("visibleOnly"))
    )


async def _find(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.find(
        p.FindParams(**inp.target_fields(), **inp.query_fields(), first=inp.flag("first"), limit=inp.integer("limit"))
    )


async def _count(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.count(p.CountParams(**inp.target_fields(), **inp.query_fields()))


async def _scroll_plan(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.scroll_plan(
        p.ScrollPlanParams(
            **inp.target_fields(),
            mode=inp.string("scrollMode"),
            steps_csv=inp.string("steps"),
            settle_ms=inp.integer("settleMs"),
            count_selector=inp.string("countSelector"),
            count_contains=inp.string("countContains"),
            count_visible_only=inp.flag("countVisibleOnly"),
        )
    )


async def _click(inp: StepInput) -> dict[str, Any]:
    expect_count_after = inp.integer("expectCountAfter")
    if expect_count_after is not None and expect_count_after < 0:
        raise query_invalid(f"{inp.label}.expectCountAfter must be a non-negative integer")
    return await inp.ops.click(
        p.ClickParams(
            **inp.target_fields(),
            **inp.query_fields(),
            within=inp.string("within"),
            index=parse_click_index(inp),
            snapshot=inp.flag("snapshot"),
            count_after=inp.flag("countAfter") or expect_count_after is not None,
            expect_count_after=expect_count_after,
            checks=inp.post_action_checks(),
        )
    )


async def _click_read(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.click_read(
        p.ClickReadParams(
            **inp.target_fields(),
            **inp.query_fields(),
            index=parse_click_index(inp),
            read_selector=inp.string("readSelector"),
            read_visible_only=inp.flag("readVisibleOnly"),
            read_frame_scope=inp.string("readFrameScope"),
            chunk_size=inp.integer("chunkSize"),
            chunk_index=inp.integer("chunk"),
            checks=inp.post_action_checks(),
        )
    )


async def _fill(inp: StepInput) -> dict[str, Any]:
    value = inp.string("value")
    if value is None:
        raise query_invalid(f"{inp.label}.value is required for fill")
    return await inp.ops.fill(
        p.FillParams(
            **inp.target_fields(),
            **inp.query_fields(),
            value=value,
            events=inp.string("events"),
            event_mode=inp.string("eventMode"),
            checks=inp.post_action_checks(),
        )
    )


async def _upload(inp: StepInput) -> dict[str, Any]:
    selector = inp.string("selector")
    if not selector:
        raise query_invalid(f"{inp.label}.selector is required for upload")
    raw_files = inp.step["files"] if "files" in inp.step else inp.step.get("file")
    files = p.parse_optional_string_list(raw_files, f"{inp.label}.files")
    if not files:
        raise query_invalid(f"{inp.label}.files (or file) must include at least one path")
    return await inp.ops.upload(
        p.UploadParams(
            **inp.target_fields(),
            selector=selector,
            files=files,
            submit_selector=inp.string("submitSelector"),
            expect_uploaded_filename=inp.string("expectUploadedFilename"),
            wait_for_result=inp.flag("waitForResult"),
            result_selector=inp.string("resultSelector"),
            result_text_contains=inp.string("resultTextContains"),
            result_filename_regex=inp.string("resultFilenameRegex"),
            checks=inp.post_action_checks(),
        )
    )


async def _read(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.read(
        p.ReadParams(
            **inp.target_fields(),
            selector=inp.string("selector"),
            visible_only=inp.flag("visibleOnly"),
            chunk_size=inp.integer("chunkSize"),
            chunk_index=inp.integer("chunk"),
        )
    )


async def _eval(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.eval_js(
        p.EvalParams(
            **inp.target_fields(),
            expression=inp.string("expression"),
            arg_json=inp.string("argJson"),
            capture_console=p.parse_optional_boolean(inp.step.get("captureConsole"), f"{inp.label}.captureConsole"),
            max_console=inp.integer("maxConsole"),
        )
    )


async def _wait(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.wait(
        p.WaitParams(
            **inp.target_fields(),
            for_text=inp.string("forText"),
            for_selector=inp.string("forSelector"),
            network_idle=inp.flag("networkIdle"),
        )
    )


async def _extract(inp: StepInput) -> dict[str, Any]:
    return await inp.ops.extract(
        p.ExtractParams(
            **inp.target_fields(),
            kind=inp.string("kind"),
            selector=inp.string("selector"),
            visible_only=inp.flag("visibleOnly"),
            limit=inp.integer("limit"),
        )
    )


async def execute_step(kind: StepKind, inp: StepInput) -> dict[str, Any]:
    return await STEP_EXECUTORS[kind](inp)


async def _repeat_until(inp: StepInput) -> dict[str, Any]:
    return await run_repeat_until(inp, execute_step)


STEP_EXECUTORS: dict[StepKind, Executor] = {
    StepKind.OPEN: _open,
    StepKind.LIST: _list,
    StepKind.SNAPSHOT: _snapshot,
    StepKind.FIND: _find,
    StepKind.COUNT: _count,
    StepKind.SCROLL_PLAN: _scroll_plan,
    StepKind.CLICK: _click,
    StepKind.CLICK_READ: _click_read,
    StepKind.FILL: _fill,
    StepKind.UPLOAD: _upload,
    StepKind.READ: _read,
    StepKind.EVAL: _eval,
    StepKind.WAIT: _wait,
    StepKind.EXTRACT: _extract,
    StepKind.REPEAT_UNTIL: _repeat_until,
}

_unhandled = set(StepKind) - set(STEP_EXECUTORS)
if _unhandled:
    raise RuntimeError(f"step kinds without an executor: {sorted(k.value for k in _unhandled)}")
