"""Sequential plan execution.

Each step runs to completion before the next starts: resolve templates, build
params, dispatch to the Ops binding, check assertions, then fold the report
into the run context. Ops failures propagate as-is; retries exist only where a
plan asks for them with `repeat-until`.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from ..config import StateHandle
from ..errors import SurfwrightError, query_invalid
from .artifacts import write_run_artifact
from .assertions import count_assertion_checks, evaluate_assertion_spec
from .executors import StepInput, execute_step
from .lint import LintIssue, lint_errors, lint_plan
from .loader import LoadedPlan
from .ndjson_log import NdjsonLog
from .ops import PlanOps
from .params import parse_optional_string, parse_step_alias, parse_step_timeout_ms
from .report import RunContext, StepReport
from .steps import SUPPORTED_STEP_IDS, StepKind, parse_step_kind
from .templates import MISSING, read_path_value, resolve_template_in_value

logger = logging.getLogger("surfwright.plan")


def doctor_report(loaded: LoadedPlan, issues: list[LintIssue]) -> dict[str, Any]:
    return {
        "ok": True,
        "mode": "doctor",
        "source": loaded.source,
        "stepCount": len(loaded.steps),
        "resultMapFields": len(loaded.plan.get("result") or {}),
        "requireChecks": count_assertion_checks(loaded.plan.get("require")),
        "valid": not lint_errors(issues),
        "supportedSteps": list(SUPPORTED_STEP_IDS),
        "issues": [issue.to_dict() for issue in issues],
    }


def raise_on_lint_errors(issues: list[LintIssue]) -> None:
    errors = lint_errors(issues)
    if errors:
        raise query_invalid(f"plan lint failed: {errors[0].path} {errors[0].message}")


def project_result(result_map: dict[str, Any] | None, scope: dict[str, Any]) -> dict[str, Any] | None:
    """Copy named paths out of the final scope; unresolved paths become null."""
    if result_map is None:
        return None
    projected: dict[str, Any] = {}
    for key, path_expr in result_map.items():
        if not isinstance(path_expr, str) or not path_expr.strip():
            raise query_invalid(f"plan.result.{key} must be a non-empty string path")
        value = read_path_value(scope, path_expr)
        projected[key] = None if value is MISSING else value
    return projected


def _resolve_step(raw: Any, scope: dict[str, Any], label: str) -> tuple[dict[str, Any], StepKind]:
    if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
        raise query_invalid(f"{label} must include id")
    kind = parse_step_kind(raw["id"])
    if kind is None:
        raise query_invalid(f"Unsupported step id: {raw['id']}")
    if kind is StepKind.REPEAT_UNTIL and "step" in raw:
        # the nested step is resolved per attempt
        outer = {k: v for k, v in raw.items() if k != "step"}
        step = resolve_template_in_value(outer, scope, label)
        step["step"] = raw["step"]
        return step, kind
    return resolve_template_in_value(raw, scope, label), kind


class PlanRun:
    def __init__(
        self,
        loaded: LoadedPlan,
        *,
        ops: PlanOps,
        timeout_ms: int,
        session_id: str | None = None,
        log: NdjsonLog | None = None,
    ) -> None:
        self.loaded = loaded
        self.ops = ops
        self.timeout_ms = timeout_ms
        self.log = log
        self.ctx = RunContext(session_id=session_id)
        self._started = time.monotonic()

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _event(self, event: dict[str, Any], *, log_only: bool = False) -> None:
        if not log_only:
            self.ctx.timeline.append(event)
        if self.log is not None:
            self.log.emit(event)

    async def _run_step(self, index: int, raw: Any) -> None:
        label = f"steps[{index}]"
        scope = self.ctx.scope()
        step, kind = _resolve_step(raw, scope, label)
        alias = parse_step_alias(step.get("as"), index)
        timeout_ms = parse_step_timeout_ms(step.get("timeoutMs"), self.timeout_ms, index)
        target_id = parse_optional_string(step.get("targetId"), f"{label}.targetId") or self.ctx.target_id
        frame_scope = parse_optional_string(step.get("frameScope"), f"{label}.frameScope")

        step_started = time.monotonic()
        self._event(
            {
                "atMs": self._elapsed_ms(),
                "phase": "step.start",
                "index": index,
                "id": step["id"],
                "as": alias,
                "targetId": target_id,
            }
        )
        logger.debug("%s %s start", label, kind.value)

        payload = await execute_step(
            kind,
            StepInput(
                step=step,
                index=index,
                label=label,
                timeout_ms=timeout_ms,
                target_id=target_id,
                frame_scope=frame_scope,
                session_id=self.ctx.session_id,
                ops=self.ops,
                scope=scope,
            ),
        )
        report = StepReport.from_payload(payload, label)
        if alias:
            self.ctx.aliases[alias] = report.payload
        self.ctx.absorb(report)

        outcome = evaluate_assertion_spec(step.get("assert"), report.payload)
        failure = outcome.first_failure
        if failure is not None:
            self._event(
                {
                    "atMs": self._elapsed_ms(),
                    "phase": "step.assert-failed",
                    "index": index,
                    "id": step["id"],
                    "message": failure.message,
                }
            )
            raise SurfwrightError("E_ASSERT_FAILED", f"Assertion failed at {label} {failure.path}: {failure.message}")

        elapsed_ms = int((time.monotonic() - step_started) * 1000)
        at_ms = self._elapsed_ms()
        self._event(
            {
                "atMs": at_ms,
                "phase": "step.end",
                "index": index,
                "id": step["id"],
                "as": alias,
                "elapsedMs": elapsed_ms,
                "sessionId": report.session_id,
                "targetId": report.target_id,
                "assertions": outcome.total,
            }
        )
        if self.log is not None and self.log.full:
            self._event(
                {
                    "atMs": at_ms,
                    "phase": "step.report",
                    "index": index,
                    "id": step["id"],
                    "as": alias,
                    "report": report.payload,
                },
                log_only=True,
            )
        self.ctx.results.append(
            {
                "index": index,
                "id": step["id"],
                "as": alias,
                "elapsedMs": elapsed_ms,
                "assertions": {"total": outcome.total, "failed": outcome.failed},
                "report": report.payload,
            }
        )

    async def execute(self) -> dict[str, Any]:
        self._event({"atMs": 0, "phase": "run.start", "source": self.loaded.source})
        for index, raw in enumerate(self.loaded.steps):
            await self._run_step(index, raw)

        total_ms = self._elapsed_ms()
        self._event(
            {
                "atMs": total_ms,
                "phase": "run.end",
                "steps": len(self.ctx.results),
                "sessionId": self.ctx.session_id,
                "targetId": self.ctx.target_id,
            }
        )

        result_scope = self.ctx.scope()
        projected = project_result(self.loaded.plan.get("result"), result_scope)
        require_scope = result_scope if projected is None else {**result_scope, "result": projected}
        require_spec = self.loaded.plan.get("require")
        require = None
        if require_spec is not None:
            resolved = resolve_template_in_value(require_spec, require_scope, "require")
            require = evaluate_assertion_spec(resolved, require_scope)
            failure = require.first_failure
            if failure is not None:
                raise SurfwrightError(
                    "E_ASSERT_FAILED", f"Assertion failed at require {failure.path}: {failure.message}"
                )

        report: dict[str, Any] = {
            "ok": True,
            "source": self.loaded.source,
            "replay": self.loaded.replay_dict(),
            "sessionId": self.ctx.session_id,
            "targetId": self.ctx.target_id,
            "steps": self.ctx.results,
            "timeline": self.ctx.timeline,
            "totalMs": total_ms,
        }
        if projected is not None:
            report["result"] = projected
        if require is not None:
            report["require"] = require.to_dict()
        return report


async def execute_plan(
    loaded: LoadedPlan,
    *,
    ops: PlanOps,
    timeout_ms: int,
    session_id: str | None = None,
    issues: list[LintIssue] | None = None,
    log_ndjson: str | None = None,
    log_mode: str | None = None,
    record: bool = False,
    record_path: str | None = None,
    record_label: str | None = None,
    handle: StateHandle | None = None,
) -> dict[str, Any]:
    raise_on_lint_errors(issues if issues is not None else lint_plan(loaded.plan))
    log = NdjsonLog.open(log_ndjson, log_mode)
    report = await PlanRun(loaded, ops=ops, timeout_ms=timeout_ms, session_id=session_id, log=log).execute()
    if log is not None:
        report["logNdjson"] = log.describe()
    if record:
        if handle is None and not record_path:
            raise query_invalid("--record needs a state root or --record-path")
        recorded = {k: v for k, v in report.items() if k != "logNdjson"}
        report["artifact"] = write_run_artifact(
            handle,
            out_path=record_path,
            label=record_label,
            source=loaded.source,
            replay=loaded.replay_dict(),
            plan=loaded.plan,
            report=recorded,
        )
    return report
