"""Bounded retry of one nested step until a path-based condition holds.

Running out of attempts is not an error: the report says `satisfied: false`
and the plan decides through `assert`/`require` whether that matters. A failed
assertion on the nested step aborts immediately.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..errors import SurfwrightError, query_invalid
from .assertions import evaluate_assertion_spec, is_number, same_value
from .params import (
    parse_optional_boolean,
    parse_optional_integer,
    parse_optional_string,
    parse_step_timeout_ms,
)
from .steps import StepKind, parse_step_kind
from .templates import MISSING, read_path_value, resolve_template_in_value

if TYPE_CHECKING:
    from .executors import StepInput

logger = logging.getLogger("surfwright.plan")

REPEAT_UNTIL_DEFAULT_ATTEMPTS = 5
REPEAT_UNTIL_MAX_ATTEMPTS = 25

NestedRunner = Callable[[StepKind, "StepInput"], Awaitable[dict[str, Any]]]


def deep_equal(left: Any, right: Any) -> bool:
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(deep_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(deep_equal(a, b) for a, b in zip(left, right))
    return same_value(left, right)


@dataclasses.dataclass(frozen=True)
class UntilCondition:
    kind: str
    path: str
    expected: Any = None
    threshold: int | None = None

    def matches(self, attempt: int, value: Any, previous: Any) -> bool:
        if self.kind == "equals":
            return deep_equal(value, self.expected)
        if self.kind == "gte":
            return is_number(value) and value >= self.threshold
        if self.kind == "delta-gte":
            return attempt > 1 and is_number(value) and is_number(previous) and value - previous >= self.threshold
        return attempt > 1 and not deep_equal(value, previous)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "path": self.path}
        if self.kind == "equals":
            out["expected"] = self.expected
        elif self.kind in ("gte", "delta-gte"):
            out["threshold"] = self.threshold
        return out


def parse_until_condition(step: dict[str, Any], label: str) -> UntilCondition:
    path = parse_optional_string(step.get("untilPath"), f"{label}.untilPath")
    if path is None or not path.strip():
        raise query_invalid(f"{label}.untilPath is required")
    changed = parse_optional_boolean(step.get("untilChanged"), f"{label}.untilChanged")
    present = [key for key in ("untilEquals", "untilGte", "untilDeltaGte") if key in step]
    if changed is True:
        present.append("untilChanged")
    if len(present) != 1:
        raise query_invalid(
            f"{label} repeat-until requires exactly one condition: "
            "untilEquals, untilGte, untilDeltaGte, or untilChanged=true"
        )
    key = present[0]
    if key == "untilEquals":
        return UntilCondition("equals", path, expected=step["untilEquals"])
    if key == "untilChanged":
        return UntilCondition("changed", path)
    threshold = parse_optional_integer(step[key], f"{label}.{key}")
    if threshold is None:
        raise query_invalid(f"{label}.{key} must be an integer")
    if key == "untilDeltaGte":
        if threshold < 0:
            raise query_invalid(f"{label}.untilDeltaGte must be >= 0")
        return UntilCondition("delta-gte", path, threshold=threshold)
    return UntilCondition("gte", path, threshold=threshold)


def _nested_step(step: dict[str, Any], label: str) -> tuple[dict[str, Any], StepKind]:
    nested = step.get("step")
    if not isinstance(nested, dict):
        raise query_invalid(f"{label}.step must be an object")
    nested_id = nested.get("id")
    if not isinstance(nested_id, str) or not nested_id.strip():
        raise query_invalid(f"{label}.step.id is required")
    kind = parse_step_kind(nested_id)
    if kind is None:
        raise query_invalid(f"{label}.step.id unsupported: {nested_id}")
    if kind is StepKind.REPEAT_UNTIL:
        raise query_invalid(f"{label}.step.id nested repeat-until is not supported")
    if "as" in nested:
        raise query_invalid(f"{label}.step.as is not supported; use {label}.as")
    return nested, kind


async def run_repeat_until(inp: StepInput, run_nested: NestedRunner) -> dict[str, Any]:
    label = inp.label
    nested_raw, nested_kind = _nested_step(inp.step, label)
    until = parse_until_condition(inp.step, label)
    max_attempts = parse_optional_integer(inp.step.get("maxAttempts"), f"{label}.maxAttempts")
    if max_attempts is None:
        max_attempts = REPEAT_UNTIL_DEFAULT_ATTEMPTS
    if not 1 <= max_attempts <= REPEAT_UNTIL_MAX_ATTEMPTS:
        raise query_invalid(f"{label}.maxAttempts must be between 1 and {REPEAT_UNTIL_MAX_ATTEMPTS}")

    session_id, target_id = inp.session_id, inp.target_id
    previous: Any = MISSING
    last_report: dict[str, Any] | None = None
    satisfied = False
    attempts: list[dict[str, Any]] = []
    nested_label = f"{label}.step"

    for attempt in range(1, max_attempts + 1):
        scope = {
            "sessionId": session_id,
            "targetId": target_id,
            "last": last_report if last_report is not None else inp.scope.get("last"),
            "steps": inp.scope.get("steps", {}),
        }
        nested = resolve_template_in_value(nested_raw, scope, nested_label)
        nested_input = dataclasses.replace(
            inp,
            step=nested,
            label=nested_label,
            timeout_ms=parse_step_timeout_ms(nested.get("timeoutMs"), inp.timeout_ms, inp.index),
            target_id=parse_optional_string(nested.get("targetId"), f"{nested_label}.targetId") or target_id,
            frame_scope=parse_optional_string(nested.get("frameScope"), f"{nested_label}.frameScope")
            or inp.frame_scope,
            session_id=session_id,
        )
        report = await run_nested(nested_kind, nested_input)
        if isinstance(report.get("sessionId"), str):
            session_id = report["sessionId"]
        if isinstance(report.get("targetId"), str):
            target_id = report["targetId"]

        outcome = evaluate_assertion_spec(nested.get("assert"), report)
        failure = outcome.first_failure
        if failure is not None:
            raise SurfwrightError(
                "E_ASSERT_FAILED", f"Assertion failed at {nested_label} {failure.path}: {failure.message}"
            )

        value = read_path_value(report, until.path)
        matched = until.matches(attempt, value, previous)
        record: dict[str, Any] = {"attempt": attempt, "matched": matched, "value": None if value is MISSING else value}
        if is_number(value) and is_number(previous):
            record["delta"] = value - previous
        attempts.append(record)
        logger.debug("%s attempt %d matched=%s", label, attempt, matched)
        previous = value
        last_report = report
        if matched:
            satisfied = True
            break

    return {
        "ok": True,
        "sessionId": session_id,
        "targetId": target_id,
        "repeat": {
            "maxAttempts": max_attempts,
            "attemptsRun": len(attempts),
            "satisfied": satisfied,
            "until": until.to_dict(),
        },
        "attempts": attempts,
        "last": last_report,
    }
