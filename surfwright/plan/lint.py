"""Static plan validation.

Lint rejects shapes that can never work, but any field whose literal value is
a `{{ template }}` is left for runtime type checks, since it may resolve to the
right type once the run scope exists.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from .assertions import is_number
from .params import STEP_ALIAS_RE
from .steps import QUERY_STEP_KINDS, StepKind, parse_step_kind
from .templates import is_template_string as _tpl

REPEAT_UNTIL_MAX_ATTEMPTS = 25


@dataclass(frozen=True)
class LintIssue:
    level: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def _is_integer(value: Any) -> bool:
    return is_number(value) and math.isfinite(value) and float(value).is_integer()


def _str_or_tpl(value: Any) -> bool:
    return isinstance(value, str) or _tpl(value)


def _lint_assertion_spec(spec: Any, path: str, issues: list[LintIssue]) -> None:
    if spec is None:
        return
    if not isinstance(spec, dict):
        issues.append(LintIssue("error", path, f"{path} must be an object"))
        return
    for key in ("equals", "contains"):
        if key in spec and not isinstance(spec[key], dict):
            issues.append(LintIssue("error", f"{path}.{key}", f"{path}.{key} must be an object map"))
    if "gte" in spec:
        gte = spec["gte"]
        if not isinstance(gte, dict):
            issues.append(LintIssue("error", f"{path}.gte", f"{path}.gte must be an object map"))
        else:
            for expr, threshold in gte.items():
                if not is_number(threshold) and not _tpl(threshold):
                    issues.append(LintIssue("error", f"{path}.gte.{expr}", f"{path}.gte values must be numbers"))
                elif is_number(threshold) and not math.isfinite(threshold):
                    issues.append(
                        LintIssue("error", f"{path}.gte.{expr}", f"{path}.gte values must be finite numbers")
                    )
    for key in ("truthy", "exists"):
        if key not in spec:
            continue
        entries = spec[key]
        if not isinstance(entries, list):
            issues.append(LintIssue("error", f"{path}.{key}", f"{path}.{key} must be a string[]"))
            continue
        for idx, item in enumerate(entries):
            if not isinstance(item, str) or not item.strip():
                issues.append(
                    LintIssue("error", f"{path}.{key}[{idx}]", f"{path}.{key} entries must be non-empty strings")
                )


def _lint_scroll_plan(step: dict[str, Any], at: str, issues: list[LintIssue]) -> None:
    mode = step.get("scrollMode")
    if mode is not None and not _str_or_tpl(mode):
        issues.append(LintIssue("error", f"{at}.scrollMode", "scrollMode must be a string"))
    if isinstance(mode, str) and not _tpl(mode) and mode not in ("absolute", "relative"):
        issues.append(LintIssue("error", f"{at}.scrollMode", "scrollMode must be one of: absolute, relative"))
    if "steps" in step and not _str_or_tpl(step["steps"]):
        issues.append(LintIssue("error", f"{at}.steps", "steps must be a csv string"))
    if "settleMs" in step and not is_number(step["settleMs"]) and not _tpl(step["settleMs"]):
        issues.append(LintIssue("error", f"{at}.settleMs", "settleMs must be an integer"))
    for key in ("countSelector", "countContains"):
        if key in step and not _str_or_tpl(step[key]):
            issues.append(LintIssue("error", f"{at}.{key}", f"{key} must be a string"))
    if "countContains" in step and "countSelector" not in step and not _tpl(step["countContains"]):
        issues.append(LintIssue("error", f"{at}.countContains", "countContains requires countSelector"))
    visible = step.get("countVisibleOnly")
    if "countVisibleOnly" in step and not isinstance(visible, bool) and not _tpl(visible):
        issues.append(LintIssue("error", f"{at}.countVisibleOnly", "countVisibleOnly must be a boolean"))
    if visible is True and "countSelector" not in step:
        issues.append(LintIssue("error", f"{at}.countVisibleOnly", "countVisibleOnly requires countSelector"))


def _lint_repeat_until(step: dict[str, Any], at: str, issues: list[LintIssue]) -> None:
    nested = step.get("step")
    if not isinstance(nested, dict):
        issues.append(LintIssue("error", f"{at}.step", "step must be an object"))
    else:
        nested_id = nested.get("id")
        nested_kind = parse_step_kind(nested_id)
        if not isinstance(nested_id, str) or not nested_id.strip():
            issues.append(LintIssue("error", f"{at}.step.id", "nested step id is required"))
        elif nested_kind is None:
            issues.append(LintIssue("error", f"{at}.step.id", f"unsupported nested step id: {nested_id}"))
        elif nested_kind is StepKind.REPEAT_UNTIL:
            issues.append(LintIssue("error", f"{at}.step.id", "nested repeat-until is not supported"))
        if "as" in nested:
            issues.append(
                LintIssue("error", f"{at}.step.as", "nested step must not define as; use top-level step.as")
            )

    if "maxAttempts" in step:
        attempts = step["maxAttempts"]
        if not is_number(attempts) and not _tpl(attempts):
            issues.append(LintIssue("error", f"{at}.maxAttempts", "maxAttempts must be an integer"))
        elif is_number(attempts) and (
            not _is_integer(attempts) or attempts < 1 or attempts > REPEAT_UNTIL_MAX_ATTEMPTS
        ):
            issues.append(
                LintIssue(
                    "error",
                    f"{at}.maxAttempts",
                    f"maxAttempts must be an integer between 1 and {REPEAT_UNTIL_MAX_ATTEMPTS}",
                )
            )

    until_path = step.get("untilPath")
    if not _str_or_tpl(until_path) or (isinstance(until_path, str) and not until_path.strip()):
        issues.append(
            LintIssue("error", f"{at}.untilPath", "untilPath is required and must be a non-empty string")
        )

    for key in ("untilGte", "untilDeltaGte"):
        if key in step and not _is_integer(step[key]) and not _tpl(step[key]):
            issues.append(LintIssue("error", f"{at}.{key}", f"{key} must be an integer"))

    has_changed = "untilChanged" in step
    changed = step.get("untilChanged")
    if has_changed and not isinstance(changed, bool) and not _tpl(changed):
        issues.append(LintIssue("error", f"{at}.untilChanged", "untilChanged must be a boolean"))
    if has_changed and changed is False:
        issues.append(LintIssue("error", f"{at}.untilChanged", "untilChanged must be true when provided"))

    condition_count = (
        int("untilEquals" in step)
        + int("untilGte" in step)
        + int("untilDeltaGte" in step)
        + int(changed is True or _tpl(changed))
    )
    if condition_count != 1:
        issues.append(
            LintIssue(
                "error",
                at,
                "repeat-until requires exactly one condition: "
                "untilEquals, untilGte, untilDeltaGte, or untilChanged=true",
            )
        )


def _lint_upload(step: dict[str, Any], at: str, issues: list[LintIssue]) -> None:
    if not _str_or_tpl(step.get("selector")):
        issues.append(LintIssue("error", f"{at}.selector", "selector is required for upload"))
    files = step["files"] if "files" in step else step.get("file")
    if files is None:
        issues.append(LintIssue("error", f"{at}.files", "files (or file) is required for upload"))
    elif not isinstance(files, (str, list)):
        issues.append(LintIssue("error", f"{at}.files", "files (or file) must be a string or string[]"))
    elif isinstance(files, list) and not files:
        issues.append(LintIssue("error", f"{at}.files", "files must include at least one path"))


def _lint_step(step: Any, index: int, aliases: set[str], issues: list[LintIssue]) -> None:
    at = f"steps[{index}]"
    if not isinstance(step, dict):
        issues.append(LintIssue("error", at, "step must be an object"))
        return
    step_id = step.get("id")
    if not isinstance(step_id, str) or not step_id.strip():
        issues.append(LintIssue("error", f"{at}.id", "step id is required"))
        return
    kind = parse_step_kind(step_id)
    if kind is None:
        issues.append(LintIssue("error", f"{at}.id", f"unsupported step id: {step_id}"))
        return

    if "targetId" in step and not _str_or_tpl(step["targetId"]):
        issues.append(LintIssue("error", f"{at}.targetId", "targetId must be a string"))
    if "timeoutMs" in step and not _tpl(step["timeoutMs"]):
        timeout = step["timeoutMs"]
        if not _is_integer(timeout) or timeout <= 0:
            issues.append(LintIssue("error", f"{at}.timeoutMs", "timeoutMs must be a positive integer"))

    if kind is StepKind.OPEN:
        url = step.get("url")
        if not isinstance(url, str) or not url.strip():
            issues.append(LintIssue("error", f"{at}.url", "url is required for open"))
    if kind in QUERY_STEP_KINDS:
        text, selector = step.get("text"), step.get("selector")
        if not (text and _str_or_tpl(text)) and not (selector and _str_or_tpl(selector)):
            issues.append(LintIssue("error", at, f"{step_id} requires text or selector"))
    if kind is StepKind.FILL and not _str_or_tpl(step.get("value")):
        issues.append(LintIssue("error", f"{at}.value", "value is required for fill"))
    if kind is StepKind.SCROLL_PLAN:
        _lint_scroll_plan(step, at, issues)
    if kind is StepKind.REPEAT_UNTIL:
        _lint_repeat_until(step, at, issues)
    if kind is StepKind.UPLOAD:
        _lint_upload(step, at, issues)
    if kind is StepKind.EXTRACT and "kind" in step and not isinstance(step["kind"], str):
        issues.append(LintIssue("error", f"{at}.kind", "kind must be a string"))

    if "as" in step:
        alias = step["as"]
        if not isinstance(alias, str) or not STEP_ALIAS_RE.match(alias):
            issues.append(LintIssue("error", f"{at}.as", f"alias must match /{STEP_ALIAS_RE.pattern}/"))
        elif alias in aliases:
            issues.append(LintIssue("error", f"{at}.as", f"duplicate alias: {alias}"))
        else:
            aliases.add(alias)

    _lint_assertion_spec(step.get("assert"), f"{at}.assert", issues)


def _lint_result_map(result: Any, issues: list[LintIssue]) -> None:
    if not isinstance(result, dict):
        issues.append(LintIssue("error", "result", "result must be an object map of outputField -> sourcePath"))
        return
    if not result:
        issues.append(LintIssue("error", "result", "result map must include at least one key"))
    for key, source in result.items():
        if not STEP_ALIAS_RE.match(key):
            issues.append(
                LintIssue("error", f"result.{key}", f"result output field must match /{STEP_ALIAS_RE.pattern}/")
            )
        if not isinstance(source, str) or not source.strip():
            issues.append(LintIssue("error", f"result.{key}", "result source path must be a non-empty string"))


def lint_plan(plan: dict[str, Any]) -> list[LintIssue]:
    issues: list[LintIssue] = []
    aliases: set[str] = set()
    for index, step in enumerate(plan.get("steps") or []):
        _lint_step(step, index, aliases, issues)
    if "result" in plan:
        _lint_result_map(plan["result"], issues)
    _lint_assertion_spec(plan.get("require"), "require", issues)
    return issues


def lint_errors(issues: list[LintIssue]) -> list[LintIssue]:
    return [issue for issue in issues if issue.level == "error"]
