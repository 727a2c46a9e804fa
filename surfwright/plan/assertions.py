from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from .templates import MISSING, json_text, read_path_value


@dataclass(frozen=True)
class AssertionCheck:
    kind: str
    path: str
    ok: bool
    message: str


@dataclass(frozen=True)
class AssertionOutcome:
    total: int
    failed: int
    checks: tuple[AssertionCheck, ...]

    @property
    def first_failure(self) -> AssertionCheck | None:
        return next((check for check in self.checks if not check.ok), None)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "failed": self.failed, "checks": [asdict(c) for c in self.checks]}


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def same_value(left: Any, right: Any) -> bool:
    """SameValue equality: NaN equals NaN, 0 and -0 differ, containers compare by identity."""
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if is_number(left) and is_number(right):
        a, b = float(left), float(right)
        if math.isnan(a) or math.isnan(b):
            return math.isnan(a) and math.isnan(b)
        if a == 0 and b == 0:
            return math.copysign(1.0, a) == math.copysign(1.0, b)
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return left is right


def is_truthy(value: Any) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _as_map(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_paths(value: Any) -> list[str]:
    return [p for p in value if isinstance(p, str)] if isinstance(value, list) else []


def count_assertion_checks(spec: Any) -> int:
    if not isinstance(spec, dict):
        return 0
    return (
        len(_as_map(spec.get("equals")))
        + len(_as_map(spec.get("contains")))
        + len(_as_map(spec.get("gte")))
        + len(_as_paths(spec.get("truthy")))
        + len(_as_paths(spec.get("exists")))
    )


def evaluate_assertion_spec(spec: Any, report: Any) -> AssertionOutcome:
    checks: list[AssertionCheck] = []
    if not isinstance(spec, dict):
        return AssertionOutcome(0, 0, ())

    for path, expected in _as_map(spec.get("equals")).items():
        actual = read_path_value(report, path)
        ok = same_value(actual, expected)
        message = "ok" if ok else f"expected {json_text(expected)} but got {json_text(actual)}"
        checks.append(AssertionCheck("equals", path, ok, message))

    for path, needle in _as_map(spec.get("contains")).items():
        actual = read_path_value(report, path)
        text = actual if isinstance(actual, str) else ""
        expected_text = needle if isinstance(needle, str) else json_text(needle)
        ok = expected_text in text
        message = "ok" if ok else f"expected string to include {json_text(expected_text)}"
        checks.append(AssertionCheck("contains", path, ok, message))

    for path, threshold in _as_map(spec.get("gte")).items():
        actual = read_path_value(report, path)
        ok = (
            is_number(threshold)
            and math.isfinite(threshold)
            and is_number(actual)
            and actual >= threshold
        )
        message = "ok" if ok else f"expected number >= {json_text(threshold)} but got {json_text(actual)}"
        checks.append(AssertionCheck("gte", path, ok, message))

    for path in _as_paths(spec.get("truthy")):
        ok = is_truthy(read_path_value(report, path))
        checks.append(AssertionCheck("truthy", path, ok, "ok" if ok else "expected truthy value"))

    for path in _as_paths(spec.get("exists")):
        ok = read_path_value(report, path) is not MISSING
        checks.append(AssertionCheck("exists", path, ok, "ok" if ok else "expected path to exist"))

    failed = sum(1 for check in checks if not check.ok)
    return AssertionOutcome(len(checks), failed, tuple(checks))
