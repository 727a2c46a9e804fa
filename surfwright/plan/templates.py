"""`{{ path }}` placeholder resolution against the live run scope.

- Exact: a string that is only `{{ expr }}` resolves to the scope value with its type kept.
- Inline: `... {{ expr }} ...` interpolates each match as text.

A path that does not resolve is an input error naming the template and where it sits.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

from ..errors import query_invalid

_TEMPLATE_EXACT_RE = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")
_TEMPLATE_INLINE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INDEX_RE = re.compile(r"\[(\d+)\]")


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _step_into(cursor: Any, part: str) -> Any:
    if isinstance(cursor, dict):
        return cursor[part] if part in cursor else MISSING
    if isinstance(cursor, list):
        if part == "length":
            return len(cursor)
        if part.isdigit() and int(part) < len(cursor):
            return cursor[int(part)]
    return MISSING


def read_path_value(value: Any, path_expr: str) -> Any:
    """Walk `a.b[0].c` into nested dicts/lists; MISSING when any hop is absent."""
    normalized = _INDEX_RE.sub(r".\1", path_expr.strip())
    if not normalized:
        return value
    cursor = value
    for part in (p.strip() for p in normalized.split(".")):
        if not part:
            continue
        cursor = _step_into(cursor, part)
        if cursor is MISSING:
            return MISSING
    return cursor


def number_text(value: float | int) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
    return str(value)


def _json_number_form(value: Any) -> Any:
    """Render numbers the way `JSON.stringify` does: integral floats as ints, NaN/Infinity as null."""
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer() and abs(value) < 1e21:
            return int(value)
        return value
    if isinstance(value, list):
        return [_json_number_form(item) for item in value]
    if isinstance(value, dict):
        return {key: _json_number_form(item) for key, item in value.items()}
    return value


def json_text(value: Any) -> str:
    """Compact JSON text; MISSING renders as `undefined`."""
    if value is MISSING:
        return "undefined"
    return json.dumps(_json_number_form(value), separators=(",", ":"), ensure_ascii=False, default=str)


def interpolation_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return number_text(value)
    return json_text(value)


def is_template_string(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value and "}}" in value


def resolve_template_in_value(value: Any, scope: dict[str, Any], label: str) -> Any:
    if isinstance(value, str):
        exact = _TEMPLATE_EXACT_RE.match(value)
        if exact:
            resolved = read_path_value(scope, exact.group(1))
            if resolved is MISSING:
                raise query_invalid(f"Unresolved template {value} at {label}")
            return resolved
        if "{{" not in value:
            return value

        def _repl(match: re.Match[str]) -> str:
            expr = match.group(1)
            resolved = read_path_value(scope, expr)
            if resolved is MISSING:
                raise query_invalid(f"Unresolved template {{{{{expr}}}}} at {label}")
            return interpolation_text(resolved)

        return _TEMPLATE_INLINE_RE.sub(_repl, value)

    if isinstance(value, list):
        return [resolve_template_in_value(item, scope, f"{label}[{idx}]") for idx, item in enumerate(value)]

    if isinstance(value, dict):
        return {key: resolve_template_in_value(item, scope, f"{label}.{key}") for key, item in value.items()}

    return value
