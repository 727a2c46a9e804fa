"""Typed, fully resolved parameters handed to the Ops binding, plus field parsers.

Parsers take the already template-resolved step value and a path label used in
`E_QUERY_INVALID` messages.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any

from ..errors import query_invalid
from .assertions import is_number

STEP_ALIAS_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]{0,63}$")


def parse_optional_string(value: Any, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise query_invalid(f"{label} must be a string")
    return value


def parse_optional_boolean(value: Any, label: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise query_invalid(f"{label} must be a boolean")
    return value


def parse_optional_integer(value: Any, label: str) -> int | None:
    if value is None:
        return None
    if not is_number(value) or not math.isfinite(value) or not float(value).is_integer():
        raise query_invalid(f"{label} must be an integer")
    return int(value)


def parse_optional_string_list(value: Any, label: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise query_invalid(f"{label} must be a string or string[]")
    for idx, item in enumerate(value):
        if not isinstance(item, str):
            raise query_invalid(f"{label}[{idx}] must be a string")
    return tuple(value)


def parse_step_alias(value: Any, index: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise query_invalid(f"steps[{index}].as must be a string")
    alias = value.strip()
    if not alias:
        raise query_invalid(f"steps[{index}].as must not be empty")
    if not STEP_ALIAS_RE.match(alias):
        raise query_invalid(f"steps[{index}].as contains invalid characters")
    return alias


def parse_step_timeout_ms(value: Any, fallback: int, index: int) -> int:
    if value is None:
        return fallback
    if not is_number(value) or not math.isfinite(value) or not float(value).is_integer() or value <= 0:
        raise query_invalid(f"steps[{index}].timeoutMs must be a positive integer")
    return int(value)


@dataclass(frozen=True)
class OpenParams:
    url: str
    timeout_ms: int
    session_id: str | None
    reuse: str | None = None


@dataclass(frozen=True)
class ListParams:
    timeout_ms: int
    session_id: str | None
    persist_state: bool = True


@dataclass(frozen=True)
class TargetStepParams:
    target_id: str
    timeout_ms: int
    session_id: str | None
    frame_scope: str | None
    persist_state: bool


@dataclass(frozen=True)
class SnapshotParams(TargetStepParams):
    selector: str | None = None
    visible_only: bool = False


@dataclass(frozen=True)
class FindParams(TargetStepParams):
    text: str | None = None
    selector: str | None = None
    contains: str | None = None
    visible_only: bool = False
    first: bool = False
    limit: int | None = None


@dataclass(frozen=True)
class CountParams(TargetStepParams):
    text: str | None = None
    selector: str | None = None
    contains: str | None = None
    visible_only: bool = False


@dataclass(frozen=True)
class ScrollPlanParams(TargetStepParams):
    mode: str | None = None
    steps_csv: str | None = None
    settle_ms: int | None = None
    count_selector: str | None = None
    count_contains: str | None = None
    count_visible_only: bool = False


@dataclass(frozen=True)
class PostActionChecks:
    """Waits and proof assertions run after a mutating page action."""

    wait_for_text: str | None = None
    wait_for_selector: str | None = None
    wait_network_idle: bool = False
    wait_timeout_ms: int | None = None
    proof: bool = False
    assert_url_prefix: str | None = None
    assert_selector: str | None = None
    assert_text: str | None = None


@dataclass(frozen=True)
class ClickParams(TargetStepParams):
    text: str | None = None
    selector: str | None = None
    contains: str | None = None
    visible_only: bool = False
    within: str | None = None
    index: int | None = None
    snapshot: bool = False
    count_after: bool = False
    expect_count_after: int | None = None
    checks: PostActionChecks = PostActionChecks()


@dataclass(frozen=True)
class ClickReadParams(TargetStepParams):
    text: str | None = None
    selector: str | None = None
    contains: str | None = None
    visible_only: bool = False
    index: int | None = None
    read_selector: str | None = None
    read_visible_only: bool = False
    read_frame_scope: str | None = None
    chunk_size: int | None = None
    chunk_index: int | None = None
    checks: PostActionChecks = PostActionChecks()


@dataclass(frozen=True)
class FillParams(TargetStepParams):
    value: str = ""
    text: str | None = None
    selector: str | None = None
    contains: str | None = None
    visible_only: bool = False
    events: str | None = None
    event_mode: str | None = None
    checks: PostActionChecks = PostActionChecks()


@dataclass(frozen=True)
class UploadParams(TargetStepParams):
    selector: str = ""
    files: tuple[str, ...] = ()
    submit_selector: str | None = None
    expect_uploaded_filename: str | None = None
    wait_for_result: bool = False
    result_selector: str | None = None
    result_text_contains: str | None = None
    result_filename_regex: str | None = None
    checks: PostActionChecks = PostActionChecks()


@dataclass(frozen=True)
class ReadParams(TargetStepParams):
    selector: str | None = None
    visible_only: bool = False
    chunk_size: int | None = None
    chunk_index: int | None = None


@dataclass(frozen=True)
class EvalParams(TargetStepParams):
    expression: str | None = None
    arg_json: str | None = None
    capture_console: bool | None = None
    max_console: int | None = None


@dataclass(frozen=True)
class WaitParams(TargetStepParams):
    for_text: str | None = None
    for_selector: str | None = None
    network_idle: bool = False


@dataclass(frozen=True)
class ExtractParams(TargetStepParams):
    kind: str | None = None
    selector: str | None = None
    visible_only: bool = False
    limit: int | None = None
