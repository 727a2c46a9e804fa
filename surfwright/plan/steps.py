"""Closed set of plan step kinds."""

from __future__ import annotations

from enum import Enum


class StepKind(str, Enum):
    OPEN = "open"
    LIST = "list"
    SNAPSHOT = "snapshot"
    FIND = "find"
    COUNT = "count"
    SCROLL_PLAN = "scroll-plan"
    CLICK = "click"
    CLICK_READ = "click-read"
    FILL = "fill"
    UPLOAD = "upload"
    READ = "read"
    EVAL = "eval"
    WAIT = "wait"
    EXTRACT = "extract"
    REPEAT_UNTIL = "repeat-until"


# camelCase spellings accepted in plans
STEP_ID_ALIASES: dict[str, StepKind] = {
    "scrollPlan": StepKind.SCROLL_PLAN,
    "clickRead": StepKind.CLICK_READ,
    "repeatUntil": StepKind.REPEAT_UNTIL,
}

SUPPORTED_STEP_IDS: tuple[str, ...] = tuple(kind.value for kind in StepKind) + tuple(STEP_ID_ALIASES)

# kinds that locate an element by text or selector
QUERY_STEP_KINDS = frozenset({StepKind.CLICK, StepKind.CLICK_READ, StepKind.FIND, StepKind.COUNT, StepKind.FILL})


def parse_step_kind(step_id: object) -> StepKind | None:
    if not isinstance(step_id, str):
        return None
    alias = STEP_ID_ALIASES.get(step_id)
    if alias is not None:
        return alias
    try:
        return StepKind(step_id)
    except ValueError:
        return None
