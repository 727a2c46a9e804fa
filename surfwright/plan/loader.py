from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import query_invalid

PLAN_SOURCE_FLAGS = "--plan, --plan-json, or --replay"


@dataclass(frozen=True)
class ReplayInfo:
    path: str
    recorded_at: str | None
    label: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "recordedAt": self.recorded_at, "label": self.label}


@dataclass(frozen=True)
class LoadedPlan:
    source: str
    replay: ReplayInfo | None
    plan: dict[str, Any]

    @property
    def steps(self) -> list[Any]:
        return self.plan["steps"]

    def replay_dict(self) -> dict[str, Any] | None:
        return self.replay.to_dict() if self.replay else None


def _parse_int(text: str) -> int | float:
    # JSON numbers are doubles; keep the sign of a literal -0.
    return -0.0 if text == "-0" else int(text)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def parse_json_text(raw: str, source: str) -> Any:
    try:
        return json.loads(raw, parse_int=_parse_int, parse_constant=_reject_constant)
    except ValueError as exc:
        raise query_invalid(f"{source} is not valid JSON") from exc


def parse_plan_object(raw: Any, source: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise query_invalid(f"{source} must be a JSON object")
    steps = raw.get("steps")
    if not isinstance(steps, list) or not steps:
        raise query_invalid("plan.steps must be a non-empty array")
    plan: dict[str, Any] = {"steps": steps}
    if "result" in raw:
        if not isinstance(raw["result"], dict):
            raise query_invalid("plan.result must be an object map")
        plan["result"] = raw["result"]
    if "require" in raw:
        plan["require"] = raw["require"]
    return plan


def _read_text(path: str, what: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise query_invalid(f"{what} {path} could not be read: {exc.strerror or exc}") from exc


def load_plan(
    *,
    plan_path: str | None = None,
    plan_json: str | None = None,
    replay_path: str | None = None,
    stdin_text: str | None = None,
) -> LoadedPlan:
    """Load a plan from exactly one source; `plan_path="-"` reads `stdin_text`."""
    provided = sum(1 for value in (plan_path, plan_json, replay_path) if value)
    if provided == 0:
        raise query_invalid(f"Provide one plan source: {PLAN_SOURCE_FLAGS}")
    if provided > 1:
        raise query_invalid(f"Use exactly one plan source: {PLAN_SOURCE_FLAGS}")

    if plan_json:
        parsed = parse_json_text(plan_json, "plan-json")
        return LoadedPlan("inline-json", None, parse_plan_object(parsed, "plan-json"))

    if plan_path:
        if plan_path == "-":
            raw = stdin_text or ""
            if not raw.strip():
                raise query_invalid("stdin plan is empty")
            parsed = parse_json_text(raw, "stdin plan")
            return LoadedPlan("stdin", None, parse_plan_object(parsed, "stdin plan"))
        parsed = parse_json_text(_read_text(plan_path, "plan file"), f"plan file {plan_path}")
        return LoadedPlan(plan_path, None, parse_plan_object(parsed, "plan file"))

    replay_path = str(replay_path)
    envelope = parse_json_text(_read_text(replay_path, "replay artifact"), f"replay artifact {replay_path}")
    if not isinstance(envelope, dict):
        raise query_invalid("replay artifact must be an object")
    created_at = envelope.get("createdAt")
    label = envelope.get("label")
    replay = ReplayInfo(
        path=replay_path,
        recorded_at=created_at if isinstance(created_at, str) else None,
        label=label if isinstance(label, str) else None,
    )
    return LoadedPlan(
        f"replay:{replay_path}", replay, parse_plan_object(envelope.get("plan"), "replay artifact plan")
    )
