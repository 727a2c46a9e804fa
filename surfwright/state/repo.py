from __future__ import annotations

import re
from typing import Any

from ..clock import now_iso
from ..config import StateHandle
from ..errors import SurfwrightError
from ..session.hygiene import as_positive_int, with_session_heartbeat

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_PLACEHOLDER_IDS = {"undefined", "null", "nan"}


def sanitize_session_id(raw: str) -> str:
    value = (raw or "").strip()
    if value.lower() in _PLACEHOLDER_IDS:
        raise SurfwrightError("E_SESSION_ID_INVALID", "sessionId must be an explicit non-placeholder handle")
    if not SESSION_ID_RE.match(value):
        raise SurfwrightError(
            "E_SESSION_ID_INVALID", "sessionId may only contain letters, numbers, dot, underscore, and dash"
        )
    return value


def _allocate(state: dict[str, Any], counter: str, prefix: str, taken) -> str:
    ordinal = as_positive_int(state.get(counter)) or 1
    candidate = f"{prefix}-{ordinal}"
    while taken(candidate):
        ordinal += 1
        candidate = f"{prefix}-{ordinal}"
    state[counter] = ordinal + 1
    return candidate


def allocate_session_id(state: dict[str, Any], prefix: str, handle: StateHandle) -> str:
    """Next free ``s-N``/``a-N`` id; managed ids also skip leftover profile directories."""

    def taken(candidate: str) -> bool:
        if candidate in state["sessions"]:
            return True
        return prefix == "s" and handle.profile_dir(candidate).exists()

    return _allocate(state, "nextSessionOrdinal", prefix, taken)


def allocate_capture_id(state: dict[str, Any]) -> str:
    return _allocate(state, "nextCaptureOrdinal", "c", lambda c: c in state["networkCaptures"])


def allocate_artifact_id(state: dict[str, Any]) -> str:
    return _allocate(state, "nextArtifactOrdinal", "na", lambda c: c in state["networkArtifacts"])


def assert_session_does_not_exist(state: dict[str, Any], session_id: str) -> None:
    if session_id in state["sessions"]:
        raise SurfwrightError("E_SESSION_EXISTS", f"Session {session_id} already exists")


def build_target_record(
    *,
    target_id: str,
    session_id: str,
    url: str,
    title: str,
    status: int | None = None,
    action_id: str | None = None,
    action_kind: str | None = None,
) -> dict[str, Any]:
    now = now_iso()
    record: dict[str, Any] = {
        "targetId": target_id,
        "sessionId": session_id,
        "url": url,
        "title": title,
        "status": status,
        "updatedAt": now,
    }
    if action_id is not None:
        record.update({"lastActionId": action_id, "lastActionAt": now, "lastActionKind": action_kind})
    return record


def apply_target_update(state: dict[str, Any], target: dict[str, Any]) -> None:
    existing = state["targets"].get(target["targetId"]) or {}
    merged = dict(target)
    for key in ("lastActionId", "lastActionAt", "lastActionKind"):
        if key not in target:
            merged[key] = existing.get(key)
    state["targets"][target["targetId"]] = merged
    session = state["sessions"].get(target["sessionId"])
    if session is not None:
        state["sessions"][target["sessionId"]] = with_session_heartbeat(session)
