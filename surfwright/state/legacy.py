"""Reader for the pre-shard single ``state.json`` file.

Kept as a compatibility path: stores created before sharding are read from here
once, and ``SURFWRIGHT_STATE_LEGACY_SNAPSHOT`` keeps writing a snapshot for older
readers.
"""

from __future__ import annotations

import json
import logging
import math
import os
import secrets
import time
from pathlib import Path
from typing import Any

from ..cdp import infer_debug_port
from ..clock import now_iso
from ..config import STATE_VERSION, StateHandle
from ..errors import SurfwrightError
from ..session.hygiene import as_positive_int, normalize_session_record
from .migrations import migrate_state_payload
from .shards import write_atomic_if_changed

logger = logging.getLogger("surfwright.state")

CAPTURE_PROFILES = ("api", "page", "ws", "perf")


def empty_state() -> dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "activeSessionId": None,
        "nextSessionOrdinal": 1,
        "nextCaptureOrdinal": 1,
        "nextArtifactOrdinal": 1,
        "sessions": {},
        "targets": {},
        "networkCaptures": {},
        "networkArtifacts": {},
    }


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def quarantine_state_file(state_path: Path, raw: str) -> Path | None:
    target = state_path.with_name(f"state.corrupt.{int(time.time() * 1000)}.{secrets.token_hex(6)}.json")
    try:
        os.replace(state_path, target)
        return target
    except OSError:
        pass
    try:
        fd = os.open(str(target), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(raw)
        return target
    except OSError as exc:
        logger.warning("could not quarantine %s: %s", state_path, exc)
        return None


def _read_failure(code: str, message: str, state_path: Path, raw: str) -> SurfwrightError:
    quarantined = quarantine_state_file(state_path, raw)
    if quarantined is not None:
        logger.warning("quarantined unreadable state file to %s", quarantined)
        hints = [f"quarantined state snapshot: {quarantined}"]
    else:
        hints = ["state snapshot could not be quarantined automatically; inspect state.json permissions"]
    return SurfwrightError(
        code,
        message,
        hints=hints,
        details={
            "statePath": str(state_path),
            "quarantinedPath": None if quarantined is None else str(quarantined),
            "nextCommand": "surfwright state reconcile",
        },
    )


def normalize_target(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    if not all(isinstance(raw.get(key), str) for key in ("targetId", "sessionId", "url", "title")):
        return None
    status = raw.get("status")
    if isinstance(status, bool) or not isinstance(status, (int, float)) or not math.isfinite(status):
        status = None
    return {
        "targetId": raw["targetId"],
        "sessionId": raw["sessionId"],
        "url": raw["url"],
        "title": raw["title"],
        "status": status,
        "lastActionId": _opt_str(raw.get("lastActionId")),
        "lastActionAt": _opt_str(raw.get("lastActionAt")),
        "lastActionKind": _opt_str(raw.get("lastActionKind")),
        "updatedAt": _opt_str(raw.get("updatedAt")) or now_iso(),
    }


def normalize_network_capture(capture_id: str, raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    required = ("sessionId", "targetId", "startedAt", "stopSignalPath", "donePath", "resultPath")
    if not all(isinstance(raw.get(key), str) for key in required):
        return None
    status = raw.get("status")
    profile = raw.get("profile")
    return {
        "captureId": _opt_str(raw.get("captureId")) or capture_id,
        "sessionId": raw["sessionId"],
        "targetId": raw["targetId"],
        "startedAt": raw["startedAt"],
        "status": status if status in ("stopped", "failed") else "recording",
        "profile": profile if profile in CAPTURE_PROFILES else "custom",
        "maxRuntimeMs": as_positive_int(raw.get("maxRuntimeMs")) or 600000,
        "workerPid": as_positive_int(raw.get("workerPid")),
        "stopSignalPath": raw["stopSignalPath"],
        "donePath": raw["donePath"],
        "resultPath": raw["resultPath"],
        "endedAt": _opt_str(raw.get("endedAt")),
        "actionId": _opt_str(raw.get("actionId")) or "a-unknown",
    }


def normalize_network_artifact(artifact_id: str, raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    if not all(isinstance(raw.get(key), str) for key in ("createdAt", "path", "sessionId", "targetId")):
        return None
    return {
        "artifactId": _opt_str(raw.get("artifactId")) or artifact_id,
        "createdAt": raw["createdAt"],
        "format": "har",
        "path": raw["path"],
        "sessionId": raw["sessionId"],
        "targetId": raw["targetId"],
        "captureId": _opt_str(raw.get("captureId")),
        "entries": as_positive_int(raw.get("entries")) or 0,
        "bytes": as_positive_int(raw.get("bytes")) or 0,
    }


def normalize_state(handle: StateHandle, parsed: dict[str, Any]) -> dict[str, Any]:
    """Drop malformed records and fill defaults on an already-migrated payload."""
    state = empty_state()
    state["activeSessionId"] = _opt_str(parsed.get("activeSessionId"))
    for key in ("nextSessionOrdinal", "nextCaptureOrdinal", "nextArtifactOrdinal"):
        state[key] = as_positive_int(parsed.get(key)) or 1

    def default_user_data_dir(session_id: str) -> str:
        return str(handle.profile_dir(session_id))

    sessions = parsed.get("sessions")
    for session_id, raw in (sessions.items() if isinstance(sessions, dict) else ()):
        record = normalize_session_record(
            session_id,
            raw,
            default_user_data_dir=default_user_data_dir,
            infer_debug_port=infer_debug_port,
        )
        if record is not None:
            state["sessions"][session_id] = record

    targets = parsed.get("targets")
    for target_id, raw in (targets.items() if isinstance(targets, dict) else ()):
        record = normalize_target(raw)
        if record is not None and record["targetId"] == target_id:
            state["targets"][target_id] = record

    captures = parsed.get("networkCaptures")
    for capture_id, raw in (captures.items() if isinstance(captures, dict) else ()):
        record = normalize_network_capture(capture_id, raw)
        if record is not None:
            state["networkCaptures"][capture_id] = record

    artifacts = parsed.get("networkArtifacts")
    for artifact_id, raw in (artifacts.items() if isinstance(artifacts, dict) else ()):
        record = normalize_network_artifact(artifact_id, raw)
        if record is not None:
            state["networkArtifacts"][artifact_id] = record
    return state


def read_state_file(handle: StateHandle) -> dict[str, Any]:
    state_path = handle.state_file
    try:
        raw = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return empty_state()
    except OSError as exc:
        raise SurfwrightError(
            "E_STATE_READ_FAILED",
            "Unable to read state file",
            details={"statePath": str(state_path), "cause": str(exc)},
        ) from exc

    try:
        parsed = json.loads(raw)
    except ValueError:
        raise _read_failure("E_STATE_READ_INVALID", "state file is not valid JSON", state_path, raw) from None
    if not isinstance(parsed, dict):
        raise _read_failure("E_STATE_READ_INVALID", "state file must contain a JSON object", state_path, raw)

    migrated = migrate_state_payload(parsed)
    if migrated is None:
        raise _read_failure(
            "E_STATE_VERSION_MISMATCH",
            f"state version mismatch: expected {STATE_VERSION}",
            state_path,
            raw,
        )
    return normalize_state(handle, migrated)


def write_state_file(handle: StateHandle, state: dict[str, Any]) -> None:
    """Full-rewrite snapshot for legacy readers."""
    handle.root_dir.mkdir(parents=True, exist_ok=True)
    write_atomic_if_changed(handle.state_file, json.dumps(state, indent=2) + "\n")
