"""Sharded on-disk layout under ``<root>/state-v2``.

``meta.json`` carries the version, active session, ordinals and the revision
counter; entity maps live in their own files and targets are split per owning
session under ``targets-by-session/``.
"""

from __future__ import annotations

import json
import os
import secrets
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote


STATE_V2_DIRNAME = "state-v2"
TARGETS_BY_SESSION_DIRNAME = "targets-by-session"
META_FILENAME = "meta.json"
SESSIONS_FILENAME = "sessions.json"
NETWORK_CAPTURES_FILENAME = "network-captures.json"
NETWORK_ARTIFACTS_FILENAME = "network-artifacts.json"


class ShardFormatError(ValueError):
    pass


def v2_root(root: Path) -> Path:
    return root / STATE_V2_DIRNAME


def targets_root(root: Path) -> Path:
    return v2_root(root) / TARGETS_BY_SESSION_DIRNAME


def session_shard_name(session_id: str) -> str:
    return f"{quote(session_id, safe='')}.json"


def parse_session_shard_name(filename: str) -> str | None:
    if not filename.endswith(".json") or len(filename) <= 5:
        return None
    return unquote(filename[:-5]) or None


def _read_json_object(path: Path) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ShardFormatError(f"state shard is not valid JSON: {path}") from exc
    if not isinstance(parsed, dict):
        raise ShardFormatError(f"state shard must be JSON object: {path}")
    return parsed


def _positive_int_or(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if value != value or value in (float("inf"), float("-inf")) or value <= 0:
        return fallback
    return int(value)


def payload_for_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")) + "\n"


def write_atomic_if_changed(path: Path, payload: str) -> bool:
    try:
        if path.read_text(encoding="utf-8") == payload:
            return False
    except FileNotFoundError:
        pass
    temp = path.with_name(f"{path.name}.{os.getpid()}.{int(time.time() * 1000)}.{secrets.token_hex(6)}.tmp")
    fd = os.open(str(temp), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(temp, path)
    finally:
        if temp.exists():
            temp.unlink()
    return True


def read_shards(root: Path) -> dict[str, Any] | None:
    """Raw state assembled from shards, or None when no shard store exists yet."""
    meta = _read_json_object(v2_root(root) / META_FILENAME)
    if meta is None:
        return None
    sessions = _read_json_object(v2_root(root) / SESSIONS_FILENAME) or {}
    captures = _read_json_object(v2_root(root) / NETWORK_CAPTURES_FILENAME) or {}
    artifacts = _read_json_object(v2_root(root) / NETWORK_ARTIFACTS_FILENAME) or {}

    targets: dict[str, Any] = {}
    troot = targets_root(root)
    if troot.is_dir():
        for path in sorted(troot.iterdir(), key=lambda p: p.name):
            if not path.is_file():
                continue
            session_id = parse_session_shard_name(path.name)
            if session_id is None:
                continue
            shard = _read_json_object(path) or {}
            for target_id, record in shard.items():
                # Records filed under the wrong session are ignored.
                if isinstance(record, dict) and record.get("sessionId") == session_id:
                    targets[target_id] = record

    active = meta.get("activeSessionId")
    return {
        "version": _positive_int_or(meta.get("version"), 1),
        "activeSessionId": active if isinstance(active, str) and active else None,
        "nextSessionOrdinal": _positive_int_or(meta.get("nextSessionOrdinal"), 1),
        "nextCaptureOrdinal": _positive_int_or(meta.get("nextCaptureOrdinal"), 1),
        "nextArtifactOrdinal": _positive_int_or(meta.get("nextArtifactOrdinal"), 1),
        "sessions": sessions,
        "targets": targets,
        "networkCaptures": captures,
        "networkArtifacts": artifacts,
    }


def read_revision(root: Path) -> int:
    try:
        meta = _read_json_object(v2_root(root) / META_FILENAME)
    except ShardFormatError:
        return 0
    if meta is None:
        return 0
    return _positive_int_or(meta.get("revision"), 0)


def write_shards(root: Path, state: dict[str, Any], *, next_revision: int | None = None) -> bool:
    base = v2_root(root)
    troot = targets_root(root)
    troot.mkdir(parents=True, exist_ok=True)

    if next_revision is None or next_revision <= 0:
        next_revision = max(1, read_revision(root) + 1)
    meta = {
        "version": state["version"],
        "activeSessionId": state.get("activeSessionId"),
        "nextSessionOrdinal": state["nextSessionOrdinal"],
        "nextCaptureOrdinal": state["nextCaptureOrdinal"],
        "nextArtifactOrdinal": state["nextArtifactOrdinal"],
        "revision": int(next_revision),
    }
    changed = write_atomic_if_changed(base / SESSIONS_FILENAME, payload_for_json(state["sessions"]))
    changed = (
        write_atomic_if_changed(base / NETWORK_CAPTURES_FILENAME, payload_for_json(state["networkCaptures"]))
        or changed
    )
    changed = (
        write_atomic_if_changed(base / NETWORK_ARTIFACTS_FILENAME, payload_for_json(state["networkArtifacts"]))
        or changed
    )

    by_session: dict[str, dict[str, Any]] = {}
    for target_id, target in state["targets"].items():
        by_session.setdefault(target["sessionId"], {})[target_id] = target
    wanted = set()
    for session_id, bucket in by_session.items():
        name = session_shard_name(session_id)
        wanted.add(name)
        changed = write_atomic_if_changed(troot / name, payload_for_json(bucket)) or changed

    for path in troot.iterdir():
        if path.is_file() and path.name.endswith(".json") and path.name not in wanted:
            try:
                path.unlink()
                changed = True
            except FileNotFoundError:
                pass

    # meta.json carries the revision and is written last.
    return write_atomic_if_changed(base / META_FILENAME, payload_for_json(meta)) or changed
