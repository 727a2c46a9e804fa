"""Forward migrations for persisted state, keyed by the version they upgrade from.

Each function takes a state payload at version ``n`` and returns a new payload at
``n + 1`` without mutating its input.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from ..config import DEFAULT_EPHEMERAL_SESSION_LEASE_TTL_MS, DEFAULT_SESSION_LEASE_TTL_MS, STATE_VERSION
from ..session.hygiene import as_non_negative_int, as_positive_int

StatePayload = dict[str, Any]
Migration = Callable[[StatePayload], StatePayload]


def _parse_version(value: Any) -> int | None:
    parsed = as_positive_int(value)
    return parsed if parsed is not None and parsed >= 1 else None


def _map_sessions(state: StatePayload, fn: Callable[[dict[str, Any]], dict[str, Any]]) -> dict[str, Any]:
    raw = state.get("sessions")
    if not isinstance(raw, dict):
        return {}
    return {sid: fn(session) if isinstance(session, dict) else session for sid, session in raw.items()}


def _ordinal(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 1


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _v1_to_v2(state: StatePayload) -> StatePayload:
    return {
        **state,
        "version": 2,
        "nextCaptureOrdinal": _ordinal(state.get("nextCaptureOrdinal")),
        "nextArtifactOrdinal": _ordinal(state.get("nextArtifactOrdinal")),
        "networkCaptures": _as_dict(state.get("networkCaptures")),
        "networkArtifacts": _as_dict(state.get("networkArtifacts")),
    }


def _v2_session(session: dict[str, Any]) -> dict[str, Any]:
    kind = "attached" if session.get("kind") == "attached" else "managed"
    policy = session.get("policy")
    if policy not in ("ephemeral", "persistent"):
        policy = "ephemeral" if kind == "attached" else "persistent"
    default_ttl = DEFAULT_EPHEMERAL_SESSION_LEASE_TTL_MS if policy == "ephemeral" else DEFAULT_SESSION_LEASE_TTL_MS
    since = session.get("managedUnreachableSince")
    return {
        **session,
        "policy": policy,
        "leaseTtlMs": as_positive_int(session.get("leaseTtlMs")) or default_ttl,
        "managedUnreachableSince": since if isinstance(since, str) and since else None,
        "managedUnreachableCount": as_non_negative_int(session.get("managedUnreachableCount")) or 0,
    }


def _v2_to_v3(state: StatePayload) -> StatePayload:
    return {**state, "version": 3, "sessions": _map_sessions(state, _v2_session)}


def _v3_session(session: dict[str, Any]) -> dict[str, Any]:
    profile = session.get("profile")
    managed = session.get("kind") != "attached"
    return {**session, "profile": profile.strip() if managed and isinstance(profile, str) and profile.strip() else None}


def _v3_to_v4(state: StatePayload) -> StatePayload:
    return {**state, "version": 4, "sessions": _map_sessions(state, _v3_session)}


MIGRATIONS: dict[int, Migration] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
    3: _v3_to_v4,
}


def migrate_state_payload(raw: Any, *, target_version: int = STATE_VERSION) -> StatePayload | None:
    """Upgrade ``raw`` to ``target_version``; None when it cannot be migrated."""
    if not isinstance(raw, dict):
        return None
    state = dict(raw)
    version = _parse_version(state.get("version")) or 1
    if version > target_version:
        return None
    while version < target_version:
        migration = MIGRATIONS.get(version)
        if migration is None:
            return None
        state = migration(state)
        version = _parse_version(state.get("version")) or version + 1
    return {**state, "version": target_version}
