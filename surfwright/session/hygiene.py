"""Session policy, lease and heartbeat rules.

Sessions carry a lease: every observed action pushes ``leaseExpiresAt`` forward by
``leaseTtlMs`` and maintenance evicts sessions whose lease has lapsed, regardless
of reachability. Attached sessions default to the short ``ephemeral`` lease.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from typing import Any

from ..clock import iso_from_ms, now_iso, parse_iso_ms
from ..config import (
    DEFAULT_EPHEMERAL_SESSION_LEASE_TTL_MS,
    DEFAULT_SESSION_LEASE_TTL_MS,
    MAX_SESSION_LEASE_TTL_MS,
    MIN_SESSION_LEASE_TTL_MS,
    current_agent_id,
    env_lease_ttl_ms,
    normalize_agent_id,
)

SESSION_POLICIES = ("ephemeral", "persistent")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return math.floor(value)


def as_positive_int(value: Any) -> int | None:
    parsed = _as_int(value)
    return parsed if parsed is not None and parsed > 0 else None


def as_non_negative_int(value: Any) -> int | None:
    parsed = _as_int(value)
    return parsed if parsed is not None and parsed >= 0 else None


def normalize_session_lease_ttl_ms(value: Any) -> int | None:
    parsed = as_positive_int(value)
    if parsed is None:
        return None
    return max(MIN_SESSION_LEASE_TTL_MS, min(parsed, MAX_SESSION_LEASE_TTL_MS))


def normalize_session_policy(value: Any) -> str | None:
    return value if value in SESSION_POLICIES else None


def default_session_policy_for_kind(kind: str) -> str:
    return "ephemeral" if kind == "attached" else "persistent"


def default_session_lease_ttl_ms(policy: str) -> int:
    if policy == "ephemeral":
        return DEFAULT_EPHEMERAL_SESSION_LEASE_TTL_MS
    return DEFAULT_SESSION_LEASE_TTL_MS


def session_lease_ttl_ms_from_env() -> int:
    return normalize_session_lease_ttl_ms(env_lease_ttl_ms()) or DEFAULT_SESSION_LEASE_TTL_MS


def session_default_lease_ttl_ms(policy: str) -> int:
    # An env override applies to every policy; otherwise each policy keeps its own default.
    env_ttl = session_lease_ttl_ms_from_env()
    if env_ttl == DEFAULT_SESSION_LEASE_TTL_MS:
        return default_session_lease_ttl_ms(policy)
    return env_ttl


def lease_expiry_iso(anchor_iso: str, ttl_ms: int) -> str:
    anchor = parse_iso_ms(anchor_iso)
    base = anchor if anchor is not None else time.time() * 1000
    return iso_from_ms(base + ttl_ms)


def with_session_heartbeat(
    session: dict[str, Any], observed_at: str | None = None, *, owner_id: str | None = None
) -> dict[str, Any]:
    """Renew the lease from `observed_at`; an unowned session is claimed by `owner_id` (default: env agent)."""
    observed_at = observed_at or now_iso()
    policy = normalize_session_policy(session.get("policy")) or default_session_policy_for_kind(session.get("kind", ""))
    ttl = normalize_session_lease_ttl_ms(session.get("leaseTtlMs")) or session_default_lease_ttl_ms(policy)
    owner = session.get("ownerId")
    owner = normalize_agent_id(owner) if isinstance(owner, str) else None
    return {
        **session,
        "policy": policy,
        "ownerId": owner or normalize_agent_id(owner_id) or current_agent_id(),
        "leaseTtlMs": ttl,
        "leaseExpiresAt": lease_expiry_iso(observed_at, ttl),
        "managedUnreachableSince": None,
        "managedUnreachableCount": 0,
        "lastSeenAt": observed_at,
    }


def has_session_lease_expired(session: dict[str, Any], now_ms: float | None = None) -> bool:
    lease_ms = parse_iso_ms(session.get("leaseExpiresAt"))
    if lease_ms is None:
        return False
    return lease_ms <= (time.time() * 1000 if now_ms is None else now_ms)


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def normalize_session_record(
    session_id: str,
    raw: Any,
    *,
    default_user_data_dir: Callable[[str], str],
    infer_debug_port: Callable[[str], int | None],
) -> dict[str, Any] | None:
    """Coerce a persisted session record into the current shape; None drops it."""
    if not isinstance(raw, dict):
        return None
    cdp_origin = _non_empty_str(raw.get("cdpOrigin"))
    if cdp_origin is None:
        return None
    kind = "attached" if raw.get("kind") == "attached" else "managed"
    policy = normalize_session_policy(raw.get("policy")) or default_session_policy_for_kind(kind)
    if kind == "attached":
        browser_mode = "unknown"
    else:
        browser_mode = "headed" if raw.get("browserMode") == "headed" else "headless"
    user_data_dir = None
    if kind == "managed":
        user_data_dir = _non_empty_str(raw.get("userDataDir")) or default_user_data_dir(session_id)
    profile = raw.get("profile")
    profile = profile.strip() if kind == "managed" and isinstance(profile, str) and profile.strip() else None
    ttl = normalize_session_lease_ttl_ms(raw.get("leaseTtlMs")) or session_default_lease_ttl_ms(policy)
    owner = raw.get("ownerId")
    now = now_iso()
    return {
        "sessionId": session_id,
        "kind": kind,
        "policy": policy,
        "browserMode": browser_mode,
        "cdpOrigin": cdp_origin,
        "debugPort": as_positive_int(raw.get("debugPort")) or infer_debug_port(cdp_origin),
        "userDataDir": user_data_dir,
        "browserPid": as_positive_int(raw.get("browserPid")),
        "ownerId": normalize_agent_id(owner) if isinstance(owner, str) else current_agent_id(),
        "leaseTtlMs": ttl,
        "leaseExpiresAt": _non_empty_str(raw.get("leaseExpiresAt")) or lease_expiry_iso(now, ttl),
        "managedUnreachableSince": _non_empty_str(raw.get("managedUnreachableSince")),
        "managedUnreachableCount": as_non_negative_int(raw.get("managedUnreachableCount")) or 0,
        "profile": profile,
        "createdAt": _non_empty_str(raw.get("createdAt")) or now,
        "lastSeenAt": _non_empty_str(raw.get("lastSeenAt")) or now,
    }
