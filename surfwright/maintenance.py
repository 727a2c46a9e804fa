"""Housekeeping for persisted sessions and targets.

Reachability probes run before the state transaction and are matched back to
sessions by fingerprint, so a session that changed while it was being probed is
left alone rather than judged on stale evidence.
"""

from __future__ import annotations

import logging
import signal
import time
from dataclasses import asdict, dataclass
from typing import Any

from .cdp import close_browser, is_cdp_endpoint_alive
from .clock import now_iso, parse_iso_ms
from .config import CDP_HEALTHCHECK_TIMEOUT_MS
from .errors import SurfwrightError
from .launcher import SIGTERM_GRACE_MS, is_pid_alive, signal_pid, terminate_pid
from .session.hygiene import has_session_lease_expired, with_session_heartbeat
from .state import StateStore

logger = logging.getLogger("surfwright.maintenance")

DEFAULT_TARGET_MAX_AGE_HOURS = 168
DEFAULT_TARGET_MAX_PER_SESSION = 200
MAX_TARGET_MAX_AGE_HOURS = 8760
MAX_TARGET_MAX_PER_SESSION = 5000
SESSION_PRUNE_REACHABILITY_TIMEOUT_CAP_MS = 1500
SESSION_CLEAR_SHUTDOWN_TIMEOUT_CAP_MS = 2000
MANAGED_UNREACHABLE_GRACE_PROBES = 2


@dataclass
class SessionPruneSummary:
    activeSessionId: str | None = None
    scanned: int = 0
    kept: int = 0
    removed: int = 0
    removedByLeaseExpired: int = 0
    removedAttachedUnreachable: int = 0
    removedManagedUnreachable: int = 0
    removedManagedByGrace: int = 0
    removedManagedByFlag: int = 0
    repairedManagedPid: int = 0


@dataclass
class TargetPruneSummary:
    activeSessionId: str | None = None
    scanned: int = 0
    remaining: int = 0
    removed: int = 0
    removedOrphaned: int = 0
    removedByAge: int = 0
    removedByCap: int = 0
    maxAgeHours: int = DEFAULT_TARGET_MAX_AGE_HOURS
    maxPerSession: int = DEFAULT_TARGET_MAX_PER_SESSION


def session_fingerprint(session: dict[str, Any]) -> str:
    parts = [
        session.get("kind"),
        session.get("cdpOrigin"),
        session.get("debugPort"),
        session.get("userDataDir"),
        session.get("browserPid"),
        session.get("lastSeenAt"),
    ]
    return "|".join("" if part is None else str(part) for part in parts)


def _int_in_range(value: int | None, *, name: str, low: int, high: int, fallback: int) -> int:
    if value is None:
        return fallback
    if isinstance(value, bool) or not isinstance(value, int) or value < low or value > high:
        raise SurfwrightError("E_QUERY_INVALID", f"{name} must be an integer between {low} and {high}")
    return value


def parse_target_prune_limits(max_age_hours: int | None, max_per_session: int | None) -> tuple[int, int]:
    return (
        _int_in_range(
            max_age_hours,
            name="max-age-hours",
            low=1,
            high=MAX_TARGET_MAX_AGE_HOURS,
            fallback=DEFAULT_TARGET_MAX_AGE_HOURS,
        ),
        _int_in_range(
            max_per_session,
            name="max-per-session",
            low=1,
            high=MAX_TARGET_MAX_PER_SESSION,
            fallback=DEFAULT_TARGET_MAX_PER_SESSION,
        ),
    )


def probe_sessions(state: dict[str, Any], timeout_ms: int) -> dict[str, tuple[str, bool]]:
    """session id -> (fingerprint, reachable) for every session with a live lease."""
    timeout_ms = max(CDP_HEALTHCHECK_TIMEOUT_MS, min(timeout_ms, SESSION_PRUNE_REACHABILITY_TIMEOUT_CAP_MS))
    probes: dict[str, tuple[str, bool]] = {}
    for session_id in sorted(state["sessions"]):
        session = state["sessions"][session_id]
        if has_session_lease_expired(session):
            continue
        probes[session_id] = (session_fingerprint(session), is_cdp_endpoint_alive(session["cdpOrigin"], timeout_ms))
    return probes


def apply_session_prune(
    state: dict[str, Any],
    probes: dict[str, tuple[str, bool]],
    *,
    drop_managed_unreachable: bool,
    drop_attached_unreachable: bool = True,
) -> tuple[SessionPruneSummary, list[dict[str, Any]]]:
    """Prune sessions in place; returns the summary and managed sessions to stop.

    Unreachable attached sessions are dropped unless `drop_attached_unreachable` is
    false (`--keep-attached-unreachable`).
    """
    summary = SessionPruneSummary()
    to_stop: list[dict[str, Any]] = []
    session_ids = sorted(state["sessions"])
    summary.scanned = len(session_ids)

    for session_id in session_ids:
        session = state["sessions"][session_id]
        probe = probes.get(session_id)
        if probe is not None and probe[0] != session_fingerprint(session):
            continue

        if has_session_lease_expired(session):
            if session.get("kind") == "managed":
                to_stop.append(session)
            del state["sessions"][session_id]
            summary.removedByLeaseExpired += 1
            continue

        if probe is None:
            continue
        if probe[1]:
            state["sessions"][session_id] = with_session_heartbeat(session)
            continue

        if session.get("kind") == "attached":
            if drop_attached_unreachable:
                del state["sessions"][session_id]
                summary.removedAttachedUnreachable += 1
            continue

        count = max(0, int(session.get("managedUnreachableCount") or 0)) + 1
        if session.get("browserPid") is not None and not is_pid_alive(session.get("browserPid")):
            session = {**session, "browserPid": None}
            state["sessions"][session_id] = session
            summary.repairedManagedPid += 1
        if drop_managed_unreachable or count >= MANAGED_UNREACHABLE_GRACE_PROBES:
            to_stop.append(session)
            del state["sessions"][session_id]
            summary.removedManagedUnreachable += 1
            if drop_managed_unreachable:
                summary.removedManagedByFlag += 1
            else:
                summary.removedManagedByGrace += 1
            continue
        state["sessions"][session_id] = {
            **session,
            "managedUnreachableSince": session.get("managedUnreachableSince") or now_iso(),
            "managedUnreachableCount": count,
        }

    if state.get("activeSessionId") and state["activeSessionId"] not in state["sessions"]:
        state["activeSessionId"] = None
    summary.activeSessionId = state.get("activeSessionId")
    summary.kept = len(state["sessions"])
    summary.removed = (
        summary.removedByLeaseExpired + summary.removedAttachedUnreachable + summary.removedManagedUnreachable
    )
    return summary, to_stop


def apply_target_prune(
    state: dict[str, Any], *, max_age_hours: int, max_per_session: int, now_ms: float | None = None
) -> TargetPruneSummary:
    now = time.time() * 1000 if now_ms is None else now_ms
    cutoff = now - max_age_hours * 60 * 60 * 1000
    summary = TargetPruneSummary(maxAgeHours=max_age_hours, maxPerSession=max_per_session)
    summary.scanned = len(state["targets"])

    kept: dict[str, list[tuple[float, str]]] = {}
    for target_id, target in list(state["targets"].items()):
        if target.get("sessionId") not in state["sessions"]:
            del state["targets"][target_id]
            summary.removedOrphaned += 1
            continue
        updated = parse_iso_ms(target.get("updatedAt")) or 0.0
        if updated < cutoff:
            del state["targets"][target_id]
            summary.removedByAge += 1
            continue
        kept.setdefault(target["sessionId"], []).append((updated, target_id))

    for entries in kept.values():
        entries.sort(key=lambda item: (-item[0], item[1]))
        for _, target_id in entries[max_per_session:]:
            del state["targets"][target_id]
            summary.removedByCap += 1

    summary.activeSessionId = state.get("activeSessionId")
    summary.remaining = len(state["targets"])
    summary.removed = summary.removedOrphaned + summary.removedByAge + summary.removedByCap
    return summary


def stop_managed_session_process(session: dict[str, Any]) -> None:
    """Best-effort SIGTERM; already-exited browsers are ignored."""
    if session.get("kind") != "managed" or not is_pid_alive(session.get("browserPid")):
        return
    if not signal_pid(session.get("browserPid"), signal.SIGTERM):
        logger.warning("could not stop managed browser for session %s", session.get("sessionId"))


def stop_session_process(session: dict[str, Any], timeout_ms: int) -> bool:
    if session.get("kind") == "managed" and is_pid_alive(session.get("browserPid")):
        grace = max(100, min(timeout_ms, SIGTERM_GRACE_MS))
        return terminate_pid(session.get("browserPid"), grace_ms=grace)
    timeout_ms = max(CDP_HEALTHCHECK_TIMEOUT_MS, min(timeout_ms, SESSION_CLEAR_SHUTDOWN_TIMEOUT_CAP_MS))
    if not is_cdp_endpoint_alive(session["cdpOrigin"], timeout_ms):
        return False
    return close_browser(session["cdpOrigin"], timeout_ms)


def _stop_all(sessions: list[dict[str, Any]]) -> None:
    for session in sessions:
        logger.info("stopping managed browser for evicted session %s", session.get("sessionId"))
        stop_managed_session_process(session)


def session_prune(
    store: StateStore,
    *,
    timeout_ms: int,
    drop_managed_unreachable: bool = False,
    keep_attached_unreachable: bool = False,
) -> dict[str, Any]:
    probes = probe_sessions(store.read(), timeout_ms)

    def mutate(state: dict[str, Any]):
        return apply_session_prune(
            state,
            probes,
            drop_managed_unreachable=drop_managed_unreachable,
            drop_attached_unreachable=not keep_attached_unreachable,
        )

    summary, to_stop = store.update(mutate)
    _stop_all(to_stop)
    return {"ok": True, **asdict(summary)}


def target_prune(
    store: StateStore, *, max_age_hours: int | None = None, max_per_session: int | None = None
) -> dict[str, Any]:
    age, cap = parse_target_prune_limits(max_age_hours, max_per_session)
    summary = store.update(lambda state: apply_target_prune(state, max_age_hours=age, max_per_session=cap))
    return {"ok": True, **asdict(summary)}


def state_reconcile(
    store: StateStore,
    *,
    timeout_ms: int,
    max_age_hours: int | None = None,
    max_per_session: int | None = None,
    drop_managed_unreachable: bool = False,
    keep_attached_unreachable: bool = False,
) -> dict[str, Any]:
    age, cap = parse_target_prune_limits(max_age_hours, max_per_session)
    probes = probe_sessions(store.read(), timeout_ms)

    def mutate(state: dict[str, Any]):
        sessions, to_stop = apply_session_prune(
            state,
            probes,
            drop_managed_unreachable=drop_managed_unreachable,
            drop_attached_unreachable=not keep_attached_unreachable,
        )
        targets = apply_target_prune(state, max_age_hours=age, max_per_session=cap)
        return sessions, targets, to_stop

    sessions, targets, to_stop = store.update(mutate)
    _stop_all(to_stop)
    session_report = asdict(sessions)
    target_report = asdict(targets)
    session_report.pop("activeSessionId")
    target_report.pop("activeSessionId")
    return {
        "ok": True,
        "activeSessionId": targets.activeSessionId,
        "sessions": session_report,
        "targets": target_report,
    }


def session_clear(store: StateStore, *, timeout_ms: int, keep_processes: bool = False) -> dict[str, Any]:
    timeout_ms = max(CDP_HEALTHCHECK_TIMEOUT_MS, min(timeout_ms, SESSION_CLEAR_SHUTDOWN_TIMEOUT_CAP_MS))

    def mutate(state: dict[str, Any]):
        removed = {
            "sessions": sorted(state["sessions"].values(), key=lambda s: s["sessionId"]),
            "targetsRemoved": len(state["targets"]),
            "networkCapturesRemoved": len(state["networkCaptures"]),
            "networkArtifactsRemoved": len(state["networkArtifacts"]),
        }
        state["activeSessionId"] = None
        state["sessions"] = {}
        state["targets"] = {}
        state["networkCaptures"] = {}
        state["networkArtifacts"] = {}
        return removed

    removed = store.update(mutate)
    sessions = removed["sessions"]
    requested = succeeded = failed = 0
    if not keep_processes:
        for session in sessions:
            requested += 1
            if stop_session_process(session, timeout_ms):
                succeeded += 1
            else:
                failed += 1
                logger.warning("session %s did not confirm shutdown", session["sessionId"])
    managed = sum(1 for s in sessions if s.get("kind") == "managed")
    return {
        "ok": True,
        "activeSessionId": None,
        "scanned": len(sessions),
        "cleared": len(sessions),
        "clearedManaged": managed,
        "clearedAttached": len(sessions) - managed,
        "keepProcesses": keep_processes,
        "processShutdown": {"requested": requested, "succeeded": succeeded, "failed": failed},
        "targetsRemoved": removed["targetsRemoved"],
        "networkCapturesRemoved": removed["networkCapturesRemoved"],
        "networkArtifactsRemoved": removed["networkArtifactsRemoved"],
    }
