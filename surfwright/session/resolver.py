"""Session lifecycle: ensure, new, attach, use and list.

Browser launches and reachability probes happen outside state transactions;
the transaction only records the outcome. A launched browser whose commit
loses a race is stopped again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..cdp import infer_debug_port, is_cdp_endpoint_alive, normalize_cdp_origin, redact_cdp_endpoint
from ..clock import now_iso
from ..config import SurfwrightConfig
from ..errors import SurfwrightError
from ..launcher import BrowserLauncher, LaunchResult, find_free_port, terminate_pid
from ..maintenance import session_prune
from ..state import StateStore, allocate_session_id, assert_session_does_not_exist, sanitize_session_id
from .hygiene import (
    default_session_policy_for_kind,
    normalize_session_lease_ttl_ms,
    normalize_session_policy,
    with_session_heartbeat,
)

logger = logging.getLogger("surfwright.session")

DEFAULT_SESSION_ID = "s-default"


def session_report(session: dict[str, Any], *, active: bool, created: bool, restarted: bool) -> dict[str, Any]:
    return {
        "ok": True,
        "sessionId": session["sessionId"],
        "kind": session["kind"],
        "cdpOrigin": redact_cdp_endpoint(session["cdpOrigin"]),
        "active": active,
        "created": created,
        "restarted": restarted,
        "browserMode": session.get("browserMode", "unknown"),
        "policy": session.get("policy"),
        "leaseTtlMs": session.get("leaseTtlMs"),
        "leaseExpiresAt": session.get("leaseExpiresAt"),
        "profile": session.get("profile"),
    }


def _parse_policy(raw: str | None) -> str | None:
    if raw is None:
        return None
    policy = normalize_session_policy(raw)
    if policy is None:
        raise SurfwrightError("E_QUERY_INVALID", "policy must be one of: ephemeral, persistent")
    return policy


def _parse_lease_ttl(raw: int | None) -> int | None:
    if raw is None:
        return None
    ttl = normalize_session_lease_ttl_ms(raw)
    if ttl is None:
        raise SurfwrightError("E_QUERY_INVALID", "lease-ttl-ms must be a positive integer within supported bounds")
    return ttl


class SessionResolver:
    def __init__(self, store: StateStore, config: SurfwrightConfig, launcher: BrowserLauncher | None = None) -> None:
        self.store = store
        self.config = config
        self.launcher = launcher or BrowserLauncher(config)

    # managed browsers

    def _launch(self, user_data_dir: Path, timeout_ms: int, port: int | None) -> LaunchResult:
        try:
            return self.launcher.launch(user_data_dir=user_data_dir, timeout_ms=timeout_ms, port=port)
        except SurfwrightError as exc:
            if exc.code != "E_BROWSER_START_TIMEOUT" or port is None:
                raise
            logger.info("port %s did not come up; retrying on a fresh port", port)
            return self.launcher.launch(user_data_dir=user_data_dir, timeout_ms=timeout_ms, port=find_free_port())

    def start_managed_session(
        self,
        session_id: str,
        *,
        timeout_ms: int,
        policy: str | None = None,
        lease_ttl_ms: int | None = None,
        port: int | None = None,
        user_data_dir: str | None = None,
        created_at: str | None = None,
        profile: str | None = None,
    ) -> dict[str, Any]:
        data_dir = Path(user_data_dir) if user_data_dir else self.store.handle.profile_dir(session_id)
        launched = self._launch(data_dir, timeout_ms, port)
        started_at = now_iso()
        created_at = created_at or started_at
        session = {
            "sessionId": session_id,
            "kind": "managed",
            "policy": policy or default_session_policy_for_kind("managed"),
            "browserMode": launched.browser_mode,
            "cdpOrigin": launched.cdp_origin,
            "debugPort": launched.debug_port,
            "userDataDir": launched.user_data_dir,
            "browserPid": launched.pid,
            "ownerId": self.config.agent_id,
            "leaseTtlMs": lease_ttl_ms,
            "leaseExpiresAt": None,
            "managedUnreachableSince": None,
            "managedUnreachableCount": 0,
            "profile": profile,
            "createdAt": created_at,
            "lastSeenAt": started_at,
        }
        return with_session_heartbeat(session, started_at, owner_id=self.config.agent_id)

    def ensure_reachable(self, session: dict[str, Any], timeout_ms: int) -> tuple[dict[str, Any], bool]:
        if is_cdp_endpoint_alive(session["cdpOrigin"], timeout_ms):
            return with_session_heartbeat(session, owner_id=self.config.agent_id), False
        if session.get("kind") == "attached":
            raise SurfwrightError(
                "E_SESSION_UNREACHABLE",
                f"Attached session {session['sessionId']} is not reachable; re-run session attach explicitly",
            )
        logger.info("restarting unreachable managed session %s", session["sessionId"])
        restarted = self.start_managed_session(
            session["sessionId"],
            timeout_ms=timeout_ms,
            policy=session.get("policy"),
            lease_ttl_ms=session.get("leaseTtlMs"),
            port=session.get("debugPort") or None,
            user_data_dir=session.get("userDataDir"),
            created_at=session.get("createdAt"),
            profile=session.get("profile"),
        )
        return restarted, True

    def _commit_session(
        self,
        session: dict[str, Any],
        *,
        activate: bool,
        must_exist: bool,
        launched: bool,
    ) -> dict[str, Any]:
        session_id = session["sessionId"]

        def mutate(state: dict[str, Any]):
            exists = session_id in state["sessions"]
            if must_exist and not exists:
                raise SurfwrightError("E_SESSION_NOT_FOUND", f"Session {session_id} not found")
            if not must_exist and exists:
                raise SurfwrightError("E_SESSION_EXISTS", f"Session {session_id} already exists")
            state["sessions"][session_id] = session
            if activate:
                state["activeSessionId"] = session_id
            return session

        try:
            return self.store.update(mutate)
        except SurfwrightError:
            if launched and session.get("browserPid"):
                terminate_pid(session["browserPid"])
            raise

    # public operations

    def ensure(self, *, timeout_ms: int) -> dict[str, Any]:
        session_prune(self.store, timeout_ms=timeout_ms, drop_managed_unreachable=False)
        snapshot = self.store.read()
        active_id = snapshot.get("activeSessionId")
        active = snapshot["sessions"].get(active_id) if active_id else None
        if active is not None:
            try:
                session, restarted = self.ensure_reachable(active, timeout_ms)
            except SurfwrightError as exc:
                # An attached session is never replaced by attaching elsewhere.
                if exc.code != "E_SESSION_UNREACHABLE" or active.get("kind") != "attached":
                    raise
                logger.warning("active attached session %s unreachable; using %s", active_id, DEFAULT_SESSION_ID)
            else:
                committed = self._commit_session(session, activate=True, must_exist=True, launched=restarted)
                return session_report(committed, active=True, created=False, restarted=restarted)
        return self._ensure_default(snapshot, timeout_ms)

    def _ensure_default(self, snapshot: dict[str, Any], timeout_ms: int) -> dict[str, Any]:
        existing = snapshot["sessions"].get(DEFAULT_SESSION_ID)
        if existing is not None:
            if existing.get("kind") != "managed":
                raise SurfwrightError("E_SESSION_CONFLICT", f"Reserved session {DEFAULT_SESSION_ID} is not managed")
            session, restarted = self.ensure_reachable(existing, timeout_ms)
            committed = self._commit_session(session, activate=True, must_exist=True, launched=restarted)
            return session_report(committed, active=True, created=False, restarted=restarted)
        session = self.start_managed_session(DEFAULT_SESSION_ID, timeout_ms=timeout_ms, policy="persistent")
        committed = self._commit_session(session, activate=True, must_exist=False, launched=True)
        return session_report(committed, active=True, created=True, restarted=False)

    def new(
        self,
        *,
        timeout_ms: int,
        session_id: str | None = None,
        policy: str | None = None,
        lease_ttl_ms: int | None = None,
    ) -> dict[str, Any]:
        parsed_policy = _parse_policy(policy)
        ttl = _parse_lease_ttl(lease_ttl_ms)
        requested = sanitize_session_id(session_id) if session_id is not None else None

        def reserve(state: dict[str, Any]) -> str:
            if requested is not None:
                assert_session_does_not_exist(state, requested)
                return requested
            return allocate_session_id(state, "s", self.store.handle)

        new_id = self.store.update(reserve)
        session = self.start_managed_session(new_id, timeout_ms=timeout_ms, policy=parsed_policy, lease_ttl_ms=ttl)
        committed = self._commit_session(session, activate=True, must_exist=False, launched=True)
        return session_report(committed, active=True, created=True, restarted=False)

    def attach(
        self,
        *,
        cdp_origin: str,
        timeout_ms: int,
        session_id: str | None = None,
        policy: str | None = None,
        lease_ttl_ms: int | None = None,
    ) -> dict[str, Any]:
        requested = sanitize_session_id(session_id) if session_id is not None else None
        origin = normalize_cdp_origin(cdp_origin)
        if not is_cdp_endpoint_alive(origin, timeout_ms):
            raise SurfwrightError(
                "E_CDP_UNREACHABLE", f"CDP endpoint is not reachable at {redact_cdp_endpoint(origin)}"
            )
        parsed_policy = _parse_policy(policy)
        ttl = _parse_lease_ttl(lease_ttl_ms)

        def mutate(state: dict[str, Any]) -> dict[str, Any]:
            new_id = requested or allocate_session_id(state, "a", self.store.handle)
            assert_session_does_not_exist(state, new_id)
            attached_at = now_iso()
            session = {
                "sessionId": new_id,
                "kind": "attached",
                "policy": parsed_policy or default_session_policy_for_kind("attached"),
                "browserMode": "unknown",
                "cdpOrigin": origin,
                "debugPort": infer_debug_port(origin),
                "userDataDir": None,
                "profile": None,
                "browserPid": None,
                "ownerId": None,
                "leaseExpiresAt": None,
                "leaseTtlMs": ttl,
                "managedUnreachableSince": None,
                "managedUnreachableCount": 0,
                "createdAt": attached_at,
                "lastSeenAt": attached_at,
            }
            hydrated = with_session_heartbeat(session, attached_at, owner_id=self.config.agent_id)
            state["sessions"][new_id] = hydrated
            state["activeSessionId"] = new_id
            return hydrated

        session = self.store.update(mutate)
        return session_report(session, active=True, created=True, restarted=False)

    def use(self, *, session_id: str, timeout_ms: int) -> dict[str, Any]:
        wanted = sanitize_session_id(session_id)
        existing = self.store.read()["sessions"].get(wanted)
        if existing is None:
            raise SurfwrightError("E_SESSION_NOT_FOUND", f"Session {wanted} not found")
        session, restarted = self.ensure_reachable(existing, timeout_ms)
        committed = self._commit_session(session, activate=True, must_exist=True, launched=restarted)
        return session_report(committed, active=True, created=False, restarted=restarted)

    def resolve(self, *, session_id: str | None, timeout_ms: int) -> dict[str, Any]:
        """Session record for plan execution: the named one, or the ensured active one."""
        if session_id is None:
            report = self.ensure(timeout_ms=timeout_ms)
            return self.store.read()["sessions"][report["sessionId"]]
        wanted = sanitize_session_id(session_id)
        existing = self.store.read()["sessions"].get(wanted)
        if existing is None:
            raise SurfwrightError("E_SESSION_NOT_FOUND", f"Session {wanted} not found")
        session, restarted = self.ensure_reachable(existing, timeout_ms)
        return self._commit_session(session, activate=False, must_exist=True, launched=restarted)

    def list(self) -> dict[str, Any]:
        state = self.store.read()
        sessions = sorted(state["sessions"].values(), key=lambda s: s["sessionId"])
        return {
            "ok": True,
            "activeSessionId": state.get("activeSessionId"),
            "sessions": [
                {
                    "sessionId": s["sessionId"],
                    "kind": s["kind"],
                    "cdpOrigin": redact_cdp_endpoint(s["cdpOrigin"]),
                    "browserMode": s.get("browserMode", "unknown"),
                    "profile": s.get("profile"),
                    "lastSeenAt": s.get("lastSeenAt"),
                }
                for s in sessions
            ],
        }
