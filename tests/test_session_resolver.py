from __future__ import annotations

from pathlib import Path

import pytest

from surfwright import maintenance
from surfwright.config import SurfwrightConfig
from surfwright.errors import SurfwrightError
from surfwright.launcher import LaunchResult
from surfwright.session import resolver as resolver_module
from surfwright.session.hygiene import with_session_heartbeat
from surfwright.session.resolver import SessionResolver


class FakeLauncher:
    """Stands in for BrowserLauncher; every launch comes up reachable."""

    def __init__(self, alive: set[str]) -> None:
        self.alive = alive
        self.launches: list[tuple[Path, int | None]] = []

    def launch(self, *, user_data_dir: Path, timeout_ms: int, port: int | None = None) -> LaunchResult:
        self.launches.append((Path(user_data_dir), port))
        port = port or 9400 + len(self.launches)
        origin = f"http://127.0.0.1:{port}"
        self.alive.add(origin)
        return LaunchResult(
            command=["chrome", f"--remote-debugging-port={port}"],
            pid=0,
            cdp_origin=origin,
            debug_port=port,
            user_data_dir=str(user_data_dir),
            browser_mode="headless",
        )


@pytest.fixture
def alive(monkeypatch: pytest.MonkeyPatch) -> set[str]:
    """CDP origins that answer reachability checks, for both the resolver and maintenance."""
    reachable: set[str] = set()

    def answers(origin: str, timeout_ms: int) -> bool:
        return origin in reachable

    monkeypatch.setattr(resolver_module, "is_cdp_endpoint_alive", answers)
    monkeypatch.setattr(maintenance, "is_cdp_endpoint_alive", answers)
    return reachable


@pytest.fixture
def launcher(alive: set[str]) -> FakeLauncher:
    return FakeLauncher(alive)


@pytest.fixture
def resolver(store, launcher: FakeLauncher) -> SessionResolver:
    return SessionResolver(store, SurfwrightConfig(state=store.handle, agent_id="agent-7"), launcher=launcher)


def test_ensure_launches_default_session(resolver, launcher, store) -> None:
    report = resolver.ensure(timeout_ms=1000)
    assert report["sessionId"] == "s-default"
    assert (report["created"], report["restarted"], report["active"]) == (True, False, True)
    assert launcher.launches == [(store.handle.profile_dir("s-default"), None)]

    again = resolver.ensure(timeout_ms=1000)
    assert again["sessionId"] == "s-default"
    assert again["created"] is False
    assert len(launcher.launches) == 1


def test_ensure_replaces_unreachable_attached_active_with_default(resolver, alive, store) -> None:
    alive.add("http://127.0.0.1:9555")
    attached = resolver.attach(cdp_origin="127.0.0.1:9555", timeout_ms=1000)
    assert attached["sessionId"] == "a-1"
    assert attached["policy"] == "ephemeral"

    alive.discard("http://127.0.0.1:9555")
    report = resolver.ensure(timeout_ms=1000)
    assert report["sessionId"] == "s-default"
    state = store.read()
    assert state["activeSessionId"] == "s-default"
    assert "a-1" not in state["sessions"]


def test_ensure_falls_back_when_attached_drops_after_prune(resolver, alive, store, monkeypatch) -> None:
    alive.add("http://127.0.0.1:9555")
    resolver.attach(cdp_origin="http://127.0.0.1:9555", timeout_ms=1000)
    # the prune pass still sees the endpoint; the resolver check does not
    monkeypatch.setattr(resolver_module, "is_cdp_endpoint_alive", lambda origin, timeout_ms: False)

    report = resolver.ensure(timeout_ms=1000)
    assert report["sessionId"] == "s-default"
    assert report["created"] is True
    state = store.read()
    assert state["activeSessionId"] == "s-default"
    assert state["sessions"]["a-1"]["kind"] == "attached"


def test_new_skips_ids_with_leftover_profile_dirs(resolver, launcher, store) -> None:
    store.handle.profile_dir("s-1").mkdir(parents=True)
    report = resolver.new(timeout_ms=1000)
    assert report["sessionId"] == "s-2"
    assert launcher.launches[0][0] == store.handle.profile_dir("s-2")
    assert store.read()["nextSessionOrdinal"] == 3


def test_duplicate_session_id_is_rejected(resolver, launcher, alive) -> None:
    resolver.new(timeout_ms=1000, session_id="work")
    with pytest.raises(SurfwrightError) as exc:
        resolver.new(timeout_ms=1000, session_id="work")
    assert exc.value.code == "E_SESSION_EXISTS"
    assert len(launcher.launches) == 1

    alive.add("http://127.0.0.1:9555")
    with pytest.raises(SurfwrightError) as exc:
        resolver.attach(cdp_origin="http://127.0.0.1:9555", timeout_ms=1000, session_id="work")
    assert exc.value.code == "E_SESSION_EXISTS"


def test_attach_rejects_unreachable_endpoint(resolver, store) -> None:
    with pytest.raises(SurfwrightError) as exc:
        resolver.attach(cdp_origin="http://127.0.0.1:9555", timeout_ms=1000)
    assert exc.value.code == "E_CDP_UNREACHABLE"
    assert exc.value.retryable is True
    assert store.read()["sessions"] == {}


def test_use_rejects_unreachable_attached_session(resolver, seed_session, store) -> None:
    seed_session("a-3", kind="attached")
    with pytest.raises(SurfwrightError) as exc:
        resolver.use(session_id="a-3", timeout_ms=1000)
    assert exc.value.code == "E_SESSION_UNREACHABLE"
    assert store.read()["sessions"]["a-3"]["lastSeenAt"] == "2024-01-01T00:00:00.000Z"


def test_use_restarts_unreachable_managed_session(resolver, launcher, seed_session, store) -> None:
    seed_session("s-5")
    report = resolver.use(session_id="s-5", timeout_ms=1000)
    assert report["restarted"] is True
    assert launcher.launches == [(store.handle.profile_dir("s-5"), 9)]
    assert store.read()["sessions"]["s-5"]["createdAt"] == "2024-01-01T00:00:00.000Z"


def test_sessions_are_owned_by_configured_agent(resolver, store) -> None:
    resolver.new(timeout_ms=1000)
    assert store.read()["sessions"]["s-1"]["ownerId"] == "agent-7"


def test_heartbeat_keeps_existing_owner() -> None:
    session = {"sessionId": "s-1", "kind": "managed", "ownerId": "alpha", "leaseTtlMs": 60000}
    assert with_session_heartbeat(session, owner_id="beta")["ownerId"] == "alpha"
    claimed = with_session_heartbeat({**session, "ownerId": None}, "2024-01-01T00:00:00.000Z", owner_id="beta")
    assert claimed["ownerId"] == "beta"
    assert claimed["leaseExpiresAt"] == "2024-01-01T00:01:00.000Z"


def test_restart_renews_lease_from_launch_time(resolver, seed_session, store) -> None:
    from surfwright.session.hygiene import has_session_lease_expired

    seed_session("s-5")
    resolver.use(session_id="s-5", timeout_ms=1000)
    session = store.read()["sessions"]["s-5"]
    assert session["lastSeenAt"] != "2024-01-01T00:00:00.000Z"
    assert not has_session_lease_expired(session)
