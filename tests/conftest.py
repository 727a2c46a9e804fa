from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

OPS_METHODS = (
    "open",
    "list_targets",
    "snapshot",
    "find",
    "count",
    "scroll_plan",
    "click",
    "click_read",
    "fill",
    "upload",
    "read",
    "eval_js",
    "wait",
    "extract",
)


class FakeOps:
    """PlanOps double: records every call and answers from per-method scripts.

    A script is either a callable taking the params object or a list of reports
    consumed in order (the last one repeats).
    """

    def __init__(self, **scripts: Any) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.scripts = scripts

    def _answer(self, name: str, params: Any) -> dict[str, Any]:
        self.calls.append((name, params))
        script = self.scripts.get(name)
        if script is None:
            return {
                "ok": True,
                "sessionId": getattr(params, "session_id", None),
                "targetId": getattr(params, "target_id", None),
            }
        if callable(script):
            return script(params)
        if len(script) > 1:
            return script.pop(0)
        return script[0]

    def params_for(self, name: str) -> list[Any]:
        return [params for called, params in self.calls if called == name]


def _bind(name: str) -> Callable[..., Any]:
    async def method(self: FakeOps, params: Any) -> dict[str, Any]:
        return self._answer(name, params)

    method.__name__ = name
    return method


for _name in OPS_METHODS:
    setattr(FakeOps, _name, _bind(_name))


@pytest.fixture
def fake_ops() -> type[FakeOps]:
    return FakeOps


@pytest.fixture
def state_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "state"
    monkeypatch.setenv("SURFWRIGHT_STATE_DIR", str(root))
    monkeypatch.delenv("SURFWRIGHT_AGENT_ID", raising=False)
    monkeypatch.delenv("SURFWRIGHT_STATE_LEGACY_SNAPSHOT", raising=False)
    return root


@pytest.fixture
def store(state_root: Path):
    from surfwright.config import StateHandle
    from surfwright.state import StateStore

    return StateStore(StateHandle.at(state_root))


def make_session(session_id: str, *, kind: str = "managed", lease_expires_at: str = "2999-01-01T00:00:00.000Z") -> dict:
    return {
        "sessionId": session_id,
        "kind": kind,
        "policy": "persistent" if kind == "managed" else "ephemeral",
        "browserMode": "headless" if kind == "managed" else "unknown",
        "cdpOrigin": "http://127.0.0.1:9",
        "debugPort": 9,
        "userDataDir": None,
        "browserPid": None,
        "ownerId": None,
        "leaseTtlMs": 60000,
        "leaseExpiresAt": lease_expires_at,
        "managedUnreachableSince": None,
        "managedUnreachableCount": 0,
        "profile": None,
        "createdAt": "2024-01-01T00:00:00.000Z",
        "lastSeenAt": "2024-01-01T00:00:00.000Z",
    }


@pytest.fixture
def seed_session(store) -> Callable[..., dict]:
    def seed(session_id: str, **kwargs: Any) -> dict:
        session = make_session(session_id, **kwargs)

        def mutate(state: dict) -> None:
            state["sessions"][session_id] = session
            state["activeSessionId"] = session_id

        store.update(mutate)
        return session

    return seed
