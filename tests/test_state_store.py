from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from surfwright.config import STATE_VERSION, StateHandle
from surfwright.errors import SurfwrightError
from surfwright.state import StateStore
from surfwright.state.lock import clear_stale_lock, state_file_lock
from surfwright.state.shards import META_FILENAME, read_revision, v2_root


def test_empty_store_reads_defaults(store) -> None:
    state = store.read()
    assert state["version"] == STATE_VERSION
    assert state["sessions"] == {}
    assert state["activeSessionId"] is None
    assert store.revision() == 0


def test_update_bumps_revision_and_returns_value(store, seed_session) -> None:
    seed_session("s-1")
    assert store.revision() == 1

    result = store.update(lambda state: len(state["sessions"]))
    assert result == 1
    # a no-op mutation does not commit
    assert store.revision() == 1

    def retarget(state: dict) -> str:
        state["activeSessionId"] = None
        return "done"

    assert store.update(retarget) == "done"
    assert store.revision() == 2
    assert store.read()["activeSessionId"] is None


def test_targets_are_sharded_per_session(store, seed_session) -> None:
    seed_session("s-1")
    seed_session("s/2")

    def add_targets(state: dict) -> None:
        for target_id, session_id in (("t-1", "s-1"), ("t-2", "s/2")):
            state["targets"][target_id] = {
                "targetId": target_id,
                "sessionId": session_id,
                "url": "https://a.test",
                "title": "A",
                "status": None,
                "updatedAt": "2024-01-01T00:00:00.000Z",
            }

    store.update(add_targets)
    shard_names = sorted(p.name for p in (v2_root(store.handle.root_dir) / "targets-by-session").iterdir())
    assert shard_names == ["s%2F2.json", "s-1.json"]
    assert set(store.read()["targets"]) == {"t-1", "t-2"}


def test_concurrent_updates_lose_nothing(store) -> None:
    successes = 0
    failures: list[str] = []
    guard = threading.Lock()

    def bump(state: dict) -> None:
        state["nextCaptureOrdinal"] += 1

    def worker() -> None:
        nonlocal successes
        for _ in range(10):
            try:
                store.update(bump)
            except SurfwrightError as exc:
                with guard:
                    failures.append(exc.code)
                continue
            with guard:
                successes += 1

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert successes > 0
    assert set(failures) <= {"E_STATE_LOCK_TIMEOUT"}
    assert store.read()["nextCaptureOrdinal"] == 1 + successes
    assert store.revision() == successes


def test_transaction_reports_exhausted_budget(store, monkeypatch: pytest.MonkeyPatch) -> None:
    from surfwright.state import store as store_module

    revisions = iter(range(100))
    monkeypatch.setattr(store_module, "read_revision", lambda root: next(revisions))

    def mutate(state: dict) -> None:
        state["nextCaptureOrdinal"] += 1

    result = store.transaction(mutate, attempts=3).run()
    assert result.committed is False
    assert result.attempts == 3
    with pytest.raises(SurfwrightError) as exc:
        result.unwrap()
    assert exc.value.code == "E_STATE_LOCK_TIMEOUT"
    assert exc.value.retryable is True


def test_stale_lock_is_reclaimed(state_root: Path) -> None:
    handle = StateHandle.at(state_root)
    state_root.mkdir(parents=True)
    handle.lock_path.write_text(
        json.dumps({"pid": os.getpid(), "createdAt": "2000-01-01T00:00:00.000Z"}), encoding="utf-8"
    )
    with state_file_lock(handle, timeout_ms=500):
        payload = json.loads(handle.lock_path.read_text(encoding="utf-8"))
        assert payload["createdAt"] != "2000-01-01T00:00:00.000Z"
    assert not handle.lock_path.exists()


def test_young_lock_held_by_live_pid_is_kept(tmp_path: Path) -> None:
    lock = tmp_path / "state.lock"
    lock.write_text(json.dumps({"pid": os.getpid(), "createdAt": "2024-01-01T00:00:00.000Z"}), encoding="utf-8")
    created_ms = 1704067200000.0
    assert clear_stale_lock(lock, 12000, now_ms=created_ms + 1000) is False
    assert lock.exists()
    assert clear_stale_lock(lock, 12000, now_ms=created_ms + 12000) is True
    assert not lock.exists()


def test_held_lock_times_out(state_root: Path) -> None:
    handle = StateHandle.at(state_root)
    with state_file_lock(handle):
        with pytest.raises(SurfwrightError) as exc:
            with state_file_lock(handle, timeout_ms=120, retry_ms=20):
                pass
    assert exc.value.code == "E_STATE_LOCK_TIMEOUT"
    assert exc.value.details["lockOwnerPid"] == os.getpid()


def test_reads_and_migrates_single_file_state(state_root: Path) -> None:
    state_root.mkdir(parents=True)
    (state_root / "state.json").write_text(
        json.dumps(
            {
                "version": 1,
                "activeSessionId": "s-1",
                "nextSessionOrdinal": 2,
                "sessions": {"s-1": {"sessionId": "s-1", "kind": "managed", "cdpOrigin": "http://127.0.0.1:9333"}},
                "targets": {"bad": {"targetId": "bad"}},
            }
        ),
        encoding="utf-8",
    )
    store = StateStore(StateHandle.at(state_root))
    state = store.read()
    session = state["sessions"]["s-1"]
    assert state["version"] == STATE_VERSION
    assert session["policy"] == "persistent"
    assert session["debugPort"] == 9333
    assert session["userDataDir"] == str(state_root / "profiles" / "s-1")
    assert state["targets"] == {}
    assert state["networkCaptures"] == {}


def test_corrupt_state_file_is_quarantined(state_root: Path) -> None:
    state_root.mkdir(parents=True)
    (state_root / "state.json").write_text("{broken", encoding="utf-8")
    store = StateStore(StateHandle.at(state_root))
    with pytest.raises(SurfwrightError) as exc:
        store.read()
    assert exc.value.code == "E_STATE_READ_INVALID"
    quarantined = Path(exc.value.details["quarantinedPath"])
    assert quarantined.exists()
    assert quarantined.read_text(encoding="utf-8") == "{broken"
    assert not (state_root / "state.json").exists()
    # the next read starts from an empty store
    assert store.read()["sessions"] == {}


def test_future_version_is_a_mismatch(state_root: Path) -> None:
    state_root.mkdir(parents=True)
    (state_root / "state.json").write_text(json.dumps({"version": STATE_VERSION + 1}), encoding="utf-8")
    with pytest.raises(SurfwrightError) as exc:
        StateStore(StateHandle.at(state_root)).read()
    assert exc.value.code == "E_STATE_VERSION_MISMATCH"
    assert exc.value.retryable is False


def test_invalid_shard_is_read_invalid(store, seed_session) -> None:
    seed_session("s-1")
    (v2_root(store.handle.root_dir) / "sessions.json").write_text("[]", encoding="utf-8")
    with pytest.raises(SurfwrightError) as exc:
        store.read()
    assert exc.value.code == "E_STATE_READ_INVALID"


def test_older_shards_are_migrated_on_read(store, seed_session) -> None:
    seed_session("s-1")
    meta_path = v2_root(store.handle.root_dir) / META_FILENAME
    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    meta["version"] = 3
    meta_path.write_text(json.dumps(meta), encoding="utf-8")
    state = store.read()
    assert state["version"] == STATE_VERSION
    assert state["sessions"]["s-1"]["profile"] is None


def test_legacy_snapshot_mode_writes_state_file(state_root: Path) -> None:
    store = StateStore(StateHandle.at(state_root, legacy_snapshot=True))

    def mutate(state: dict) -> None:
        state["nextSessionOrdinal"] = 7

    store.update(mutate)
    snapshot = json.loads((state_root / "state.json").read_text(encoding="utf-8"))
    assert snapshot["nextSessionOrdinal"] == 7
    assert read_revision(state_root) == 1
    assert store.read()["nextSessionOrdinal"] == 7


def test_lock_recreated_during_reclaim_is_left_alone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from surfwright.state import lock as lock_module

    lock = tmp_path / "state.lock"
    lock.write_text(json.dumps({"pid": 424242, "createdAt": "2024-01-01T00:00:00.000Z"}), encoding="utf-8")
    fresh = json.dumps({"pid": os.getpid(), "createdAt": "2024-01-01T00:00:01.000Z"})

    def owner_gone_and_lock_retaken(pid) -> bool:
        replacement = tmp_path / "state.lock.new"
        replacement.write_text(fresh, encoding="utf-8")
        os.replace(replacement, lock)
        return False

    monkeypatch.setattr(lock_module, "is_pid_alive", owner_gone_and_lock_retaken)
    assert clear_stale_lock(lock, 12000, now_ms=1704067200000.0 + 1000) is False
    assert lock.read_text(encoding="utf-8") == fresh
