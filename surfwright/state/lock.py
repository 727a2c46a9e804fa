"""Advisory lock file guarding state commits across processes."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..clock import now_iso, parse_iso_ms
from ..config import STATE_LOCK_RETRY_MS, STATE_LOCK_STALE_MS, STATE_LOCK_TIMEOUT_MS, StateHandle
from ..errors import SurfwrightError
from ..launcher import is_pid_alive

logger = logging.getLogger("surfwright.state")


def _read_lock_payload(lock_path: Path) -> dict[str, Any] | None:
    try:
        parsed = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def lock_created_ms(lock_path: Path) -> float | None:
    payload = _read_lock_payload(lock_path)
    created = parse_iso_ms(payload.get("createdAt")) if payload else None
    if created is not None:
        return created
    try:
        return lock_path.stat().st_mtime * 1000.0
    except OSError:
        return None


def lock_owner_pid(lock_path: Path) -> int | None:
    payload = _read_lock_payload(lock_path)
    if not payload:
        return None
    pid = payload.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, (int, float)):
        return None
    pid = int(pid)
    return pid if pid > 0 else None


def _lock_identity(lock_path: Path) -> tuple[int, int] | None:
    try:
        st = lock_path.stat()
    except OSError:
        return None
    return st.st_dev, st.st_ino


def _unlink(lock_path: Path, identity: tuple[int, int] | None = None) -> bool:
    # Another process may have reclaimed and recreated the lock since it was inspected.
    if identity is not None and _lock_identity(lock_path) != identity:
        return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("could not remove lock %s: %s", lock_path, exc)
        return False
    return True


def clear_stale_lock(lock_path: Path, stale_ms: int, *, now_ms: float | None = None) -> bool:
    """Remove an abandoned lock.

    A lock older than ``stale_ms`` is reclaimed unconditionally. A younger lock
    is reclaimed only when its recorded owner pid is no longer alive.
    """
    identity = _lock_identity(lock_path)
    if identity is None:
        return False
    created = lock_created_ms(lock_path)
    owner = lock_owner_pid(lock_path)
    now = time.time() * 1000.0 if now_ms is None else now_ms
    if created is not None and now - created >= stale_ms:
        if _unlink(lock_path, identity):
            logger.info("reclaimed stale state lock %s (age %.0fms, pid %s)", lock_path, now - created, owner)
            return True
        return False
    if owner is not None and not is_pid_alive(owner):
        if _unlink(lock_path, identity):
            logger.info("reclaimed state lock %s from dead pid %s", lock_path, owner)
            return True
    return False


def try_create_lock(lock_path: Path, now: Callable[[], str] = now_iso) -> bool:
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    except OSError as exc:
        raise SurfwrightError(
            "E_STATE_LOCK_IO",
            f"Failed to create state lock: {exc}",
            hints=[
                "Verify SURFWRIGHT_STATE_DIR is writable.",
                "If no SurfWright process is active, remove stale lock and retry.",
            ],
            details={"lockPath": str(lock_path)},
        ) from exc
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(json.dumps({"pid": os.getpid(), "createdAt": now()}) + "\n")
    return True


def release_lock(lock_path: Path) -> None:
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass


@contextmanager
def state_file_lock(
    handle: StateHandle,
    *,
    timeout_ms: int = STATE_LOCK_TIMEOUT_MS,
    retry_ms: int = STATE_LOCK_RETRY_MS,
    stale_ms: int = STATE_LOCK_STALE_MS,
) -> Iterator[None]:
    handle.root_dir.mkdir(parents=True, exist_ok=True)
    lock_path = handle.lock_path
    started = time.monotonic()
    deadline = started + timeout_ms / 1000.0
    while True:
        if try_create_lock(lock_path):
            break
        if clear_stale_lock(lock_path, stale_ms):
            continue
        if time.monotonic() >= deadline:
            owner = lock_owner_pid(lock_path)
            created = lock_created_ms(lock_path)
            raise SurfwrightError(
                "E_STATE_LOCK_TIMEOUT",
                "Timed out waiting for state lock",
                hints=[
                    "If no SurfWright command is running, remove stale lock and retry.",
                    "For parallel runs, assign a dedicated SURFWRIGHT_STATE_DIR per process.",
                ],
                details={
                    "lockPath": str(lock_path),
                    "lockAgeMs": None if created is None else max(0, int(time.time() * 1000 - created)),
                    "timeoutMs": timeout_ms,
                    "waitMs": int((time.monotonic() - started) * 1000),
                    "lockOwnerPid": owner,
                    "lockOwnerAlive": None if owner is None else is_pid_alive(owner),
                    "stateRoot": str(handle.root_dir),
                },
            )
        time.sleep(retry_ms / 1000.0)
    try:
        yield
    finally:
        release_lock(lock_path)
