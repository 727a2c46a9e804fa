"""Revision-stamped state store shared by concurrent processes.

Writers never hold the lock while running caller logic: a ``Transaction`` reads the
revision, reads the state, applies the mutation, then takes the lock only to check
the revision is unchanged and commit. A moved revision restarts the whole cycle.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ..config import STATE_OPTIMISTIC_RETRY_ATTEMPTS, STATE_VERSION, StateHandle
from ..errors import SurfwrightError
from .legacy import normalize_state, read_state_file, write_state_file
from .lock import state_file_lock
from .migrations import migrate_state_payload
from .shards import ShardFormatError, read_revision, read_shards, write_shards

logger = logging.getLogger("surfwright.state")

T = TypeVar("T")

State = dict[str, Any]
Mutation = Callable[[State], T]


@dataclass
class TransactionResult(Generic[T]):
    committed: bool
    attempts: int
    value: T | None = None
    state: State | None = None
    revision: int = 0
    error: SurfwrightError | None = None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass
class Transaction(Generic[T]):
    """One read-mutate-commit unit with a bounded optimistic retry budget."""

    store: StateStore
    mutate: Mutation[T]
    attempts: int = STATE_OPTIMISTIC_RETRY_ATTEMPTS

    def run(self) -> TransactionResult[T]:
        if self.store.handle.legacy_snapshot:
            return self._run_locked()
        root = self.store.handle.root_dir
        for attempt in range(1, max(1, self.attempts) + 1):
            base_revision = read_revision(root)
            state = self.store.read()
            before = copy.deepcopy(state)
            value = self.mutate(state)
            if state == before:
                return TransactionResult(True, attempt, value, state, base_revision)
            with self.store.lock():
                current = read_revision(root)
                if current == base_revision:
                    write_shards(root, state, next_revision=base_revision + 1)
                    return TransactionResult(True, attempt, value, state, base_revision + 1)
            logger.info(
                "state revision moved %s -> %s during attempt %s; retrying", base_revision, current, attempt
            )
        return TransactionResult(
            False,
            self.attempts,
            error=SurfwrightError(
                "E_STATE_LOCK_TIMEOUT",
                "State mutation retry budget exhausted under concurrent writes",
                details={"attempts": self.attempts, "stateRoot": str(root)},
            ),
        )

    def _run_locked(self) -> TransactionResult[T]:
        # Compatibility mode: the whole cycle runs under the lock.
        root = self.store.handle.root_dir
        with self.store.lock():
            state = self.store.read()
            value = self.mutate(state)
            revision = read_revision(root) + 1
            write_shards(root, state, next_revision=revision)
            write_state_file(self.store.handle, state)
        return TransactionResult(True, 1, value, state, revision)


class StateStore:
    def __init__(self, handle: StateHandle) -> None:
        self.handle = handle

    def lock(self):
        return state_file_lock(self.handle)

    def revision(self) -> int:
        return read_revision(self.handle.root_dir)

    def read(self) -> State:
        """Current state; migrated forward from older shard or single-file layouts."""
        if self.handle.legacy_snapshot and read_revision(self.handle.root_dir) == 0:
            return read_state_file(self.handle)
        try:
            raw = read_shards(self.handle.root_dir)
        except ShardFormatError as exc:
            raise SurfwrightError(
                "E_STATE_READ_INVALID",
                str(exc),
                details={"stateRoot": str(self.handle.root_dir), "nextCommand": "surfwright state reconcile"},
            ) from exc
        except OSError as exc:
            raise SurfwrightError(
                "E_STATE_READ_FAILED",
                "Unable to read state shards",
                details={"stateRoot": str(self.handle.root_dir), "cause": str(exc)},
            ) from exc
        if raw is None:
            return read_state_file(self.handle)
        if raw["version"] == STATE_VERSION:
            return raw
        migrated = migrate_state_payload(raw)
        if migrated is None:
            raise SurfwrightError(
                "E_STATE_VERSION_MISMATCH",
                f"state version mismatch: expected {STATE_VERSION}",
                details={"storage": "state-v2", "stateRoot": str(self.handle.root_dir), "foundVersion": raw["version"]},
            )
        logger.info("migrated state shards from version %s to %s", raw["version"], STATE_VERSION)
        return normalize_state(self.handle, migrated)

    def transaction(self, mutate: Mutation[T], *, attempts: int = STATE_OPTIMISTIC_RETRY_ATTEMPTS) -> Transaction[T]:
        return Transaction(self, mutate, attempts=attempts)

    def update(self, mutate: Mutation[T]) -> T:
        """Apply ``mutate`` to a fresh copy of the state and commit it.

        ``mutate`` edits the state dict in place and may return a value, which is
        returned to the caller once the commit lands. It may run more than once.
        """
        return self.transaction(mutate).run().unwrap()
