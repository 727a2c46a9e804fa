"""File-backed state shared by every SurfWright process using the same state root."""

from __future__ import annotations

from .legacy import empty_state
from .repo import (
    allocate_artifact_id,
    allocate_capture_id,
    allocate_session_id,
    apply_target_update,
    assert_session_does_not_exist,
    build_target_record,
    sanitize_session_id,
)
from .store import StateStore, Transaction, TransactionResult

__all__ = [
    "StateStore",
    "Transaction",
    "TransactionResult",
    "allocate_artifact_id",
    "allocate_capture_id",
    "allocate_session_id",
    "apply_target_update",
    "assert_session_does_not_exist",
    "build_target_record",
    "empty_state",
    "sanitize_session_id",
]
