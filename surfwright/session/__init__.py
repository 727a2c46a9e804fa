from __future__ import annotations

from .hygiene import (
    has_session_lease_expired,
    normalize_session_lease_ttl_ms,
    normalize_session_policy,
    session_default_lease_ttl_ms,
    with_session_heartbeat,
)

__all__ = [
    "has_session_lease_expired",
    "normalize_session_lease_ttl_ms",
    "normalize_session_policy",
    "session_default_lease_ttl_ms",
    "with_session_heartbeat",
]
