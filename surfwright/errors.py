"""Structured errors surfaced to CLI callers as `{ok:false, code, message}`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# code -> retryable
ERROR_CODES: dict[str, bool] = {
    "E_QUERY_INVALID": False,
    "E_ASSERT_FAILED": False,
    "E_SESSION_NOT_FOUND": False,
    "E_SESSION_EXISTS": False,
    "E_SESSION_UNREACHABLE": True,
    "E_SESSION_CONFLICT": False,
    "E_SESSION_ID_INVALID": False,
    "E_STATE_LOCK_TIMEOUT": True,
    "E_STATE_LOCK_IO": True,
    "E_STATE_VERSION_MISMATCH": False,
    "E_STATE_READ_INVALID": False,
    "E_STATE_READ_FAILED": False,
    "E_CDP_UNREACHABLE": True,
    "E_TARGET_NOT_FOUND": False,
    "E_ELEMENT_NOT_FOUND": False,
    "E_WAIT_TIMEOUT": True,
    "E_BROWSER_NOT_FOUND": False,
    "E_BROWSER_START_FAILED": False,
    "E_BROWSER_START_TIMEOUT": True,
    "E_INTERNAL": False,
}


def is_retryable(code: str) -> bool:
    return ERROR_CODES.get(code, False)


@dataclass
class SurfwrightError(Exception):
    """Typed failure with a stable code."""

    code: str
    message: str
    retryable: bool | None = None
    hints: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.retryable is None:
            self.retryable = is_retryable(self.code)
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": False,
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.hints:
            payload["hints"] = list(self.hints)
        if self.details:
            payload["details"] = dict(self.details)
        return payload


def query_invalid(message: str) -> SurfwrightError:
    return SurfwrightError("E_QUERY_INVALID", message)
