"""Step reports and the per-run execution context."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..errors import SurfwrightError


@dataclass(frozen=True)
class StepReport:
    """A binding's report plus the handles the engine propagates between steps."""

    payload: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Any, label: str) -> StepReport:
        if not isinstance(payload, dict):
            raise SurfwrightError("E_INTERNAL", f"{label} returned a non-object report")
        return cls(payload)

    @property
    def session_id(self) -> str | None:
        value = self.payload.get("sessionId")
        return value if isinstance(value, str) else None

    @property
    def target_id(self) -> str | None:
        value = self.payload.get("targetId")
        return value if isinstance(value, str) else None


@dataclass
class RunContext:
    session_id: str | None = None
    target_id: str | None = None
    aliases: dict[str, dict[str, Any]] = field(default_factory=dict)
    results: list[dict[str, Any]] = field(default_factory=list)
    timeline: list[dict[str, Any]] = field(default_factory=list)

    @property
    def last_report(self) -> dict[str, Any] | None:
        return self.results[-1]["report"] if self.results else None

    def scope(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "targetId": self.target_id,
            "last": self.last_report,
            "steps": self.aliases,
        }

    def absorb(self, report: StepReport) -> None:
        if report.session_id is not None:
            self.session_id = report.session_id
        if report.target_id is not None:
            self.target_id = report.target_id
