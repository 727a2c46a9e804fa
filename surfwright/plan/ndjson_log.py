from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("surfwright.plan")

LOG_MODES = ("minimal", "full")


@dataclass(frozen=True)
class NdjsonLog:
    """Append-only run event log. Write failures never fail the run."""

    path: Path
    mode: str = "minimal"

    @classmethod
    def open(cls, raw_path: str | None, mode: str | None) -> NdjsonLog | None:
        if not raw_path or not raw_path.strip():
            return None
        log = cls(Path(raw_path.strip()).expanduser().resolve(), "full" if mode == "full" else "minimal")
        log.init()
        return log

    @property
    def full(self) -> bool:
        return self.mode == "full"

    def init(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("", encoding="utf-8")
        except OSError as exc:
            logger.warning("ndjson log %s unavailable: %s", self.path, exc)

    def emit(self, event: dict[str, Any]) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            logger.debug("ndjson append failed for %s: %s", self.path, exc)

    def describe(self) -> dict[str, str]:
        return {"path": str(self.path), "mode": self.mode}
