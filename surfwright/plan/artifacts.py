"""Replayable run artifacts under `<state root>/runs/`."""

from __future__ import annotations

import json
import re
import secrets
import time
from pathlib import Path
from typing import Any

from ..clock import now_iso
from ..config import StateHandle

RUN_ARTIFACT_LABEL_MAX = 64
_UNSAFE_LABEL_RE = re.compile(r"[^a-z0-9._-]+")


def safe_label(label: str | None) -> str:
    slug = _UNSAFE_LABEL_RE.sub("-", (label or "run").lower())
    slug = re.sub(r"-+", "-", slug).strip("-")[:RUN_ARTIFACT_LABEL_MAX]
    return slug or "run"


def resolve_run_artifact_path(handle: StateHandle, label: str | None) -> Path:
    stamp = time.strftime("%Y-%m-%dT%H-%M-%SZ", time.gmtime())
    return handle.runs_dir / f"{stamp}-{safe_label(label)}-{secrets.token_hex(3)}.json"


def write_run_artifact(
    handle: StateHandle | None,
    *,
    out_path: str | None,
    label: str | None,
    source: str,
    replay: dict[str, Any] | None,
    plan: dict[str, Any],
    report: dict[str, Any],
) -> dict[str, Any]:
    if out_path and out_path.strip():
        path = Path(out_path.strip()).expanduser()
    elif handle is not None:
        path = resolve_run_artifact_path(handle, label)
    else:
        raise ValueError("run artifact needs a state root or an explicit path")
    payload = {
        "kind": "run-artifact",
        "createdAt": now_iso(),
        "label": label,
        "source": source,
        "replay": replay,
        "plan": plan,
        "report": report,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n", encoding="utf-8")
    return {"path": str(path), "createdAt": payload["createdAt"], "label": label}
