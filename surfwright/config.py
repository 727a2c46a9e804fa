from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

STATE_VERSION = 4

STATE_LOCK_FILENAME = "state.lock"
STATE_LOCK_RETRY_MS = 40
STATE_LOCK_TIMEOUT_MS = 12000
STATE_LOCK_STALE_MS = 12000
STATE_OPTIMISTIC_RETRY_ATTEMPTS = 4

DEFAULT_SESSION_TIMEOUT_MS = 12000
DEFAULT_OPEN_TIMEOUT_MS = 20000
DEFAULT_TARGET_TIMEOUT_MS = 10000
CDP_HEALTHCHECK_TIMEOUT_MS = 200

DEFAULT_SESSION_LEASE_TTL_MS = 72 * 60 * 60 * 1000
DEFAULT_EPHEMERAL_SESSION_LEASE_TTL_MS = 6 * 60 * 60 * 1000
MIN_SESSION_LEASE_TTL_MS = 60 * 1000
MAX_SESSION_LEASE_TTL_MS = 30 * 24 * 60 * 60 * 1000

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir outside $HOME; last resort only.
    "/snap/bin/chromium",
]

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_TRUE_FLAGS = {"1", "true", "on"}


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def normalize_agent_id(raw: str | None) -> str | None:
    value = (raw or "").strip()
    if not value:
        return None
    if _AGENT_ID_RE.match(value):
        return value
    normalized = re.sub(r"[^A-Za-z0-9._-]", "-", value)
    normalized = re.sub(r"-+", "-", normalized).strip(".-")
    if not normalized:
        return None
    return normalized[:64]


def current_agent_id() -> str | None:
    return normalize_agent_id(os.environ.get("SURFWRIGHT_AGENT_ID"))


def legacy_snapshot_enabled() -> bool:
    raw = os.environ.get("SURFWRIGHT_STATE_LEGACY_SNAPSHOT")
    return isinstance(raw, str) and raw.strip().lower() in _TRUE_FLAGS


def env_lease_ttl_ms() -> int | None:
    raw = (os.environ.get("SURFWRIGHT_SESSION_LEASE_TTL_MS") or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def state_root_dir() -> Path:
    raw = os.environ.get("SURFWRIGHT_STATE_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(expand_path(raw.strip())).resolve()
    agent_id = current_agent_id()
    if agent_id:
        return Path.home() / ".surfwright" / "agents" / agent_id
    return Path.home() / ".surfwright"


@dataclass(frozen=True)
class StateHandle:
    """Location of one state store instance; built once per process."""

    root_dir: Path
    lock_path: Path
    legacy_snapshot: bool = False

    @classmethod
    def at(cls, root_dir: Path | str, *, legacy_snapshot: bool = False) -> StateHandle:
        root = Path(root_dir)
        return cls(root_dir=root, lock_path=root / STATE_LOCK_FILENAME, legacy_snapshot=legacy_snapshot)

    @property
    def state_file(self) -> Path:
        return self.root_dir / "state.json"

    @property
    def runs_dir(self) -> Path:
        return self.root_dir / "runs"

    def profile_dir(self, session_id: str) -> Path:
        return self.root_dir / "profiles" / session_id


@dataclass
class SurfwrightConfig:
    state: StateHandle
    agent_id: str | None = None
    binary_path: str = "google-chrome"
    headless: bool = True
    log_level: str = "WARNING"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("SURFWRIGHT_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        return "google-chrome"

    @classmethod
    def from_env(cls) -> SurfwrightConfig:
        return cls(
            state=StateHandle.at(state_root_dir(), legacy_snapshot=legacy_snapshot_enabled()),
            agent_id=current_agent_id(),
            binary_path=cls.detect_binary(),
            headless=os.environ.get("SURFWRIGHT_HEADLESS", "1") != "0",
            log_level=(os.environ.get("SURFWRIGHT_LOG_LEVEL") or "WARNING").strip().upper(),
        )
