from __future__ import annotations

import contextlib
import logging
import os
import shutil
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .cdp import is_cdp_endpoint_alive
from .config import SurfwrightConfig
from .errors import SurfwrightError

logger = logging.getLogger("surfwright.launcher")

SIGTERM_GRACE_MS = 500


@dataclass
class LaunchResult:
    command: list[str]
    pid: int
    cdp_origin: str
    debug_port: int
    user_data_dir: str
    browser_mode: str


def find_free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def is_pid_alive(pid: int | None) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return False
    return True


def signal_pid(pid: int | None, sig: int) -> bool:
    """Best-effort signal delivery; already-exited pids count as delivered."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return True
    except OSError as exc:
        logger.warning("failed to signal pid %s: %s", pid, exc)
        return False
    return True


def terminate_pid(pid: int | None, *, grace_ms: int = SIGTERM_GRACE_MS) -> bool:
    """SIGTERM, wait up to grace_ms, then SIGKILL. Returns True once the pid is gone."""
    if not is_pid_alive(pid):
        return True
    if not signal_pid(pid, signal.SIGTERM):
        return False
    deadline = time.monotonic() + max(0, grace_ms) / 1000.0
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return True
        time.sleep(0.05)
    sigkill = getattr(signal, "SIGKILL", signal.SIGTERM)
    signal_pid(pid, sigkill)
    time.sleep(0.05)
    return not is_pid_alive(pid)


class BrowserLauncher:
    """Starts managed Chromium-family browsers with a per-session profile."""

    def __init__(self, config: SurfwrightConfig) -> None:
        self.config = config

    def build_launch_command(self, *, port: int, user_data_dir: str) -> list[str]:
        flags = [
            f"--remote-debugging-port={port}",
            f"--user-data-dir={user_data_dir}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-fre",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        else:
            flags.append("--window-size=1280,900")
        if os.environ.get("SURFWRIGHT_NO_SANDBOX", "0") == "1":
            flags.append("--no-sandbox")
        flags.append("about:blank")
        return [self.config.binary_path, *flags]

    def _resolve_binary(self) -> str:
        binary = self.config.binary_path
        if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
            if Path(binary).exists():
                return binary
        else:
            found = shutil.which(binary)
            if found:
                return found
        raise SurfwrightError(
            "E_BROWSER_NOT_FOUND",
            f"Browser binary not found: {binary}",
            hints=["Set SURFWRIGHT_BROWSER_BINARY to a Chrome/Chromium executable"],
        )

    def launch(self, *, user_data_dir: Path, timeout_ms: int, port: int | None = None) -> LaunchResult:
        binary = self._resolve_binary()
        port = port or find_free_port()
        user_data_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_launch_command(port=port, user_data_dir=str(user_data_dir))
        cmd[0] = binary
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise SurfwrightError("E_BROWSER_START_FAILED", f"Failed to start browser: {exc}") from exc

        cdp_origin = f"http://127.0.0.1:{port}"
        deadline = time.monotonic() + max(1, timeout_ms) / 1000.0
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                raise SurfwrightError(
                    "E_BROWSER_START_FAILED",
                    f"Browser exited during startup (code {proc.returncode})",
                    details={"command": cmd},
                )
            if is_cdp_endpoint_alive(cdp_origin, 400):
                logger.info("managed browser pid=%s listening on %s", proc.pid, cdp_origin)
                return LaunchResult(
                    command=cmd,
                    pid=proc.pid,
                    cdp_origin=cdp_origin,
                    debug_port=port,
                    user_data_dir=str(user_data_dir),
                    browser_mode="headless" if self.config.headless else "headed",
                )
            time.sleep(0.1)

        terminate_pid(proc.pid)
        raise SurfwrightError(
            "E_BROWSER_START_TIMEOUT",
            f"Browser did not expose CDP on port {port} within {timeout_ms}ms",
        )
