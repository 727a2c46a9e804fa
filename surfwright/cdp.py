"""CDP endpoint helpers: origin normalization and reachability probing."""

from __future__ import annotations

import json
import logging
import re
from contextlib import suppress
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import websocket

from .config import CDP_HEALTHCHECK_TIMEOUT_MS
from .errors import SurfwrightError
from .http_client import HttpClientError, http_get_json

logger = logging.getLogger("surfwright.cdp")

_PORT_ONLY_RE = re.compile(r"^\d{2,5}$")
_WS_SCHEMES = ("ws", "wss")
_HTTP_SCHEMES = ("http", "https")


def normalize_cdp_origin(raw: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise SurfwrightError("E_QUERY_INVALID", "cdp origin is required")
    if _PORT_ONLY_RE.match(value):
        value = f"http://127.0.0.1:{value}"
    elif "://" not in value:
        value = f"http://{value}"
    parts = urlsplit(value)
    if parts.scheme not in _HTTP_SCHEMES + _WS_SCHEMES or not parts.hostname:
        raise SurfwrightError("E_QUERY_INVALID", f"cdp origin must be an http(s) or ws(s) URL: {raw}")
    if parts.scheme in _HTTP_SCHEMES:
        # Keep only scheme://host:port for HTTP origins; discovery paths are appended later.
        return urlunsplit((parts.scheme, parts.netloc, "", "", "")).rstrip("/")
    return value


def infer_debug_port(cdp_origin: str) -> int | None:
    try:
        port = urlsplit(cdp_origin).port
    except ValueError:
        return None
    return port if isinstance(port, int) and port > 0 else None


def redact_cdp_endpoint(cdp_origin: str) -> str:
    """Drop credentials and query tokens before showing an endpoint to users."""
    try:
        parts = urlsplit(cdp_origin)
    except ValueError:
        return "<invalid>"
    host = parts.hostname or ""
    netloc = f"{host}:{parts.port}" if parts.port else host
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def http_origin(cdp_origin: str) -> str | None:
    parts = urlsplit(cdp_origin)
    if parts.scheme in _HTTP_SCHEMES:
        return urlunsplit((parts.scheme, parts.netloc, "", "", ""))
    return None


def fetch_version(cdp_origin: str, timeout_ms: int) -> dict[str, Any]:
    base = http_origin(cdp_origin)
    if base is None:
        raise HttpClientError(f"{redact_cdp_endpoint(cdp_origin)} has no HTTP discovery endpoint")
    payload = http_get_json(f"{base}/json/version", timeout=timeout_ms / 1000.0)
    if not isinstance(payload, dict):
        raise HttpClientError("/json/version did not return an object")
    return payload


def browser_ws_url(cdp_origin: str, timeout_ms: int) -> str:
    parts = urlsplit(cdp_origin)
    if parts.scheme in _WS_SCHEMES:
        return cdp_origin
    version = fetch_version(cdp_origin, timeout_ms)
    ws_url = version.get("webSocketDebuggerUrl")
    if not isinstance(ws_url, str) or not ws_url:
        raise HttpClientError("/json/version did not report webSocketDebuggerUrl")
    return ws_url


def _ws_alive(ws_url: str, timeout_s: float) -> bool:
    try:
        conn = websocket.create_connection(ws_url, timeout=timeout_s)
    except (websocket.WebSocketException, OSError) as exc:
        logger.debug("cdp ws probe failed for %s: %s", redact_cdp_endpoint(ws_url), exc)
        return False
    with suppress(Exception):
        conn.close()
    return True


def close_browser(cdp_origin: str, timeout_ms: int) -> bool:
    """Ask the browser behind ``cdp_origin`` to exit via ``Browser.close``."""
    timeout_s = max(CDP_HEALTHCHECK_TIMEOUT_MS, int(timeout_ms)) / 1000.0
    try:
        ws_url = browser_ws_url(cdp_origin, timeout_ms)
        conn = websocket.create_connection(ws_url, timeout=timeout_s)
    except (HttpClientError, websocket.WebSocketException, OSError) as exc:
        logger.debug("Browser.close skipped for %s: %s", redact_cdp_endpoint(cdp_origin), exc)
        return False
    try:
        conn.send(json.dumps({"id": 1, "method": "Browser.close"}))
        with suppress(websocket.WebSocketException, OSError):
            # The browser may drop the socket before replying.
            conn.recv()
        return True
    except (websocket.WebSocketException, OSError) as exc:
        logger.debug("Browser.close failed for %s: %s", redact_cdp_endpoint(cdp_origin), exc)
        return False
    finally:
        with suppress(Exception):
            conn.close()


def is_cdp_endpoint_alive(cdp_origin: str, timeout_ms: int) -> bool:
    """Bounded reachability probe; never raises for transport failures."""
    timeout_ms = max(CDP_HEALTHCHECK_TIMEOUT_MS, int(timeout_ms))
    try:
        scheme = urlsplit(cdp_origin).scheme
    except ValueError:
        return False
    if scheme in _WS_SCHEMES:
        return _ws_alive(cdp_origin, timeout_ms / 1000.0)
    try:
        fetch_version(cdp_origin, timeout_ms)
    except HttpClientError as exc:
        logger.debug("cdp probe failed for %s: %s", redact_cdp_endpoint(cdp_origin), exc)
        return False
    return True
