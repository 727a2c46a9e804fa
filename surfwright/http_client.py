from __future__ import annotations

import json
import urllib.parse
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

_USER_AGENT = "surfwright/1.0"


class HttpClientError(Exception):
    pass


def _build_request(url: str, method: str = "GET") -> Request:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError(f"Only http/https are supported: {parsed.scheme or '<none>'}")
    return Request(url, method=method, headers={"User-Agent": _USER_AGENT})


def http_get_json(url: str, timeout: float = 2.0, *, method: str = "GET", max_bytes: int = 4_000_000) -> Any:
    """Fetch JSON from URL with a bounded timeout."""
    req = _build_request(url, method=method)
    try:
        with urlopen(req, timeout=max(0.05, float(timeout))) as resp:
            body = resp.read(max_bytes + 1)
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(exc)) from exc
    if len(body) > max_bytes:
        raise HttpClientError(f"Response from {url} exceeds {max_bytes} bytes")
    try:
        return json.loads(body.decode(errors="replace"))
    except json.JSONDecodeError as exc:
        raise HttpClientError(f"Response from {url} is not JSON") from exc
