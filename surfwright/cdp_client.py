from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any

import websockets

logger = logging.getLogger("surfwright.cdp")


class CdpError(Exception):
    pass


class CdpScriptError(CdpError):
    """A page script threw; the connection itself is fine."""


class CdpClient:
    """Minimal async CDP connection to one page target.

    Calls are issued one at a time; events that arrive while waiting for a
    reply are buffered in ``events``.
    """

    def __init__(self, ws_url: str, *, timeout_s: float = 10.0) -> None:
        self.ws_url = ws_url
        self.timeout_s = timeout_s
        self.events: list[dict[str, Any]] = []
        self._ws: Any = None
        self._next_id = 0

    async def __aenter__(self) -> CdpClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.ws_url, ping_interval=None, open_timeout=self.timeout_s, max_size=None
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise CdpError(f"CDP connect failed: {exc}") from exc

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            with suppress(Exception):
                await ws.close()

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout_s: float | None = None) -> dict:
        if self._ws is None:
            raise CdpError("CDP connection is not open")
        self._next_id += 1
        call_id = self._next_id
        payload = {"id": call_id, "method": method, "params": params or {}}
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(self._await_reply(call_id, method), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"{method} timed out after {timeout:.1f}s") from exc
        except websockets.WebSocketException as exc:
            raise CdpError(f"{method} failed: {exc}") from exc

    async def _await_reply(self, call_id: int, method: str) -> dict:
        while True:
            raw = await self._ws.recv()
            try:
                msg = json.loads(raw)
            except ValueError:
                continue
            if msg.get("id") != call_id:
                if "method" in msg:
                    self.events.append(msg)
                continue
            if "error" in msg:
                err = msg["error"] or {}
                raise CdpError(f"{method}: {err.get('message', 'unknown error')}")
            return msg.get("result") or {}

    async def evaluate(self, expression: str, *, timeout_s: float | None = None) -> Any:
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            timeout_s=timeout_s,
        )
        details = result.get("exceptionDetails")
        if details:
            exc = details.get("exception") or {}
            text = exc.get("description") or details.get("text") or "script error"
            raise CdpScriptError(f"page script failed: {text}")
        return (result.get("result") or {}).get("value")
