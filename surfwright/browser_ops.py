"""Ops binding that drives page targets over the Chrome DevTools Protocol.

Targets are discovered and opened through the HTTP endpoints of the session's
CDP origin (`/json/list`, `/json/new`); page work goes through one websocket
per step. Every report carries `sessionId` and `targetId`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator
from urllib.parse import quote, urlsplit

from . import page_scripts as js
from .cdp import http_origin, redact_cdp_endpoint
from .cdp_client import CdpClient, CdpError, CdpScriptError
from .errors import SurfwrightError, query_invalid
from .http_client import HttpClientError, http_get_json
from .plan import params as p
from .session.resolver import SessionResolver
from .state import StateStore, apply_target_update, build_target_record

logger = logging.getLogger("surfwright.cdp")

POLL_INTERVAL_S = 0.1
NETWORK_IDLE_QUIET_MS = 500
DEFAULT_READ_CHUNK_SIZE = 4000
DEFAULT_EXTRACT_LIMIT = 50
DEFAULT_CONSOLE_MAX = 20
DEFAULT_SCROLL_STEPS = "0,600,1200"
DEFAULT_SCROLL_SETTLE_MS = 300
DEFAULT_FILL_EVENTS = ("input", "change")
OPEN_REUSE_MODES = ("off", "url", "origin", "active")
EXTRACT_KINDS = ("links", "headings", "images", "tables", "text")


def _action_id() -> str:
    return f"act-{secrets.token_hex(4)}"


def chunk_text(text: str, size: int | None, index: int | None) -> dict[str, Any]:
    size = size if size and size > 0 else DEFAULT_READ_CHUNK_SIZE
    count = max(1, -(-len(text) // size))
    index = index or 0
    if index < 0 or index >= count:
        raise query_invalid(f"chunk must be between 0 and {count - 1}")
    return {
        "text": text[index * size : (index + 1) * size],
        "chunkIndex": index,
        "chunkCount": count,
        "chunkSize": size,
        "totalChars": len(text),
    }


def parse_scroll_steps(raw: str | None) -> list[int]:
    values: list[int] = []
    for part in (raw or DEFAULT_SCROLL_STEPS).split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(int(part))
        except ValueError as exc:
            raise query_invalid(f"scroll steps must be a csv of integers: {raw}") from exc
    if not values:
        raise query_invalid("scroll steps must include at least one offset")
    return values


def parse_fill_events(events: str | None, event_mode: str | None) -> list[str]:
    if event_mode not in (None, "dispatch", "none"):
        raise query_invalid("eventMode must be one of: dispatch, none")
    if event_mode == "none":
        return []
    if events is None:
        return list(DEFAULT_FILL_EVENTS)
    return [name.strip() for name in events.split(",") if name.strip()]


def _query_options(params: Any) -> dict[str, Any]:
    return {
        "text": params.text,
        "selector": params.selector,
        "contains": params.contains,
        "visibleOnly": params.visible_only,
        "frameScope": params.frame_scope,
    }


class CdpPipelineOps:
    """PlanOps implementation over CDP for sessions tracked in the state store."""

    def __init__(self, store: StateStore, resolver: SessionResolver) -> None:
        self.store = store
        self.resolver = resolver
        self._sessions: dict[str, dict[str, Any]] = {}

    # sessions and targets

    async def _session(self, session_id: str | None, timeout_ms: int) -> dict[str, Any]:
        cached = self._sessions.get(session_id or "")
        if cached is not None:
            return cached
        session = await asyncio.to_thread(self.resolver.resolve, session_id=session_id, timeout_ms=timeout_ms)
        self._sessions[session["sessionId"]] = session
        if session_id is None:
            self._sessions[""] = session
        return session

    async def _http(self, session: dict[str, Any], path: str, timeout_ms: int, *, method: str = "GET") -> Any:
        base = http_origin(session["cdpOrigin"])
        if base is None:
            raise SurfwrightError(
                "E_CDP_UNREACHABLE",
                f"Session {session['sessionId']} has no HTTP discovery endpoint for target operations",
            )
        try:
            return await asyncio.to_thread(http_get_json, f"{base}{path}", timeout_ms / 1000.0, method=method)
        except HttpClientError as exc:
            raise SurfwrightError(
                "E_CDP_UNREACHABLE", f"CDP request {path} failed at {redact_cdp_endpoint(base)}: {exc}"
            ) from exc

    async def _pages(self, session: dict[str, Any], timeout_ms: int) -> list[dict[str, Any]]:
        listing = await self._http(session, "/json/list", timeout_ms)
        if not isinstance(listing, list):
            return []
        return [t for t in listing if isinstance(t, dict) and t.get("type") == "page" and t.get("id")]

    async def _page_info(self, session: dict[str, Any], target_id: str, timeout_ms: int) -> dict[str, Any]:
        for page in await self._pages(session, timeout_ms):
            if page["id"] == target_id:
                return page
        raise SurfwrightError("E_TARGET_NOT_FOUND", f"Target {target_id} not found in session {session['sessionId']}")

    def _record_target(
        self,
        session_id: str,
        target_id: str,
        url: str,
        title: str,
        *,
        action_kind: str | None,
        persist: bool,
    ) -> None:
        if not persist:
            return
        record = build_target_record(
            target_id=target_id,
            session_id=session_id,
            url=url,
            title=title,
            action_id=_action_id() if action_kind else None,
            action_kind=action_kind,
        )

        def mutate(state: dict[str, Any]) -> None:
            if session_id in state["sessions"]:
                apply_target_update(state, record)

        self.store.update(mutate)

    @asynccontextmanager
    async def _page(self, params: p.TargetStepParams) -> AsyncIterator[tuple[dict[str, Any], CdpClient]]:
        session = await self._session(params.session_id, params.timeout_ms)
        page = await self._page_info(session, params.target_id, params.timeout_ms)
        ws_url = page.get("webSocketDebuggerUrl")
        if not isinstance(ws_url, str) or not ws_url:
            raise SurfwrightError("E_CDP_UNREACHABLE", f"Target {params.target_id} exposes no websocket endpoint")
        try:
            async with CdpClient(ws_url, timeout_s=params.timeout_ms / 1000.0) as client:
                yield session, client
        except CdpScriptError as exc:
            raise SurfwrightError("E_QUERY_INVALID", str(exc)) from exc
        except CdpError as exc:
            raise SurfwrightError("E_CDP_UNREACHABLE", str(exc)) from exc

    async def _finish(
        self,
        session: dict[str, Any],
        client: CdpClient,
        params: p.TargetStepParams,
        action_kind: str | None,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        state = await client.evaluate(js.call_js(js.PAGE_STATE_JS, {}))
        url, title = str(state.get("url") or ""), str(state.get("title") or "")
        await asyncio.to_thread(
            self._record_target,
            session["sessionId"],
            params.target_id,
            url,
            title,
            action_kind=action_kind,
            persist=params.persist_state,
        )
        return {"ok": True, "sessionId": session["sessionId"], "targetId": params.target_id, "url": url, **fields}

    # waits and proofs

    async def _wait_for(
        self,
        client: CdpClient,
        *,
        text: str | None,
        selector: str | None,
        network_idle: bool,
        timeout_ms: int,
    ) -> dict[str, Any]:
        started = time.monotonic()
        deadline = started + timeout_ms / 1000.0
        last_resources: int | None = None
        quiet_since = started
        while True:
            probe = await client.evaluate(js.call_js(js.PAGE_STATE_JS, {"text": text, "selector": selector}))
            now = time.monotonic()
            resources = probe.get("resourceCount")
            if resources != last_resources:
                last_resources, quiet_since = resources, now
            done = (
                (text is None or probe.get("textFound"))
                and (selector is None or probe.get("selectorFound"))
                and (
                    not network_idle
                    or (probe.get("readyState") == "complete" and (now - quiet_since) * 1000 >= NETWORK_IDLE_QUIET_MS)
                )
            )
            if done:
                return {"satisfied": True, "elapsedMs": int((now - started) * 1000)}
            if now >= deadline:
                raise SurfwrightError(
                    "E_WAIT_TIMEOUT",
                    f"wait condition not met within {timeout_ms}ms",
                    details={"forText": text, "forSelector": selector, "networkIdle": network_idle},
                )
            await asyncio.sleep(POLL_INTERVAL_S)

    async def _post_action(self, client: CdpClient, checks: p.PostActionChecks, timeout_ms: int) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if checks.wait_for_text or checks.wait_for_selector or checks.wait_network_idle:
            out["wait"] = await self._wait_for(
                client,
                text=checks.wait_for_text,
                selector=checks.wait_for_selector,
                network_idle=checks.wait_network_idle,
                timeout_ms=checks.wait_timeout_ms or timeout_ms,
            )
        wants_proof = checks.proof or checks.assert_url_prefix or checks.assert_selector or checks.assert_text
        if wants_proof:
            probe = await client.evaluate(
                js.call_js(js.PAGE_STATE_JS, {"text": checks.assert_text, "selector": checks.assert_selector})
            )
            if checks.assert_url_prefix and not str(probe.get("url") or "").startswith(checks.assert_url_prefix):
                raise SurfwrightError("E_ASSERT_FAILED", f"url does not start with {checks.assert_url_prefix}")
            if checks.assert_selector and not probe.get("selectorFound"):
                raise SurfwrightError("E_ASSERT_FAILED", f"selector not found after action: {checks.assert_selector}")
            if checks.assert_text and not probe.get("textFound"):
                raise SurfwrightError("E_ASSERT_FAILED", f"text not found after action: {checks.assert_text}")
            out["proof"] = {
                "url": probe.get("url"),
                "title": probe.get("title"),
                "readyState": probe.get("readyState"),
            }
        return out

    # Ops

    async def open(self, params: p.OpenParams) -> dict[str, Any]:
        reuse = params.reuse or "off"
        if reuse not in OPEN_REUSE_MODES:
            raise query_invalid(f"reuse must be one of: {', '.join(OPEN_REUSE_MODES)}")
        session = await self._session(params.session_id, params.timeout_ms)
        page: dict[str, Any] | None = None
        navigate = False
        if reuse != "off":
            pages = await self._pages(session, params.timeout_ms)
            if reuse == "url":
                page = next((t for t in pages if t.get("url") == params.url), None)
            elif reuse == "origin":
                origin = urlsplit(params.url)[:2]
                page = next((t for t in pages if urlsplit(str(t.get("url") or ""))[:2] == origin), None)
                navigate = page is not None
            elif pages:
                page, navigate = pages[0], True
        reused = page is not None
        if page is None:
            page = await self._http(session, f"/json/new?{quote(params.url, safe='')}", params.timeout_ms, method="PUT")
            if not isinstance(page, dict) or not page.get("id"):
                raise SurfwrightError("E_CDP_UNREACHABLE", "CDP /json/new did not return a target")

        target_id = str(page["id"])
        target = p.TargetStepParams(target_id, params.timeout_ms, session["sessionId"], None, True)
        async with self._page(target) as (_, client):
            if navigate:
                await client.send("Page.navigate", {"url": params.url})
            ready = await self._wait_ready(client, params.timeout_ms)
            return await self._finish(
                session,
                client,
                target,
                "open",
                {"title": ready.get("title"), "readyState": ready.get("readyState"), "reused": reused},
            )

    async def _wait_ready(self, client: CdpClient, timeout_ms: int) -> dict[str, Any]:
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            probe = await client.evaluate(js.call_js(js.PAGE_STATE_JS, {}))
            if probe.get("readyState") == "complete" or time.monotonic() >= deadline:
                return probe
            await asyncio.sleep(POLL_INTERVAL_S)

    async def list_targets(self, params: p.ListParams) -> dict[str, Any]:
        session = await self._session(params.session_id, params.timeout_ms)
        pages = await self._pages(session, params.timeout_ms)
        targets = [
            {"targetId": str(t["id"]), "url": str(t.get("url") or ""), "title": str(t.get("title") or "")}
            for t in pages
        ]
        for target in targets:
            await asyncio.to_thread(
                self._record_target,
                session["sessionId"],
                target["targetId"],
                target["url"],
                target["title"],
                action_kind=None,
                persist=params.persist_state,
            )
        return {"ok": True, "sessionId": session["sessionId"], "count": len(targets), "targets": targets}

    async def snapshot(self, params: p.SnapshotParams) -> dict[str, Any]:
        async with self._page(params) as (session, client):
            snap = await client.evaluate(
                js.call_js(js.SNAPSHOT_JS, {"selector": params.selector, "visibleOnly": params.visible_only})
            )
            if params.selector and not snap.get("found"):
                raise SurfwrightError("E_ELEMENT_NOT_FOUND", f"No element matches {params.selector}")
            return await self._finish(session, client, params, "snapshot", snap)

    async def find(self, params: p.FindParams) -> dict[str, Any]:
        opts = {**_query_options(params), "first": params.first, "limit": params.limit}
        async with self._page(params) as (session, client):
            found = await client.evaluate(js.call_js(js.FIND_JS, opts))
            return await self._finish(session, client, params, "find", found)

    async def count(self, params: p.CountParams) -> dict[str, Any]:
        async with self._page(params) as (session, client):
            counted = await client.evaluate(js.call_js(js.COUNT_JS, _query_options(params)))
            return await self._finish(session, client, params, "count", counted)

    async def scroll_plan(self, params: p.ScrollPlanParams) -> dict[str, Any]:
        mode = params.mode or "absolute"
        if mode not in ("absolute", "relative"):
            raise query_invalid("scrollMode must be one of: absolute, relative")
        offsets = parse_scroll_steps(params.steps_csv)
        settle_s = (params.settle_ms if params.settle_ms is not None else DEFAULT_SCROLL_SETTLE_MS) / 1000.0
        count_opts = {
            "selector": params.count_selector,
            "contains": params.count_contains,
            "visibleOnly": params.count_visible_only,
            "frameScope": params.frame_scope,
        }
        async with self._page(params) as (session, client):
            steps: list[dict[str, Any]] = []
            for offset in offsets:
                position = await client.evaluate(js.call_js(js.SCROLL_JS, {"mode": mode, "y": offset}))
                await asyncio.sleep(max(0.0, settle_s))
                entry = {"offset": offset, **position}
                if params.count_selector:
                    entry["count"] = (await client.evaluate(js.call_js(js.COUNT_JS, count_opts)))["count"]
                steps.append(entry)
            return await self._finish(session, client, params, "scroll-plan", {"mode": mode, "steps": steps})

    async def _click_element(self, client: CdpClient, opts: dict[str, Any]) -> dict[str, Any]:
        clicked = await client.evaluate(js.call_js(js.CLICK_JS, opts))
        if not clicked.get("clicked"):
            target = opts.get("selector") or opts.get("text")
            raise SurfwrightError(
                "E_ELEMENT_NOT_FOUND",
                f"No clickable element for {target!r} at index {opts.get('index') or 0}",
                details={"matchCount": clicked.get("matchCount", 0)},
            )
        return clicked

    async def click(self, params: p.ClickParams) -> dict[str, Any]:
        opts = {**_query_options(params), "within": params.within, "index": params.index}
        async with self._page(params) as (session, client):
            clicked = await self._click_element(client, opts)
            fields: dict[str, Any] = {"matchCount": clicked["matchCount"], "clicked": clicked["element"]}
            fields.update(await self._post_action(client, params.checks, params.timeout_ms))
            if params.count_after:
                after = (await client.evaluate(js.call_js(js.COUNT_JS, _query_options(params))))["count"]
                fields["countAfter"] = after
                if params.expect_count_after is not None and after != params.expect_count_after:
                    raise SurfwrightError(
                        "E_ASSERT_FAILED", f"expected {params.expect_count_after} matches after click but found {after}"
                    )
            if params.snapshot:
                fields["snapshot"] = await client.evaluate(js.call_js(js.SNAPSHOT_JS, {}))
            return await self._finish(session, client, params, "click", fields)

    async def click_read(self, params: p.ClickReadParams) -> dict[str, Any]:
        opts = {**_query_options(params), "index": params.index}
        async with self._page(params) as (session, client):
            clicked = await self._click_element(client, opts)
            fields: dict[str, Any] = {"clicked": clicked["element"]}
            fields.update(await self._post_action(client, params.checks, params.timeout_ms))
            read = await client.evaluate(
                js.call_js(
                    js.READ_JS,
                    {
                        "selector": params.read_selector,
                        "visibleOnly": params.read_visible_only,
                        "frameScope": params.read_frame_scope,
                    },
                )
            )
            fields["read"] = chunk_text(str(read.get("text") or ""), params.chunk_size, params.chunk_index)
            return await self._finish(session, client, params, "click-read", fields)

    async def fill(self, params: p.FillParams) -> dict[str, Any]:
        events = parse_fill_events(params.events, params.event_mode)
        opts = {**_query_options(params), "value": params.value, "events": events}
        async with self._page(params) as (session, client):
            filled = await client.evaluate(js.call_js(js.FILL_JS, opts))
            if not filled.get("filled"):
                raise SurfwrightError("E_ELEMENT_NOT_FOUND", "No element to fill matched the query")
            fields: dict[str, Any] = {
                "filled": filled["element"],
                "valueLength": filled.get("valueLength"),
                "events": events,
            }
            fields.update(await self._post_action(client, params.checks, params.timeout_ms))
            return await self._finish(session, client, params, "fill", fields)

    async def upload(self, params: p.UploadParams) -> dict[str, Any]:
        files: list[str] = []
        for raw in params.files:
            path = Path(raw).expanduser()
            if not path.is_file():
                raise query_invalid(f"File not found: {raw}")
            files.append(str(path.resolve()))
        async with self._page(params) as (session, client):
            doc = await client.send("DOM.getDocument", {"depth": 0})
            node = await client.send(
                "DOM.querySelector", {"nodeId": doc["root"]["nodeId"], "selector": params.selector}
            )
            if not node.get("nodeId"):
                raise SurfwrightError("E_ELEMENT_NOT_FOUND", f"No file input matches {params.selector}")
            await client.send("DOM.setFileInputFiles", {"nodeId": node["nodeId"], "files": files})
            fields: dict[str, Any] = {"files": [Path(f).name for f in files]}

            if params.expect_uploaded_filename:
                names = await client.evaluate(
                    f"Array.from((document.querySelector({json.dumps(params.selector)}) || {{}}).files || [])"
                    ".map((f) => f.name)"
                )
                if params.expect_uploaded_filename not in (names or []):
                    raise SurfwrightError(
                        "E_ASSERT_FAILED", f"input does not hold {params.expect_uploaded_filename}"
                    )
            if params.submit_selector:
                await self._click_element(client, {"selector": params.submit_selector, "index": 0})
                fields["submitted"] = True
            if params.wait_for_result:
                fields["result"] = await self._wait_upload_result(client, params)
            fields.update(await self._post_action(client, params.checks, params.timeout_ms))
            return await self._finish(session, client, params, "upload", fields)

    async def _wait_upload_result(self, client: CdpClient, params: p.UploadParams) -> dict[str, Any]:
        pattern = re.compile(params.result_filename_regex) if params.result_filename_regex else None
        timeout_ms = params.checks.wait_timeout_ms or params.timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            read = await client.evaluate(
                js.call_js(js.READ_JS, {"selector": params.result_selector, "visibleOnly": False})
            )
            text = str(read.get("text") or "")
            ok = bool(read.get("matched")) and bool(text)
            if params.result_text_contains:
                ok = ok and params.result_text_contains in text
            if pattern is not None:
                ok = ok and pattern.search(text) is not None
            if ok:
                return {"found": True, "text": text[:500]}
            if time.monotonic() >= deadline:
                raise SurfwrightError("E_WAIT_TIMEOUT", f"upload result not observed within {timeout_ms}ms")
            await asyncio.sleep(POLL_INTERVAL_S)

    async def read(self, params: p.ReadParams) -> dict[str, Any]:
        opts = {"selector": params.selector, "visibleOnly": params.visible_only, "frameScope": params.frame_scope}
        async with self._page(params) as (session, client):
            read = await client.evaluate(js.call_js(js.READ_JS, opts))
            if params.selector and not read.get("matched"):
                raise SurfwrightError("E_ELEMENT_NOT_FOUND", f"No element matches {params.selector}")
            fields = chunk_text(str(read.get("text") or ""), params.chunk_size, params.chunk_index)
            fields["title"] = read.get("title")
            return await self._finish(session, client, params, "read", fields)

    async def eval_js(self, params: p.EvalParams) -> dict[str, Any]:
        if not params.expression:
            raise query_invalid("eval requires expression")
        arg_json = None
        if params.arg_json is not None:
            try:
                arg_json = json.dumps(json.loads(params.arg_json))
            except ValueError as exc:
                raise query_invalid("argJson is not valid JSON") from exc
        max_console = params.max_console if params.max_console is not None else DEFAULT_CONSOLE_MAX
        async with self._page(params) as (session, client):
            if params.capture_console:
                await client.send("Runtime.enable")
                client.events.clear()
            value = await client.evaluate(js.eval_expression_js(params.expression, arg_json))
            fields: dict[str, Any] = {"result": value}
            if params.capture_console:
                fields["console"] = [
                    {
                        "type": event["params"].get("type"),
                        "text": " ".join(
                            str(arg.get("value", arg.get("description", ""))) for arg in event["params"].get("args", [])
                        ),
                    }
                    for event in client.events
                    if event.get("method") == "Runtime.consoleAPICalled"
                ][: max(0, max_console)]
            return await self._finish(session, client, params, "eval", fields)

    async def wait(self, params: p.WaitParams) -> dict[str, Any]:
        if not (params.for_text or params.for_selector or params.network_idle):
            raise query_invalid("wait requires forText, forSelector, or networkIdle")
        async with self._page(params) as (session, client):
            waited = await self._wait_for(
                client,
                text=params.for_text,
                selector=params.for_selector,
                network_idle=params.network_idle,
                timeout_ms=params.timeout_ms,
            )
            return await self._finish(session, client, params, "wait", {"wait": waited})

    async def extract(self, params: p.ExtractParams) -> dict[str, Any]:
        kind = params.kind or "links"
        if kind not in EXTRACT_KINDS:
            raise query_invalid(f"kind must be one of: {', '.join(EXTRACT_KINDS)}")
        opts = {
            "kind": kind,
            "selector": params.selector,
            "visibleOnly": params.visible_only,
            "limit": params.limit if params.limit and params.limit > 0 else DEFAULT_EXTRACT_LIMIT,
        }
        async with self._page(params) as (session, client):
            extracted = await client.evaluate(js.call_js(js.EXTRACT_JS, opts))
            return await self._finish(session, client, params, "extract", extracted)
