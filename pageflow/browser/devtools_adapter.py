from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from typing import Any

from pageflow.errors import DriverError, ElementNotFound, NavigationInterrupted, PageflowError, SessionLost
from pageflow.mcp_client.jsonrpc import JsonRpcError, is_tool_error, tool_result_text
from pageflow.mcp_client.session import McpSession

from .driver import ConsoleHandler, ElementRef, LoadState, NavigationHandler, Unsubscribe
from .scripts import (
    CLICK_ELEMENT,
    CURRENT_URL,
    FOCUS_ELEMENT,
    QUERY_ELEMENTS,
    READ_COOKIES,
    READY_STATE,
    TYPE_TEXT,
    WRITE_COOKIES,
)

logger = logging.getLogger(__name__)

NETWORK_QUIET_MS = 500
LOAD_STATE_POLL_SECONDS = 0.1
NAVIGATION_POLL_SECONDS = 0.25

_CONTEXT_DESTROYED = (
    "execution context was destroyed",
    "cannot find context with specified id",
    "inspected target navigated or closed",
    "frame was detached",
    "navigating frame was detached",
)
_SESSION_GONE = (
    "target closed",
    "browser has been closed",
    "browser has disconnected",
    "session closed",
    "connection closed",
)


def classify_error(message: str) -> PageflowError:
    """Map a DevTools error message onto the pageflow error taxonomy."""
    lowered = message.lower()
    if any(marker in lowered for marker in _CONTEXT_DESTROYED):
        return NavigationInterrupted(message)
    if any(marker in lowered for marker in _SESSION_GONE):
        return SessionLost(message)
    return DriverError(message)


class DevToolsAdapter:
    """``SessionDriver`` backed by a chrome-devtools MCP server.

    Scripts run through ``evaluate_script``; their return values come back as
    fenced JSON in the tool's text output. Navigation events are synthesised by
    polling ``location.href`` while anyone is subscribed.
    """

    def __init__(self, session: McpSession, navigation_poll_seconds: float = NAVIGATION_POLL_SECONDS) -> None:
        self.session = session
        self.navigation_poll_seconds = navigation_poll_seconds
        self._navigation_handlers: list[NavigationHandler] = []
        self._navigation_task: asyncio.Task[None] | None = None
        self._last_url: str | None = None

    async def _call(self, tool_name: str, params: dict[str, Any]) -> Any:
        try:
            raw = await self.session.call_tool(tool_name, params)
        except TimeoutError as exc:
            raise DriverError(f"{tool_name} timed out") from exc
        except JsonRpcError as exc:
            raise classify_error(exc.message) from exc
        if is_tool_error(raw):
            raise classify_error(tool_result_text(raw) or f"{tool_name} failed")
        return raw

    # -- navigation -----------------------------------------------------------

    async def navigate(self, url: str, timeout_ms: int | None = None) -> None:
        params: dict[str, Any] = {"type": "url", "url": url}
        if timeout_ms is not None and timeout_ms > 0:
            params["timeout"] = timeout_ms
        await self._call("navigate_page", params)
        self._emit_navigation(url)

    async def current_url(self) -> str:
        return str(await self.evaluate(CURRENT_URL) or "")

    async def wait_for_load_state(self, state: LoadState, timeout_ms: int) -> None:
        """Poll ``document.readyState``. ``networkidle`` also needs the resource count to hold still."""
        deadline = time.monotonic() + max(timeout_ms, 0) / 1000
        last_resources = -1
        quiet_since: float | None = None

        while True:
            try:
                snapshot = await self.evaluate(READY_STATE)
            except NavigationInterrupted:
                snapshot = None
            if isinstance(snapshot, dict):
                ready = str(snapshot.get("readyState", "loading"))
                if state == "domcontentloaded" and ready in {"interactive", "complete"}:
                    return
                if state == "load" and ready == "complete":
                    return
                if state == "networkidle" and ready == "complete":
                    resources = int(snapshot.get("resources") or 0)
                    now = time.monotonic()
                    if resources != last_resources:
                        last_resources = resources
                        quiet_since = now
                    elif quiet_since is not None and (now - quiet_since) * 1000 >= NETWORK_QUIET_MS:
                        return
            if time.monotonic() >= deadline:
                raise TimeoutError(f"{state} not reached within {timeout_ms}ms")
            await asyncio.sleep(LOAD_STATE_POLL_SECONDS)

    def on_navigation(self, handler: NavigationHandler) -> Unsubscribe:
        self._navigation_handlers.append(handler)
        if self._navigation_task is None or self._navigation_task.done():
            self._navigation_task = asyncio.get_running_loop().create_task(
                self._watch_navigation(), name="pageflow-navigation-watch"
            )

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._navigation_handlers.remove(handler)
            if not self._navigation_handlers and self._navigation_task is not None:
                self._navigation_task.cancel()
                self._navigation_task = None

        return _unsubscribe

    def on_console(self, handler: ConsoleHandler) -> Unsubscribe:
        def _forward(method: str, params: dict[str, Any]) -> None:
            if method != "notifications/message":
                return
            data = params.get("data")
            text = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
            handler(str(params.get("level", "info")), text)

        return self.session.on_notification(_forward)

    async def _watch_navigation(self) -> None:
        while self._navigation_handlers:
            await asyncio.sleep(self.navigation_poll_seconds)
            try:
                url = await self.current_url()
            except NavigationInterrupted:
                continue
            except SessionLost as exc:
                logger.debug("Navigation watcher stopped: %s", exc)
                return
            except DriverError as exc:
                logger.debug("Navigation watcher could not read the URL: %s", exc)
                continue
            if self._last_url is None:
                self._last_url = url
            elif url != self._last_url:
                self._emit_navigation(url)

    def _emit_navigation(self, url: str) -> None:
        if url == self._last_url:
            return
        self._last_url = url
        for handler in list(self._navigation_handlers):
            try:
                handler(url)
            except Exception:
                logger.exception("Navigation handler failed for %s", url)

    # -- scripts and queries --------------------------------------------------

    async def evaluate(self, script: str, *args: Any) -> Any:
        """Run ``script`` (a JS function source) in the page with JSON-encoded ``args``."""
        call_args = ", ".join(json.dumps(arg) for arg in args)
        wrapper = f"async () => {{ const fn = ({script.strip()}); return await fn({call_args}); }}"
        raw = await self._call("evaluate_script", {"function": wrapper})
        return self._extract_script_result(tool_result_text(raw))

    async def query_selector_all(self, selector: str) -> list[ElementRef]:
        payload = await self.evaluate(QUERY_ELEMENTS, selector)
        if not isinstance(payload, dict):
            return []
        if payload.get("error"):
            raise DriverError(f"Invalid selector {selector}: {payload['error']}")
        return [
            ElementRef(
                selector=selector,
                index=index,
                tag=str(item.get("tag", "")),
                outer_html=str(item.get("outerHTML", "")),
                text=str(item.get("text", "")),
            )
            for index, item in enumerate(payload.get("elements") or [])
            if isinstance(item, dict)
        ]

    # -- interaction ----------------------------------------------------------

    async def click(self, selector: str) -> None:
        result = await self.evaluate(CLICK_ELEMENT, selector)
        if isinstance(result, dict) and result.get("ok"):
            return
        if self._looks_like_css_selector(selector):
            raise ElementNotFound(selector, str(result.get("reason")) if isinstance(result, dict) else None)
        uid = await self._resolve_uid(selector, preferred_roles=("button", "link"))
        await self._call("click", {"uid": uid})

    async def fill(self, selector: str, value: str, delay_ms: int | None = None) -> None:
        typed = await self.evaluate(TYPE_TEXT, selector, value, max(delay_ms or 0, 0))
        if typed:
            return
        if self._looks_like_css_selector(selector):
            raise ElementNotFound(selector)
        uid = await self._resolve_uid(selector, preferred_roles=("searchbox", "textbox", "combobox"))
        await self._call("fill", {"uid": uid, "value": value})

    async def press_key(self, key: str, selector: str | None = None) -> None:
        if selector and not await self.evaluate(FOCUS_ELEMENT, selector):
            raise ElementNotFound(selector)
        await self._call("press_key", {"key": key})

    # -- cookies --------------------------------------------------------------

    async def get_cookies(self) -> list[dict[str, Any]]:
        """Cookies visible to the page. HttpOnly cookies are not reachable this way."""
        payload = await self.evaluate(READ_COOKIES)
        if not isinstance(payload, dict):
            return []
        hostname = str(payload.get("hostname", ""))
        secure = bool(payload.get("secure", False))
        cookies: list[dict[str, Any]] = []
        for pair in str(payload.get("cookie", "")).split(";"):
            name, sep, value = pair.strip().partition("=")
            if not sep or not name:
                continue
            cookies.append(
                {
                    "name": name,
                    "value": value,
                    "domain": hostname,
                    "path": "/",
                    "expires": -1,
                    "httpOnly": False,
                    "secure": secure,
                }
            )
        return cookies

    async def set_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if not cookies:
            return
        written = await self.evaluate(WRITE_COOKIES, [c for c in cookies if not c.get("httpOnly")])
        logger.debug("Wrote %s of %d cookie(s) through document.cookie", written, len(cookies))

    # -- pages ----------------------------------------------------------------

    async def read_console(self) -> str:
        return tool_result_text(await self._call("list_console_messages", {}))

    async def list_page_ids(self) -> list[int]:
        text = tool_result_text(await self._call("list_pages", {}))
        page_ids: list[int] = []
        for line in text.splitlines():
            match = re.match(r"\s*(\d+)\s*:", line)
            if match:
                page_ids.append(int(match.group(1)))
        return page_ids

    async def close_all_pages(self) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for page_id in sorted(await self.list_page_ids(), reverse=True):
            try:
                await self._call("close_page", {"pageId": page_id})
                results.append({"pageId": page_id, "success": True})
            except PageflowError as exc:
                results.append({"pageId": page_id, "success": False, "reason": str(exc)})
        return results

    async def aclose(self) -> None:
        self._navigation_handlers.clear()
        if self._navigation_task is not None:
            self._navigation_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._navigation_task
            self._navigation_task = None

    # -- helpers --------------------------------------------------------------

    async def _resolve_uid(self, selector: str, preferred_roles: tuple[str, ...]) -> str:
        """Find an accessibility-snapshot uid by visible text, for selectors that are not CSS."""
        token = selector.strip().strip("'\"")
        if re.fullmatch(r"\d+_\d+", token):
            return token
        snapshot = tool_result_text(await self._call("take_snapshot", {}))
        lines = [line.strip() for line in snapshot.splitlines() if line.strip()]
        for role in preferred_roles:
            uid = self._find_first_uid_by_role(lines, role, text_match=token)
            if uid:
                return uid
        for line in lines:
            uid = self._extract_uid(line)
            if uid and token.lower() in line.lower():
                return uid
        raise ElementNotFound(selector, "no matching element in accessibility snapshot")

    @staticmethod
    def _looks_like_css_selector(token: str) -> bool:
        if not token:
            return False
        return bool(re.search(r"[#.\[\]>:+~=]", token)) or bool(
            re.fullmatch(r"[a-z][a-z0-9_-]*", token, flags=re.IGNORECASE)
        )

    @staticmethod
    def _extract_uid(line: str) -> str | None:
        match = re.search(r"uid=(\d+_\d+)", line)
        return match.group(1) if match else None

    def _find_first_uid_by_role(self, lines: list[str], role: str, text_match: str | None = None) -> str | None:
        role_token = f" {role} "
        text = (text_match or "").lower()
        for line in lines:
            uid = self._extract_uid(line)
            lowered_line = line.lower()
            if uid and role_token in f" {lowered_line} ":
                if text and text not in lowered_line:
                    continue
                return uid
        return None

    @staticmethod
    def _extract_script_result(text: str) -> Any:
        if not text:
            return None
        fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", text, flags=re.DOTALL | re.IGNORECASE)
        candidate = fenced.group(1) if fenced else text.strip()
        if candidate in {"", "undefined"}:
            return None
        try:
            return json.loads(candidate)
        except ValueError:
            logger.debug("Script result is not JSON: %.200s", candidate)
            return candidate
