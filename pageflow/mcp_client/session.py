from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pageflow.errors import SessionLost

from .jsonrpc import (
    Incoming,
    JsonRpcError,
    Outgoing,
    build_notification,
    build_request,
    build_tool_call,
    parse_message,
)
from .transport import StdioTransport

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, dict[str, Any]], None]

PROTOCOL_VERSION = "2025-06-18"


class McpSession:
    def __init__(self, transport: StdioTransport, timeout_seconds: float = 20.0) -> None:
        self.transport = transport
        self.timeout_seconds = timeout_seconds
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._notifications: list[NotificationHandler] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed_reason: str | None = None

    async def start(self) -> None:
        await self.transport.start()
        self._closed_reason = None
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def stop(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError, SessionLost):
                await asyncio.wait_for(self._reader_task, timeout=2)
            self._reader_task = None
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.transport.stop(), timeout=8)
        self._fail_pending("MCP session stopped")

    def on_notification(self, handler: NotificationHandler) -> Callable[[], None]:
        self._notifications.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._notifications.remove(handler)

        return _unsubscribe

    async def initialize(self, attempts: int = 3) -> Any:
        """Perform the MCP handshake, retrying while a freshly spawned server warms up."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            retry=retry_if_exception_type(TimeoutError),
            reraise=True,
        ):
            with attempt:
                result = await self.request(
                    "initialize",
                    {
                        "protocolVersion": PROTOCOL_VERSION,
                        "clientInfo": {"name": "pageflow", "version": "0.1.0"},
                        "capabilities": {},
                    },
                )
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> Any:
        return await self.request("tools/list", {})

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self._send(build_tool_call(name, arguments))

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.transport.send(build_notification(method, params).to_dict())

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        return await self._send(build_request(method, params))

    async def _send(self, req: Outgoing) -> Any:
        if self._closed_reason is not None:
            raise SessionLost(self._closed_reason)
        assert req.id is not None
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()
        self._pending[req.id] = fut
        try:
            await self.transport.send(req.to_dict())
            return await asyncio.wait_for(fut, timeout=self.timeout_seconds)
        finally:
            self._pending.pop(req.id, None)

    async def _reader_loop(self) -> None:
        try:
            while True:
                message = parse_message(await self.transport.recv())
                if message.kind == "response":
                    self._resolve(message)
                elif message.kind == "notification":
                    self._dispatch(message.method, message.params)
                else:
                    logger.debug("Ignoring %s message from server: %s", message.kind, message.payload)
        except SessionLost as exc:
            logger.warning("MCP session lost: %s", exc)
            self._fail_pending(str(exc))

    def _resolve(self, message: Incoming) -> None:
        future = self._pending.pop(message.id, None)
        if future is None or future.done():
            return
        try:
            future.set_result(message.result())
        except JsonRpcError as exc:
            future.set_exception(exc)

    def _dispatch(self, method: str, params: dict[str, Any]) -> None:
        for handler in list(self._notifications):
            try:
                handler(method, params)
            except Exception:
                logger.exception("Notification handler failed for %s", method)

    def _fail_pending(self, reason: str) -> None:
        self._closed_reason = reason
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(SessionLost(reason))
