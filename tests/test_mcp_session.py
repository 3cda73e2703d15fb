import asyncio

import pytest

from pageflow.errors import SessionLost
from pageflow.mcp_client.jsonrpc import (
    JsonRpcError,
    build_notification,
    build_tool_call,
    is_notification,
    is_response,
    is_tool_error,
    parse_message,
    tool_result_text,
)
from pageflow.mcp_client.session import McpSession

_CLOSED = object()


class FakeTransport:
    def __init__(self, responder=None) -> None:
        self.responder = responder or (lambda payload: None)
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        await self.incoming.put(_CLOSED)

    async def send(self, payload: dict) -> None:
        self.sent.append(payload)
        reply = self.responder(payload)
        if reply is not None:
            await self.incoming.put(reply)

    async def recv(self) -> dict:
        item = await self.incoming.get()
        if item is _CLOSED:
            raise SessionLost("MCP transport closed")
        return item


def _echo(payload: dict):
    if "id" not in payload:
        return None
    if payload["method"] == "tools/call" and payload["params"]["name"] == "broken":
        return {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32602, "message": "bad params"}}
    return {"jsonrpc": "2.0", "id": payload["id"], "result": {"method": payload["method"]}}


@pytest.mark.asyncio
async def test_request_resolves_with_matching_response() -> None:
    session = McpSession(FakeTransport(_echo), timeout_seconds=1)
    await session.start()
    try:
        assert await session.list_tools() == {"method": "tools/list"}
    finally:
        await session.stop()


@pytest.mark.asyncio
async def test_error_response_raises_jsonrpc_error() -> None:
    session = McpSession(FakeTransport(_echo), timeout_seconds=1)
    await session.start()
    try:
        with pytest.raises(JsonRpcError) as info:
            await session.call_tool("broken", {})
        assert info.value.code == -32602
    finally:
        await session.stop()


@pytest.mark.asyncio
async def test_initialize_sends_initialized_notification() -> None:
    transport = FakeTransport(_echo)
    session = McpSession(transport, timeout_seconds=1)
    await session.start()
    try:
        await session.initialize()
    finally:
        await session.stop()

    assert [message["method"] for message in transport.sent] == ["initialize", "notifications/initialized"]
    assert "id" not in transport.sent[1]


@pytest.mark.asyncio
async def test_closed_transport_fails_pending_requests() -> None:
    transport = FakeTransport()
    session = McpSession(transport, timeout_seconds=5)
    await session.start()

    pending = asyncio.create_task(session.call_tool("navigate_page", {"url": "https://x.test"}))
    await asyncio.sleep(0)
    await transport.incoming.put(_CLOSED)

    with pytest.raises(SessionLost):
        await pending
    with pytest.raises(SessionLost):
        await session.list_tools()
    await session.stop()


@pytest.mark.asyncio
async def test_notifications_reach_subscribers_until_unsubscribed() -> None:
    transport = FakeTransport()
    session = McpSession(transport, timeout_seconds=1)
    seen: list[tuple[str, dict]] = []
    unsubscribe = session.on_notification(lambda method, params: seen.append((method, params)))
    await session.start()

    await transport.incoming.put({"jsonrpc": "2.0", "method": "notifications/message", "params": {"data": "a"}})
    await asyncio.sleep(0.01)
    unsubscribe()
    await transport.incoming.put({"jsonrpc": "2.0", "method": "notifications/message", "params": {"data": "b"}})
    await asyncio.sleep(0.01)
    await session.stop()

    assert seen == [("notifications/message", {"data": "a"})]


def test_message_classification() -> None:
    assert is_response({"jsonrpc": "2.0", "id": 1, "result": None})
    assert not is_response({"jsonrpc": "2.0", "method": "x"})
    assert is_notification(build_notification("notifications/initialized").to_dict())


def test_tool_result_helpers() -> None:
    result = {"content": [{"type": "text", "text": "one"}, {"type": "image"}, {"type": "text", "text": "two"}]}

    assert tool_result_text(result) == "one\ntwo"
    assert not is_tool_error(result)
    assert is_tool_error({"isError": True, "content": []})


def test_parse_message_sorts_server_traffic() -> None:
    response = parse_message({"jsonrpc": "2.0", "id": "7", "error": {"code": -32601, "message": "nope"}})
    notification = parse_message({"jsonrpc": "2.0", "method": "notifications/message", "params": None})
    request = parse_message({"jsonrpc": "2.0", "id": 3, "method": "roots/list"})

    assert (response.kind, response.id) == ("response", 7)
    with pytest.raises(JsonRpcError) as info:
        response.result()
    assert info.value.code == -32601
    assert (notification.kind, notification.params) == ("notification", {})
    assert request.kind == "request"
    assert parse_message({"id": 1, "result": {}}).kind == "invalid"
    assert parse_message("banner").kind == "invalid"


def test_tool_call_wraps_arguments() -> None:
    call = build_tool_call("click", {"uid": "1_7"}).to_dict()

    assert call["method"] == "tools/call"
    assert call["params"] == {"name": "click", "arguments": {"uid": "1_7"}}
    assert isinstance(call["id"], int)
