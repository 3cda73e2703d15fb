from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Literal

# Server-defined error range reserved by JSON-RPC 2.0.
SERVER_ERROR = -32000
INVALID_MESSAGE = -32600

MessageKind = Literal["response", "notification", "request", "invalid"]

_request_ids = itertools.count(1)


class JsonRpcError(Exception):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


@dataclass(slots=True)
class Outgoing:
    """A request (with ``id``) or a notification (without) bound for the MCP server."""

    method: str
    params: dict[str, Any] | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        if self.id is not None:
            payload["id"] = self.id
        return payload


def build_request(method: str, params: dict[str, Any] | None = None) -> Outgoing:
    return Outgoing(method, params, next(_request_ids))


def build_notification(method: str, params: dict[str, Any] | None = None) -> Outgoing:
    return Outgoing(method, params)


def build_tool_call(name: str, arguments: dict[str, Any]) -> Outgoing:
    return build_request("tools/call", {"name": name, "arguments": arguments})


@dataclass(slots=True)
class Incoming:
    kind: MessageKind
    id: int | None = None
    method: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)

    def result(self) -> Any:
        """The response result, or raise the ``JsonRpcError`` it carries."""
        if "error" in self.payload:
            err = self.payload["error"] or {}
            raise JsonRpcError(
                code=err.get("code", SERVER_ERROR),
                message=err.get("message", "Unknown JSON-RPC error"),
                data=err.get("data"),
            )
        return self.payload.get("result")


def parse_message(payload: Any) -> Incoming:
    if not isinstance(payload, dict) or payload.get("jsonrpc") != "2.0":
        return Incoming("invalid", payload=payload if isinstance(payload, dict) else {})
    params = payload.get("params")
    params = params if isinstance(params, dict) else {}
    if "id" in payload and ("result" in payload or "error" in payload):
        try:
            msg_id = int(payload["id"])
        except (TypeError, ValueError):
            return Incoming("invalid", payload=payload)
        return Incoming("response", id=msg_id, payload=payload)
    if "method" in payload:
        kind: MessageKind = "request" if "id" in payload else "notification"
        return Incoming(kind, method=str(payload["method"]), params=params, payload=payload)
    return Incoming("invalid", payload=payload)


def is_response(payload: dict[str, Any]) -> bool:
    return parse_message(payload).kind == "response"


def is_notification(payload: dict[str, Any]) -> bool:
    return parse_message(payload).kind == "notification"


# -- MCP tool results ---------------------------------------------------------


def tool_result_text(result: Any) -> str:
    """Join the text chunks of an MCP ``tools/call`` result."""
    if not isinstance(result, dict):
        return "" if result is None else str(result)
    content = result.get("content", [])
    if not isinstance(content, list):
        return str(content)
    return "\n".join(
        str(chunk.get("text", ""))
        for chunk in content
        if isinstance(chunk, dict) and chunk.get("type") == "text"
    )


def is_tool_error(result: Any) -> bool:
    return isinstance(result, dict) and result.get("isError") is True
