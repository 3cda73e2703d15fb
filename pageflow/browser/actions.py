from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

ContentFormat = Literal["html", "text"]

INFINITE_TIMEOUT = -1


@dataclass(frozen=True, slots=True)
class WaitAction:
    selectors: tuple[str, ...]
    timeout_ms: int = 30000

    @property
    def infinite(self) -> bool:
        return self.timeout_ms == INFINITE_TIMEOUT


@dataclass(frozen=True, slots=True)
class ClickAction:
    selector: str


@dataclass(frozen=True, slots=True)
class TypingAction:
    selector: str
    value: str
    delay_ms: int | None = None


@dataclass(frozen=True, slots=True)
class KeyPressAction:
    key: str
    selector: str | None = None


@dataclass(frozen=True, slots=True)
class PrintAction:
    selectors: tuple[str, ...]
    format: ContentFormat = "html"


Action = Union[WaitAction, ClickAction, TypingAction, KeyPressAction, PrintAction]

ActionPlan = tuple[Action, ...]


def action_type(action: Action) -> str:
    if isinstance(action, WaitAction):
        return "wait"
    if isinstance(action, ClickAction):
        return "click"
    if isinstance(action, TypingAction):
        return "typing"
    if isinstance(action, KeyPressAction):
        return "keyPress"
    return "print"


def action_to_dict(action: Action) -> dict[str, Any]:
    if isinstance(action, WaitAction):
        return {"type": "wait", "elements": list(action.selectors), "timeout": action.timeout_ms}
    if isinstance(action, ClickAction):
        return {"type": "click", "element": action.selector}
    if isinstance(action, TypingAction):
        payload: dict[str, Any] = {"type": "typing", "element": action.selector, "value": action.value}
        if action.delay_ms is not None:
            payload["delay"] = action.delay_ms
        return payload
    if isinstance(action, KeyPressAction):
        payload = {"type": "keyPress", "key": action.key}
        if action.selector:
            payload["element"] = action.selector
        return payload
    return {"type": "print", "elements": list(action.selectors), "format": action.format}


@dataclass(slots=True)
class ContentItem:
    selector: str
    content: str | None = None
    format: ContentFormat = "html"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"selector": self.selector, "format": self.format}
        if self.content is not None:
            payload["content"] = self.content
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ActionResult:
    success: bool
    message: str
    warning: str | None = None
    error: str | None = None
    error_type: str | None = None
    captured: list[ContentItem] = field(default_factory=list)
    aborted: bool = False

    @classmethod
    def failure(cls, message: str, exc: BaseException) -> ActionResult:
        return cls(
            success=False,
            message=message,
            error=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.warning:
            payload["warning"] = self.warning
        if self.error:
            payload["error"] = self.error
        if self.error_type:
            payload["error_type"] = self.error_type
        if self.aborted:
            payload["aborted"] = True
        payload["captured"] = [item.to_dict() for item in self.captured]
        return payload


@dataclass(slots=True)
class ActionStatus:
    index: int
    total: int
    action: Action
    result: ActionResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "total": self.total,
            "action": action_to_dict(self.action),
            "result": self.result.to_dict(),
        }
