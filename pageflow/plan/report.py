from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pageflow.browser.actions import (
    Action,
    ActionStatus,
    ClickAction,
    ContentItem,
    KeyPressAction,
    TypingAction,
    WaitAction,
    action_type,
)

Outcome = Literal["completed", "failed", "aborted"]

_SYMBOLS = {
    "wait": "⏳",
    "click": "🖱️",
    "typing": "⌨️",
    "keyPress": "🔑",
    "print": "📄",
}


def describe_action(action: Action) -> str:
    if isinstance(action, WaitAction):
        limit = "no timeout" if action.infinite else f"{action.timeout_ms}ms"
        return f"Wait for {', '.join(action.selectors)} ({limit})"
    if isinstance(action, ClickAction):
        return f"Click {action.selector}"
    if isinstance(action, TypingAction):
        return f'Type "{action.value}" into {action.selector}'
    if isinstance(action, KeyPressAction):
        return f"Press {action.key}" + (f" on {action.selector}" if action.selector else "")
    return f"Capture {', '.join(action.selectors)} as {action.format}"


def action_symbol(action: Action) -> str:
    return _SYMBOLS.get(action_type(action), "•")


def format_status(status: ActionStatus) -> str:
    result = status.result
    if result.aborted:
        mark = "⏹️"
    elif result.success:
        mark = "✅"
    else:
        mark = "❌"
    line = (
        f"{action_symbol(status.action)} [{status.index}/{status.total}] "
        f"{describe_action(status.action)} {mark} {result.message}"
    )
    if result.warning:
        line += f" | ⚠️ {result.warning}"
    if result.error:
        line += f" | {result.error}"
    return line


@dataclass(slots=True)
class ExecutionReport:
    total: int
    statuses: list[ActionStatus] = field(default_factory=list)
    extra_content: list[ContentItem] = field(default_factory=list)
    outcome: Outcome = "completed"

    def push(self, status: ActionStatus) -> None:
        self.statuses.append(status)

    @property
    def success(self) -> bool:
        return self.outcome == "completed"

    @property
    def last(self) -> ActionStatus | None:
        return self.statuses[-1] if self.statuses else None

    @property
    def captured(self) -> list[ContentItem]:
        """Every content item, in action order, followed by failure context."""
        items = [item for status in self.statuses for item in status.result.captured]
        return items + self.extra_content

    def captured_from_actions(self) -> bool:
        return any(
            item.content for status in self.statuses for item in status.result.captured
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "total": self.total,
            "executed": len(self.statuses),
            "statuses": [status.to_dict() for status in self.statuses],
            "captured": [item.to_dict() for item in self.captured],
        }
