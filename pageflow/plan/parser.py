from __future__ import annotations

import json
from typing import Any

from pageflow.browser.actions import (
    INFINITE_TIMEOUT,
    Action,
    ActionPlan,
    ClickAction,
    KeyPressAction,
    PrintAction,
    TypingAction,
    WaitAction,
)
from pageflow.config import DEFAULT_TIMEOUT_MS
from pageflow.errors import InvalidPlan

_TYPE_ALIASES = {
    "wait": "wait",
    "click": "click",
    "typing": "typing",
    "type": "typing",
    "fill": "typing",
    "keypress": "keyPress",
    "press": "keyPress",
    "press_key": "keyPress",
    "key": "keyPress",
    "print": "print",
    "markdown": "print",
}

_FORMAT_ALIASES = {"html": "html", "text": "text", "markdown": "text"}


def parse_plan(raw: Any, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ActionPlan:
    """Validate a caller-supplied plan document and build the typed action tuple.

    Accepts a mapping or its JSON text. Raises :class:`InvalidPlan` on any
    structural problem, before anything touches a session.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidPlan(f"Plan is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise InvalidPlan("Plan must be an object with an 'actions' array")
    if "actions" not in raw:
        raise InvalidPlan("Plan is missing 'actions'")
    actions = raw["actions"]
    if not isinstance(actions, list):
        raise InvalidPlan("Plan 'actions' must be an array")
    if not actions:
        raise InvalidPlan("Plan 'actions' must not be empty")
    return tuple(
        to_action(step, index=index, default_timeout_ms=default_timeout_ms)
        for index, step in enumerate(actions, start=1)
    )


def to_action(step: Any, index: int = 1, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> Action:
    if not isinstance(step, dict):
        raise InvalidPlan(f"Action {index} must be an object")
    raw_type = str(step.get("type") or "").strip()
    if not raw_type:
        raise InvalidPlan(f"Action {index} is missing 'type'")
    kind = _TYPE_ALIASES.get(raw_type.lower())
    if kind is None:
        raise InvalidPlan(f"Action {index} has unsupported type: {raw_type}")

    if kind == "wait":
        return WaitAction(
            selectors=_selectors(step, index),
            timeout_ms=_timeout(step.get("timeout"), index, default_timeout_ms),
        )
    if kind == "click":
        return ClickAction(selector=_selector(step, index))
    if kind == "typing":
        value = step.get("value")
        if not isinstance(value, str):
            raise InvalidPlan(f"Action {index} (typing) requires a string 'value'")
        delay = step.get("delay")
        if delay is not None and (not isinstance(delay, int) or isinstance(delay, bool) or delay < 0):
            raise InvalidPlan(f"Action {index} (typing) 'delay' must be a non-negative integer")
        return TypingAction(selector=_selector(step, index), value=value, delay_ms=delay)
    if kind == "keyPress":
        key = step.get("key")
        if not isinstance(key, str) or not key.strip():
            raise InvalidPlan(f"Action {index} (keyPress) requires a 'key'")
        target = step.get("element")
        if target is not None and (not isinstance(target, str) or not target.strip()):
            raise InvalidPlan(f"Action {index} (keyPress) 'element' must be a selector string")
        return KeyPressAction(key=key, selector=target)

    default_format = "text" if raw_type.lower() == "markdown" else "html"
    fmt = str(step.get("format") or default_format).strip().lower()
    if fmt not in _FORMAT_ALIASES:
        raise InvalidPlan(f"Action {index} (print) has unsupported format: {fmt}")
    return PrintAction(selectors=_selectors(step, index), format=_FORMAT_ALIASES[fmt])


def _selector(step: dict[str, Any], index: int) -> str:
    selector = step.get("element", step.get("selector"))
    if not isinstance(selector, str) or not selector.strip():
        raise InvalidPlan(f"Action {index} requires an 'element' selector")
    return selector


def _selectors(step: dict[str, Any], index: int) -> tuple[str, ...]:
    selectors = step.get("elements", step.get("selectors"))
    if not isinstance(selectors, list) or not selectors:
        raise InvalidPlan(f"Action {index} requires a non-empty 'elements' array")
    if not all(isinstance(item, str) and item.strip() for item in selectors):
        raise InvalidPlan(f"Action {index} 'elements' must contain selector strings")
    return tuple(selectors)


def _timeout(raw: Any, index: int, default_timeout_ms: int) -> int:
    if raw is None:
        return default_timeout_ms
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise InvalidPlan(f"Action {index} 'timeout' must be an integer")
    if raw < 0 and raw != INFINITE_TIMEOUT:
        raise InvalidPlan(f"Action {index} 'timeout' must be positive or -1")
    return raw
