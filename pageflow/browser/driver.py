"""The interface pageflow needs from a live browser session.

Any implementation may raise :class:`~pageflow.errors.SessionLost` from any
coroutine. ``wait_for_load_state`` raises ``TimeoutError`` when the state is not
reached in time. Selectors that resolve to nothing make ``click``, ``fill`` and
``press_key`` raise :class:`~pageflow.errors.ElementNotFound`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

LoadState = Literal["domcontentloaded", "load", "networkidle"]

NavigationHandler = Callable[[str], None]
ConsoleHandler = Callable[[str, str], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True, slots=True)
class ElementRef:
    selector: str
    index: int
    tag: str = ""
    outer_html: str = ""
    text: str = ""


@runtime_checkable
class SessionDriver(Protocol):
    async def navigate(self, url: str, timeout_ms: int | None = None) -> None: ...

    async def current_url(self) -> str: ...

    async def query_selector_all(self, selector: str) -> list[ElementRef]: ...

    async def evaluate(self, script: str, *args: Any) -> Any: ...

    async def click(self, selector: str) -> None: ...

    async def fill(self, selector: str, value: str, delay_ms: int | None = None) -> None: ...

    async def press_key(self, key: str, selector: str | None = None) -> None: ...

    async def get_cookies(self) -> list[dict[str, Any]]: ...

    async def set_cookies(self, cookies: list[dict[str, Any]]) -> None: ...

    async def wait_for_load_state(self, state: LoadState, timeout_ms: int) -> None: ...

    def on_navigation(self, handler: NavigationHandler) -> Unsubscribe: ...

    def on_console(self, handler: ConsoleHandler) -> Unsubscribe: ...
