import json

import pytest

from pageflow.browser.devtools_adapter import DevToolsAdapter, classify_error
from pageflow.errors import DriverError, ElementNotFound, NavigationInterrupted, SessionLost


def _text(text: str, is_error: bool = False) -> dict:
    payload = {"content": [{"type": "text", "text": text}]}
    if is_error:
        payload["isError"] = True
    return payload


def _script_result(value) -> dict:
    return _text(f"Script ran on page and returned:\n```json\n{json.dumps(value)}\n```")


class FakeSession:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, dict]] = []
        self.handlers = []

    async def call_tool(self, name: str, arguments: dict):
        self.calls.append((name, arguments))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def on_notification(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)


@pytest.mark.asyncio
async def test_evaluate_inlines_arguments_and_parses_fenced_json() -> None:
    session = FakeSession(_script_result({"ok": True, "n": 3}))
    adapter = DevToolsAdapter(session)

    result = await adapter.evaluate("(a, b) => ({ok: true, n: a + b})", 1, 2)

    assert result == {"ok": True, "n": 3}
    name, arguments = session.calls[0]
    assert name == "evaluate_script"
    assert "return await fn(1, 2)" in arguments["function"]


@pytest.mark.asyncio
async def test_destroyed_context_maps_to_navigation_interrupted() -> None:
    session = FakeSession(_text("Error: Execution context was destroyed, most likely because of a navigation.", True))

    with pytest.raises(NavigationInterrupted):
        await DevToolsAdapter(session).current_url()


@pytest.mark.asyncio
async def test_query_selector_all_builds_element_refs() -> None:
    session = FakeSession(
        _script_result(
            {"elements": [{"tag": "h1", "outerHTML": "<h1>Hi</h1>", "text": "Hi"}]}
        )
    )

    (element,) = await DevToolsAdapter(session).query_selector_all("h1")

    assert (element.selector, element.index, element.tag, element.outer_html, element.text) == (
        "h1",
        0,
        "h1",
        "<h1>Hi</h1>",
        "Hi",
    )


@pytest.mark.asyncio
async def test_invalid_selector_is_a_driver_error() -> None:
    session = FakeSession(_script_result({"error": "'##' is not a valid selector"}))

    with pytest.raises(DriverError):
        await DevToolsAdapter(session).query_selector_all("##")


@pytest.mark.asyncio
async def test_click_on_missing_css_selector_raises_element_not_found() -> None:
    session = FakeSession(_script_result({"ok": False, "reason": "not found"}))

    with pytest.raises(ElementNotFound):
        await DevToolsAdapter(session).click("#checkout")
    assert [name for name, _ in session.calls] == ["evaluate_script"]


@pytest.mark.asyncio
async def test_click_by_visible_text_falls_back_to_snapshot_uid() -> None:
    session = FakeSession(
        _script_result({"ok": False, "reason": "not found"}),
        _text('uid=1_4 link "Home"\nuid=1_7 button "Sign in"'),
        _text("Successfully clicked"),
    )

    await DevToolsAdapter(session).click("Sign in")

    assert session.calls[-1] == ("click", {"uid": "1_7"})


@pytest.mark.asyncio
async def test_get_cookies_parses_document_cookie() -> None:
    session = FakeSession(_script_result({"cookie": "sid=abc; theme=dark", "hostname": "shop.test", "secure": True}))

    cookies = await DevToolsAdapter(session).get_cookies()

    assert [(c["name"], c["value"], c["domain"], c["secure"]) for c in cookies] == [
        ("sid", "abc", "shop.test", True),
        ("theme", "dark", "shop.test", True),
    ]


@pytest.mark.asyncio
async def test_wait_for_load_state_times_out() -> None:
    session = FakeSession(*[_script_result({"readyState": "loading", "resources": 0})] * 50)

    with pytest.raises(TimeoutError):
        await DevToolsAdapter(session).wait_for_load_state("domcontentloaded", 150)


@pytest.mark.asyncio
async def test_console_notifications_are_forwarded() -> None:
    session = FakeSession()
    seen = []
    unsubscribe = DevToolsAdapter(session).on_console(lambda level, text: seen.append((level, text)))

    session.handlers[0]("notifications/message", {"level": "error", "data": "boom"})
    session.handlers[0]("notifications/progress", {"progress": 1})
    unsubscribe()

    assert seen == [("error", "boom")]
    assert session.handlers == []


def test_error_classification() -> None:
    assert isinstance(classify_error("Cannot find context with specified id"), NavigationInterrupted)
    assert isinstance(classify_error("Protocol error: Target closed."), SessionLost)
    assert type(classify_error("Something else")) is DriverError
