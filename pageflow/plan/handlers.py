from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import assert_never

from pageflow.browser.actions import (
    Action,
    ActionResult,
    ClickAction,
    ContentFormat,
    ContentItem,
    KeyPressAction,
    PrintAction,
    TypingAction,
    WaitAction,
)
from pageflow.browser.driver import SessionDriver
from pageflow.browser.scripts import CLEAR_VALUE
from pageflow.browser.stability import StabilityDetector
from pageflow.config import DEFAULT_TYPING_DELAY_MS, INFINITE_WAIT_RETRY_MS
from pageflow.errors import (
    AbortedByCancellation,
    ActionTimeout,
    ElementNotFound,
    NavigationInterrupted,
    PageflowError,
    SessionLost,
)
from pageflow.waits import raise_if_cancelled, seconds

logger = logging.getLogger(__name__)

MAX_CAPTURED_CONTENT_LENGTH = 50000
NO_ELEMENTS_FOUND = "no elements found"
EMPTY_CONTENT = "empty content"
SELECTOR_POLL_SECONDS = 0.1
NAVIGATION_WARNING = "Page navigation occurred"


@dataclass(slots=True)
class HandlerContext:
    driver: SessionDriver
    detector: StabilityDetector
    cancel: asyncio.Event | None = None
    typing_delay_ms: int = DEFAULT_TYPING_DELAY_MS
    infinite_wait_retry_ms: int = INFINITE_WAIT_RETRY_MS


async def run_action(ctx: HandlerContext, action: Action) -> ActionResult:
    """Execute one action. Local failures come back as a failed result.

    Only ``SessionLost`` (other than navigation) and ``AbortedByCancellation``
    propagate.
    """
    raise_if_cancelled(ctx.cancel)
    try:
        if isinstance(action, WaitAction):
            return await handle_wait(ctx, action)
        if isinstance(action, ClickAction):
            return await handle_click(ctx, action)
        if isinstance(action, TypingAction):
            return await handle_typing(ctx, action)
        if isinstance(action, KeyPressAction):
            return await handle_key_press(ctx, action)
        if isinstance(action, PrintAction):
            return await handle_print(ctx, action)
        assert_never(action)
    except NavigationInterrupted:
        return ActionResult(success=True, message="Action completed", warning=NAVIGATION_WARNING)
    except (SessionLost, AbortedByCancellation):
        raise
    except Exception as exc:
        logger.exception("Unexpected error running %s", type(action).__name__)
        return ActionResult.failure("Action failed", exc)


# -- wait ---------------------------------------------------------------------


async def handle_wait(ctx: HandlerContext, action: WaitAction) -> ActionResult:
    initial_url = await ctx.driver.current_url()
    navigated = asyncio.Event()
    destination = initial_url

    def _on_navigation(url: str) -> None:
        nonlocal destination
        if url and url != initial_url:
            destination = url
            navigated.set()
            logger.info("Navigation detected during wait: %s -> %s", initial_url, url)

    unsubscribe = ctx.driver.on_navigation(_on_navigation)
    try:
        if action.infinite:
            outcome = await _wait_until_found(ctx, action.selectors, navigated)
        else:
            outcome = await _race_selectors(ctx, action.selectors, navigated, seconds(action.timeout_ms))
    finally:
        unsubscribe()

    if outcome == "elements":
        stable = await ctx.detector.await_post_action_stable(ctx.driver, cancel=ctx.cancel)
        return ActionResult(
            success=True,
            message="Elements found and stable",
            warning=None if stable else "Page not fully stable, but elements are present",
        )
    if outcome == "navigation":
        return _navigation_result(action, destination)

    logger.warning("Elements %s not found within %dms", ", ".join(action.selectors), action.timeout_ms)
    return ActionResult.failure(
        "Failed to find elements",
        ActionTimeout(action.timeout_ms, f"elements {', '.join(action.selectors)}"),
    )


def _navigation_result(action: WaitAction, url: str) -> ActionResult:
    return ActionResult(
        success=True,
        message=f"Navigation detected to: {url}",
        warning=f'Original elements "{", ".join(action.selectors)}" not found; navigation occurred to {url}',
        captured=[ContentItem(selector="", content=f"<p>Navigated to: {url}</p>", format="html")],
    )


async def _wait_until_found(
    ctx: HandlerContext, selectors: tuple[str, ...], navigated: asyncio.Event
) -> str:
    """Retry short races until the elements appear, a navigation happens or the caller cancels."""
    retry = seconds(ctx.infinite_wait_retry_ms)
    attempt = 0
    while True:
        attempt += 1
        outcome = await _race_selectors(ctx, selectors, navigated, retry)
        if outcome is not None:
            return outcome
        logger.debug("Still waiting for %s (attempt %d)", ", ".join(selectors), attempt)


async def _race_selectors(
    ctx: HandlerContext,
    selectors: tuple[str, ...],
    navigated: asyncio.Event,
    timeout: float | None,
) -> str | None:
    """First of: all selectors match, navigation, cancel. Elements win ties.

    Returns ``"elements"``, ``"navigation"`` or ``None`` on timeout.
    """
    if navigated.is_set():
        return "navigation"
    if timeout is not None and timeout <= 0:
        return "elements" if await _present_now(ctx.driver, selectors) else None
    elements = asyncio.ensure_future(_all_present(ctx.driver, selectors))
    navigation = asyncio.ensure_future(navigated.wait())
    waiters: set[asyncio.Future] = {elements, navigation}
    cancelled: asyncio.Future | None = None
    if ctx.cancel is not None:
        cancelled = asyncio.ensure_future(ctx.cancel.wait())
        waiters.add(cancelled)

    try:
        done, _pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await elements

    if elements in done:
        exc = elements.exception()
        if exc is None:
            return "elements"
        if navigated.is_set():
            return "navigation"
        raise exc
    if navigation in done:
        return "navigation"
    if cancelled is not None and cancelled in done:
        raise AbortedByCancellation()
    return None


async def _present_now(driver: SessionDriver, selectors: tuple[str, ...]) -> bool:
    try:
        for selector in selectors:
            if not await driver.query_selector_all(selector):
                return False
    except NavigationInterrupted:
        logger.debug("Context replaced while polling selectors, retrying")
        return False
    return True


async def _all_present(driver: SessionDriver, selectors: tuple[str, ...]) -> None:
    while not await _present_now(driver, selectors):
        await asyncio.sleep(SELECTOR_POLL_SECONDS)


# -- click / typing / keyPress -----------------------------------------------


async def handle_click(ctx: HandlerContext, action: ClickAction) -> ActionResult:
    return await _interact(
        ctx,
        lambda: ctx.driver.click(action.selector),
        done=f"Clicked element: {action.selector}",
        failed="Failed to click element",
        unstable="Page not fully stable after click",
    )


async def handle_typing(ctx: HandlerContext, action: TypingAction) -> ActionResult:
    delay = action.delay_ms if action.delay_ms is not None else ctx.typing_delay_ms

    async def _type() -> None:
        if not await ctx.driver.evaluate(CLEAR_VALUE, action.selector):
            raise ElementNotFound(action.selector)
        logger.info('Typing "%s" into %s', action.value, action.selector)
        await ctx.driver.fill(action.selector, action.value, delay_ms=delay)

    return await _interact(
        ctx,
        _type,
        done=f'Typed "{action.value}" into {action.selector}',
        failed="Failed to type text",
        unstable="Page not fully stable after typing",
    )


async def handle_key_press(ctx: HandlerContext, action: KeyPressAction) -> ActionResult:
    target = f" on {action.selector}" if action.selector else ""
    return await _interact(
        ctx,
        lambda: ctx.driver.press_key(action.key, action.selector),
        done=f"Pressed {action.key}{target}",
        failed="Failed to press key",
        unstable="Page not fully stable after key press",
    )


async def _interact(
    ctx: HandlerContext,
    interaction: Callable[[], Awaitable[None]],
    done: str,
    failed: str,
    unstable: str,
) -> ActionResult:
    """Run one interaction, then probe stability expecting a possible navigation."""
    navigated = False

    def _on_navigation(_url: str) -> None:
        nonlocal navigated
        navigated = True

    before = await ctx.driver.current_url()
    unsubscribe = ctx.driver.on_navigation(_on_navigation)
    try:
        try:
            await interaction()
        except NavigationInterrupted as exc:
            logger.debug("Context destroyed by interaction: %s", exc)
            return ActionResult(success=True, message=done, warning=NAVIGATION_WARNING)
        except (SessionLost, AbortedByCancellation):
            raise
        except PageflowError as exc:
            logger.warning("%s: %s", failed, exc)
            return ActionResult.failure(failed, exc)

        stable = await ctx.detector.await_post_action_stable(
            ctx.driver, expect_navigation=True, cancel=ctx.cancel
        )
        if not navigated:
            try:
                navigated = await ctx.driver.current_url() != before
            except NavigationInterrupted:
                navigated = True
    finally:
        unsubscribe()

    if navigated:
        return ActionResult(success=True, message=done, warning=NAVIGATION_WARNING)
    return ActionResult(success=True, message=done, warning=None if stable else unstable)


# -- print --------------------------------------------------------------------


async def handle_print(ctx: HandlerContext, action: PrintAction) -> ActionResult:
    await ctx.detector.await_post_action_stable(ctx.driver, expect_navigation=True, cancel=ctx.cancel)

    items = [await capture(ctx.driver, selector, action.format) for selector in action.selectors]
    found = [item for item in items if item.error is None and item.content]
    missing = [item for item in items if item not in found]
    warning = None
    if missing:
        warning = f"Failed to capture {len(missing)} selector(s): " + ", ".join(
            f"{item.selector} ({item.error or EMPTY_CONTENT})" for item in missing
        )

    if not found:
        return ActionResult(
            success=False,
            message="No content captured",
            warning=warning,
            error=NO_ELEMENTS_FOUND,
            error_type=ElementNotFound.__name__,
            captured=items,
        )
    return ActionResult(
        success=True,
        message=f"Content captured successfully ({len(found)} of {len(items)} selectors)",
        warning=warning,
        captured=items,
    )


async def capture(driver: SessionDriver, selector: str, fmt: ContentFormat) -> ContentItem:
    """Read the markup (or rendered text) of every element matching ``selector``."""
    try:
        elements = await driver.query_selector_all(selector)
    except SessionLost:
        raise
    except PageflowError as exc:
        return ContentItem(selector=selector, format=fmt, error=str(exc))
    if not elements:
        logger.info("No elements found for selector: %s", selector)
        return ContentItem(selector=selector, format=fmt, error=NO_ELEMENTS_FOUND)

    parts = [element.outer_html if fmt == "html" else element.text for element in elements]
    content = "\n\n".join(part for part in parts if part)
    if len(content) > MAX_CAPTURED_CONTENT_LENGTH:
        content = (
            content[:MAX_CAPTURED_CONTENT_LENGTH]
            + f"\n\n**Note: Content was truncated to {MAX_CAPTURED_CONTENT_LENGTH} characters. "
            "Some elements may have been omitted.**"
        )
    logger.debug("Captured %d element(s) for %s", len(elements), selector)
    return ContentItem(selector=selector, content=content, format=fmt)
