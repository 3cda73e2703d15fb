from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from pageflow.errors import AbortedByCancellation

T = TypeVar("T")


def seconds(ms: int | float | None) -> float | None:
    """Convert a millisecond budget to seconds. Negative or missing means unbounded."""
    if ms is None or ms < 0:
        return None
    return ms / 1000


def raise_if_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise AbortedByCancellation()


async def cancellable(
    awaitable: Awaitable[T],
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
) -> T:
    """Await ``awaitable`` bounded by ``timeout`` seconds and an optional cancel signal.

    Raises ``TimeoutError`` when the budget runs out and ``AbortedByCancellation``
    when the signal fires first. The abandoned operation is cancelled either way.
    """
    task = asyncio.ensure_future(awaitable)
    if cancel is not None and cancel.is_set():
        task.cancel()
        raise AbortedByCancellation()

    waiters: set[asyncio.Future] = {task}
    cancel_task: asyncio.Future | None = None
    if cancel is not None:
        cancel_task = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_task)

    try:
        done, _pending = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if cancel_task is not None:
            cancel_task.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    if task in done:
        return task.result()
    if cancel_task is not None and cancel_task in done:
        raise AbortedByCancellation()
    raise TimeoutError()


async def sleep(delay: float, cancel: asyncio.Event | None = None) -> None:
    """Sleep for ``delay`` seconds unless the cancel signal fires first."""
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except TimeoutError:
        return
    raise AbortedByCancellation()
