from __future__ import annotations

import asyncio
import logging
from typing import Any

from pageflow.browser.actions import ActionPlan
from pageflow.browser.driver import SessionDriver
from pageflow.browser.stability import StabilityDetector
from pageflow.browser.storage import apply_storage_state, capture_storage_state
from pageflow.cache.state import StorageState
from pageflow.cache.state_cache import SessionStateCache
from pageflow.config import DEFAULT_TIMEOUT_MS
from pageflow.errors import AbortedByCancellation, PageflowError, SessionLost
from pageflow.plan.executor import PlanExecutor
from pageflow.plan.parser import parse_plan
from pageflow.plan.report import ExecutionReport

logger = logging.getLogger(__name__)


async def run_plan(
    driver: SessionDriver,
    url: str,
    plan: ActionPlan | dict[str, Any] | str,
    *,
    executor: PlanExecutor | None = None,
    cache: SessionStateCache | None = None,
    cancel: asyncio.Event | None = None,
    navigation_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> ExecutionReport:
    """Open ``url``, restore cached session state, run ``plan`` and cache the resulting state.

    The plan is validated before the driver is touched.
    """
    executor = executor or PlanExecutor()
    actions = plan if isinstance(plan, tuple) else parse_plan(plan, executor.default_timeout_ms)
    detector: StabilityDetector = executor.detector

    cached = await cache.get(url) if cache is not None else None
    await driver.navigate(url, navigation_timeout_ms)
    if cached is not None and await _restore(driver, cached):
        # Page scripts only see restored storage after a reload.
        await driver.navigate(url, navigation_timeout_ms)

    try:
        await detector.await_stable(driver, cancel=cancel)
    except AbortedByCancellation:
        logger.info("Cancelled before the first action ran")
        return ExecutionReport(total=len(actions), outcome="aborted")
    report = await executor.execute(driver, actions, cancel)

    if cache is not None and report.outcome != "aborted":
        await _persist(driver, url, cache, cached)
    return report


async def _restore(driver: SessionDriver, state: StorageState) -> bool:
    try:
        origins = await apply_storage_state(driver, state)
    except SessionLost:
        raise
    except PageflowError as exc:
        logger.warning("Could not restore cached session state: %s", exc)
        return False
    logger.info("Restored %d cookie(s) and %d origin(s) from cache", len(state.cookies), origins)
    return bool(state.cookies) or origins > 0


async def _persist(
    driver: SessionDriver, url: str, cache: SessionStateCache, base: StorageState | None
) -> None:
    try:
        state = await capture_storage_state(driver, base)
    except PageflowError as exc:
        logger.warning("Could not capture session state for %s: %s", url, exc)
        return
    cache.put(url, state)
