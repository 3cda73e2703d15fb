from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from pageflow.browser.driver import SessionDriver
from pageflow.browser.scripts import STABILITY_PROBE
from pageflow.config import (
    ACTION_NETWORK_IDLE_TIMEOUT_MS,
    ACTION_STABILITY_TIMEOUT_MS,
    ANIMATION_SETTLE_MS,
    DEFAULT_TIMEOUT_MS,
    HARD_CAP_MS,
    LOADING_INDICATORS,
    NETWORK_IDLE_TIMEOUT_MS,
    POLL_INTERVAL_MS,
    SAMPLE_WINDOW_MS,
    Settings,
)
from pageflow.errors import AbortedByCancellation, SessionLost
from pageflow.waits import cancellable, raise_if_cancelled, seconds, sleep

logger = logging.getLogger(__name__)

REQUIRED_STABLE_SAMPLES = 2


class StabilityStrategy(str, Enum):
    COMPREHENSIVE = "comprehensive"
    LOAD_STATE = "load_state"


@dataclass(frozen=True, slots=True)
class StabilityOptions:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    wait_for_network_idle: bool = True
    network_idle_timeout_ms: int = NETWORK_IDLE_TIMEOUT_MS
    check_loading_indicators: bool = True
    loading_indicator_selector: str = LOADING_INDICATORS
    wait_for_animations: bool = False
    animation_settle_ms: int = ANIMATION_SETTLE_MS
    expect_navigation: bool = False
    poll_interval_ms: int = POLL_INTERVAL_MS
    sample_window_ms: int = SAMPLE_WINDOW_MS
    hard_cap_ms: int = HARD_CAP_MS
    strategy: StabilityStrategy = StabilityStrategy.COMPREHENSIVE

    @property
    def budget_ms(self) -> int:
        """Loop budget. An unbounded timeout still polls no longer than the hard cap."""
        return self.timeout_ms if self.timeout_ms >= 0 else self.hard_cap_ms

    @classmethod
    def for_actions(cls, **overrides: Any) -> StabilityOptions:
        return replace(
            cls(
                timeout_ms=ACTION_STABILITY_TIMEOUT_MS,
                network_idle_timeout_ms=ACTION_NETWORK_IDLE_TIMEOUT_MS,
                wait_for_animations=True,
            ),
            **overrides,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> StabilityOptions:
        return replace(
            cls(
                timeout_ms=settings.timeout_ms,
                network_idle_timeout_ms=settings.network_idle_timeout_ms,
                loading_indicator_selector=settings.loading_indicator_selector,
                animation_settle_ms=settings.animation_settle_ms,
                poll_interval_ms=settings.poll_interval_ms,
            ),
            **overrides,
        )


class StabilityDetector:
    """Decides when a document has settled enough to read or act on.

    The detector is fail-open: when it cannot confirm stability within its
    budget it still answers ``True``. It only raises when the session is lost
    while no navigation was expected, or when the cancel signal fires.
    """

    def __init__(
        self,
        options: StabilityOptions | None = None,
        action_options: StabilityOptions | None = None,
    ) -> None:
        self.options = options or StabilityOptions()
        self.action_options = action_options or StabilityOptions.for_actions(
            poll_interval_ms=self.options.poll_interval_ms,
            loading_indicator_selector=self.options.loading_indicator_selector,
            animation_settle_ms=self.options.animation_settle_ms,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> StabilityDetector:
        return cls(StabilityOptions.from_settings(settings))

    async def await_stable(
        self,
        driver: SessionDriver,
        options: StabilityOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        opts = options or self.options
        started = time.monotonic()
        try:
            await self._await_load_states(driver, opts, started, cancel)
            if opts.strategy is StabilityStrategy.LOAD_STATE:
                return True
            return await self._poll(driver, opts, started, cancel)
        except SessionLost as exc:
            if opts.expect_navigation:
                logger.debug("Session context changed during stability check (expected): %s", exc)
                return True
            raise

    async def await_post_action_stable(
        self,
        driver: SessionDriver,
        expect_navigation: bool = False,
        cancel: asyncio.Event | None = None,
        **overrides: Any,
    ) -> bool:
        opts = replace(self.action_options, expect_navigation=expect_navigation, **overrides)
        return await self.await_stable(driver, opts, cancel)

    async def _await_load_states(
        self,
        driver: SessionDriver,
        opts: StabilityOptions,
        started: float,
        cancel: asyncio.Event | None,
    ) -> None:
        content_budget = min(opts.budget_ms, opts.hard_cap_ms)
        try:
            await cancellable(
                driver.wait_for_load_state("domcontentloaded", content_budget),
                seconds(content_budget),
                cancel,
            )
        except TimeoutError:
            logger.debug("domcontentloaded not reached within %dms, continuing anyway", content_budget)

        if not opts.wait_for_network_idle:
            return
        idle_budget = opts.network_idle_timeout_ms
        if opts.timeout_ms >= 0:
            idle_budget = min(idle_budget, max(self._remaining_ms(opts, started), 0))
        if idle_budget <= 0:
            return
        try:
            await cancellable(
                driver.wait_for_load_state("networkidle", idle_budget),
                seconds(idle_budget),
                cancel,
            )
        except TimeoutError:
            logger.debug("Network not idle after %dms, continuing anyway", idle_budget)

    async def _poll(
        self,
        driver: SessionDriver,
        opts: StabilityOptions,
        started: float,
        cancel: asyncio.Event | None,
    ) -> bool:
        last_count = -1
        consecutive = 0
        iteration = 0
        interval = opts.poll_interval_ms / 1000

        while self._remaining_ms(opts, started) > 0:
            raise_if_cancelled(cancel)
            iteration += 1
            try:
                count, stable = await cancellable(
                    self._sample(driver, opts),
                    seconds(max(self._remaining_ms(opts, started), 0) + opts.sample_window_ms),
                    cancel,
                )
            except TimeoutError:
                logger.debug("Stability sample outlived the budget (iteration %d)", iteration)
                break

            if count != last_count:
                logger.debug("Loading indicators changed %d -> %d (iteration %d)", last_count, count, iteration)
                last_count = count
                consecutive = 0
            elif count == 0 and stable:
                consecutive += 1
                logger.debug("Page reported stable, consecutive samples: %d", consecutive)
                if consecutive >= REQUIRED_STABLE_SAMPLES:
                    logger.debug(
                        "Stability confirmed after %d iterations (%.0fms)",
                        iteration,
                        (time.monotonic() - started) * 1000,
                    )
                    return True
            else:
                consecutive = 0
            await sleep(interval, cancel)

        logger.info(
            "Stability not confirmed within %dms, continuing anyway",
            opts.budget_ms,
        )
        return True

    async def _sample(self, driver: SessionDriver, opts: StabilityOptions) -> tuple[int, bool]:
        count, stable = await asyncio.gather(
            self._count_indicators(driver, opts),
            self._probe_window(driver, opts),
        )
        return count, stable

    @staticmethod
    async def _count_indicators(driver: SessionDriver, opts: StabilityOptions) -> int:
        if not opts.check_loading_indicators or not opts.loading_indicator_selector:
            return 0
        try:
            return len(await driver.query_selector_all(opts.loading_indicator_selector))
        except (SessionLost, AbortedByCancellation):
            raise
        except Exception as exc:
            logger.debug("Loading indicator query failed: %s", exc)
            return 0

    @staticmethod
    async def _probe_window(driver: SessionDriver, opts: StabilityOptions) -> bool:
        layout_ms = opts.animation_settle_ms if opts.wait_for_animations else 0
        try:
            report = await driver.evaluate(
                STABILITY_PROBE, opts.sample_window_ms, layout_ms, opts.wait_for_animations
            )
        except (SessionLost, AbortedByCancellation):
            raise
        except Exception as exc:
            logger.debug("Stability probe failed, assuming stable: %s", exc)
            return True
        if not isinstance(report, dict):
            return True
        return not any(
            int(report.get(key) or 0)
            for key in ("mutations", "shifts", "animations", "pendingImages")
        )

    @staticmethod
    def _remaining_ms(opts: StabilityOptions, started: float) -> float:
        return opts.budget_ms - (time.monotonic() - started) * 1000
