import asyncio
import time

import pytest

from fakes import STABLE, UNSTABLE, FakeDriver
from pageflow.browser.scripts import STABILITY_PROBE
from pageflow.browser.stability import StabilityDetector, StabilityOptions, StabilityStrategy
from pageflow.errors import AbortedByCancellation, DriverError, NavigationInterrupted


def _fast(**overrides) -> StabilityOptions:
    base = {"timeout_ms": 2000, "poll_interval_ms": 1, "wait_for_network_idle": False}
    base.update(overrides)
    return StabilityOptions(**base)


@pytest.mark.asyncio
async def test_indicator_changes_debounce_until_two_stable_samples() -> None:
    driver = FakeDriver()
    driver.indicator_counts = [2, 2, 0, 0, 0, 0, 0]

    assert await StabilityDetector(_fast()).await_stable(driver) is True
    assert driver.indicator_queries == 5


@pytest.mark.asyncio
async def test_returns_early_on_quiet_page() -> None:
    driver = FakeDriver()
    started = time.monotonic()

    assert await StabilityDetector(_fast(timeout_ms=5000)).await_stable(driver) is True
    assert time.monotonic() - started < 1.0
    # first sample always resets the counter, then two stable samples confirm
    assert driver.indicator_queries == 3


@pytest.mark.asyncio
async def test_unstable_sample_resets_consecutive_counter() -> None:
    driver = FakeDriver()
    driver.probe_reports = [STABLE, STABLE, UNSTABLE, STABLE, STABLE]

    assert await StabilityDetector(_fast()).await_stable(driver) is True
    assert driver.indicator_queries == 5


@pytest.mark.asyncio
async def test_fails_open_when_page_never_settles() -> None:
    driver = FakeDriver()
    driver.default_probe = UNSTABLE
    started = time.monotonic()

    assert await StabilityDetector(_fast(timeout_ms=200)).await_stable(driver) is True
    assert time.monotonic() - started >= 0.2


@pytest.mark.asyncio
async def test_probe_failure_counts_as_stable() -> None:
    driver = FakeDriver()
    driver.probe_error = DriverError("evaluate_script failed")

    assert await StabilityDetector(_fast()).await_stable(driver) is True
    assert driver.indicator_queries == 3


@pytest.mark.asyncio
async def test_context_loss_is_success_when_navigation_expected() -> None:
    driver = FakeDriver()
    driver.context_destroyed = True
    detector = StabilityDetector(_fast())

    assert await detector.await_stable(driver, _fast(expect_navigation=True)) is True


@pytest.mark.asyncio
async def test_context_loss_propagates_when_navigation_not_expected() -> None:
    driver = FakeDriver()
    driver.context_destroyed = True

    with pytest.raises(NavigationInterrupted):
        await StabilityDetector(_fast()).await_stable(driver)


@pytest.mark.asyncio
async def test_cancel_signal_aborts_the_wait() -> None:
    driver = FakeDriver()
    driver.default_probe = UNSTABLE
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    started = time.monotonic()

    with pytest.raises(AbortedByCancellation):
        await StabilityDetector(_fast(timeout_ms=5000)).await_stable(driver, cancel=cancel)
    assert time.monotonic() - started < 1.0


@pytest.mark.asyncio
async def test_load_state_strategy_skips_polling() -> None:
    driver = FakeDriver()
    opts = _fast(strategy=StabilityStrategy.LOAD_STATE, wait_for_network_idle=True)

    assert await StabilityDetector(opts).await_stable(driver) is True
    assert driver.called("load_state") == ["domcontentloaded", "networkidle"]
    assert STABILITY_PROBE not in driver.called("evaluate")


@pytest.mark.asyncio
async def test_unbounded_timeout_is_held_to_hard_cap() -> None:
    driver = FakeDriver()
    driver.default_probe = UNSTABLE
    started = time.monotonic()

    assert await StabilityDetector(_fast(timeout_ms=-1, hard_cap_ms=150)).await_stable(driver) is True
    assert time.monotonic() - started < 2.0


def test_action_options_use_short_budget_and_watch_animations() -> None:
    opts = StabilityOptions.for_actions()

    assert opts.timeout_ms == 2000
    assert opts.network_idle_timeout_ms == 5000
    assert opts.wait_for_animations is True
