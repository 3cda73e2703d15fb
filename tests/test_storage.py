import asyncio

import pytest

from fakes import FakeDriver
from pageflow.browser.stability import StabilityDetector, StabilityOptions
from pageflow.browser.storage import apply_storage_state, capture_storage_state
from pageflow.cache.state import Cookie, OriginStorage, StorageState
from pageflow.cache.state_cache import SessionStateCache
from pageflow.errors import InvalidPlan
from pageflow.plan.executor import PlanExecutor
from pageflow.runner import run_plan


def _executor() -> PlanExecutor:
    return PlanExecutor(detector=StabilityDetector(StabilityOptions(timeout_ms=500, poll_interval_ms=1)))


@pytest.mark.asyncio
async def test_apply_writes_cookies_and_current_origin_only() -> None:
    driver = FakeDriver(origin="https://shop.test")
    state = StorageState(
        cookies=[Cookie(name="sid", value="1", domain="shop.test")],
        origins=[
            OriginStorage("https://shop.test", local_storage={"cart": "3"}, session_storage={"tab": "a"}),
            OriginStorage("https://other.test", local_storage={"x": "y"}),
        ],
    )

    assert await apply_storage_state(driver, state) == 1
    assert driver.cookies[0]["name"] == "sid"
    assert driver.local_storage == {"https://shop.test": {"cart": "3"}}
    assert driver.session_storage == {"https://shop.test": {"tab": "a"}}


@pytest.mark.asyncio
async def test_capture_merges_current_origin_over_base() -> None:
    driver = FakeDriver(origin="https://shop.test")
    driver.cookies = [{"name": "sid", "value": "2", "domain": "shop.test", "path": "/"}]
    driver.local_storage = {"https://shop.test": {"cart": "5"}}
    base = StorageState(
        origins=[
            OriginStorage("https://shop.test", local_storage={"cart": "old"}),
            OriginStorage("https://other.test", local_storage={"x": "y"}),
        ]
    )

    state = await capture_storage_state(driver, base)

    assert [cookie.value for cookie in state.cookies] == ["2"]
    assert state.origin("https://shop.test").local_storage == {"cart": "5"}
    assert state.origin("https://other.test").local_storage == {"x": "y"}
    assert base.origin("https://shop.test").local_storage == {"cart": "old"}


@pytest.mark.asyncio
async def test_run_plan_restores_and_saves_session_state(tmp_path) -> None:
    url = "https://shop.test/account"
    cache = SessionStateCache(root=tmp_path)
    cache.put(url, StorageState(cookies=[Cookie(name="sid", value="cached", domain="shop.test")]))
    await cache.flush()
    driver = FakeDriver(url="about:blank")
    driver.add("h1", html="<h1>Account</h1>")

    report = await run_plan(
        driver,
        url,
        {"actions": [{"type": "print", "elements": ["h1"]}]},
        executor=_executor(),
        cache=cache,
    )
    await cache.flush()

    assert report.outcome == "completed"
    assert driver.called("navigate") == [url, url]
    assert driver.cookies[0]["value"] == "cached"
    assert (await cache.get(url)).cookies[0].value == "cached"


@pytest.mark.asyncio
async def test_run_plan_without_cached_state_navigates_once(tmp_path) -> None:
    driver = FakeDriver(url="about:blank")
    driver.add("h1")

    await run_plan(
        driver,
        "https://shop.test/",
        {"actions": [{"type": "wait", "elements": ["h1"], "timeout": 500}]},
        executor=_executor(),
        cache=SessionStateCache(root=tmp_path),
    )

    assert driver.called("navigate") == ["https://shop.test/"]


@pytest.mark.asyncio
async def test_run_plan_validates_before_navigating(tmp_path) -> None:
    driver = FakeDriver()

    with pytest.raises(InvalidPlan):
        await run_plan(driver, "https://shop.test/", {"actions": []}, executor=_executor())
    assert driver.calls == []


@pytest.mark.asyncio
async def test_run_plan_cancelled_before_first_action_reports_aborted(tmp_path) -> None:
    cancel = asyncio.Event()
    cancel.set()
    cache = SessionStateCache(root=tmp_path)
    driver = FakeDriver(url="about:blank")
    driver.add("h1")

    report = await run_plan(
        driver,
        "https://shop.test/",
        {"actions": [{"type": "click", "element": "h1"}]},
        executor=_executor(),
        cache=cache,
        cancel=cancel,
    )
    await cache.flush()

    assert report.outcome == "aborted"
    assert report.total == 1
    assert report.statuses == []
    assert driver.called("click") == []
    assert list(cache.disk.keys()) == []
