import asyncio
import hashlib
import json
import os
import time

import pytest

from pageflow.cache.disk import DiskStore
from pageflow.cache.state import Cookie, OriginStorage, StorageState
from pageflow.cache.state_cache import SessionStateCache, cache_key

URL = "https://shop.test/cart"
DAY = 24 * 60 * 60


class Clock:
    def __init__(self) -> None:
        self.offset = 0.0

    def __call__(self) -> float:
        return time.time() + self.offset


def _state(token: str = "abc") -> StorageState:
    return StorageState(
        cookies=[Cookie(name="session", value=token, domain="shop.test")],
        origins=[OriginStorage(origin="https://shop.test", local_storage={"cart": token})],
    )


def _cache(tmp_path, clock=None, **kwargs) -> SessionStateCache:
    return SessionStateCache(root=tmp_path, clock=clock or Clock(), **kwargs)


def test_cache_key_is_md5_of_url() -> None:
    assert cache_key(URL) == hashlib.md5(URL.encode("utf-8")).hexdigest()
    assert cache_key(URL) == cache_key(URL)
    assert cache_key(URL) != cache_key(URL + "?page=2")


@pytest.mark.asyncio
async def test_put_then_get_from_memory(tmp_path) -> None:
    cache = _cache(tmp_path)

    task = cache.put(URL, _state())
    got = await cache.get(URL)
    await task

    assert got == _state()


@pytest.mark.asyncio
async def test_returned_state_is_a_copy(tmp_path) -> None:
    cache = _cache(tmp_path)
    state = _state()
    await cache.put(URL, state)

    state.cookies[0].value = "mutated"
    got = await cache.get(URL)
    got.cookies.clear()

    assert (await cache.get(URL)).cookies[0].value == "abc"


@pytest.mark.asyncio
async def test_survives_restart_through_disk(tmp_path) -> None:
    first = _cache(tmp_path)
    first.put(URL, _state("persisted"))
    await first.flush()

    second = _cache(tmp_path)
    got = await second.get(URL)

    assert got == _state("persisted")
    assert URL in second


@pytest.mark.asyncio
async def test_missing_url_returns_none(tmp_path) -> None:
    assert await _cache(tmp_path).get("https://nowhere.test/") is None


@pytest.mark.asyncio
async def test_memory_expiry_falls_back_to_disk(tmp_path) -> None:
    clock = Clock()
    cache = _cache(tmp_path, clock)
    await cache.put(URL, _state())

    clock.offset = 31 * 60

    assert await cache.get(URL) == _state()


@pytest.mark.asyncio
async def test_disk_record_older_than_ttl_is_deleted(tmp_path) -> None:
    clock = Clock()
    cache = _cache(tmp_path, clock)
    await cache.put(URL, _state())
    path = DiskStore(tmp_path).path_for(cache_key(URL))
    assert path.exists()

    clock.offset = 8 * DAY

    assert await cache.get(URL) is None
    assert not path.exists()


@pytest.mark.asyncio
async def test_capacity_evicts_oldest_entry(tmp_path) -> None:
    clock = Clock()
    cache = _cache(tmp_path, clock, capacity=2)
    for index in range(3):
        clock.offset = index
        cache.put(f"https://shop.test/{index}", _state(str(index)))
    await cache.flush()

    assert "https://shop.test/0" not in cache
    assert "https://shop.test/1" in cache
    assert "https://shop.test/2" in cache


@pytest.mark.asyncio
async def test_last_write_wins_on_disk(tmp_path) -> None:
    cache = _cache(tmp_path)
    cache.put(URL, _state("first"))
    cache.put(URL, _state("second"))
    await cache.flush()

    assert await _cache(tmp_path).get(URL) == _state("second")


@pytest.mark.asyncio
async def test_slow_write_is_abandoned_after_deadline(tmp_path, caplog) -> None:
    cache = _cache(tmp_path, write_deadline_seconds=0.05)
    original_write = cache.disk.write

    def slow_write(key, state, should_commit=None):
        time.sleep(0.3)
        return original_write(key, state, should_commit)

    cache.disk.write = slow_write

    started = time.monotonic()
    task = cache.put(URL, _state())
    assert time.monotonic() - started < 0.05
    await task
    assert "deadline" in caplog.text

    await asyncio.sleep(0.5)
    assert not DiskStore(tmp_path).path_for(cache_key(URL)).exists()
    assert await cache.get(URL) == _state()


@pytest.mark.asyncio
async def test_corrupt_record_is_a_miss(tmp_path) -> None:
    path = DiskStore(tmp_path).path_for(cache_key(URL))
    path.write_text("{not json", encoding="utf-8")

    assert await _cache(tmp_path).get(URL) is None


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_records(tmp_path) -> None:
    clock = Clock()
    cache = _cache(tmp_path, clock)
    cache.put("https://shop.test/old", _state())
    await cache.flush()
    old_path = DiskStore(tmp_path).path_for(cache_key("https://shop.test/old"))
    stale = time.time() - 10 * DAY
    os.utime(old_path, (stale, stale))
    cache.put("https://shop.test/new", _state())
    await cache.flush()

    assert await cache.sweep_expired() == 1
    assert not old_path.exists()
    assert list(cache.disk.keys()) == [cache_key("https://shop.test/new")]


@pytest.mark.asyncio
async def test_sweep_continues_past_undeletable_record(tmp_path, monkeypatch) -> None:
    cache = _cache(tmp_path)
    for url in ("https://shop.test/locked", "https://shop.test/old"):
        cache.put(url, _state())
    await cache.flush()
    stale = time.time() - 10 * DAY
    for key in cache.disk.keys():
        os.utime(cache.disk.path_for(key), (stale, stale))

    locked = cache_key("https://shop.test/locked")
    real_delete = cache.disk.delete

    def delete(key: str) -> bool:
        if key == locked:
            raise PermissionError("read-only cache dir")
        return real_delete(key)

    monkeypatch.setattr(cache.disk, "delete", delete)

    assert await cache.sweep_expired() == 1
    assert list(cache.disk.keys()) == [locked]


def test_disk_layout_is_playwright_storage_state(tmp_path) -> None:
    store = DiskStore(tmp_path)
    key = cache_key(URL)

    assert store.write(key, _state()) is True
    payload = json.loads(store.path_for(key).read_text(encoding="utf-8"))

    assert payload["cookies"][0]["name"] == "session"
    assert payload["cookies"][0]["httpOnly"] is False
    assert payload["origins"][0] == {"origin": "https://shop.test", "localStorage": {"cart": "abc"}}


def test_disk_write_skips_rename_when_superseded(tmp_path) -> None:
    store = DiskStore(tmp_path)
    key = cache_key(URL)

    assert store.write(key, _state(), should_commit=lambda: False) is False
    assert not store.path_for(key).exists()
    assert list(tmp_path.iterdir()) == []


def test_state_reads_playwright_list_layout() -> None:
    state = StorageState.from_dict(
        {
            "cookies": [],
            "origins": [
                {"origin": "https://a.test", "localStorage": [{"name": "k", "value": "v"}]},
            ],
        }
    )

    assert state.origin("https://a.test").local_storage == {"k": "v"}


def test_state_rejects_duplicate_origins() -> None:
    with pytest.raises(ValueError):
        StorageState(origins=[OriginStorage("https://a.test"), OriginStorage("https://a.test")])
