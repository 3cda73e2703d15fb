from __future__ import annotations

import asyncio
import copy
import hashlib
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pageflow.config import (
    CACHE_CAPACITY,
    CACHE_DIR,
    DISK_TTL_SECONDS,
    MEMORY_TTL_SECONDS,
    WRITE_DEADLINE_SECONDS,
    Settings,
)
from pageflow.errors import CacheReadFailure, CacheWriteFailure

from .disk import DiskStore
from .state import StorageState

logger = logging.getLogger(__name__)


def cache_key(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CacheEntry:
    key: str
    state: StorageState
    written_at: float
    sequence: int


class SessionStateCache:
    """Two-tier cache of storage state keyed by URL hash.

    The memory tier answers immediately and is bounded by ``capacity``; the
    disk tier survives restarts. ``put`` returns before the disk write lands;
    background writes are tracked and can be awaited with :meth:`flush` or
    cancelled with :meth:`aclose`.
    """

    def __init__(
        self,
        root: Path | None = None,
        capacity: int = CACHE_CAPACITY,
        memory_ttl_seconds: float = MEMORY_TTL_SECONDS,
        disk_ttl_seconds: float = DISK_TTL_SECONDS,
        write_deadline_seconds: float = WRITE_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.memory_ttl_seconds = memory_ttl_seconds
        self.disk_ttl_seconds = disk_ttl_seconds
        self.write_deadline_seconds = write_deadline_seconds
        self.disk = DiskStore(root or CACHE_DIR)
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._latest: dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._writes: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionStateCache:
        return cls(
            root=settings.cache_dir,
            capacity=settings.cache_capacity,
            memory_ttl_seconds=settings.memory_ttl_seconds,
            disk_ttl_seconds=settings.disk_ttl_seconds,
            write_deadline_seconds=settings.write_deadline_seconds,
        )

    @property
    def pending_writes(self) -> int:
        return len(self._writes)

    def __contains__(self, url: str) -> bool:
        return cache_key(url) in self._memory

    async def get(self, url: str) -> StorageState | None:
        key = cache_key(url)
        now = self._clock()
        entry = self._memory.get(key)
        if entry is not None:
            if now - entry.written_at < self.memory_ttl_seconds:
                logger.debug("Memory cache hit for %s", url)
                return copy.deepcopy(entry.state)
            logger.debug("Memory cache entry for %s expired", url)
            del self._memory[key]

        sequence_at_read = self._latest.get(key)
        try:
            age = await asyncio.to_thread(self.disk.age_seconds, key, now)
            if age is None:
                return None
            if age > self.disk_ttl_seconds:
                logger.info("Disk cache record for %s expired (%.0fs old), deleting", url, age)
                await asyncio.to_thread(self.disk.delete, key)
                return None
            state = await asyncio.to_thread(self.disk.read, key)
        except (CacheReadFailure, OSError) as exc:
            logger.warning("Cache read failed for %s: %s", url, exc)
            return None
        if state is None:
            return None

        if self._latest.get(key) != sequence_at_read:
            # A put landed while the disk read was in flight; it is newer.
            newer = self._memory.get(key)
            return copy.deepcopy(newer.state) if newer is not None else None

        self._remember(key, state, self._clock(), next(self._sequence))
        logger.debug("Disk cache hit for %s, memory tier rehydrated", url)
        return copy.deepcopy(state)

    def put(self, url: str, state: StorageState) -> asyncio.Task[None]:
        """Store ``state`` for ``url`` in memory now and on disk in the background."""
        key = cache_key(url)
        snapshot = copy.deepcopy(state)
        sequence = next(self._sequence)
        self._latest[key] = sequence
        self._remember(key, snapshot, self._clock(), sequence)

        task = asyncio.get_running_loop().create_task(
            self._persist(key, snapshot, sequence),
            name=f"pageflow-cache-write:{key[:8]}",
        )
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return task

    async def sweep_expired(self) -> int:
        """Delete every disk record older than the disk TTL. Returns how many were removed."""
        removed = await asyncio.to_thread(self._sweep_disk, self._clock())
        if removed:
            logger.info("Swept %d expired cache record(s)", removed)
        return removed

    async def flush(self, timeout: float | None = None) -> None:
        """Wait for outstanding background writes."""
        if not self._writes:
            return
        _done, pending = await asyncio.wait(set(self._writes), timeout=timeout)
        if pending:
            logger.warning("%d cache write(s) still pending after flush timeout", len(pending))

    async def aclose(self, cancel_pending: bool = False) -> None:
        if cancel_pending:
            for task in list(self._writes):
                task.cancel()
        if self._writes:
            await asyncio.gather(*self._writes, return_exceptions=True)

    async def __aenter__(self) -> SessionStateCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _remember(self, key: str, state: StorageState, written_at: float, sequence: int) -> None:
        self._memory[key] = CacheEntry(key=key, state=state, written_at=written_at, sequence=sequence)
        while len(self._memory) > self.capacity:
            oldest = min(self._memory.values(), key=lambda entry: (entry.written_at, entry.sequence))
            logger.debug("Memory cache full, evicting %s", oldest.key)
            del self._memory[oldest.key]

    async def _persist(self, key: str, state: StorageState, sequence: int) -> None:
        abandoned = threading.Event()

        def should_commit() -> bool:
            return not abandoned.is_set() and self._latest.get(key) == sequence

        try:
            committed = await asyncio.wait_for(
                asyncio.to_thread(self.disk.write, key, state, should_commit),
                timeout=self.write_deadline_seconds,
            )
        except TimeoutError:
            abandoned.set()
            logger.warning(
                "Cache write for %s exceeded %.1fs deadline, abandoned",
                key,
                self.write_deadline_seconds,
            )
            return
        except asyncio.CancelledError:
            abandoned.set()
            raise
        except CacheWriteFailure as exc:
            logger.warning("Cache write failed: %s", exc)
            return
        except Exception:
            logger.exception("Unexpected error persisting cache record %s", key)
            return

        if not committed:
            logger.debug("Cache write for %s superseded by a newer put", key)

    def _sweep_disk(self, now: float) -> int:
        removed = 0
        try:
            keys = list(self.disk.keys())
        except OSError as exc:
            logger.warning("Could not list cache directory %s: %s", self.disk.root, exc)
            return 0
        for key in keys:
            try:
                age = self.disk.age_seconds(key, now)
                if age is not None and age > self.disk_ttl_seconds and self.disk.delete(key):
                    removed += 1
            except OSError as exc:
                logger.warning("Could not sweep cache record %s: %s", key, exc)
        return removed
