from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Iterator
from pathlib import Path

from pageflow.errors import CacheReadFailure, CacheWriteFailure

from .state import StorageState

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[0-9a-f]{32}$")


class DiskStore:
    """One JSON record per cache key. The file's mtime is the record's age clock."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.root / f"{key}.json"

    def age_seconds(self, key: str, now: float | None = None) -> float | None:
        try:
            mtime = self.path_for(key).stat().st_mtime
        except FileNotFoundError:
            return None
        return (now if now is not None else time.time()) - mtime

    def read(self, key: str) -> StorageState | None:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheReadFailure(f"Could not read {path}: {exc}") from exc
        try:
            return StorageState.from_dict(json.loads(raw))
        except (ValueError, TypeError) as exc:
            raise CacheReadFailure(f"Corrupt cache record {path}: {exc}") from exc

    def write(
        self,
        key: str,
        state: StorageState,
        should_commit: Callable[[], bool] | None = None,
    ) -> bool:
        """Write ``state`` atomically. ``should_commit`` is checked right before the rename.

        Returns False when the write was abandoned.
        """
        path = self.path_for(key)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{time.monotonic_ns()}.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(state.to_dict(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            if should_commit is not None and not should_commit():
                tmp_path.unlink(missing_ok=True)
                return False
            os.replace(tmp_path, path)
            return True
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise CacheWriteFailure(f"Could not write {path}: {exc}") from exc

    def delete(self, key: str) -> bool:
        try:
            self.path_for(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def keys(self) -> Iterator[str]:
        if not self.root.is_dir():
            return
        for path in self.root.glob("*.json"):
            if _KEY_PATTERN.match(path.stem):
                yield path.stem
