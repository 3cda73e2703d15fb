from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TIMEOUT_MS = 30000
HARD_CAP_MS = 30000
ACTION_STABILITY_TIMEOUT_MS = 2000
NETWORK_IDLE_TIMEOUT_MS = 500
ACTION_NETWORK_IDLE_TIMEOUT_MS = 5000
POLL_INTERVAL_MS = 50
SAMPLE_WINDOW_MS = 300
ANIMATION_SETTLE_MS = 500
DEFAULT_TYPING_DELAY_MS = 50
INFINITE_WAIT_RETRY_MS = 1000
LOADING_INDICATORS = '[aria-busy="true"], [class*="loading"], [id*="loading"], .spinner, .loader'

CACHE_CAPACITY = 20
MEMORY_TTL_SECONDS = 30 * 60
DISK_TTL_SECONDS = 7 * 24 * 60 * 60
WRITE_DEADLINE_SECONDS = 2.5
CACHE_DIR = Path.home() / ".pageflow" / "state"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(slots=True)
class Settings:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    network_idle_timeout_ms: int = NETWORK_IDLE_TIMEOUT_MS
    poll_interval_ms: int = POLL_INTERVAL_MS
    loading_indicator_selector: str = LOADING_INDICATORS
    animation_settle_ms: int = ANIMATION_SETTLE_MS
    cache_capacity: int = CACHE_CAPACITY
    memory_ttl_seconds: float = MEMORY_TTL_SECONDS
    disk_ttl_seconds: float = DISK_TTL_SECONDS
    write_deadline_seconds: float = WRITE_DEADLINE_SECONDS
    cache_dir: Path = field(default_factory=lambda: CACHE_DIR)
    step_timeout_seconds: float = 20.0
    verbose: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        """Read settings from the environment. Call ``load_dotenv()`` first to honour a .env file."""
        cache_dir = os.getenv("PAGEFLOW_CACHE_DIR", "").strip().strip('"')
        return cls(
            timeout_ms=_env_int("PAGEFLOW_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            network_idle_timeout_ms=_env_int("PAGEFLOW_NETWORK_IDLE_TIMEOUT_MS", NETWORK_IDLE_TIMEOUT_MS),
            poll_interval_ms=_env_int("PAGEFLOW_POLL_INTERVAL_MS", POLL_INTERVAL_MS),
            loading_indicator_selector=os.getenv("PAGEFLOW_LOADING_INDICATORS", "").strip() or LOADING_INDICATORS,
            animation_settle_ms=_env_int("PAGEFLOW_ANIMATION_SETTLE_MS", ANIMATION_SETTLE_MS),
            cache_capacity=_env_int("PAGEFLOW_CACHE_CAPACITY", CACHE_CAPACITY),
            memory_ttl_seconds=_env_float("PAGEFLOW_MEMORY_TTL_SECONDS", MEMORY_TTL_SECONDS),
            disk_ttl_seconds=_env_float("PAGEFLOW_DISK_TTL_SECONDS", DISK_TTL_SECONDS),
            write_deadline_seconds=_env_float("PAGEFLOW_WRITE_DEADLINE_SECONDS", WRITE_DEADLINE_SECONDS),
            cache_dir=Path(cache_dir).expanduser() if cache_dir else CACHE_DIR,
            step_timeout_seconds=_env_float("STEP_TIMEOUT_SECONDS", 20.0),
            verbose=env_flag("VERBOSE"),
        )
