from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from .cache import DEFAULT_CACHE_VERSION
from .connectivity import DEFAULT_DEBOUNCE_SECONDS
from .storage import DEFAULT_QUOTA_BYTES
from .sync_engine import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T", int, float)


def _env_number(name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default


@dataclass
class SyncSettings:
    data_dir: Path
    storage_quota_bytes: int = DEFAULT_QUOTA_BYTES
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_factor: float = 2.0
    backoff_max: float = 300.0
    request_timeout: float = 10.0
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    tick_interval: float = 30.0
    cache_version: str = DEFAULT_CACHE_VERSION

    @classmethod
    def from_env(cls) -> "SyncSettings":
        data_dir = Path(os.getenv("MBB_DATA_DIR") or (Path(__file__).parent.parent / "data"))
        return cls(
            data_dir=data_dir,
            storage_quota_bytes=_env_number("MBB_STORAGE_QUOTA_BYTES", DEFAULT_QUOTA_BYTES, int),
            max_attempts=_env_number("MBB_SYNC_MAX_ATTEMPTS", 5, int),
            backoff_base=_env_number("MBB_SYNC_BACKOFF_BASE", 2.0, float),
            backoff_factor=_env_number("MBB_SYNC_BACKOFF_FACTOR", 2.0, float),
            backoff_max=_env_number("MBB_SYNC_BACKOFF_MAX", 300.0, float),
            request_timeout=_env_number("MBB_SYNC_REQUEST_TIMEOUT", 10.0, float),
            debounce_seconds=_env_number("MBB_SYNC_DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS, float),
            tick_interval=_env_number("MBB_SYNC_TICK_SECONDS", 30.0, float),
            cache_version=os.getenv("MBB_CACHE_VERSION") or DEFAULT_CACHE_VERSION,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.max_attempts),
            base_delay=self.backoff_base,
            factor=self.backoff_factor,
            max_delay=self.backoff_max,
        )
