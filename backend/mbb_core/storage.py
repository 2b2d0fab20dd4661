"""Origin-scoped key-value persistence for the offline scoreboard.

Mirrors what the browser gives the scoreboard: string values under string
keys, written synchronously, with a size quota. Usage is estimated the way the
scoreboard always did it (key length plus value length over every key).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from .errors import StorageQuotaExceeded

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


@dataclass
class StorageInfo:
    used: int
    available: int
    percentage: float


class KeyValueStorage:
    """Base class for storage backends; subclasses implement the raw access."""

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def _write(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        current = self.get(key)
        used = self.usage().used
        if current is not None:
            used -= len(key) + len(current)
        projected = used + len(key) + len(value)
        if self.quota_bytes and projected > self.quota_bytes:
            raise StorageQuotaExceeded(
                f"Writing {key!r} needs {projected} bytes, quota is {self.quota_bytes}"
            )
        self._write(key, value)

    def usage(self) -> StorageInfo:
        used = 0
        for key in self.keys():
            value = self.get(key)
            if value:
                used += len(key) + len(value)
        available = self.quota_bytes
        percentage = (used / available) * 100 if available else 0.0
        return StorageInfo(used=used, available=available, percentage=percentage)


class MemoryStorage(KeyValueStorage):
    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        super().__init__(quota_bytes)
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def keys(self) -> List[str]:
        return list(self._items)

    def _write(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class JsonFileStorage(KeyValueStorage):
    """Keeps each key in ``<directory>/<key>.json`` so it survives restarts."""

    def __init__(self, directory: Path, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        super().__init__(quota_bytes)
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^-\w]+", "_", key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read local storage key %s: %s", key, exc)
            return None

    def keys(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))

    def _write(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(value, encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - unlikely but logged for diagnosis
            logger.warning("Failed to remove local data store %s: %s", path, exc)
