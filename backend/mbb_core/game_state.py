"""Autosave of the scoreboard's in-progress game plus a short local history."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List

from .storage import KeyValueStorage, StorageInfo

logger = logging.getLogger(__name__)

CURRENT_GAME_KEY = "mbb_current_game"
GAMES_HISTORY_KEY = "mbb_games_history"
MAX_HISTORY = 50
RECOVERY_WINDOW_HOURS = 24


class GameStateStore:
    def __init__(self, storage: KeyValueStorage, clock: Callable[[], float] = time.time) -> None:
        self.storage = storage
        self._clock = clock

    def _read(self, key: str, default: Any) -> Any:
        raw = self.storage.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("Falling back to default for %s due to read error: %s", key, exc)
            return default

    def _write(self, key: str, data: Any) -> None:
        self.storage.set(key, json.dumps(data, sort_keys=True))

    def save_game_state(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``state`` into the saved game and stamp it (milliseconds)."""

        current = self.current_game() or {}
        updated = {**current, **state, "timestamp": int(self._clock() * 1000)}
        self._write(CURRENT_GAME_KEY, updated)
        return updated

    def current_game(self) -> Dict[str, Any] | None:
        data = self._read(CURRENT_GAME_KEY, None)
        return data if isinstance(data, dict) else None

    def clear_current_game(self) -> None:
        self.storage.remove(CURRENT_GAME_KEY)

    def has_recoverable_game(self, max_age_hours: float = RECOVERY_WINDOW_HOURS) -> bool:
        state = self.current_game()
        if not state or state.get("gameEnded"):
            return False
        try:
            saved_at = float(state.get("timestamp") or 0) / 1000.0
        except (TypeError, ValueError):
            return False
        hours = (self._clock() - saved_at) / 3600.0
        return hours < max_age_hours

    def add_game_to_history(self, state: Dict[str, Any]) -> None:
        history = self.games_history()
        history.insert(0, state)
        self._write(GAMES_HISTORY_KEY, history[:MAX_HISTORY])

    def finish_current_game(self) -> Dict[str, Any] | None:
        """Move the saved game into history once it has ended."""

        state = self.current_game()
        if state is None:
            return None
        self.add_game_to_history(state)
        self.clear_current_game()
        return state

    def games_history(self) -> List[Dict[str, Any]]:
        data = self._read(GAMES_HISTORY_KEY, [])
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def restore(self, current: Dict[str, Any] | None, history: List[Dict[str, Any]] | None) -> None:
        if isinstance(current, dict):
            self._write(CURRENT_GAME_KEY, current)
        if isinstance(history, list):
            self._write(GAMES_HISTORY_KEY, [item for item in history if isinstance(item, dict)][:MAX_HISTORY])

    def storage_info(self) -> StorageInfo:
        return self.storage.usage()
