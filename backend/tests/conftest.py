from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from mbb_core.errors import NotFoundError, RetryableSyncError


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGameStore:
    """In-memory remote store that honours idempotency keys like Supabase does."""

    def __init__(self) -> None:
        self.games: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Dict[str, Any]] = {}
        self.quarter_scores: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.on_call: Optional[Callable[[str], None]] = None
        self._keys: Dict[str, str] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self._lost_acks: Set[str] = set()
        self._next_id = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def lose_ack(self, method: str) -> None:
        """Apply the next ``method`` call but fail as if the response was lost."""

        self._lost_acks.add(method)

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        if self.on_call is not None:
            self.on_call(method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _exit(self, method: str) -> None:
        if method in self._lost_acks:
            self._lost_acks.discard(method)
            raise RetryableSyncError("connection reset before response")

    def _require_game(self, game_id: str) -> None:
        if game_id not in self.games:
            raise NotFoundError("Game not found", 404)

    def create_game(self, payload: Dict[str, Any], idempotency_key: str) -> str:
        self._enter("create_game", payload, idempotency_key)
        game_id = self._keys.get(idempotency_key)
        if game_id is None:
            game_id = self._new_id("game")
            self.games[game_id] = dict(payload)
            self._keys[idempotency_key] = game_id
        self._exit("create_game")
        return game_id

    def update_game(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        self._enter("update_game", game_id, payload, idempotency_key)
        self._require_game(game_id)
        self.games[game_id].update(payload)
        self._exit("update_game")

    def delete_game(self, game_id: str, idempotency_key: str) -> None:
        self._enter("delete_game", game_id, idempotency_key)
        self.games.pop(game_id, None)
        self._exit("delete_game")

    def append_game_event(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> str:
        self._enter("append_game_event", game_id, payload, idempotency_key)
        self._require_game(game_id)
        event_id = self._keys.get(idempotency_key)
        if event_id is None:
            event_id = self._new_id("event")
            self.events[event_id] = {"game_id": game_id, **payload}
            self._keys[idempotency_key] = event_id
        self._exit("append_game_event")
        return event_id

    def append_quarter_score(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        self._enter("append_quarter_score", game_id, payload, idempotency_key)
        self._require_game(game_id)
        self.quarter_scores[(game_id, int(payload["quarter"]))] = dict(payload)
        self._exit("append_quarter_score")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> FakeGameStore:
    return FakeGameStore()
