from __future__ import annotations

import datetime as dt
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .action_log import ActionLog
from .actions import ActionKind, QueuedAction, new_local_game_ref
from .cache import SYNC_MESSAGE, ServiceWorkerChannel
from .config import SyncSettings
from .connectivity import ConnectivityMonitor
from .errors import QueueCapacityError, QueueCorruptionError
from .game_state import GameStateStore
from .remote import RemoteGameStore, SupabaseGameStore
from .status import StatusReporter, SyncStatus
from .storage import JsonFileStorage, KeyValueStorage
from .sync_engine import DrainReport, SyncEngine

logger = logging.getLogger(__name__)


class OfflineSyncClient:
    """What the scoreboard UI talks to.

    Recording an action only ever touches local storage; syncing happens when
    the connection comes back, when the cache layer fires a background sync,
    on the periodic ``tick`` or when the user asks for it.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        remote: RemoteGameStore,
        settings: SyncSettings | None = None,
        connectivity: ConnectivityMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or SyncSettings.from_env()
        self.storage = storage
        self.log = ActionLog(storage, clock=clock)
        self.connectivity = connectivity or ConnectivityMonitor(debounce_seconds=self.settings.debounce_seconds)
        self.engine = SyncEngine(self.log, remote, self.connectivity, self.settings.retry_policy(), clock=clock)
        self.reporter = StatusReporter(self.log, self.connectivity)
        self.games = GameStateStore(storage, clock=clock)
        self._detach: List[Callable[[], None]] = [self.connectivity.subscribe(self.engine.handle_signal)]

    @classmethod
    def from_env(cls) -> "OfflineSyncClient":
        settings = SyncSettings.from_env()
        storage = JsonFileStorage(settings.data_dir, quota_bytes=settings.storage_quota_bytes)
        remote = SupabaseGameStore(timeout=settings.request_timeout)
        return cls(storage, remote, settings=settings)

    # ------------------------------------------------------------------
    # UI contract

    def record_local_action(
        self,
        kind: ActionKind | str,
        payload: Dict[str, Any],
        game_ref: Optional[str] = None,
    ) -> QueuedAction | None:
        """Queue a mutation locally; returns ``None`` when storage is full."""

        kind = ActionKind(kind)
        if kind is ActionKind.CREATE_GAME:
            game_ref = game_ref or new_local_game_ref()
        else:
            game_ref = game_ref or payload.get("game_id") or payload.get("gameId")
            if not game_ref:
                raise ValueError(f"{kind.value} needs the game it belongs to")

        action = QueuedAction(kind=kind, payload=dict(payload), game_ref=str(game_ref))
        try:
            return self.log.enqueue(action)
        except QueueCapacityError as exc:
            logger.warning("Could not record %s for game %s: %s", kind.value, game_ref, exc)
            return None

    def request_sync(self, force: bool = False) -> DrainReport:
        return self.engine.request_sync(force=force)

    def get_sync_status(self) -> SyncStatus:
        return self.reporter.get_status()

    def list_actions(self) -> List[QueuedAction]:
        return self.log.list()

    def retry_action(self, action_id: str) -> QueuedAction:
        return self.log.retry(action_id)

    def discard_action(self, action_id: str) -> List[str]:
        return self.log.discard(action_id)

    def tick(self) -> DrainReport | None:
        """Periodic timer hook: drain when online and something is due."""

        if not self.connectivity.online or not self.engine.has_due_work():
            return None
        return self.engine.drain()

    def attach_channel(self, channel: ServiceWorkerChannel) -> None:
        self._detach.append(channel.add_client(self._handle_worker_message))

    def close(self) -> None:
        for detach in self._detach:
            detach()
        self._detach = []

    def _handle_worker_message(self, message: Dict[str, Any]) -> None:
        if message.get("type") == SYNC_MESSAGE:
            self.request_sync()

    # ------------------------------------------------------------------
    # Backup

    def export_all_data(self) -> str:
        return json.dumps(
            {
                "currentGame": self.games.current_game(),
                "history": self.games.games_history(),
                "syncQueue": self.log.snapshot(),
                "exportDate": dt.datetime.now(dt.UTC).isoformat().replace("+00:00", "Z"),
            },
            indent=2,
        )

    def import_all_data(self, json_data: str) -> bool:
        try:
            data = json.loads(json_data)
        except ValueError as exc:
            logger.warning("Failed to import data: %s", exc)
            return False
        if not isinstance(data, dict):
            logger.warning("Failed to import data: expected an object")
            return False

        try:
            if data.get("syncQueue"):
                self.log.restore(data["syncQueue"])
        except QueueCorruptionError as exc:
            logger.warning("Failed to import sync queue: %s", exc)
            return False

        self.games.restore(data.get("currentGame"), data.get("history"))
        return True
