from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actions import (
    ActionKind,
    ActionStatus,
    QueuedAction,
    is_local_ref,
    new_local_game_ref,
)
from .errors import (
    InvalidTransitionError,
    QueueCapacityError,
    QueueCorruptionError,
    StorageQuotaExceeded,
)
from .storage import KeyValueStorage

logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = "mbb_sync_queue"
QUEUE_DOCUMENT_VERSION = 1

# Item names used by the first scoreboard release, which stored a bare list.
LEGACY_ACTIONS = {
    "save-game": ActionKind.CREATE_GAME,
    "update-game": ActionKind.UPDATE_GAME,
    "save-event": ActionKind.APPEND_EVENT,
}

CapacityListener = Callable[[List[QueuedAction]], None]
_State = Tuple[List[QueuedAction], Dict[str, str], int]


class ActionLog:
    """Ordered, persisted queue of game mutations awaiting sync.

    Every mutating call rewrites the whole document to storage before it
    returns, so a reload never loses an acknowledged write. When a write does
    not fit in storage the oldest eligible entries are evicted; if nothing can
    go, the change is rolled back in memory as well, so memory and storage
    always agree.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str = SYNC_QUEUE_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.key = key
        self._clock = clock
        self._actions: List[QueuedAction] = []
        self._resolved: Dict[str, str] = {}
        self._sequence = 0
        self._capacity_listeners: List[CapacityListener] = []
        self.capacity_warning = False
        self.data_loss_warning = False
        self.evicted_ids: List[str] = []
        self.load()

    # ------------------------------------------------------------------
    # Loading and persistence

    def load(self) -> None:
        raw = self.storage.get(self.key)
        self._actions = []
        self._resolved = {}
        self._sequence = 0
        if raw is None:
            return

        try:
            self._apply_document(self._parse_document(raw))
        except QueueCorruptionError as exc:
            logger.warning("Discarding unreadable sync queue, unsynced actions were lost: %s", exc)
            self._actions = []
            self._resolved = {}
            self._sequence = 0
            self.data_loss_warning = True
            self._persist()
            return

        if self._recover():
            self._persist()

    def _recover(self) -> bool:
        """Undo what an interrupted drain left behind; True if anything changed."""

        changed = False
        for action in list(self._actions):
            if action.status is ActionStatus.IN_FLIGHT:
                action.status = ActionStatus.PENDING
                changed = True
            elif action.status is ActionStatus.DONE:
                if action.kind is ActionKind.CREATE_GAME and action.game_ref not in self._resolved:
                    # The server id never reached storage; replaying the create
                    # under the same idempotency key returns it again.
                    action.status = ActionStatus.PENDING
                else:
                    self._actions.remove(action)
                changed = True
        if changed:
            logger.info("Recovered sync queue after an interrupted drain")
        return changed

    def _parse_document(self, raw: str) -> Dict[str, Any]:
        try:
            document = json.loads(raw)
        except ValueError as exc:
            raise QueueCorruptionError(f"sync queue is not valid JSON: {exc}") from exc

        if isinstance(document, list):
            document = self._document_from_legacy(document)
        if not isinstance(document, dict) or not isinstance(document.get("actions"), list):
            raise QueueCorruptionError("sync queue document has an unexpected shape")

        actions: List[QueuedAction] = []
        for row in document["actions"]:
            if not isinstance(row, dict):
                raise QueueCorruptionError("sync queue contains a non-object entry")
            try:
                actions.append(QueuedAction.from_dict(row))
            except (KeyError, TypeError, ValueError) as exc:
                raise QueueCorruptionError(f"sync queue entry is malformed: {exc}") from exc

        resolved = document.get("resolved") or {}
        if not isinstance(resolved, dict):
            raise QueueCorruptionError("sync queue id map has an unexpected shape")

        sequence = document.get("sequence") or 0
        try:
            sequence = int(sequence)
        except (TypeError, ValueError) as exc:
            raise QueueCorruptionError("sync queue sequence is not a number") from exc

        return {
            "actions": actions,
            "resolved": {str(key): str(value) for key, value in resolved.items()},
            "sequence": max([sequence] + [action.sequence for action in actions]),
        }

    def _document_from_legacy(self, rows: List[Any]) -> Dict[str, Any]:
        actions: List[Dict[str, Any]] = []
        for index, row in enumerate(rows, start=1):
            if not isinstance(row, dict):
                raise QueueCorruptionError("legacy sync queue contains a non-object entry")
            kind = LEGACY_ACTIONS.get(str(row.get("action") or ""))
            data = row.get("data") if isinstance(row.get("data"), dict) else {}
            if kind is None:
                raise QueueCorruptionError(f"unknown legacy sync action {row.get('action')!r}")

            if kind is ActionKind.CREATE_GAME:
                game_ref = str(data.get("id") or "") if is_local_ref(data.get("id")) else new_local_game_ref()
            elif kind is ActionKind.UPDATE_GAME:
                game_ref = str(data.get("id") or "")
            else:
                game_ref = str(data.get("game_id") or "")
            if not game_ref:
                raise QueueCorruptionError(f"legacy sync item {row.get('id')!r} has no game reference")

            try:
                created_at = float(row.get("timestamp") or 0) / 1000.0
                attempt_count = int(row.get("retries") or 0)
            except (TypeError, ValueError) as exc:
                raise QueueCorruptionError(f"legacy sync item {row.get('id')!r} is malformed: {exc}") from exc

            actions.append(
                {
                    "id": str(row.get("id") or ""),
                    "kind": kind.value,
                    "payload": data,
                    "game_ref": game_ref,
                    "target_id": None if is_local_ref(game_ref) or kind is ActionKind.CREATE_GAME else game_ref,
                    "created_at": created_at,
                    "sequence": index,
                    "attempt_count": attempt_count,
                    "status": ActionStatus.PENDING.value,
                }
            )
        logger.info("Migrating %s item(s) from the legacy sync queue format", len(actions))
        return {"version": QUEUE_DOCUMENT_VERSION, "actions": actions, "resolved": {}, "sequence": len(actions)}

    def _apply_document(self, document: Dict[str, Any]) -> None:
        self._actions = list(document["actions"])
        self._resolved = dict(document["resolved"])
        self._sequence = int(document["sequence"])

    def _document(self) -> Dict[str, Any]:
        return {
            "version": QUEUE_DOCUMENT_VERSION,
            "sequence": self._sequence,
            "resolved": dict(self._resolved),
            "actions": [action.to_dict() for action in self._actions],
        }

    def _persist(self) -> None:
        self.storage.set(self.key, json.dumps(self._document(), sort_keys=True))

    def _state(self) -> _State:
        return copy.deepcopy(self._actions), dict(self._resolved), self._sequence

    def _commit(self, before: _State, protect: Optional[str] = None) -> None:
        """Persist the in-memory queue, evicting to make room if needed.

        ``before`` is the state prior to the change; it is restored when the
        write cannot be made to fit. ``protect`` is never evicted.
        """

        try:
            self._persist()
            return
        except StorageQuotaExceeded:
            pass

        evicted: List[QueuedAction] = []
        while True:
            victim = self._eviction_candidate(exclude=protect)
            if victim is None:
                self._actions, self._resolved, self._sequence = before
                self.capacity_warning = True
                logger.warning("Sync queue is full and nothing can be evicted; change not recorded")
                raise QueueCapacityError("Local storage is full; the action could not be queued")

            self._actions.remove(victim)
            evicted.append(victim)
            try:
                self._persist()
            except StorageQuotaExceeded:
                continue
            break

        self.capacity_warning = True
        self.evicted_ids.extend(item.id for item in evicted)
        logger.warning(
            "Sync queue reached storage capacity; evicted %s oldest entr%s",
            len(evicted),
            "y" if len(evicted) == 1 else "ies",
        )
        for listener in list(self._capacity_listeners):
            listener([copy.deepcopy(item) for item in evicted])

    def _eviction_candidate(self, exclude: Optional[str]) -> Optional[QueuedAction]:
        settled = (ActionStatus.DONE, ActionStatus.FAILED)
        for statuses in (settled, (ActionStatus.PENDING,)):
            for action in self._actions:
                if action.id != exclude and action.status in statuses:
                    return action
        return None

    # ------------------------------------------------------------------
    # Queue contract

    def enqueue(self, action: QueuedAction) -> QueuedAction:
        existing = self._find(action.id)
        if existing is not None:
            return copy.deepcopy(existing)

        before = self._state()
        action = copy.deepcopy(action)
        action.status = ActionStatus.PENDING
        if not action.created_at:
            action.created_at = self._clock()
        self._sequence += 1
        action.sequence = self._sequence
        if action.target_id is None and action.kind is not ActionKind.CREATE_GAME:
            action.target_id = self.resolve_target(action.game_ref)

        self._actions.append(action)
        self._commit(before, protect=action.id)
        return copy.deepcopy(action)

    def list(self) -> List[QueuedAction]:
        return [copy.deepcopy(action) for action in self._actions]

    def get(self, action_id: str) -> QueuedAction:
        return copy.deepcopy(self._require(action_id))

    def mark_status(
        self,
        action_id: str,
        status: ActionStatus,
        error: str | None = None,
        count_attempt: bool = False,
    ) -> QueuedAction:
        action = self._require(action_id)
        status = ActionStatus(status)
        if not action.can_transition(status):
            raise InvalidTransitionError(
                f"Cannot move action {action_id} from {action.status.value} to {status.value}"
            )
        before = self._state()
        action.status = status
        if error is not None:
            action.last_error = error
        if count_attempt:
            action.attempt_count += 1
        self._commit(before, protect=action_id)
        return copy.deepcopy(self._require(action_id))

    def record_retry(self, action_id: str, error: str, next_attempt_at: float) -> QueuedAction:
        """Record a retryable failure and put the in-flight action back in line.

        The attempt, the error and the backoff are written together, so a
        reload never finds the action failed but not rescheduled.
        """

        action = self._require(action_id)
        if action.status is not ActionStatus.IN_FLIGHT:
            raise InvalidTransitionError(f"Only in-flight actions can be rescheduled ({action_id})")
        before = self._state()
        action.status = ActionStatus.PENDING
        action.attempt_count += 1
        action.last_error = error
        action.next_attempt_at = next_attempt_at
        self._commit(before, protect=action_id)
        return copy.deepcopy(self._require(action_id))

    def complete(self, action_id: str, server_id: Optional[str] = None) -> int:
        """Drop an acknowledged in-flight action.

        For a ``create_game`` the server id is recorded and every queued action
        of the game retargeted in the same write. Returns the number of actions
        retargeted.
        """

        action = self._require(action_id)
        if action.status is not ActionStatus.IN_FLIGHT:
            raise InvalidTransitionError(f"Only in-flight actions can complete ({action_id} is {action.status.value})")
        before = self._state()
        rewritten = 0
        if server_id is not None:
            rewritten = self._retarget(action.game_ref, server_id)
        self._actions.remove(action)
        self._commit(before)
        return rewritten

    def remove(self, action_id: str) -> None:
        action = self._require(action_id)
        if action.status is not ActionStatus.DONE:
            raise InvalidTransitionError(f"Only done actions can be removed ({action_id} is {action.status.value})")
        before = self._state()
        self._actions.remove(action)
        self._commit(before)

    def retry(self, action_id: str) -> QueuedAction:
        """Give a terminally failed action another go (user's retry button)."""

        action = self._require(action_id)
        if action.status is not ActionStatus.FAILED:
            raise InvalidTransitionError(f"Only failed actions can be retried ({action_id} is {action.status.value})")
        before = self._state()
        action.status = ActionStatus.PENDING
        action.attempt_count = 0
        action.next_attempt_at = None
        action.last_error = None
        self._commit(before, protect=action_id)
        return copy.deepcopy(self._require(action_id))

    def discard(self, action_id: str) -> List[str]:
        """Drop an action on the user's request.

        Discarding a create that the server never acknowledged also drops the
        rest of that game's queue, since none of it could ever be applied.
        """

        action = self._require(action_id)
        if action.status is ActionStatus.IN_FLIGHT:
            raise InvalidTransitionError(f"Action {action_id} is being synced and cannot be discarded")

        doomed = [action]
        if action.kind is ActionKind.CREATE_GAME and self.resolve_target(action.game_ref) is None:
            doomed = [
                item
                for item in self._actions
                if item.game_ref == action.game_ref and item.status is not ActionStatus.IN_FLIGHT
            ]
        before = self._state()
        for item in doomed:
            self._actions.remove(item)
        self._commit(before)
        return [item.id for item in doomed]

    def clear(self) -> None:
        self._actions = []
        self._resolved = {}
        self._sequence = 0
        self.evicted_ids = []
        self.capacity_warning = False
        self.data_loss_warning = False
        self.storage.remove(self.key)

    def acknowledge_warnings(self) -> None:
        self.capacity_warning = False
        self.data_loss_warning = False
        self.evicted_ids = []

    def on_capacity(self, listener: CapacityListener) -> Callable[[], None]:
        self._capacity_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._capacity_listeners:
                self._capacity_listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Game id resolution

    def resolve_target(self, game_ref: str) -> Optional[str]:
        if game_ref in self._resolved:
            return self._resolved[game_ref]
        if is_local_ref(game_ref):
            return None
        return game_ref

    def resolve_game(self, game_ref: str, server_id: str) -> int:
        """Point every queued action of ``game_ref`` at the server's game id."""

        before = self._state()
        rewritten = self._retarget(game_ref, server_id)
        self._commit(before)
        return rewritten

    def _retarget(self, game_ref: str, server_id: str) -> int:
        self._resolved[game_ref] = server_id
        rewritten = 0
        for action in self._actions:
            if action.game_ref == game_ref and action.target_id != server_id:
                action.target_id = server_id
                rewritten += 1
        return rewritten

    def has_pending_create(self, game_ref: str) -> bool:
        return any(
            action.kind is ActionKind.CREATE_GAME
            and action.game_ref == game_ref
            and action.status is not ActionStatus.DONE
            for action in self._actions
        )

    # ------------------------------------------------------------------
    # Backup

    def snapshot(self) -> Dict[str, Any]:
        return self._document()

    def restore(self, document: Any) -> None:
        parsed = self._parse_document(json.dumps(document))
        self._apply_document(parsed)
        self._recover()
        self._persist()

    def _find(self, action_id: str) -> Optional[QueuedAction]:
        for action in self._actions:
            if action.id == action_id:
                return action
        return None

    def _require(self, action_id: str) -> QueuedAction:
        action = self._find(action_id)
        if action is None:
            raise KeyError(f"Queued action {action_id} not found")
        return action
