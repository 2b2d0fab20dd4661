from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

LOCAL_GAME_PREFIX = "local_"


class ActionKind(str, Enum):
    CREATE_GAME = "create_game"
    UPDATE_GAME = "update_game"
    APPEND_EVENT = "append_event"
    APPEND_QUARTER_SCORE = "append_quarter_score"
    DELETE_GAME = "delete_game"


class ActionStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    DONE = "done"


ALLOWED_TRANSITIONS = {
    ActionStatus.PENDING: {ActionStatus.IN_FLIGHT},
    ActionStatus.IN_FLIGHT: {ActionStatus.DONE, ActionStatus.FAILED, ActionStatus.PENDING},
    ActionStatus.FAILED: {ActionStatus.PENDING},
    ActionStatus.DONE: set(),
}


def new_action_id() -> str:
    return uuid.uuid4().hex


def new_local_game_ref() -> str:
    return f"{LOCAL_GAME_PREFIX}{uuid.uuid4().hex}"


def is_local_ref(game_ref: str | None) -> bool:
    return bool(game_ref) and str(game_ref).startswith(LOCAL_GAME_PREFIX)


@dataclass
class QueuedAction:
    """A single game mutation waiting to be applied to the remote store.

    ``id`` never changes once generated and doubles as the idempotency key
    sent with every remote call. ``game_ref`` identifies the logical game
    (a ``local_`` placeholder until the server acknowledges the create);
    ``target_id`` is the server id once known.
    """

    kind: ActionKind
    payload: Dict[str, Any]
    game_ref: str
    id: str = field(default_factory=new_action_id)
    target_id: Optional[str] = None
    created_at: float = 0.0
    sequence: int = 0
    attempt_count: int = 0
    status: ActionStatus = ActionStatus.PENDING
    last_error: Optional[str] = None
    next_attempt_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is ActionStatus.FAILED

    def can_transition(self, status: ActionStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def sort_key(self) -> int:
        # Enqueue order; created_at follows the wall clock and can step back.
        return self.sequence

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedAction":
        """Rebuild an action from its persisted form.

        Raises ``ValueError`` (or ``KeyError``/``TypeError``) for malformed rows
        so the caller can treat the whole document as corrupt.
        """

        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("queued action payload must be an object")
        action_id = str(data["id"]).strip()
        game_ref = str(data["game_ref"]).strip()
        if not action_id or not game_ref:
            raise ValueError("queued action is missing its id or game reference")

        target_id = data.get("target_id")
        next_attempt_at = data.get("next_attempt_at")
        return cls(
            id=action_id,
            kind=ActionKind(data["kind"]),
            payload=payload,
            game_ref=game_ref,
            target_id=str(target_id) if target_id else None,
            created_at=float(data.get("created_at") or 0.0),
            sequence=int(data.get("sequence") or 0),
            attempt_count=int(data.get("attempt_count") or 0),
            status=ActionStatus(data.get("status") or ActionStatus.PENDING.value),
            last_error=data.get("last_error"),
            next_attempt_at=float(next_attempt_at) if next_attempt_at is not None else None,
        )
