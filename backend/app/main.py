from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from mbb_core import ActionKind, OfflineSyncClient, QueuedAction
from mbb_core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def sync_client() -> OfflineSyncClient:
    return OfflineSyncClient.from_env()


async def _periodic_sync(interval: float) -> None:
    """Drive the client's timer so backed-off retries fire without a reconnect."""

    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(sync_client().tick)
        except Exception:
            logger.exception("Periodic sync tick failed")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    interval = sync_client().settings.tick_interval
    task = asyncio.create_task(_periodic_sync(interval)) if interval > 0 else None
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


app = FastAPI(title="Madina Basketball Scoreboard Sync API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RecordActionPayload(BaseModel):
    kind: ActionKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    game_ref: Optional[str] = Field(default=None, alias="gameRef")

    model_config = ConfigDict(populate_by_name=True)


class QueuedActionModel(BaseModel):
    id: str
    kind: str
    payload: Dict[str, Any]
    game_ref: str = Field(alias="gameRef")
    target_id: Optional[str] = Field(default=None, alias="targetId")
    created_at: float = Field(alias="createdAt")
    attempt_count: int = Field(alias="attemptCount")
    status: str
    last_error: Optional[str] = Field(default=None, alias="lastError")
    next_attempt_at: Optional[float] = Field(default=None, alias="nextAttemptAt")

    model_config = ConfigDict(populate_by_name=True)


class QueuedActionListResponse(BaseModel):
    actions: List[QueuedActionModel]


class DiscardResponse(BaseModel):
    discarded: List[str]


class DrainReportModel(BaseModel):
    synced: int
    retried: int
    terminal: int
    skipped: int
    remaining: int
    passes: int
    skipped_offline: bool = Field(alias="skippedOffline")
    coalesced: bool
    errors: List[str]

    model_config = ConfigDict(populate_by_name=True)


class SyncStatusModel(BaseModel):
    online: bool
    pending_count: int = Field(alias="pendingCount")
    has_terminal_failures: bool = Field(alias="hasTerminalFailures")
    terminal_action_ids: List[str] = Field(default_factory=list, alias="terminalActionIds")
    capacity_warning: bool = Field(default=False, alias="capacityWarning")
    data_loss_warning: bool = Field(default=False, alias="dataLossWarning")
    message: str

    model_config = ConfigDict(populate_by_name=True)


class ConnectivityPayload(BaseModel):
    online: bool


class BackupResponse(BaseModel):
    data: str


class BackupImportPayload(BaseModel):
    data: str


def _action_model(action: QueuedAction) -> QueuedActionModel:
    return QueuedActionModel(
        id=action.id,
        kind=action.kind.value,
        payload=action.payload,
        gameRef=action.game_ref,
        targetId=action.target_id,
        createdAt=action.created_at,
        attemptCount=action.attempt_count,
        status=action.status.value,
        lastError=action.last_error,
        nextAttemptAt=action.next_attempt_at,
    )


def _status_model() -> SyncStatusModel:
    client = sync_client()
    status = client.get_sync_status()
    return SyncStatusModel(**status.as_dict(), message=client.reporter.describe())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/actions", response_model=QueuedActionListResponse)
def list_actions():
    return QueuedActionListResponse(actions=[_action_model(action) for action in sync_client().list_actions()])


@app.post("/actions", response_model=QueuedActionModel, status_code=202)
def record_action(payload: RecordActionPayload):
    try:
        action = sync_client().record_local_action(payload.kind, payload.payload, game_ref=payload.game_ref)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if action is None:
        raise HTTPException(status_code=507, detail="Local storage is full; the action could not be queued")
    return _action_model(action)


@app.post("/actions/{action_id}/retry", response_model=QueuedActionModel)
def retry_action(action_id: str):
    try:
        action = sync_client().retry_action(action_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Queued action not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _action_model(action)


@app.delete("/actions/{action_id}", response_model=DiscardResponse)
def discard_action(action_id: str):
    try:
        discarded = sync_client().discard_action(action_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Queued action not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return DiscardResponse(discarded=discarded)


@app.post("/sync", response_model=DrainReportModel)
def sync_now():
    report = sync_client().request_sync(force=True)
    return DrainReportModel(**report.as_dict())


@app.get("/sync/status", response_model=SyncStatusModel)
def sync_status():
    return _status_model()


@app.post("/connectivity", response_model=SyncStatusModel)
def connectivity(payload: ConnectivityPayload):
    sync_client().connectivity.set_online(payload.online)
    return _status_model()


@app.get("/game/current")
def current_game() -> dict:
    client = sync_client()
    return {
        "game": client.games.current_game(),
        "recoverable": client.games.has_recoverable_game(),
    }


@app.put("/game/current")
def save_current_game(state: Dict[str, Any]) -> dict:
    client = sync_client()
    try:
        saved = client.games.save_game_state(state)
    except RuntimeError as exc:
        raise HTTPException(status_code=507, detail=str(exc)) from exc
    if saved.get("gameEnded"):
        client.games.finish_current_game()
    return {"game": saved}


@app.delete("/game/current", status_code=204)
def clear_current_game() -> None:
    sync_client().games.clear_current_game()


@app.get("/game/history")
def game_history() -> dict:
    return {"games": sync_client().games.games_history()}


@app.get("/backup", response_model=BackupResponse)
def export_backup():
    return BackupResponse(data=sync_client().export_all_data())


@app.post("/backup")
def import_backup(payload: BackupImportPayload) -> dict[str, bool]:
    if not sync_client().import_all_data(payload.data):
        raise HTTPException(status_code=400, detail="Backup could not be imported")
    return {"imported": True}
