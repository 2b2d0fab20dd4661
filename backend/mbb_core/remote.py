from __future__ import annotations

import datetime as dt
import logging
import os
from typing import Any, Dict, List, Optional, Protocol

import httpx

from . import payloads
from .errors import NotFoundError, RetryableSyncError, TerminalSyncError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}


class RemoteGameStore(Protocol):
    """The hosted game store the sync engine writes to.

    Every call takes the queued action's id as ``idempotency_key``; repeating
    a call with the same key must not create a second entity.
    """

    def create_game(self, payload: Dict[str, Any], idempotency_key: str) -> str: ...

    def update_game(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None: ...

    def delete_game(self, game_id: str, idempotency_key: str) -> None: ...

    def append_game_event(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> str: ...

    def append_quarter_score(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None: ...


class SupabaseGameStore:
    """Writes scoreboard mutations to the Supabase ``games`` tables over PostgREST."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.games_table = os.getenv("SUPABASE_GAMES_TABLE", "games")
        self.events_table = os.getenv("SUPABASE_GAME_EVENTS_TABLE", "game_events")
        self.quarter_scores_table = os.getenv("SUPABASE_QUARTER_SCORES_TABLE", "quarter_scores")

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Remote game store operations

    def create_game(self, payload: Dict[str, Any], idempotency_key: str) -> str:
        record = self._prepare(payloads.game_record_for_create, payload)
        record["client_action_id"] = idempotency_key
        row = self._insert_idempotent(self.games_table, record, idempotency_key)
        return self._row_id(row, "game")

    def update_game(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        record = self._prepare(payloads.game_record_for_update, payload)
        record["updated_at"] = self._utc_now_iso()
        params = {"id": f"eq.{game_id}"}
        rows = self._request(
            "PATCH",
            self.games_table,
            idempotency_key,
            params=params,
            json=record,
            prefer="return=representation",
        )
        if isinstance(rows, list) and not rows:
            raise NotFoundError("Game not found")

    def delete_game(self, game_id: str, idempotency_key: str) -> None:
        # A replayed delete finds nothing to remove; that still counts as applied.
        self._request(
            "DELETE",
            self.games_table,
            idempotency_key,
            params={"id": f"eq.{game_id}"},
            prefer="return=minimal",
        )

    def append_game_event(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> str:
        record = self._prepare(lambda data: payloads.event_record(game_id, data), payload)
        record["client_action_id"] = idempotency_key
        row = self._insert_idempotent(self.events_table, record, idempotency_key)
        return self._row_id(row, "game event")

    def append_quarter_score(self, game_id: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        record = self._prepare(lambda data: payloads.quarter_score_record(game_id, data), payload)
        self._request(
            "POST",
            self.quarter_scores_table,
            idempotency_key,
            params={"on_conflict": "game_id,quarter"},
            json=[record],
            prefer="resolution=merge-duplicates,return=representation",
        )

    # ---- internal Supabase helpers -------------------------------------------------

    def _prepare(self, builder, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return builder(payload)
        except ValueError as exc:
            raise TerminalSyncError(str(exc)) from exc

    def _insert_idempotent(self, table: str, record: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        try:
            rows = self._request(
                "POST",
                table,
                idempotency_key,
                params={"on_conflict": "client_action_id"},
                json=[record],
                prefer="resolution=merge-duplicates,return=representation",
            )
        except TerminalSyncError as exc:
            if exc.status_code != 409:
                raise
            existing = self._fetch_by_client_action_id(table, idempotency_key)
            if existing is None:
                raise
            logger.info("Supabase already holds %s row for action %s", table, idempotency_key)
            return existing

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        if isinstance(rows, dict):
            return rows
        existing = self._fetch_by_client_action_id(table, idempotency_key)
        if existing is None:
            raise TerminalSyncError(f"Unexpected response when inserting into {table}")
        return existing

    def _fetch_by_client_action_id(self, table: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        rows = self._request(
            "GET",
            table,
            idempotency_key,
            params={"select": "id", "client_action_id": f"eq.{idempotency_key}", "limit": 1},
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        return None

    def _request(
        self,
        method: str,
        table: str,
        idempotency_key: str,
        params: Dict[str, Any] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        if not self.configured:
            raise RetryableSyncError("Supabase configuration is required to sync queued actions")

        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer)
        headers["Idempotency-Key"] = idempotency_key
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, endpoint, params=params, json=json, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._classify_status_error(exc, table) from exc
        except httpx.TimeoutException as exc:
            raise RetryableSyncError(f"Supabase {table} request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RetryableSyncError(f"Supabase {table} request failed: {exc}") from exc

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _classify_status_error(self, exc: httpx.HTTPStatusError, table: str) -> Exception:
        status = exc.response.status_code if exc.response is not None else 0
        detail = self._extract_supabase_detail(exc.response) or f"Supabase rejected {table} sync: {exc}"
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            return RetryableSyncError(detail)
        if status == 404:
            return NotFoundError(detail, status)
        return TerminalSyncError(detail, status)

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _row_id(row: Dict[str, Any], label: str) -> str:
        row_id = str(row.get("id") or "").strip()
        if not row_id:
            raise TerminalSyncError(f"Supabase did not return an id for the new {label}")
        return row_id

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")

    @staticmethod
    def _extract_supabase_detail(response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        candidates: List[Any] = [payload]
        if isinstance(payload, list) and payload:
            candidates = [payload[0]]
        for candidate in candidates:
            if isinstance(candidate, dict):
                for key in ("message", "detail", "error", "hint", "code"):
                    value = candidate.get(key)
                    if isinstance(value, str) and value.strip():
                        return value.strip()
        return None
