"""Normalise queued payloads into rows for the Supabase game tables."""

from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, Optional

DEFAULT_LOCATION = "Madina Basketball Court"
GAME_MODES = ("basic", "stats", "full")
GAME_STATUSES = ("upcoming", "live", "completed", "cancelled")
EVENT_TEAMS = ("home", "away")

# Scoreboard state uses camelCase and short names; rows use snake_case.
GAME_ALIASES = {
    "home_team": ("home_team", "homeTeam", "home"),
    "away_team": ("away_team", "awayTeam", "away"),
    "home_score": ("home_score", "homeScore"),
    "away_score": ("away_score", "awayScore"),
    "game_mode": ("game_mode", "gameMode"),
    "game_date": ("game_date", "gameDate"),
}


def sanitize_string(value: Any, limit: int = 10000) -> str:
    if value is None:
        return ""
    return re.sub(r"[<>]", "", str(value).strip())[:limit]


def sanitize_team_name(value: Any) -> str:
    return sanitize_string(value)[:100]


def _lookup(payload: Dict[str, Any], field: str) -> Any:
    for key in GAME_ALIASES.get(field, (field,)):
        if key in payload:
            return payload[key]
    return None


def _has(payload: Dict[str, Any], field: str) -> bool:
    return any(key in payload for key in GAME_ALIASES.get(field, (field,)))


def _clamp_int(value: Any, low: int, high: Optional[int], default: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        number = default
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


def _coerce_game_date(value: Any) -> str:
    if value in (None, ""):
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    text = str(value).strip()
    try:
        dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError("Invalid game date format. Use ISO 8601 format") from exc
    return text


def _check_choice(value: str, choices: tuple[str, ...], label: str) -> str:
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


def game_record_for_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    home_team = sanitize_team_name(_lookup(payload, "home_team"))
    away_team = sanitize_team_name(_lookup(payload, "away_team"))

    if len(home_team) < 2:
        raise ValueError("Home team is required and must be at least 2 characters")
    if len(away_team) < 2:
        raise ValueError("Away team is required and must be at least 2 characters")
    if home_team.lower() == away_team.lower():
        raise ValueError("Home team and away team must be different")

    game_mode = _check_choice(str(_lookup(payload, "game_mode") or "basic"), GAME_MODES, "game mode")
    status = _check_choice(str(payload.get("status") or "upcoming"), GAME_STATUSES, "status")

    notes = sanitize_string(payload.get("notes"))
    created_by = sanitize_string(payload.get("created_by") or payload.get("createdBy"))

    return {
        "home_team": home_team,
        "away_team": away_team,
        "home_score": _clamp_int(_lookup(payload, "home_score"), 0, None, 0),
        "away_score": _clamp_int(_lookup(payload, "away_score"), 0, None, 0),
        "quarter": _clamp_int(payload.get("quarter"), 1, 10, 1),
        "overtime": _clamp_int(payload.get("overtime"), 0, 10, 0),
        "game_mode": game_mode,
        "status": status,
        "game_date": _coerce_game_date(_lookup(payload, "game_date")),
        "location": sanitize_string(payload.get("location")) or DEFAULT_LOCATION,
        "notes": notes or None,
        "created_by": created_by or None,
    }


def game_record_for_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Build a partial update; only fields present in ``payload`` are sent."""

    record: Dict[str, Any] = {}
    for field in ("home_team", "away_team"):
        if _has(payload, field):
            name = sanitize_team_name(_lookup(payload, field))
            if len(name) < 2:
                raise ValueError(f"{field.replace('_', ' ').capitalize()} must be at least 2 characters")
            record[field] = name
    for field in ("home_score", "away_score"):
        if _has(payload, field):
            record[field] = _clamp_int(_lookup(payload, field), 0, None, 0)
    if "quarter" in payload:
        record["quarter"] = _clamp_int(payload["quarter"], 1, 10, 1)
    if "overtime" in payload:
        record["overtime"] = _clamp_int(payload["overtime"], 0, 10, 0)
    if _has(payload, "game_mode"):
        record["game_mode"] = _check_choice(str(_lookup(payload, "game_mode")), GAME_MODES, "game mode")
    if "status" in payload:
        record["status"] = _check_choice(str(payload["status"]), GAME_STATUSES, "status")
    if _has(payload, "game_date"):
        record["game_date"] = _coerce_game_date(_lookup(payload, "game_date"))
    for field in ("location", "notes"):
        if field in payload:
            record[field] = sanitize_string(payload[field]) or None

    if not record:
        raise ValueError("Game update has no recognised fields")
    return record


def event_record(game_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    player_name = sanitize_string(payload.get("player_name") or payload.get("playerName"))
    team = sanitize_string(payload.get("team"))
    event_type = sanitize_string(payload.get("event_type") or payload.get("eventType"))
    quarter = payload.get("quarter")

    if not player_name or not team or not event_type or quarter is None:
        raise ValueError("player_name, team, event_type, and quarter are required")
    _check_choice(team, EVENT_TEAMS, "team")

    return {
        "game_id": game_id,
        "player_id": payload.get("player_id") or payload.get("playerId"),
        "player_name": player_name,
        "player_jersey": payload.get("player_jersey") or payload.get("playerJersey"),
        "team": team,
        "event_type": event_type,
        "points": _clamp_int(payload.get("points"), 0, None, 0),
        "quarter": _clamp_int(quarter, 1, 10, 1),
        "game_time": payload.get("game_time") or payload.get("gameTime"),
        "details": sanitize_string(payload.get("details")) or None,
    }


def quarter_score_record(game_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    quarter = payload.get("quarter")
    home_score = _lookup(payload, "home_score")
    away_score = _lookup(payload, "away_score")
    if not quarter or home_score is None or away_score is None:
        raise ValueError("Quarter, home_score, and away_score are required")

    return {
        "game_id": game_id,
        "quarter": _clamp_int(quarter, 1, 10, 1),
        "home_score": _clamp_int(home_score, 0, None, 0),
        "away_score": _clamp_int(away_score, 0, None, 0),
    }
