from __future__ import annotations

import pytest

from mbb_core.action_log import ActionLog
from mbb_core.actions import ActionKind, ActionStatus, QueuedAction
from mbb_core.connectivity import ConnectivityMonitor
from mbb_core.errors import RetryableSyncError, TerminalSyncError
from mbb_core.status import StatusReporter
from mbb_core.storage import MemoryStorage
from mbb_core.sync_engine import RetryPolicy, SyncEngine


@pytest.fixture
def log(clock) -> ActionLog:
    return ActionLog(MemoryStorage(), clock=clock)


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=False)


@pytest.fixture
def engine(log, remote, monitor, clock) -> SyncEngine:
    return SyncEngine(log, remote, monitor, RetryPolicy(max_attempts=3, base_delay=10.0), clock=clock)


def _record(log: ActionLog, kind: ActionKind, game_ref: str, **payload) -> QueuedAction:
    return log.enqueue(QueuedAction(kind=kind, payload=payload, game_ref=game_ref))


def test_create_game_offline_then_drain(log, remote, monitor, engine) -> None:
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    reporter = StatusReporter(log, monitor)
    assert reporter.get_status().pending_count == 1

    offline_report = engine.drain()
    assert offline_report.skipped_offline is True
    assert remote.calls == []

    monitor.set_online(True)
    report = engine.drain()

    assert report.synced == 1
    assert list(remote.games.values()) == [{"home": "A", "away": "B"}]
    assert log.list() == []
    status = reporter.get_status()
    assert status.pending_count == 0
    assert status.has_terminal_failures is False


def test_dependent_event_uses_server_assigned_id(log, remote, monitor, engine) -> None:
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    _record(log, ActionKind.APPEND_EVENT, "local_a", player_name="Ama", team="home", event_type="3pt", quarter=1)
    _record(log, ActionKind.APPEND_QUARTER_SCORE, "local_a", quarter=1, home_score=3, away_score=0)

    monitor.set_online(True)
    report = engine.drain()

    assert report.synced == 3
    game_id = next(iter(remote.games))
    assert [call[0] for call in remote.calls] == ["create_game", "append_game_event", "append_quarter_score"]
    assert remote.calls_to("append_game_event")[0][1] == game_id
    assert remote.calls_to("append_quarter_score")[0][1] == game_id
    assert not game_id.startswith("local_")


def test_event_never_sent_before_create_is_acknowledged(log, remote, monitor, engine) -> None:
    create = _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    event = _record(log, ActionKind.APPEND_EVENT, "local_a", player_name="Ama")
    remote.fail("create_game", RetryableSyncError("timed out"))

    monitor.set_online(True)
    report = engine.drain()

    assert remote.calls_to("append_game_event") == []
    assert report.retried == 1
    assert report.skipped == 1
    statuses = {a.id: a for a in log.list()}
    assert statuses[create.id].status is ActionStatus.PENDING
    assert statuses[create.id].attempt_count == 1
    assert statuses[event.id].status is ActionStatus.PENDING
    assert statuses[event.id].target_id is None


def test_terminal_failure_does_not_block_other_games(log, remote, monitor, engine) -> None:
    remote.games["game-1"] = {"home": "A", "away": "B"}
    remote.games["game-2"] = {"home": "C", "away": "D"}
    bad = _record(log, ActionKind.UPDATE_GAME, "game-1", status="bogus")
    good = _record(log, ActionKind.UPDATE_GAME, "game-2", home_score=10)
    remote.fail("update_game", TerminalSyncError("Invalid status", 400))

    monitor.set_online(True)
    report = engine.drain()

    assert report.terminal == 1
    assert report.synced == 1
    assert remote.games["game-2"]["home_score"] == 10
    remaining = log.list()
    assert [a.id for a in remaining] == [bad.id]
    assert remaining[0].status is ActionStatus.FAILED
    assert remaining[0].last_error == "Invalid status"
    assert good.id not in [a.id for a in remaining]

    calls_before = len(remote.calls)
    engine.drain(force=True)
    assert len(remote.calls) == calls_before
    assert StatusReporter(log, monitor).get_status().has_terminal_failures is True


def test_replay_after_lost_response_does_not_duplicate(log, remote, monitor, engine, clock) -> None:
    create = _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    remote.lose_ack("create_game")

    monitor.set_online(True)
    first = engine.drain()
    assert first.retried == 1
    assert len(remote.games) == 1

    clock.advance(60)
    second = engine.drain()

    assert second.synced == 1
    assert len(remote.games) == 1
    keys = [call[2] for call in remote.calls_to("create_game")]
    assert keys == [create.id, create.id]


def test_retry_waits_for_backoff_and_gives_up_at_cap(log, remote, monitor, engine, clock) -> None:
    remote.games["game-1"] = {}
    action = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=1)
    remote.fail("update_game", *(RetryableSyncError("503") for _ in range(3)))
    monitor.set_online(True)

    engine.drain()
    assert log.get(action.id).next_attempt_at == pytest.approx(clock() + 10.0)

    skipped = engine.drain()
    assert skipped.skipped == 1
    assert len(remote.calls) == 1

    clock.advance(10)
    engine.drain()
    assert log.get(action.id).next_attempt_at == pytest.approx(clock() + 20.0)

    clock.advance(20)
    final = engine.drain()

    assert final.terminal == 1
    stored = log.get(action.id)
    assert stored.status is ActionStatus.FAILED
    assert stored.attempt_count == 3


def test_retryable_failure_keeps_later_actions_of_game_waiting(log, remote, monitor, engine) -> None:
    remote.games["game-1"] = {}
    remote.games["game-2"] = {}
    first = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=1)
    second = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=2)
    other = _record(log, ActionKind.UPDATE_GAME, "game-2", home_score=5)
    remote.fail("update_game", RetryableSyncError("timeout"))

    monitor.set_online(True)
    report = engine.drain()

    assert report.synced == 1
    assert [a.id for a in log.list()] == [first.id, second.id]
    assert remote.games["game-2"]["home_score"] == 5
    assert "home_score" not in remote.games["game-1"]
    assert other.id not in [a.id for a in log.list()]


def test_drain_requested_mid_drain_is_coalesced(log, remote, monitor, engine) -> None:
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    nested = []

    def reenter(method: str) -> None:
        if method == "create_game" and not nested:
            _record(log, ActionKind.CREATE_GAME, "local_b", home="C", away="D")
            nested.append(engine.request_sync())

    remote.on_call = reenter
    monitor.set_online(True)
    report = engine.drain()

    assert nested[0].coalesced is True
    assert report.passes == 2
    assert report.synced == 2
    assert len(remote.games) == 2
    assert engine.draining is False


def test_unknown_local_game_becomes_terminal(log, remote, monitor, engine) -> None:
    orphan = _record(log, ActionKind.APPEND_EVENT, "local_gone", player_name="Kojo")

    monitor.set_online(True)
    report = engine.drain()

    assert report.terminal == 1
    assert log.get(orphan.id).status is ActionStatus.FAILED
    assert remote.calls == []


def test_reconnect_signal_triggers_drain(log, remote, monitor, engine) -> None:
    monitor.subscribe(engine.handle_signal)
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")

    monitor.set_online(True)

    assert len(remote.games) == 1
    assert log.list() == []


def test_unexpected_errors_never_escape_drain(log, remote, monitor, engine) -> None:
    remote.games["game-1"] = {}
    action = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=1)
    remote.fail("update_game", KeyError("surprise"))
    terminal = []
    engine.on_terminal(terminal.append)

    monitor.set_online(True)
    report = engine.drain()

    assert report.retried == 1
    assert log.get(action.id).status is ActionStatus.PENDING
    assert terminal == []


def test_create_acknowledged_but_not_recorded_is_replayed(remote, clock, monkeypatch) -> None:
    storage = MemoryStorage()
    log = ActionLog(storage, clock=clock)
    monitor = ConnectivityMonitor(online=True)
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    _record(log, ActionKind.APPEND_EVENT, "local_a", player_name="Ama")

    def page_closed(*args, **kwargs):
        raise SystemExit("page closed")

    monkeypatch.setattr(log, "complete", page_closed)
    with pytest.raises(SystemExit):
        SyncEngine(log, remote, monitor, clock=clock).drain()

    reloaded = ActionLog(storage, clock=clock)
    assert [a.status for a in reloaded.list()] == [ActionStatus.PENDING, ActionStatus.PENDING]

    report = SyncEngine(reloaded, remote, monitor, clock=clock).drain()

    assert report.synced == 2
    assert report.terminal == 0
    assert len(remote.games) == 1
    game_id = next(iter(remote.games))
    assert [event["game_id"] for event in remote.events.values()] == [game_id]
    assert reloaded.list() == []


def test_actions_drain_in_enqueue_order_when_clock_steps_back(log, remote, monitor, engine, clock) -> None:
    _record(log, ActionKind.CREATE_GAME, "local_a", home="A", away="B")
    clock.advance(-5)
    _record(log, ActionKind.APPEND_EVENT, "local_a", player_name="Ama")

    monitor.set_online(True)
    report = engine.drain()

    assert report.synced == 2
    assert [call[0] for call in remote.calls] == ["create_game", "append_game_event"]


def test_exhausted_action_holds_later_writes_until_retried(log, remote, monitor, clock) -> None:
    engine = SyncEngine(log, remote, monitor, RetryPolicy(max_attempts=1), clock=clock)
    remote.games["game-1"] = {}
    first = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=10)
    second = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=12)
    remote.fail("update_game", RetryableSyncError("timed out"))

    monitor.set_online(True)
    engine.drain()
    engine.drain(force=True)

    assert log.get(first.id).status is ActionStatus.FAILED
    assert log.get(second.id).status is ActionStatus.PENDING
    assert "home_score" not in remote.games["game-1"]

    log.retry(first.id)
    report = engine.drain()

    assert report.synced == 2
    assert remote.games["game-1"]["home_score"] == 12


def test_failure_that_cannot_be_recorded_leaves_action_pending(remote, clock) -> None:
    storage = MemoryStorage(quota_bytes=0)
    log = ActionLog(storage, clock=clock)
    monitor = ConnectivityMonitor(online=True)
    engine = SyncEngine(log, remote, monitor, clock=clock)
    remote.games["game-1"] = {}
    action = _record(log, ActionKind.UPDATE_GAME, "game-1", home_score=1)
    # Room for the in-flight mark and nothing more.
    storage.quota_bytes = storage.usage().used + len("in_flight") - len("pending")
    remote.fail("update_game", RetryableSyncError("503"))

    report = engine.drain()

    assert report.retried == 1
    assert log.get(action.id).status is ActionStatus.PENDING
    assert ActionLog(storage, clock=clock).get(action.id).status is ActionStatus.PENDING

    second = engine.drain()

    assert second.synced == 1
    assert remote.games["game-1"]["home_score"] == 1
