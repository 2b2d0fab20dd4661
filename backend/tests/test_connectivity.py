from __future__ import annotations

import httpx

from mbb_core import connectivity as connectivity_module
from mbb_core.connectivity import ConnectivityMonitor


def test_flapping_connection_emits_one_signal(clock) -> None:
    monitor = ConnectivityMonitor(online=False, debounce_seconds=2.0, clock=clock)
    signals = []
    monitor.subscribe(signals.append)

    for _ in range(3):
        monitor.handle_online()
        clock.advance(0.2)
        monitor.handle_offline()
        clock.advance(0.2)
    monitor.handle_online()

    assert len(signals) == 1
    assert signals[0].reason == "online"
    assert monitor.online is True


def test_reconnect_after_debounce_window_signals_again(clock) -> None:
    monitor = ConnectivityMonitor(online=False, debounce_seconds=2.0, clock=clock)
    signals = []
    monitor.subscribe(signals.append)

    monitor.handle_online()
    monitor.handle_offline()
    clock.advance(5)
    monitor.handle_online()

    assert len(signals) == 2


def test_offline_and_repeated_online_events_do_not_signal(clock) -> None:
    monitor = ConnectivityMonitor(online=True, clock=clock)
    signals = []
    monitor.subscribe(signals.append)

    monitor.handle_online()
    monitor.handle_offline()

    assert signals == []
    assert monitor.online is False


def test_unsubscribe_and_failing_listener(clock) -> None:
    monitor = ConnectivityMonitor(online=False, clock=clock)
    received = []

    def broken(_signal) -> None:
        raise RuntimeError("listener blew up")

    monitor.subscribe(broken)
    unsubscribe = monitor.subscribe(received.append)
    monitor.handle_online()
    assert len(received) == 1

    unsubscribe()
    monitor.handle_offline()
    clock.advance(10)
    monitor.handle_online()
    assert len(received) == 1


def test_reachability_check_updates_state_from_http_result(monkeypatch) -> None:
    outcomes = [httpx.ConnectError("offline"), 200]

    class _FakeClient:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def get(self, url):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome, request=httpx.Request("GET", url))

    monkeypatch.setattr(connectivity_module.httpx, "Client", _FakeClient)
    monitor = ConnectivityMonitor(online=True)
    signals = []
    monitor.subscribe(signals.append)

    assert monitor.probe("https://example.test/health") is False
    assert monitor.online is False
    assert monitor.probe("https://example.test/health") is True
    assert monitor.online is True
    assert len(signals) == 1
