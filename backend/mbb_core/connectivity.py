from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List

import httpx

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0


@dataclass(frozen=True)
class SyncSignal:
    reason: str
    at: float


SyncListener = Callable[[SyncSignal], None]


class ConnectivityMonitor:
    """Tracks online/offline transitions and asks for a sync on reconnect.

    Reconnect signals are debounced on the leading edge: the first online
    transition emits immediately and further ones within ``debounce_seconds``
    of it are dropped, so a flapping connection triggers a single drain.
    """

    def __init__(
        self,
        online: bool = True,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._online = online
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._listeners: List[SyncListener] = []
        self._last_signal_at: float | None = None

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def handle_online(self) -> None:
        self.set_online(True)

    def handle_offline(self) -> None:
        self.set_online(False)

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = bool(online)
        if was_online == self._online:
            return

        if not self._online:
            logger.info("Connection lost; queued actions will wait for reconnect")
            return

        logger.info("Connection restored")
        now = self._clock()
        if self._last_signal_at is not None and now - self._last_signal_at < self.debounce_seconds:
            logger.debug("Collapsing reconnect signal within %.1fs debounce window", self.debounce_seconds)
            return
        self._last_signal_at = now
        self._emit(SyncSignal(reason="online", at=now))

    def _emit(self, signal: SyncSignal) -> None:
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Sync listener failed while handling %s signal", signal.reason)

    def probe(self, url: str, timeout: float = 5.0) -> bool:
        """Check reachability of ``url`` and feed the result into the state."""

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.get(url)
            reachable = response.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe to %s failed: %s", url, exc)
            reachable = False
        self.set_online(reachable)
        return reachable
