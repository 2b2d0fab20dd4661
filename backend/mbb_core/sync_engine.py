from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .action_log import ActionLog
from .actions import ActionKind, ActionStatus, QueuedAction
from .connectivity import ConnectivityMonitor, SyncSignal
from .errors import QueueCapacityError, RetryableSyncError, TerminalSyncError
from .remote import RemoteGameStore

logger = logging.getLogger(__name__)

TerminalListener = Callable[[QueuedAction], None]


@dataclass
class RetryPolicy:
    """Exponential backoff applied per game after a retryable failure."""

    max_attempts: int = 5
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 300.0

    def delay(self, attempt: int) -> float:
        attempt = max(1, attempt)
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))


@dataclass
class DrainReport:
    synced: int = 0
    retried: int = 0
    terminal: int = 0
    skipped: int = 0
    remaining: int = 0
    passes: int = 0
    skipped_offline: bool = False
    coalesced: bool = False
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncEngine:
    """Flushes the action log to the remote game store.

    Only one drain runs at a time. A drain requested while another is running
    is recorded and served by an extra pass once the current one finishes.
    Actions of the same game are applied strictly in queue order; a game that
    hits a retryable failure is parked for the rest of the pass while other
    games carry on.
    """

    def __init__(
        self,
        log: ActionLog,
        remote: RemoteGameStore,
        connectivity: ConnectivityMonitor,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.log = log
        self.remote = remote
        self.connectivity = connectivity
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._draining = False
        self._drain_requested = False
        self._force_requested = False
        self._terminal_listeners: List[TerminalListener] = []

    @property
    def draining(self) -> bool:
        return self._draining

    def on_terminal(self, listener: TerminalListener) -> Callable[[], None]:
        self._terminal_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._terminal_listeners:
                self._terminal_listeners.remove(listener)

        return unsubscribe

    def handle_signal(self, signal: SyncSignal) -> None:
        logger.debug("Sync requested (%s)", signal.reason)
        self.request_sync()

    def request_sync(self, force: bool = False) -> DrainReport:
        """Fire-and-forget drain trigger; redundant calls are harmless."""

        return self.drain(force=force)

    def has_due_work(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return any(
            action.status is ActionStatus.PENDING
            and (action.next_attempt_at is None or action.next_attempt_at <= now)
            for action in self.log.list()
        )

    def drain(self, force: bool = False) -> DrainReport:
        if self._draining:
            self._drain_requested = True
            self._force_requested = self._force_requested or force
            return DrainReport(coalesced=True, remaining=self._remaining())

        report = DrainReport()
        if not self.connectivity.online:
            report.skipped_offline = True
            report.remaining = self._remaining()
            return report

        self._draining = True
        try:
            while True:
                self._drain_requested = False
                self._force_requested = False
                try:
                    self._drain_pass(report, force)
                except Exception as exc:
                    logger.exception("Sync drain aborted unexpectedly")
                    report.errors.append(f"Sync drain aborted: {exc}")
                report.passes += 1
                if not self._drain_requested or not self.connectivity.online:
                    break
                force = self._force_requested
        finally:
            self._draining = False

        report.remaining = self._remaining()
        if report.synced or report.terminal or report.retried:
            logger.info(
                "Sync drain finished: %s synced, %s retrying, %s need attention, %s remaining",
                report.synced,
                report.retried,
                report.terminal,
                report.remaining,
            )
        return report

    # ------------------------------------------------------------------
    # Drain internals

    def _drain_pass(self, report: DrainReport, force: bool) -> None:
        now = self._clock()
        blocked: Set[str] = set()

        for action in sorted(self.log.list(), key=QueuedAction.sort_key):
            if not self.connectivity.online:
                logger.info("Connection lost mid-drain; stopping")
                return

            if action.status is ActionStatus.FAILED:
                if self._holds_game(action):
                    blocked.add(action.game_ref)
                continue
            if action.status is not ActionStatus.PENDING:
                continue

            if action.game_ref in blocked:
                report.skipped += 1
                continue
            if not force and action.next_attempt_at is not None and action.next_attempt_at > now:
                blocked.add(action.game_ref)
                report.skipped += 1
                continue

            target_id: Optional[str] = None
            if action.kind is not ActionKind.CREATE_GAME:
                target_id = action.target_id or self.log.resolve_target(action.game_ref)
                if target_id is None:
                    if self.log.has_pending_create(action.game_ref):
                        blocked.add(action.game_ref)
                        report.skipped += 1
                        continue
                    if not self._start(action, report):
                        blocked.add(action.game_ref)
                        continue
                    self._fail_terminal(action, "Game was never created on the server", report)
                    continue

            if not self._dispatch(action, target_id, report, now):
                blocked.add(action.game_ref)

    def _holds_game(self, action: QueuedAction) -> bool:
        """Whether a failed action keeps the rest of its game waiting.

        A failed create leaves nothing to apply the game's actions to, and an
        action that ran out of retries may still be retried by the user, so
        later writes must not overtake it. Rejected updates and events are
        skipped.
        """

        if action.kind is ActionKind.CREATE_GAME:
            return True
        return action.attempt_count >= self.policy.max_attempts

    def _start(self, action: QueuedAction, report: DrainReport) -> bool:
        # Persisted before the request goes out so a reload mid-call replays it.
        try:
            self.log.mark_status(action.id, ActionStatus.IN_FLIGHT)
        except QueueCapacityError as exc:
            report.errors.append(f"{action.kind.value} {action.id}: {exc}")
            return False
        return True

    def _dispatch(self, action: QueuedAction, target_id: Optional[str], report: DrainReport, now: float) -> bool:
        """Send one action; returns False when its game must stop for this pass."""

        if not self._start(action, report):
            return False
        try:
            result = self._send(action, target_id)
        except RetryableSyncError as exc:
            self._fail_retryable(action, str(exc), report, now)
            return False
        except TerminalSyncError as exc:
            self._fail_terminal(action, str(exc), report)
            return action.kind is not ActionKind.CREATE_GAME
        except Exception as exc:
            logger.exception("Unexpected error syncing %s action %s", action.kind.value, action.id)
            self._fail_retryable(action, f"Unexpected sync error: {exc}", report, now)
            return False

        server_id = str(result) if action.kind is ActionKind.CREATE_GAME and result else None
        rewritten = self.log.complete(action.id, server_id)
        if server_id is not None:
            logger.info("Game %s acknowledged as %s (%s queued action(s) retargeted)", action.game_ref, server_id, rewritten)
        report.synced += 1
        return True

    def _send(self, action: QueuedAction, target_id: Optional[str]) -> Any:
        key = action.id
        if action.kind is ActionKind.CREATE_GAME:
            return self.remote.create_game(action.payload, idempotency_key=key)

        assert target_id is not None
        if action.kind is ActionKind.UPDATE_GAME:
            return self.remote.update_game(target_id, action.payload, idempotency_key=key)
        if action.kind is ActionKind.DELETE_GAME:
            return self.remote.delete_game(target_id, idempotency_key=key)
        if action.kind is ActionKind.APPEND_EVENT:
            return self.remote.append_game_event(target_id, action.payload, idempotency_key=key)
        if action.kind is ActionKind.APPEND_QUARTER_SCORE:
            return self.remote.append_quarter_score(target_id, action.payload, idempotency_key=key)
        raise TerminalSyncError(f"Unsupported action kind {action.kind!r}")

    def _fail_retryable(self, action: QueuedAction, error: str, report: DrainReport, now: float) -> None:
        report.errors.append(f"{action.kind.value} {action.id}: {error}")
        attempts = action.attempt_count + 1
        if attempts >= self.policy.max_attempts:
            updated = self._settle(
                action,
                lambda: self.log.mark_status(action.id, ActionStatus.FAILED, error=error, count_attempt=True),
            )
            if updated is None:
                report.retried += 1
                return
            logger.warning(
                "Giving up on %s action %s after %s attempts: %s",
                action.kind.value,
                action.id,
                updated.attempt_count,
                error,
            )
            report.terminal += 1
            self._notify_terminal(updated)
            return

        delay = self.policy.delay(attempts)
        self._settle(action, lambda: self.log.record_retry(action.id, error, now + delay))
        report.retried += 1
        logger.warning(
            "Sync of %s action %s failed (attempt %s), retrying in %.0fs: %s",
            action.kind.value,
            action.id,
            attempts,
            delay,
            error,
        )

    def _fail_terminal(self, action: QueuedAction, error: str, report: DrainReport) -> None:
        report.errors.append(f"{action.kind.value} {action.id}: {error}")
        updated = self._settle(action, lambda: self.log.mark_status(action.id, ActionStatus.FAILED, error=error))
        if updated is None:
            report.retried += 1
            return
        report.terminal += 1
        logger.warning("Server rejected %s action %s: %s", action.kind.value, action.id, error)
        self._notify_terminal(updated)

    def _settle(self, action: QueuedAction, record: Callable[[], QueuedAction]) -> Optional[QueuedAction]:
        """Write an action's outcome; with no room for it, put the action back as pending."""

        try:
            return record()
        except QueueCapacityError:
            logger.warning("No room to record the outcome of %s action %s; leaving it pending", action.kind.value, action.id)
            self.log.mark_status(action.id, ActionStatus.PENDING)
            return None

    def _notify_terminal(self, action: QueuedAction) -> None:
        for listener in list(self._terminal_listeners):
            try:
                listener(action)
            except Exception:
                logger.exception("Terminal failure listener raised for action %s", action.id)

    def _remaining(self) -> int:
        return sum(
            1 for action in self.log.list() if action.status in (ActionStatus.PENDING, ActionStatus.IN_FLIGHT)
        )
