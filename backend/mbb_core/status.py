from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from .action_log import ActionLog
from .actions import ActionStatus
from .connectivity import ConnectivityMonitor


@dataclass
class SyncStatus:
    online: bool
    pending_count: int
    has_terminal_failures: bool
    terminal_action_ids: List[str] = field(default_factory=list)
    capacity_warning: bool = False
    data_loss_warning: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StatusReporter:
    """Read-only view of connectivity and queue depth for the scoreboard UI."""

    def __init__(self, log: ActionLog, connectivity: ConnectivityMonitor) -> None:
        self._log = log
        self._connectivity = connectivity

    def get_status(self) -> SyncStatus:
        actions = self._log.list()
        pending = [a for a in actions if a.status in (ActionStatus.PENDING, ActionStatus.IN_FLIGHT)]
        terminal = [a.id for a in actions if a.status is ActionStatus.FAILED]
        return SyncStatus(
            online=self._connectivity.online,
            pending_count=len(pending),
            has_terminal_failures=bool(terminal),
            terminal_action_ids=terminal,
            capacity_warning=self._log.capacity_warning,
            data_loss_warning=self._log.data_loss_warning,
        )

    def describe(self) -> str:
        status = self.get_status()
        parts = ["Online" if status.online else "Offline"]
        if status.pending_count:
            noun = "item" if status.pending_count == 1 else "items"
            parts.append(f"{status.pending_count} {noun} pending sync")
        if status.has_terminal_failures:
            count = len(status.terminal_action_ids)
            parts.append(f"{count} need{'s' if count == 1 else ''} attention")
        return " - ".join(parts)
