import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loggers.logger_setup import get_logger
from tracker_system.sessions.MapSession import OccupancyContext
from tracker_system.sessions.PlayerSession import PendingClose, PendingOpen

logger = get_logger("PendingWorkQueue")


@dataclass
class PendingWork:
    """Snapshot of the queue taken by drain(); owned by the flush that took it."""

    opens: List[PendingOpen] = field(default_factory=list)
    closes: List[PendingClose] = field(default_factory=list)
    map_sessions: List[OccupancyContext] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.opens or self.closes or self.map_sessions)

    def sizes(self) -> Dict[str, int]:
        return {
            "opens": len(self.opens),
            "closes": len(self.closes),
            "map_sessions": len(self.map_sessions),
        }


class PendingWorkQueue:
    """
    Not-yet-persisted player opens/closes and finished map sessions.

    Features:
    - One lock guards all three lists, held only for an append or the drain swap
    - drain() swaps in empty lists and hands back the previous contents
    - Optional per-list cap that drops the oldest entry on overflow
    """

    def __init__(self, max_pending: Optional[int] = None):
        """
        Args:
            max_pending: Maximum entries per list; None keeps everything
        """
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._work = PendingWork()

    def _append(self, items: List[Any], item: Any, kind: str):
        if self.max_pending is not None and len(items) >= self.max_pending:
            dropped = items.pop(0)
            logger.warning(
                "pending_queue_overflow_oldest_dropped",
                extra={
                    "event": "queue_overflow",
                    "kind": kind,
                    "dropped": repr(dropped),
                    "max_pending": self.max_pending
                }
            )
        items.append(item)

    def enqueue_open(self, steam_id: str, connect_time: float):
        with self._lock:
            self._append(self._work.opens, PendingOpen(steam_id, connect_time), "open")

    def enqueue_close(self, steam_id: str, disconnect_time: float):
        with self._lock:
            self._append(self._work.closes, PendingClose(steam_id, disconnect_time), "close")

    def enqueue_map_session(self, context: OccupancyContext):
        with self._lock:
            self._append(self._work.map_sessions, context, "map_session")
        logger.debug(
            f"MapSession queued for persistence - map={context.name}, "
            f"seen={context.total_players_seen}, play={context.total_playtime}s"
        )

    def drain(self) -> PendingWork:
        """Atomically take everything queued so far, leaving the queue empty."""
        with self._lock:
            work = self._work
            self._work = PendingWork()
        return work

    def sizes(self) -> Dict[str, int]:
        with self._lock:
            return self._work.sizes()

    def __len__(self) -> int:
        with self._lock:
            return len(self._work.opens) + len(self._work.closes) + len(self._work.map_sessions)
