"""Tracker exceptions and per-operation result types."""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional


class TrackerError(Exception):
    """Base exception for all slot tracker errors."""
    pass


class DatabaseConnectionError(TrackerError):
    """Custom exception for database connection issues"""
    pass


class DatabaseOperationError(TrackerError):
    """Custom exception for database operation issues"""
    pass


class ContextEndedError(TrackerError):
    """A map session was mutated after it ended."""
    pass


# Outcome of a scheduled store operation. Failures are logged and dropped,
# never retried; the status makes that drop visible to callers.
STATUS_COMMITTED = "committed"
STATUS_ROLLED_BACK = "rolled_back"
STATUS_SKIPPED = "skipped"


@dataclass
class FlushResult:
    status: str
    opens: int = 0
    closes: int = 0
    map_sessions: int = 0
    active_sessions_topped_up: int = 0
    snapshot_players: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMMITTED


@dataclass
class AggregationResult:
    status: str
    date_utc: Optional[date] = None
    row: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMMITTED
