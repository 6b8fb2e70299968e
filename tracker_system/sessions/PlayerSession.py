from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass
class PlayerSession:
    """
    One row of player_sessions, keyed by steam_id.

    Reconnecting bumps session_count and clears disconnect_time; duration_seconds
    only ever grows. The upsert/close arithmetic lives in the flush transaction
    because it needs the stored row, not just the event.
    """

    steam_id: str
    connect_time: float
    disconnect_time: Optional[float] = None
    duration_seconds: int = 0
    session_count: int = 0

    @property
    def is_connected(self) -> bool:
        return self.disconnect_time is None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlayerSession":
        return cls(
            steam_id=str(row["steam_id"]),
            connect_time=row["connect_time"],
            disconnect_time=row["disconnect_time"],
            duration_seconds=int(row["duration_seconds"]),
            session_count=int(row["session_count"]),
        )


@dataclass(frozen=True)
class PendingOpen:
    steam_id: str
    connect_time: float


@dataclass(frozen=True)
class PendingClose:
    steam_id: str
    disconnect_time: float
