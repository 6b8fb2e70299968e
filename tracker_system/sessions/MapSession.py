from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from loggers.logger_setup import get_logger

from tracker_system.errors import ContextEndedError
from tracker_system.helpers.helpers import round_half_away

logger = get_logger("MapSession")


@dataclass
class OccupancyContext:
    """
    Persisted summary of one map session.

    Plain data only: this is what gets written to the map_sessions table.
    """

    name: str
    start_time: float
    end_time: Optional[float] = None
    total_players_seen: int = 0
    total_playtime: int = 0  # player-seconds
    id: Optional[int] = None  # assigned by the store on first persist

    def as_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "map_name": self.name,
            "map_start": self.start_time,
            "map_end": self.end_time,
            "total_players_seen": self.total_players_seen,
            "total_playtime": self.total_playtime,
        }


@dataclass
class MapSession:
    """
    Running occupancy integral for one map.

    Wraps an OccupancyContext with runtime-only state (active players, players
    seen, last update time). Every count change and every tick goes through
    _update_integral so no interval is skipped or counted twice.
    """

    record: OccupancyContext = field(default_factory=lambda: OccupancyContext(name="", start_time=0.0))

    _active_players: Set[Any] = field(default_factory=set, init=False, repr=False)
    _players_seen: Set[Any] = field(default_factory=set, init=False, repr=False)
    _last_update: Optional[float] = field(default=None, init=False, repr=False)

    @classmethod
    def started(cls, map_name: str, now: float) -> "MapSession":
        session = cls()
        session.start(map_name, now)
        return session

    @property
    def is_active(self) -> bool:
        return self.record.end_time is None

    @property
    def current_active_players(self) -> int:
        return len(self._active_players)

    @property
    def map_name(self) -> str:
        return self.record.name

    def start(self, map_name: str, now: float) -> None:
        """Reset all state and begin integrating with nobody active."""
        self.record = OccupancyContext(name=map_name, start_time=now)
        self._active_players.clear()
        self._players_seen.clear()
        self._last_update = now
        logger.debug(f"🗺️ MapSession started: {map_name} @ {now}")

    def end(self, now: float) -> None:
        """Finalize the integral and close the session."""
        self._ensure_active("end")
        self._update_integral(now)
        self.record.end_time = now
        logger.debug(
            f"🏁 MapSession ended: {self.record.name} "
            f"seen={self.record.total_players_seen} play={self.record.total_playtime}s"
        )

    def on_player_connect(self, steam_id: Any, now: float) -> None:
        self._ensure_active("connect")
        self._update_integral(now)
        self._active_players.add(steam_id)
        if steam_id not in self._players_seen:
            self._players_seen.add(steam_id)
            self.record.total_players_seen = len(self._players_seen)

    def on_player_disconnect(self, steam_id: Any, now: float) -> None:
        self._ensure_active("disconnect")
        self._update_integral(now)
        # Unknown or already-removed players are ignored
        self._active_players.discard(steam_id)

    def tick(self, now: float) -> None:
        self._ensure_active("tick")
        self._update_integral(now)

    def _update_integral(self, now: float) -> None:
        if self._last_update is not None:
            elapsed = now - self._last_update
            if elapsed > 0:
                self.record.total_playtime += round_half_away(elapsed * len(self._active_players))
        self._last_update = now

    def _ensure_active(self, operation: str) -> None:
        if not self.is_active:
            raise ContextEndedError(
                f"MapSession '{self.record.name}' already ended; cannot apply {operation}"
            )

    def __str__(self) -> str:
        state = "active" if self.is_active else "ended"
        return (f"MapSession({self.record.name}): {state}, "
                f"{self.current_active_players} active, "
                f"seen={self.record.total_players_seen}, play={self.record.total_playtime}s")
