"""
Daily rollups of server occupancy.

Recomputes one UTC day from the raw tables and upserts it into
server_analytics. Safe to run any number of times for the same date:
nothing accumulates, the row is simply rewritten.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from tabulate import tabulate

from database.TrackerDatabase import TrackerDatabase
from loggers.logger_setup import get_logger, log_performance
from tracker_system.errors import AggregationResult, STATUS_COMMITTED, STATUS_ROLLED_BACK, STATUS_SKIPPED
from tracker_system.helpers.helpers import seconds_until, utc_day_window, utc_now_ts

logger = get_logger("DailyAnalytics")


def pick_best_map(per_map: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Map with the greatest total playtime.

    Only positive totals qualify. Exact ties go to the lexicographically
    smallest map name, independent of query order.
    """
    best = None
    for entry in per_map:
        if entry["total_playtime"] <= 0:
            continue
        if best is None:
            best = entry
            continue
        if entry["total_playtime"] > best["total_playtime"] or (
                entry["total_playtime"] == best["total_playtime"] and entry["map_name"] < best["map_name"]):
            best = entry
    return best


class DailyAnalyticsAggregator:
    """Builds server_analytics rows and runs the once-a-day schedule."""

    def __init__(
            self,
            store: Optional[TrackerDatabase],
            run_at: Tuple[int, int] = (0, 5),
            clock: Callable[[], float] = utc_now_ts,
    ):
        """
        Args:
            store: Database holding the raw tables; None disables aggregation
            run_at: UTC (hour, minute) at which yesterday gets rolled up
            clock: Source of "now" as UTC epoch seconds
        """
        self.store = store
        self.run_at = run_at
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    async def build_row(self, day: date) -> Dict[str, Any]:
        window_start, window_end = utc_day_window(day)

        samples = await self.store.aggregate_snapshots(window_start, window_end)
        sessions = await self.store.aggregate_player_sessions(window_start, window_end)
        per_map = await self.store.aggregate_map_sessions(window_start, window_end)

        best = pick_best_map(per_map)
        avg_session = sessions["avg_seconds"]

        # Daily averages round half to even; only the occupancy integral rounds half away
        return {
            "date_utc": day.isoformat(),
            "max_players": samples["max_players"],
            "avg_players": samples["avg_players"],
            "records_count": samples["records_count"],
            "total_player_session_time": sessions["total_seconds"],
            "avg_session_seconds": round(avg_session) if avg_session is not None else 0,
            "best_map": best["map_name"] if best else None,
            "best_map_total_playtime": best["total_playtime"] if best else 0,
            "best_map_avg_length_seconds": round(best["avg_length_seconds"]) if best else 0,
        }

    @log_performance("daily_analytics_recompute")
    async def recompute(self, day: date) -> AggregationResult:
        """Recompute and upsert the rollup for one UTC date."""
        if self.store is None:
            logger.info(f"Skipping daily aggregation for {day}: store not configured")
            return AggregationResult(status=STATUS_SKIPPED, date_utc=day, error="store not configured")

        try:
            row = await self.build_row(day)
            await self.store.upsert_daily_analytics(row)
        except Exception as e:
            logger.error(f"❌ Daily aggregation failed for {day}: {e}", exc_info=True)
            return AggregationResult(status=STATUS_ROLLED_BACK, date_utc=day, error=str(e))

        table = tabulate(sorted(row.items()), headers=["Field", "Value"], tablefmt="fancy_grid")
        logger.info(f"📈 Daily analytics for {day}:\n{table}")
        return AggregationResult(status=STATUS_COMMITTED, date_utc=day, row=row)

    async def recompute_today(self) -> AggregationResult:
        today = datetime.fromtimestamp(self.clock(), tz=timezone.utc).date()
        return await self.recompute(today)

    async def recompute_yesterday(self) -> AggregationResult:
        yesterday = datetime.fromtimestamp(self.clock(), tz=timezone.utc).date() - timedelta(days=1)
        return await self.recompute(yesterday)

    async def daily_loop(self):
        """Roll up yesterday every day at run_at (UTC)."""
        hour, minute = self.run_at
        try:
            while True:
                delay = seconds_until(hour, minute, self.clock())
                logger.info(f"Scheduling daily aggregation in {delay:.0f} seconds.")
                await asyncio.sleep(delay)
                try:
                    await self.recompute_yesterday()
                except Exception as e:
                    logger.error(f"❌ Daily aggregation loop error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Daily aggregation schedule cancelled")
            raise

    def start(self) -> None:
        if self.store is None:
            logger.info("Daily aggregation not scheduled: store not configured")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.daily_loop(), name="slot-tracker-daily")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
