import asyncio
from datetime import date
from typing import Any, Callable, Dict, Optional

from tabulate import tabulate

from activity_buffer.pendingbuffer import PendingWorkQueue
from activity_buffer.pooled_flush import PooledFlushExecutor
from database.TrackerDatabase import TrackerDatabase
from loggers.logger_setup import get_logger, log_context
from tracker_system.analytics.daily_analytics import DailyAnalyticsAggregator
from tracker_system.config import TrackerConfig
from tracker_system.errors import AggregationResult, FlushResult, TrackerError
from tracker_system.helpers.helpers import ctx, utc_now_ts
from tracker_system.host import HostServer, connected_players_count, current_map_name, server_slots
from tracker_system.sessions.MapSession import MapSession
from tracker_system.snapshots.debounce import EVENT_CONNECT, EVENT_DISCONNECT, DebouncedSnapshotScheduler

logger = get_logger("SlotTracker")


class SlotTracker:
    """
    Server-slot occupancy tracker.

    Host events arrive through the on_* handlers, which only touch memory and
    the pending queue. Everything that talks to the store runs as a task on
    the event loop: debounced snapshots, the pooled flush, the heartbeat and
    the daily rollup.
    """

    def __init__(
            self,
            host: HostServer,
            config: Optional[TrackerConfig] = None,
            store: Optional[TrackerDatabase] = None,
            clock: Callable[[], float] = utc_now_ts,
    ):
        """
        Args:
            host: Game server adapter (roster, capacity, current map)
            config: Settings; defaults to TrackerConfig()
            store: Explicit store; otherwise built from config.db_path when configured
            clock: Source of "now" as UTC epoch seconds
        """
        self.config = config or TrackerConfig()
        self.host = host
        self.clock = clock

        if store is None and self.config.is_store_configured():
            store = TrackerDatabase(self.config.db_path)
        self.store = store

        self.queue = PendingWorkQueue()
        self.session: Optional[MapSession] = None

        self.snapshots = DebouncedSnapshotScheduler(
            store=self.store,
            host=host,
            delay=self.config.debounce_delay,
            default_slots=self.config.default_slots,
            clock=clock,
        )
        self.flusher = PooledFlushExecutor(
            queue=self.queue,
            store=self.store,
            host=host,
            current_session=lambda: self.session,
            flush_interval=self.config.flush_interval,
            flush_timeout=self.config.flush_timeout,
            default_slots=self.config.default_slots,
            clock=clock,
        )
        self.analytics = DailyAnalyticsAggregator(
            store=self.store,
            run_at=self.config.aggregation_time,
            clock=clock,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background = set()

    # =============================================================================
    # SECTION: Lifecycle
    # =============================================================================

    async def initialize(self) -> bool:
        """
        Create the schema when a store is configured.

        A store that cannot be opened is logged and left in place: each later
        flush, snapshot and rollup retries it and fails on its own, while
        in-memory integration keeps running.

        Returns:
            True if the store is ready
        """
        if self.store is None:
            logger.warning("⚠️ Database is not configured. Skipping initialization.")
            return False
        try:
            await self.store.initialize()
        except TrackerError as e:
            logger.critical(f"💥 Failed to initialize database, continuing without it: {e}")
            return False
        return True

    def start(self):
        self._loop = asyncio.get_running_loop()
        self.flusher.start()
        self.analytics.start()
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="slot-tracker-heartbeat")
        logger.info(
            "slot_tracker_started",
            extra={
                "event": "tracker_start",
                "store": self.store is not None,
                "flush_interval": self.config.flush_interval,
                "heartbeat_interval": self.config.heartbeat_interval
            }
        )

    async def stop(self):
        """Cancel background work. Pending queue contents are not flushed."""
        with log_context(logger, "Slot tracker shutdown", level=20):
            task, self._heartbeat_task = self._heartbeat_task, None
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            await self.snapshots.cancel()
            await self.analytics.stop()
            await self.flusher.stop()

            for pending in list(self._background):
                pending.cancel()
            self._background.clear()
            self._loop = None

    # =============================================================================
    # SECTION: Host events
    # =============================================================================

    def on_participant_connect(self, identity: Any, now: Optional[float] = None):
        now = self._now(now)
        session = self.ensure_context_active("connect", now)
        if session is not None:
            session.on_player_connect(identity, now)

        self.queue.enqueue_open(str(identity), now)
        logger.debug(f"Player connect {ctx(steam_id=identity, map_name=session.map_name if session else None)}")
        self._submit(lambda: self.snapshots.schedule_write(EVENT_CONNECT))

    def on_participant_disconnect(self, identity: Any, reason: int = 0, now: Optional[float] = None):
        now = self._now(now)
        session = self.ensure_context_active("disconnect", now)
        if session is not None:
            session.on_player_disconnect(identity, now)

        self.queue.enqueue_close(str(identity), now)

        if reason in self.config.snapshot_skip_reasons:
            logger.info(f"Ban/kick disconnect, snapshot skipped {ctx(steam_id=identity, extra=f'reason={reason}')}")
            return
        self._submit(lambda: self.snapshots.schedule_write(EVENT_DISCONNECT))

    def on_context_start(self, name: str, now: Optional[float] = None):
        """Close the running map session (if any) and begin a new one for name."""
        now = self._now(now)
        self._end_current(now)
        self._begin(name, now)

    def on_context_end(self, now: Optional[float] = None):
        self._end_current(self._now(now))

    # =============================================================================
    # SECTION: Map session bookkeeping
    # =============================================================================

    def ensure_context_active(self, reason: str, now: Optional[float] = None) -> Optional[MapSession]:
        """
        Return the running map session, starting one from the host's map name
        when none is active. An ended session is never resumed.
        """
        if self.session is not None and self.session.is_active:
            return self.session

        name = current_map_name(self.host)
        if not name:
            logger.debug(f"No active map session and no map name available ({reason})")
            return None

        logger.info(f"Starting map session lazily for '{name}' ({reason})")
        return self._begin(name, self._now(now))

    def _begin(self, name: str, now: float) -> MapSession:
        self.session = MapSession.started(name, now)
        logger.info(f"🗺️ Map session started {ctx(map_name=name)}")
        if self.store is not None:
            record = self.session.record
            self._submit(lambda: self._spawn(self.flusher.persist_new_session(record)))
        return self.session

    def _end_current(self, now: float):
        if self.session is None or not self.session.is_active:
            return
        self.session.end(now)
        self.queue.enqueue_map_session(self.session.record)
        logger.info(
            f"🏁 Map session ended {ctx(map_name=self.session.map_name)} "
            f"seen={self.session.record.total_players_seen} play={self.session.record.total_playtime}s"
        )

    # =============================================================================
    # SECTION: Periodic and on-demand work
    # =============================================================================

    def heartbeat(self, now: Optional[float] = None) -> Optional[MapSession]:
        """Make sure a map session is running and bring its integral up to now."""
        now = self._now(now)
        session = self.ensure_context_active("heartbeat", now)
        if session is not None:
            session.tick(now)

        if self.config.debug_mode:
            status = ctx(
                map_name=session.map_name if session else None,
                players=connected_players_count(self.host),
                slots=server_slots(self.host, self.config.default_slots),
            )
            logger.info(f"💓 Heartbeat {status}")
        return session

    async def _heartbeat_loop(self):
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval)
                try:
                    self.heartbeat()
                except Exception as e:
                    logger.error(f"❌ Heartbeat error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug("Heartbeat loop cancelled")
            raise

    async def force_snapshot(self) -> Dict[str, Any]:
        """Write a snapshot of the live roster now and return what was recorded."""
        players = connected_players_count(self.host)
        slots = server_slots(self.host, self.config.default_slots)
        stats = {
            "map": self.session.map_name if self.session and self.session.is_active else None,
            "players": players,
            "slots": slots,
            "in_session": self.session.current_active_players if self.session else 0,
            "saved": False,
        }

        if self.store is not None:
            try:
                await self.store.write_snapshot(self.clock(), players, slots)
                stats["saved"] = True
            except Exception as e:
                logger.error(f"❌ Error saving stats: {e}", exc_info=True)

        table = tabulate(list(stats.items()), headers=["Stat", "Value"], tablefmt="fancy_grid")
        logger.info(f"📊 Current server stats:\n{table}")
        return stats

    async def flush_now(self) -> FlushResult:
        return await self.flusher.flush()

    async def generate_daily_analytics(self, day: Optional[date] = None) -> AggregationResult:
        """Recompute one UTC day; yesterday when no date is given."""
        if day is None:
            return await self.analytics.recompute_yesterday()
        return await self.analytics.recompute(day)

    # =============================================================================
    # SECTION: Loop plumbing
    # =============================================================================

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _submit(self, callback: Callable[[], Any]):
        """Run callback on the tracker's loop, from the loop thread or any other."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            callback()
        elif self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(callback)
        else:
            logger.debug("No running event loop; store work for this event skipped")

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
