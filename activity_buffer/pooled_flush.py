import asyncio
from typing import Callable, Optional

from database.TrackerDatabase import TrackerDatabase
from loggers.logger_setup import get_logger, log_performance
from activity_buffer.pendingbuffer import PendingWork, PendingWorkQueue
from tracker_system.errors import FlushResult, STATUS_COMMITTED, STATUS_ROLLED_BACK, STATUS_SKIPPED
from tracker_system.helpers.helpers import utc_now_ts
from tracker_system.host import HostServer, connected_players_count, server_slots
from tracker_system.sessions.MapSession import MapSession, OccupancyContext

logger = get_logger("PooledFlush")


class PooledFlushExecutor:
    """
    Periodically drains the pending queue into the store inside one transaction.

    Order inside a flush: player opens, player closes, finished map sessions,
    open-session duration top-up, active map session, one snapshot. Any failure
    rolls the whole transaction back. The drained entries are not re-queued:
    a failed flush loses them and the next cycle starts from current state.
    """

    def __init__(
            self,
            queue: PendingWorkQueue,
            store: Optional[TrackerDatabase],
            host: HostServer,
            current_session: Callable[[], Optional[MapSession]],
            flush_interval: int = 60,
            flush_timeout: float = 30.0,
            default_slots: int = 10,
            clock: Callable[[], float] = utc_now_ts,
    ):
        """
        Args:
            queue: Shared pending work queue
            store: Database to flush into; None disables persistence
            host: Game server used for the live player count and slots
            current_session: Returns the active map session, if any
            flush_interval: Seconds between flushes, also the open-session top-up
            flush_timeout: Upper bound in seconds for one flush transaction
            default_slots: Slots reported when the host cannot answer
            clock: Source of "now" as UTC epoch seconds
        """
        self.queue = queue
        self.store = store
        self.host = host
        self.current_session = current_session
        self.flush_interval = flush_interval
        self.flush_timeout = flush_timeout
        self.default_slots = default_slots
        self.clock = clock

        self._flush_lock = asyncio.Lock()
        self._id_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._is_running = False
        self.last_result: Optional[FlushResult] = None

    @log_performance("pooled_flush")
    async def flush(self) -> FlushResult:
        """Run one flush cycle. Never raises for store failures; see the returned status."""
        if self._flush_lock.locked():
            logger.warning(
                "pooled_flush_skipped_in_flight",
                extra={"event": "flush_skipped", "reason": "flush already in progress"}
            )
            return FlushResult(status=STATUS_SKIPPED, error="flush already in progress")

        async with self._flush_lock:
            work = self.queue.drain()
            sizes = work.sizes()

            if self.store is None:
                if not work.is_empty():
                    logger.warning(
                        "pooled_flush_no_store_dropped",
                        extra={"event": "flush_skipped", "reason": "store not configured", **sizes}
                    )
                self.last_result = FlushResult(status=STATUS_SKIPPED, error="store not configured", **sizes)
                return self.last_result

            try:
                self.last_result = await asyncio.wait_for(self._apply(work), timeout=self.flush_timeout)
            except Exception as e:
                logger.error(
                    "pooled_flush_rolled_back",
                    extra={
                        "event": "flush_error",
                        **sizes,
                        "error": str(e) or type(e).__name__,
                        "error_type": type(e).__name__
                    },
                    exc_info=True
                )
                self.last_result = FlushResult(
                    status=STATUS_ROLLED_BACK, error=str(e) or type(e).__name__, **sizes
                )
            return self.last_result

    async def _apply(self, work: PendingWork) -> FlushResult:
        # Map-row inserts and id assignment are serialized with persist_new_session
        async with self._id_lock:
            return await self._write(work)

    async def _write(self, work: PendingWork) -> FlushResult:
        now = self.clock()
        new_ids = []

        async with self.store.transaction() as db:
            for pending in work.opens:
                await self.store.open_player_session(db, pending.steam_id, pending.connect_time)
                logger.debug(f"Player connect processed: SteamID={pending.steam_id}, Time={pending.connect_time}")

            for pending in work.closes:
                touched = await self.store.close_player_session(db, pending.steam_id, pending.disconnect_time)
                if not touched:
                    logger.debug(f"No open session to close for SteamID={pending.steam_id}")

            for context in work.map_sessions:
                if context.id is not None:
                    await self.store.update_map_session(db, context)
                else:
                    new_ids.append((context, await self.store.insert_map_session(db, context)))

            topped_up = await self.store.top_up_open_sessions(db, self.flush_interval)

            session = self.current_session()
            if session is not None and session.is_active:
                session.tick(now)
                if session.record.id is not None:
                    await self.store.update_map_session(db, session.record)
                else:
                    new_ids.append((session.record, await self.store.insert_map_session(db, session.record)))

            players = connected_players_count(self.host)
            slots = server_slots(self.host, self.default_slots)
            await self.store.insert_snapshot(db, now, players, slots)

        # Only a committed insert may hand out its id
        for context, context_id in new_ids:
            context.id = context_id

        result = FlushResult(
            status=STATUS_COMMITTED,
            opens=len(work.opens),
            closes=len(work.closes),
            map_sessions=len(work.map_sessions),
            active_sessions_topped_up=topped_up,
            snapshot_players=players,
        )
        logger.info(
            "pooled_flush_committed",
            extra={
                "event": "flush_success",
                "opens": result.opens,
                "closes": result.closes,
                "map_sessions": result.map_sessions,
                "topped_up": topped_up,
                "players": players,
                "slots": slots
            }
        )
        return result

    async def persist_new_session(self, context: OccupancyContext) -> Optional[int]:
        """
        Save a freshly started map session right away and capture its id.

        Shares the id lock with the flush transaction so the same context is
        never inserted twice. A flush that starts meanwhile waits for the save
        instead of skipping its cycle. Failures are logged; the next flush inserts it instead.
        """
        if self.store is None:
            return None

        async with self._id_lock:
            if context.id is not None:
                return context.id
            try:
                context.id = await self.store.save_map_session(context)
            except Exception as e:
                logger.error(f"❌ Error saving new map session '{context.name}': {e}", exc_info=True)
                return None

        logger.info(
            "map_session_saved",
            extra={"event": "map_session_insert", "map": context.name, "map_session_id": context.id}
        )
        return context.id

    async def periodic_flush(self):
        """Background loop: flush every flush_interval seconds until stopped."""
        self._is_running = True
        logger.info(
            "periodic_flush_started",
            extra={"event": "periodic_flush_start", "flush_interval": self.flush_interval}
        )

        try:
            while self._is_running:
                await asyncio.sleep(self.flush_interval)
                try:
                    await self.flush()
                except Exception as e:
                    # Keep the loop alive no matter what a single cycle does
                    logger.error(f"❌ FlushPooledWork error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("periodic_flush_cancelled", extra={"event": "periodic_flush_cancelled"})
            raise
        finally:
            self._is_running = False

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.periodic_flush(), name="slot-tracker-flush")

    async def stop(self) -> None:
        """Cancel the loop. Whatever is still queued is not flushed."""
        self._is_running = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        remaining = self.queue.sizes()
        if any(remaining.values()):
            logger.warning(
                "pending_work_discarded_on_stop",
                extra={"event": "flush_stop", **remaining}
            )

    @property
    def is_running(self) -> bool:
        return self._is_running and self._task is not None and not self._task.done()
