import asyncio
from typing import Callable, Optional

from database.TrackerDatabase import TrackerDatabase
from loggers.logger_setup import get_logger
from tracker_system.helpers.helpers import ctx, utc_now_ts
from tracker_system.host import HostServer, connected_players_count, server_slots

logger = get_logger("DebouncedSnapshot")

EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"


class DebouncedSnapshotScheduler:
    """
    Coalesces bursts of connect/disconnect events into one delayed snapshot.

    The first event of a burst arms a single delayed write; later events only
    update the remembered event kind. When the write fires, the roster count is
    lowered by one if the last event was a disconnect, since the leaving player
    is still listed by the server at event time.
    """

    def __init__(
            self,
            store: Optional[TrackerDatabase],
            host: HostServer,
            delay: float = 2.0,
            default_slots: int = 10,
            clock: Callable[[], float] = utc_now_ts,
    ):
        self.store = store
        self.host = host
        self.delay = delay
        self.default_slots = default_slots
        self.clock = clock

        self.last_event_kind = EVENT_CONNECT
        self.write_scheduled = False
        self.writes = 0
        self._task: Optional[asyncio.Task] = None

    def schedule_write(self, event_kind: str) -> bool:
        """
        Remember the event kind and arm the delayed write if none is pending.

        Returns:
            True if this call armed a new write, False if it was coalesced
        """
        self.last_event_kind = event_kind
        if self.write_scheduled:
            logger.debug("Write already scheduled, debouncing additional events.")
            return False

        self.write_scheduled = True
        self._task = asyncio.get_running_loop().create_task(
            self._delayed_write(), name="slot-tracker-debounce"
        )
        return True

    async def _delayed_write(self):
        try:
            await asyncio.sleep(self.delay)
            await self.write_now()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Error during debounced write: {e}", exc_info=True)
        finally:
            self.write_scheduled = False

    async def write_now(self) -> Optional[int]:
        """Count the roster, adjust for the last event and append one snapshot."""
        current = connected_players_count(self.host)
        if self.last_event_kind == EVENT_DISCONNECT:
            current = max(0, current - 1)

        if self.store is None:
            logger.debug("Snapshot skipped: store not configured")
            return None

        slots = server_slots(self.host, self.default_slots)
        await self.store.write_snapshot(self.clock(), current, slots)
        self.writes += 1
        logger.info(f"📸 Snapshot written {ctx(players=current, slots=slots)}")
        return current

    async def cancel(self):
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.write_scheduled = False
