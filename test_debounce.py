"""
Debounced snapshot scheduler tests.
"""

import asyncio

from tracker_system.snapshots.debounce import EVENT_CONNECT, EVENT_DISCONNECT, DebouncedSnapshotScheduler


def test_burst_produces_single_write_with_last_kind(store, host, clock):
    async def scenario():
        host.roster = {"A", "B", "C"}
        scheduler = DebouncedSnapshotScheduler(store, host, delay=0.02, clock=clock)

        assert scheduler.schedule_write(EVENT_CONNECT) is True
        assert scheduler.schedule_write(EVENT_CONNECT) is False
        assert scheduler.schedule_write(EVENT_DISCONNECT) is False

        await asyncio.sleep(0.1)
        return await store.list_snapshots(), scheduler

    snapshots, scheduler = asyncio.run(scenario())

    assert len(snapshots) == 1
    # Leaving player is still on the roster at event time
    assert snapshots[0]["player_count"] == 2
    assert snapshots[0]["server_slots"] == 12
    assert scheduler.write_scheduled is False
    assert scheduler.writes == 1


def test_new_burst_after_write_schedules_again(store, host, clock):
    async def scenario():
        host.roster = {"A"}
        scheduler = DebouncedSnapshotScheduler(store, host, delay=0.01, clock=clock)
        scheduler.schedule_write(EVENT_CONNECT)
        await asyncio.sleep(0.05)
        scheduler.schedule_write(EVENT_CONNECT)
        await asyncio.sleep(0.05)
        return await store.list_snapshots()

    snapshots = asyncio.run(scenario())
    assert [s["player_count"] for s in snapshots] == [1, 1]


def test_disconnect_adjustment_floors_at_zero(store, host, clock):
    async def scenario():
        scheduler = DebouncedSnapshotScheduler(store, host, delay=0, clock=clock)
        scheduler.last_event_kind = EVENT_DISCONNECT
        return await scheduler.write_now()

    assert asyncio.run(scenario()) == 0


def test_without_store_nothing_is_written(host, clock):
    async def scenario():
        scheduler = DebouncedSnapshotScheduler(None, host, delay=0.01, clock=clock)
        scheduler.schedule_write(EVENT_CONNECT)
        await asyncio.sleep(0.05)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert scheduler.writes == 0
    assert scheduler.write_scheduled is False


def test_write_failure_clears_flag(host, clock):
    class BrokenStore:
        async def write_snapshot(self, *args):
            raise RuntimeError("disk full")

    async def scenario():
        scheduler = DebouncedSnapshotScheduler(BrokenStore(), host, delay=0.01, clock=clock)
        scheduler.schedule_write(EVENT_CONNECT)
        await asyncio.sleep(0.05)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert scheduler.write_scheduled is False
    assert scheduler.writes == 0
