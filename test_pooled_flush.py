"""
Pooled flush: transactional apply of queued work, id capture and rollback.
"""

import asyncio

from activity_buffer.pendingbuffer import PendingWorkQueue
from activity_buffer.pooled_flush import PooledFlushExecutor
from database.TrackerDatabase import TrackerDatabase
from tracker_system.errors import STATUS_COMMITTED, STATUS_ROLLED_BACK, STATUS_SKIPPED
from tracker_system.sessions.MapSession import MapSession, OccupancyContext


class FailingSnapshotStore(TrackerDatabase):
    """Fails on the last statement of a flush."""

    async def insert_snapshot(self, db, timestamp, player_count, server_slots):
        raise RuntimeError("snapshot insert exploded")


def make_executor(store, host, clock, session=None, queue=None):
    holder = {"session": session}
    executor = PooledFlushExecutor(
        queue=queue or PendingWorkQueue(),
        store=store,
        host=host,
        current_session=lambda: holder["session"],
        flush_interval=60,
        flush_timeout=5.0,
        clock=clock,
    )
    return executor, holder


def test_player_sessions_are_upserted_closed_and_topped_up(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        executor.queue.enqueue_open("A", 100.0)
        executor.queue.enqueue_open("B", 100.0)
        executor.queue.enqueue_close("A", 160.5)
        first = await executor.flush()

        a1 = await store.get_player_session("A")
        b1 = await store.get_player_session("B")

        executor.queue.enqueue_open("A", 300.0)
        second = await executor.flush()

        a2 = await store.get_player_session("A")
        b2 = await store.get_player_session("B")
        return first, second, a1, b1, a2, b2

    first, second, a1, b1, a2, b2 = asyncio.run(scenario())

    assert first.status == STATUS_COMMITTED
    assert (first.opens, first.closes) == (2, 1)
    assert first.active_sessions_topped_up == 1

    assert a1.disconnect_time == 160.5
    assert a1.duration_seconds == 60
    assert a1.session_count == 1
    assert b1.is_connected
    assert b1.duration_seconds == 60

    assert second.ok
    assert a2.is_connected
    assert a2.connect_time == 300.0
    assert a2.session_count == 2
    assert a2.duration_seconds == 120
    assert b2.duration_seconds == 120


def test_close_without_open_row_is_noop(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        executor.queue.enqueue_close("nobody", 10.0)
        result = await executor.flush()
        return result, await store.get_player_session("nobody")

    result, row = asyncio.run(scenario())
    assert result.ok
    assert row is None


def test_repeated_close_does_not_add_duration(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        executor.queue.enqueue_open("A", 100.0)
        executor.queue.enqueue_close("A", 160.0)
        await executor.flush()

        executor.queue.enqueue_close("A", 400.0)
        second = await executor.flush()
        return second, await store.get_player_session("A")

    second, row = asyncio.run(scenario())
    assert second.ok
    assert row.disconnect_time == 160.0
    assert row.duration_seconds == 60


def test_active_session_id_captured_after_commit(store, host, clock):
    async def scenario():
        host.roster = {"A"}
        session = MapSession.started("de_dust2", clock() - 30)
        session.on_player_connect("A", clock() - 30)
        executor, _ = make_executor(store, host, clock, session=session)

        await executor.flush()
        first_id = session.record.id
        clock.advance(60)
        await executor.flush()
        return session, first_id, await store.list_map_sessions(), await store.list_snapshots()

    session, first_id, rows, snapshots = asyncio.run(scenario())

    assert first_id is not None
    assert session.record.id == first_id
    assert len(rows) == 1
    assert rows[0].total_playtime == 90
    assert rows[0].end_time is None
    assert [s["player_count"] for s in snapshots] == [1, 1]


def test_completed_contexts_inserted_or_updated(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        fresh = OccupancyContext(name="de_nuke", start_time=0.0, end_time=100.0, total_playtime=50)
        executor.queue.enqueue_map_session(fresh)
        await executor.flush()

        fresh.total_playtime = 75
        executor.queue.enqueue_map_session(fresh)
        await executor.flush()
        return fresh, await store.list_map_sessions()

    fresh, rows = asyncio.run(scenario())
    assert fresh.id is not None
    assert len(rows) == 1
    assert rows[0].id == fresh.id
    assert rows[0].total_playtime == 75


def test_failure_rolls_back_everything(tmp_path, host, clock):
    failing = FailingSnapshotStore(str(tmp_path / "slots.db"))

    async def scenario():
        session = MapSession.started("de_inferno", clock() - 10)
        executor, _ = make_executor(failing, host, clock, session=session)
        executor.queue.enqueue_open("A", 1.0)
        executor.queue.enqueue_map_session(OccupancyContext(name="de_nuke", start_time=0.0, end_time=1.0))

        result = await executor.flush()
        return (
            result,
            executor,
            session,
            await failing.get_player_session("A"),
            await failing.list_map_sessions(),
            await failing.list_snapshots(),
        )

    result, executor, session, player, maps, snapshots = asyncio.run(scenario())

    assert result.status == STATUS_ROLLED_BACK
    assert "exploded" in result.error
    assert result.opens == 1
    assert player is None
    assert maps == []
    assert snapshots == []
    assert session.record.id is None
    assert len(executor.queue) == 0
    assert executor.last_result is result


def test_without_store_work_is_dropped(host, clock):
    async def scenario():
        executor, _ = make_executor(None, host, clock)
        executor.queue.enqueue_open("A", 1.0)
        return executor, await executor.flush()

    executor, result = asyncio.run(scenario())
    assert result.status == STATUS_SKIPPED
    assert result.opens == 1
    assert len(executor.queue) == 0


def test_flush_in_flight_skips_second_call(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        async with executor._flush_lock:
            return await executor.flush()

    assert asyncio.run(scenario()).status == STATUS_SKIPPED


def test_new_session_saved_once(store, host, clock):
    async def scenario():
        session = MapSession.started("de_mirage", clock())
        executor, _ = make_executor(store, host, clock, session=session)
        saved_id = await executor.persist_new_session(session.record)
        await executor.flush()
        again = await executor.persist_new_session(session.record)
        return saved_id, again, await store.list_map_sessions()

    saved_id, again, rows = asyncio.run(scenario())
    assert saved_id is not None
    assert again == saved_id
    assert [r.id for r in rows] == [saved_id]


def test_periodic_loop_starts_and_stops(store, host, clock):
    async def scenario():
        executor, _ = make_executor(store, host, clock)
        executor.flush_interval = 0.01
        executor.start()
        await asyncio.sleep(0.2)
        running = executor.is_running
        await executor.stop()
        return running, executor.is_running, await store.list_snapshots()

    running, after, snapshots = asyncio.run(scenario())
    assert running is True
    assert after is False
    assert len(snapshots) >= 1


class SlowSaveStore(TrackerDatabase):
    """Map session save that takes a while."""

    async def save_map_session(self, context):
        await asyncio.sleep(0.1)
        return await super().save_map_session(context)


class SlowSnapshotStore(TrackerDatabase):
    """Snapshot insert that outlives the flush timeout."""

    async def insert_snapshot(self, db, timestamp, player_count, server_slots):
        await asyncio.sleep(1.0)
        await super().insert_snapshot(db, timestamp, player_count, server_slots)


def test_flush_during_new_session_save_still_commits(tmp_path, host, clock):
    slow = SlowSaveStore(str(tmp_path / "slots.db"))

    async def scenario():
        await slow.initialize()
        host.roster = {"A"}
        session = MapSession.started("de_overpass", clock())
        executor, _ = make_executor(slow, host, clock, session=session)
        executor.queue.enqueue_open("A", clock())

        save = asyncio.create_task(executor.persist_new_session(session.record))
        await asyncio.sleep(0.01)
        result = await executor.flush()
        await save
        return (
            result,
            session,
            executor,
            await slow.get_player_session("A"),
            await slow.list_map_sessions(),
            await slow.list_snapshots(),
        )

    result, session, executor, player, maps, snapshots = asyncio.run(scenario())

    assert result.status == STATUS_COMMITTED
    assert player.duration_seconds == 60
    assert [m.id for m in maps] == [session.record.id]
    assert len(snapshots) == 1
    assert len(executor.queue) == 0


def test_flush_exceeding_timeout_rolls_back(tmp_path, host, clock):
    slow = SlowSnapshotStore(str(tmp_path / "slots.db"))

    async def scenario():
        session = MapSession.started("de_cache", clock())
        executor, _ = make_executor(slow, host, clock, session=session)
        executor.flush_timeout = 0.05
        executor.queue.enqueue_open("A", 1.0)

        result = await executor.flush()
        return (
            result,
            session,
            executor,
            await slow.get_player_session("A"),
            await slow.list_map_sessions(),
            await slow.list_snapshots(),
        )

    result, session, executor, player, maps, snapshots = asyncio.run(scenario())

    assert result.status == STATUS_ROLLED_BACK
    assert result.error
    assert player is None
    assert maps == []
    assert snapshots == []
    assert session.record.id is None
    assert len(executor.queue) == 0
