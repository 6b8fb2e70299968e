import sqlite3
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from loggers.logger_setup import get_logger
from tracker_system.errors import DatabaseConnectionError, DatabaseOperationError
from tracker_system.sessions.MapSession import OccupancyContext
from tracker_system.sessions.PlayerSession import PlayerSession

logger = get_logger("TrackerDatabase")


# =============================================================================
# SECTION: Schema
# =============================================================================

SCHEMA_STATEMENTS = [
    # Raw occupancy snapshots
    """
    CREATE TABLE IF NOT EXISTS server_stats (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp REAL NOT NULL,
        player_count INTEGER NOT NULL,
        server_slots INTEGER NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_server_stats_timestamp
    ON server_stats (timestamp)
    """,
    # Per-player sessions, one row per steam_id
    """
    CREATE TABLE IF NOT EXISTS player_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        steam_id TEXT NOT NULL UNIQUE,
        connect_time REAL NOT NULL,
        disconnect_time REAL,
        duration_seconds INTEGER NOT NULL DEFAULT 0,
        session_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_player_sessions_open
    ON player_sessions (connect_time)
    WHERE disconnect_time IS NULL
    """,
    # Per-map occupancy integrals
    """
    CREATE TABLE IF NOT EXISTS map_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        map_name TEXT NOT NULL,
        map_start REAL NOT NULL,
        map_end REAL,
        total_players_seen INTEGER NOT NULL DEFAULT 0,
        total_playtime INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_map_sessions_start
    ON map_sessions (map_start)
    """,
    # Daily rollups, one row per UTC date
    """
    CREATE TABLE IF NOT EXISTS server_analytics (
        date_utc TEXT NOT NULL PRIMARY KEY, -- YYYY-MM-DD
        max_players INTEGER NOT NULL,
        avg_players REAL NOT NULL,
        records_count INTEGER NOT NULL,
        total_player_session_time INTEGER,
        avg_session_seconds INTEGER,
        best_map TEXT,
        best_map_total_playtime INTEGER,
        best_map_avg_length_seconds INTEGER
    )
    """,
]


class TrackerDatabase:
    """
    SQLite store for snapshots, player sessions, map sessions and daily rollups.

    Every call opens its own short-lived connection. Multi-statement work goes
    through transaction(), which commits on success and rolls back on any error.
    """

    def __init__(self, db_path: str = "data/slots.db", timeout: float = 5.0):
        """
        Args:
            db_path: Path to the SQLite database file
            timeout: Seconds SQLite waits on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._initialized = False

    def _connect(self):
        # Autocommit mode; transaction() issues BEGIN/COMMIT/ROLLBACK itself
        return aiosqlite.connect(self.db_path, timeout=self.timeout, isolation_level=None)

    async def initialize(self):
        """Create tables and indexes if they do not exist yet."""
        if self._initialized:
            return

        logger.info(
            "initializing_tracker_database",
            extra={"event": "database_init_start", "db_path": str(self.db_path)}
        )

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as db:
                for statement in SCHEMA_STATEMENTS:
                    await db.execute(statement)
        except (OSError, sqlite3.Error) as e:
            logger.error(
                "database_initialization_failed",
                extra={
                    "event": "database_init_error",
                    "error": str(e),
                    "error_type": type(e).__name__
                }
            )
            raise DatabaseConnectionError(f"Could not initialize database at '{self.db_path}': {e}") from e

        self._initialized = True
        logger.info(
            "tracker_database_initialized",
            extra={"event": "database_init_success", "tables": 4}
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside BEGIN ... COMMIT, rolling back on any exception."""
        await self.initialize()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN")
            try:
                yield db
            except BaseException:
                try:
                    await db.rollback()
                except sqlite3.Error as rollback_error:
                    logger.error(f"❌ Rollback failed: {rollback_error}")
                raise
            else:
                await db.commit()

    # =========================================================================
    # SECTION: Statements used inside the pooled flush transaction
    # =========================================================================

    async def open_player_session(self, db: aiosqlite.Connection, steam_id: str, connect_time: float):
        await db.execute("""
            INSERT INTO player_sessions (steam_id, connect_time, session_count)
            VALUES (?, ?, 1)
            ON CONFLICT (steam_id) DO UPDATE SET
                connect_time = excluded.connect_time,
                disconnect_time = NULL,
                session_count = session_count + 1
        """, (steam_id, connect_time))

    async def close_player_session(self, db: aiosqlite.Connection, steam_id: str, disconnect_time: float) -> int:
        """Close an open row and add its elapsed seconds. Returns rows touched (0 or 1)."""
        cursor = await db.execute("""
            UPDATE player_sessions
            SET disconnect_time = :ts,
                duration_seconds = CASE
                    WHEN connect_time IS NOT NULL THEN
                        duration_seconds + MAX(0, CAST(:ts - connect_time AS INTEGER))
                    ELSE duration_seconds
                END
            WHERE steam_id = :sid AND disconnect_time IS NULL
        """, {"ts": disconnect_time, "sid": steam_id})
        return cursor.rowcount

    async def top_up_open_sessions(self, db: aiosqlite.Connection, seconds: int) -> int:
        cursor = await db.execute("""
            UPDATE player_sessions
            SET duration_seconds = duration_seconds + ?
            WHERE disconnect_time IS NULL
        """, (seconds,))
        return cursor.rowcount

    async def insert_map_session(self, db: aiosqlite.Connection, context: OccupancyContext) -> int:
        cursor = await db.execute("""
            INSERT INTO map_sessions (map_name, map_start, map_end, total_players_seen, total_playtime)
            VALUES (?, ?, ?, ?, ?)
        """, (context.name, context.start_time, context.end_time,
              context.total_players_seen, context.total_playtime))
        return cursor.lastrowid

    async def update_map_session(self, db: aiosqlite.Connection, context: OccupancyContext):
        await db.execute("""
            UPDATE map_sessions
            SET map_end = ?,
                total_players_seen = ?,
                total_playtime = ?
            WHERE id = ?
        """, (context.end_time, context.total_players_seen, context.total_playtime, context.id))

    async def insert_snapshot(self, db: aiosqlite.Connection, timestamp: float, player_count: int, server_slots: int):
        await db.execute("""
            INSERT INTO server_stats (timestamp, player_count, server_slots)
            VALUES (?, ?, ?)
        """, (timestamp, player_count, server_slots))

    # =========================================================================
    # SECTION: Standalone writes
    # =========================================================================

    async def write_snapshot(self, timestamp: float, player_count: int, server_slots: int):
        """Append one snapshot in its own statement (debounce path)."""
        await self.initialize()
        try:
            async with self._connect() as db:
                await self.insert_snapshot(db, timestamp, player_count, server_slots)
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Snapshot insert failed: {e}") from e

    async def save_map_session(self, context: OccupancyContext) -> int:
        """Insert a freshly started map session and return its new id."""
        await self.initialize()
        try:
            async with self._connect() as db:
                return await self.insert_map_session(db, context)
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Map session insert failed: {e}") from e

    async def upsert_daily_analytics(self, row: Dict[str, Any]):
        await self.initialize()
        try:
            async with self._connect() as db:
                await db.execute("""
                    INSERT INTO server_analytics (
                        date_utc, max_players, avg_players, records_count,
                        total_player_session_time, avg_session_seconds,
                        best_map, best_map_total_playtime, best_map_avg_length_seconds
                    ) VALUES (
                        :date_utc, :max_players, :avg_players, :records_count,
                        :total_player_session_time, :avg_session_seconds,
                        :best_map, :best_map_total_playtime, :best_map_avg_length_seconds
                    )
                    ON CONFLICT (date_utc) DO UPDATE SET
                        max_players = excluded.max_players,
                        avg_players = excluded.avg_players,
                        records_count = excluded.records_count,
                        total_player_session_time = excluded.total_player_session_time,
                        avg_session_seconds = excluded.avg_session_seconds,
                        best_map = excluded.best_map,
                        best_map_total_playtime = excluded.best_map_total_playtime,
                        best_map_avg_length_seconds = excluded.best_map_avg_length_seconds
                """, row)
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Daily analytics upsert failed for {row.get('date_utc')}: {e}") from e

    # =========================================================================
    # SECTION: Window aggregation queries
    # =========================================================================

    async def aggregate_snapshots(self, window_start: float, window_end: float) -> Dict[str, Any]:
        await self.initialize()
        async with self._connect() as db:
            cursor = await db.execute("""
                SELECT IFNULL(MAX(player_count), 0),
                       IFNULL(ROUND(AVG(player_count), 2), 0),
                       COUNT(*)
                FROM server_stats
                WHERE timestamp >= ? AND timestamp < ?
            """, (window_start, window_end))
            max_players, avg_players, count = await cursor.fetchone()
        return {"max_players": int(max_players), "avg_players": float(avg_players), "records_count": int(count)}

    async def aggregate_player_sessions(self, window_start: float, window_end: float) -> Dict[str, Any]:
        """Sum and average of session seconds clamped to [window_start, window_end)."""
        await self.initialize()
        async with self._connect() as db:
            cursor = await db.execute("""
                WITH clamped AS (
                    SELECT MAX(0, CAST(
                        MIN(IFNULL(disconnect_time, :win_end), :win_end) - MAX(connect_time, :win_start)
                    AS INTEGER)) AS secs
                    FROM player_sessions
                    WHERE connect_time < :win_end AND IFNULL(disconnect_time, :win_start) >= :win_start
                )
                SELECT IFNULL(SUM(secs), 0), AVG(secs), COUNT(*) FROM clamped
            """, {"win_start": window_start, "win_end": window_end})
            total, average, count = await cursor.fetchone()
        return {"total_seconds": int(total), "avg_seconds": average, "sessions": int(count)}

    async def aggregate_map_sessions(self, window_start: float, window_end: float) -> List[Dict[str, Any]]:
        """
        Per-map totals for the window, ordered by map name.

        A map session lying wholly inside the window contributes its stored
        player-seconds; one crossing a boundary contributes its clamped length.
        """
        await self.initialize()
        async with self._connect() as db:
            cursor = await db.execute("""
                WITH clamped AS (
                    SELECT map_name,
                           total_playtime,
                           map_start >= :win_start AND IFNULL(map_end, :win_end) <= :win_end AS inside,
                           MAX(0, CAST(
                               MIN(IFNULL(map_end, :win_end), :win_end) - MAX(map_start, :win_start)
                           AS INTEGER)) AS secs
                    FROM map_sessions
                    WHERE map_start < :win_end AND IFNULL(map_end, :win_start) >= :win_start
                )
                SELECT map_name,
                       IFNULL(SUM(CASE WHEN inside THEN total_playtime ELSE secs END), 0),
                       IFNULL(AVG(secs), 0),
                       COUNT(*)
                FROM clamped
                GROUP BY map_name
                ORDER BY map_name
            """, {"win_start": window_start, "win_end": window_end})
            rows = await cursor.fetchall()
        return [
            {
                "map_name": row[0],
                "total_playtime": int(row[1]),
                "avg_length_seconds": float(row[2]),
                "sessions": int(row[3]),
            }
            for row in rows
        ]

    # =========================================================================
    # SECTION: Readers
    # =========================================================================

    async def get_player_session(self, steam_id: str) -> Optional[PlayerSession]:
        await self.initialize()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT steam_id, connect_time, disconnect_time, duration_seconds, session_count
                FROM player_sessions WHERE steam_id = ?
            """, (steam_id,))
            row = await cursor.fetchone()
        return PlayerSession.from_row(row) if row else None

    async def list_map_sessions(self) -> List[OccupancyContext]:
        await self.initialize()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT id, map_name, map_start, map_end, total_players_seen, total_playtime
                FROM map_sessions ORDER BY id
            """)
            rows = await cursor.fetchall()
        return [
            OccupancyContext(
                id=row["id"],
                name=row["map_name"],
                start_time=row["map_start"],
                end_time=row["map_end"],
                total_players_seen=row["total_players_seen"],
                total_playtime=row["total_playtime"],
            )
            for row in rows
        ]

    async def list_snapshots(self) -> List[Dict[str, Any]]:
        await self.initialize()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("""
                SELECT timestamp, player_count, server_slots FROM server_stats ORDER BY id
            """)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_daily_analytics(self, day: date) -> Optional[Dict[str, Any]]:
        await self.initialize()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM server_analytics WHERE date_utc = ?", (day.isoformat(),)
            )
            row = await cursor.fetchone()
        return dict(row) if row else None

    # =========================================================================
    # SECTION: Raw row import
    # =========================================================================

    async def insert_rows(self, table: str, rows: List[Dict[str, Any]]):
        """Insert raw rows into one of the tracker tables (fixtures and backfills)."""
        if table not in ("server_stats", "player_sessions", "map_sessions"):
            raise ValueError(f"Unknown table: {table}")
        if not rows:
            return
        await self.initialize()
        columns = list(rows[0].keys())
        placeholders = ", ".join("?" for _ in columns)
        async with self._connect() as db:
            await db.executemany(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                [tuple(row[c] for c in columns) for row in rows],
            )
