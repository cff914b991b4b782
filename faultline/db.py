"""PipelineDB - the single SQLite handle shared by the store and monitor.

One connection, one asyncio.Lock. Every read-modify-write cycle (append then
trim, replace current snapshot then append history) runs under the lock, so
concurrent writers from the detector, monitor and recovery engine cannot
drop each other's rows.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from faultline.config import DB_PATH

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


def _remove_db_files(db_path: str) -> None:
    """Remove database file and WAL/SHM sidecars so a clean DB can be created."""
    for path in (db_path, db_path + "-wal", db_path + "-shm", db_path + "-journal"):
        try:
            if os.path.exists(path):
                os.unlink(path)
                logger.info("Removed %s", path)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)


class PipelineDB:
    """Owns the aiosqlite connection and the write lock.

    Usage:
        db = PipelineDB("/tmp/faultline.db")
        await db.init()
        async with db.transaction() as conn:
            await conn.execute(...)
        await db.close()

    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("PipelineDB is not initialized; call init() first")
        return self._db

    async def init(self) -> None:
        """Open the database and create tables.

        A missing or corrupted file is removed and recreated once.

        """
        if self._initialized:
            return

        if self.db_path != IN_MEMORY:
            dir_path = os.path.dirname(self.db_path)
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)

        for attempt in range(2):
            try:
                self._db = await aiosqlite.connect(self.db_path)
                self._db.row_factory = aiosqlite.Row
                if self.db_path != IN_MEMORY:
                    await self._db.execute("PRAGMA journal_mode=WAL")
                await self._db.execute("PRAGMA busy_timeout=5000")
                await self._create_tables()
                self._initialized = True
                logger.info("PipelineDB initialized at %s", self.db_path)
                return
            except (sqlite3.Error, OSError) as e:
                if self._db:
                    try:
                        await self._db.close()
                    except Exception as close_error:
                        logger.debug("Could not close broken connection: %s", close_error)
                    self._db = None
                if attempt == 0 and self.db_path != IN_MEMORY:
                    logger.warning(
                        "Database missing or corrupted (%s), creating new one: %s",
                        type(e).__name__,
                        e,
                    )
                    _remove_db_files(self.db_path)
                else:
                    raise

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    async def _create_tables(self) -> None:
        await self._db.executescript("""
            -- Error store: append-only, trimmed to the newest N rows
            CREATE TABLE IF NOT EXISTS error_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                kind TEXT NOT NULL,
                severity TEXT NOT NULL,
                category TEXT NOT NULL,
                message TEXT NOT NULL,
                file_path TEXT,
                line INTEGER,
                context TEXT,
                solution TEXT,
                agent_id TEXT,
                task_id TEXT,
                correlation_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_error_records_timestamp ON error_records(timestamp);
            CREATE INDEX IF NOT EXISTS idx_error_records_kind ON error_records(kind);
            CREATE INDEX IF NOT EXISTS idx_error_records_correlation ON error_records(correlation_id);

            -- Latest snapshot per agent
            CREATE TABLE IF NOT EXISTS agent_metrics_current (
                agent_id TEXT PRIMARY KEY,
                timestamp REAL NOT NULL,
                tasks_completed INTEGER NOT NULL DEFAULT 0,
                tasks_failed INTEGER NOT NULL DEFAULT 0,
                average_response_time REAL NOT NULL DEFAULT 0,
                errors INTEGER NOT NULL DEFAULT 0,
                warnings INTEGER NOT NULL DEFAULT 0,
                last_activity REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'active'
            );

            -- Snapshot history, trimmed to the newest N rows
            CREATE TABLE IF NOT EXISTS agent_metrics_history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                tasks_completed INTEGER NOT NULL DEFAULT 0,
                tasks_failed INTEGER NOT NULL DEFAULT 0,
                average_response_time REAL NOT NULL DEFAULT 0,
                errors INTEGER NOT NULL DEFAULT 0,
                warnings INTEGER NOT NULL DEFAULT 0,
                last_activity REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'active'
            );

            CREATE INDEX IF NOT EXISTS idx_metrics_history_agent ON agent_metrics_history(agent_id);

            -- Health check results, trimmed to the newest N rows
            CREATE TABLE IF NOT EXISTS health_checks (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                healthy INTEGER NOT NULL,
                issues TEXT NOT NULL,
                response_time REAL NOT NULL,
                success_rate REAL NOT NULL,
                error_rate REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_health_checks_agent ON health_checks(agent_id);
        """)
        await self._db.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock for one read-modify-write cycle and commit on exit."""
        async with self._lock:
            conn = self.connection
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    @asynccontextmanager
    async def reading(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the lock for a read so it never observes a half-applied trim."""
        async with self._lock:
            yield self.connection

    async def trim(self, conn: aiosqlite.Connection, table: str, limit: int) -> None:
        """Keep only the newest ``limit`` rows of ``table`` (by insertion order)."""
        await conn.execute(
            f"DELETE FROM {table} WHERE seq NOT IN "
            f"(SELECT seq FROM {table} ORDER BY seq DESC LIMIT ?)",
            (limit,),
        )
