"""Persistent inbound storage.

Thin async accessor over the SQLite ``inbounds`` table. It holds no business
logic: the engine reads the enabled set to build configs and adds metered
traffic back through :meth:`InboundStore.accumulate_traffic`.
"""

import asyncio
import logging
import os
import sqlite3
from typing import Any, List, Optional, Self, Sequence

import aiosqlite

from xui_engine import util
from xui_engine.models import Inbound
from xui_engine.util import DBLockedError

logger = logging.getLogger(__name__)

PRAGMAS = (
    "PRAGMA cache_size = 512;",
    "PRAGMA journal_mode = WAL;",
    "PRAGMA synchronous = NORMAL;",
)

CREATE_INBOUNDS = """
CREATE TABLE IF NOT EXISTS inbounds (
    id TEXT PRIMARY KEY,
    remark TEXT NOT NULL DEFAULT '',
    protocol TEXT NOT NULL,
    port INTEGER NOT NULL,
    enable INTEGER NOT NULL DEFAULT 1,
    settings TEXT,
    stream_settings TEXT,
    sniffing TEXT,
    up INTEGER NOT NULL DEFAULT 0,
    down INTEGER NOT NULL DEFAULT 0,
    total INTEGER NOT NULL DEFAULT 0,
    expiry INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
)
"""

# columns that older databases were created without
ADDED_COLUMNS = ("tag", "listen", "allocate")

INSERT_COLUMNS = ("id", "remark", "protocol", "port", "enable", "tag", "listen", "allocate",
                  "settings", "stream_settings", "sniffing", "up", "down", "total", "expiry")


class InboundStore:
    def __init__(self, database_path: str | os.PathLike, *,
                 max_retries: int = 5, retry_delay: float = 1) -> None:
        self.database_path: str = str(database_path)
        self.db: aiosqlite.Connection | None = None
        self.max_retries: int = max_retries
        self.retry_delay: float = retry_delay

    async def connect(self) -> None:
        if self.database_path != ":memory:":
            parent = os.path.dirname(self.database_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        logger.info("Connecting to database: %s", self.database_path)
        self.db = await aiosqlite.connect(self.database_path)
        self.db.row_factory = aiosqlite.Row
        for pragma in PRAGMAS:
            await self.db.execute(pragma)

    async def disconnect(self) -> None:
        if self.db is not None:
            await self.db.close()
            self.db = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    def _require_db(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db

    async def safe_execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write and commit it, retrying while the database is locked.

        Returns:
            The number of rows the statement changed.

        Raises:
            DBLockedError: If the database is still locked after max_retries.
            sqlite3.Error: Any other storage failure, unchanged.
        """
        db = self._require_db()
        for attempt in range(self.max_retries):
            try:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount
            except sqlite3.OperationalError as e:
                if util.check_db_error(e) != "DB_LOCKED":
                    raise
                if attempt + 1 >= self.max_retries:
                    raise DBLockedError("Database locked: max retries exceeded") from e
                await asyncio.sleep(self.retry_delay)
        raise DBLockedError("Database locked: max retries exceeded")

    async def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Inbound]:
        db = self._require_db()
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return Inbound.from_rows(rows)

    async def run_migrations(self) -> None:
        """Create the inbounds table and add columns missing from older databases.

        Adding a column that already exists is not an error.
        """
        db = self._require_db()
        logger.info("Running database migrations...")
        await db.execute(CREATE_INBOUNDS)
        for column in ADDED_COLUMNS:
            try:
                await db.execute(f"ALTER TABLE inbounds ADD COLUMN {column} TEXT")
                logger.info("Added column: %s", column)
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "duplicate column name" in msg or "already exists" in msg:
                    logger.debug("Column %s already exists, skipping", column)
                else:
                    logger.warning("Failed to add column %s: %s", column, e)
        await db.commit()

    async def list_all(self) -> List[Inbound]:
        return await self._fetch("SELECT * FROM inbounds ORDER BY created_at, id")

    async def list_enabled(self) -> List[Inbound]:
        """All inbounds with enable set, in a stable order."""
        return await self._fetch("SELECT * FROM inbounds WHERE enable = 1 ORDER BY created_at, id")

    async def get(self, inbound_id: str) -> Optional[Inbound]:
        found = await self._fetch("SELECT * FROM inbounds WHERE id = ?", (inbound_id,))
        return found[0] if found else None

    async def add(self, inbound: Inbound) -> Inbound:
        placeholders = ", ".join("?" for _ in INSERT_COLUMNS)
        values = [getattr(inbound, column) for column in INSERT_COLUMNS]
        await self.safe_execute(
            f"INSERT INTO inbounds ({', '.join(INSERT_COLUMNS)}) VALUES ({placeholders})", values)
        return await self.get(inbound.id)

    async def delete(self, inbound_id: str) -> bool:
        changed = await self.safe_execute("DELETE FROM inbounds WHERE id = ?", (inbound_id,))
        return changed > 0

    async def accumulate_traffic(self, inbound_id: str, delta_up: int, delta_down: int,
                                 enable: bool) -> None:
        """Add metered traffic to an inbound and store its new enable state.

        The additions happen inside a single UPDATE, so a concurrent writer
        never sees (or loses) half of a cycle's deltas.
        """
        await self.safe_execute(
            "UPDATE inbounds SET up = up + ?, down = down + ?, enable = ?, "
            "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (delta_up, delta_down, int(enable), inbound_id),
        )
