# -*- coding: utf-8 -*-
"""SQLite schema and async data access for vibejournal.

Three schema-less collections (entries, sessions, settings), each a table
of ``record_key -> JSON record``. The entries table also carries the entry
timestamp in epoch milliseconds for the time-range index. Every call opens
its own connection and commits before returning, so each operation is
atomic on its own; nothing spans calls.
"""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging

import aiosqlite

from .errors import DuplicateKeyError, NotInitializedError
from .models import from_iso, to_epoch_ms

logger = logging.getLogger(__name__)

ENTRIES = "entries"
SESSIONS = "sessions"
SETTINGS = "settings"

# collection -> field of the record used as its key
COLLECTIONS: Dict[str, str] = {
    ENTRIES: "id",
    SESSIONS: "id",
    SETTINGS: "key",
}

Record = Dict[str, Any]


# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS entries (
    record_key  TEXT PRIMARY KEY,
    ts_ms       INTEGER NOT NULL,
    data        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    record_key  TEXT PRIMARY KEY,
    data        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    record_key  TEXT PRIMARY KEY,
    data        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_timestamp ON entries(ts_ms);
"""


def _entry_ts_ms(record: Record) -> int:
    return to_epoch_ms(from_iso(record["timestamp"]))


class JournalDB:
    """Async key-value persistence over the three journal collections."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = str(path)
        self._initialized = False

    # -----------------------------------------------------------------
    # Connection / initialization
    # -----------------------------------------------------------------

    async def init(self) -> None:
        """Create tables and the time index if missing. Safe to repeat."""
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        self._initialized = True
        logger.info("Journal database ready at %s", self.path)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _check(self, collection: str) -> str:
        """Return the key field for *collection*, after the usual guards."""
        if not self._initialized:
            raise NotInitializedError("Database not initialized. Call init() first.")
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    # -----------------------------------------------------------------
    # Single-record operations
    # -----------------------------------------------------------------

    async def add(self, collection: str, record: Record) -> None:
        """Insert *record*; raise DuplicateKeyError if its key exists."""
        key = str(record[self._check(collection)])
        data = json.dumps(record)
        async with aiosqlite.connect(self.path) as db:
            try:
                if collection == ENTRIES:
                    await db.execute(
                        "INSERT INTO entries (record_key, ts_ms, data) VALUES (?, ?, ?)",
                        (key, _entry_ts_ms(record), data),
                    )
                else:
                    await db.execute(
                        f"INSERT INTO {collection} (record_key, data) VALUES (?, ?)",
                        (key, data),
                    )
            except aiosqlite.IntegrityError as exc:
                raise DuplicateKeyError(collection, key) from exc
            await db.commit()

    async def get(self, collection: str, key: str) -> Optional[Record]:
        """Return the record stored under *key*, or None."""
        self._check(collection)
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute(
                f"SELECT data FROM {collection} WHERE record_key = ?",
                (key,),
            )
            row = await cur.fetchone()
            await cur.close()
        return json.loads(row[0]) if row else None

    async def get_all(self, collection: str) -> List[Record]:
        """Return every record in *collection* (entries in timestamp order)."""
        self._check(collection)
        order = "ts_ms, rowid" if collection == ENTRIES else "rowid"
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute(f"SELECT data FROM {collection} ORDER BY {order}")
            rows = await cur.fetchall()
            await cur.close()
        return [json.loads(r[0]) for r in rows]

    async def update(self, collection: str, record: Record) -> None:
        """Upsert *record* under its key."""
        key = str(record[self._check(collection)])
        data = json.dumps(record)
        async with aiosqlite.connect(self.path) as db:
            if collection == ENTRIES:
                await db.execute(
                    """
                    INSERT INTO entries (record_key, ts_ms, data) VALUES (?, ?, ?)
                    ON CONFLICT(record_key) DO UPDATE
                       SET ts_ms = excluded.ts_ms,
                           data  = excluded.data
                    """,
                    (key, _entry_ts_ms(record), data),
                )
            else:
                await db.execute(
                    f"""
                    INSERT INTO {collection} (record_key, data) VALUES (?, ?)
                    ON CONFLICT(record_key) DO UPDATE SET data = excluded.data
                    """,
                    (key, data),
                )
            await db.commit()

    async def delete(self, collection: str, key: str) -> None:
        """Delete *key*; no error if it is already gone."""
        self._check(collection)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(f"DELETE FROM {collection} WHERE record_key = ?", (key,))
            await db.commit()

    # -----------------------------------------------------------------
    # Queries / maintenance
    # -----------------------------------------------------------------

    async def query_by_time_range(self, start: datetime, end: datetime) -> List[Record]:
        """Entries whose timestamp lies in [start, end], oldest first."""
        self._check(ENTRIES)
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute(
                """
                SELECT data
                  FROM entries
                 WHERE ts_ms BETWEEN ? AND ?
                 ORDER BY ts_ms, rowid
                """,
                (to_epoch_ms(start), to_epoch_ms(end)),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [json.loads(r[0]) for r in rows]

    async def count(self, collection: str) -> int:
        self._check(collection)
        async with aiosqlite.connect(self.path) as db:
            cur = await db.execute(f"SELECT COUNT(*) FROM {collection}")
            row = await cur.fetchone()
            await cur.close()
        return int(row[0])

    async def clear(self, collection: str) -> None:
        """Remove every record from *collection*."""
        self._check(collection)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(f"DELETE FROM {collection}")
            await db.commit()
