"""SQLite durable-local store.

Schema design:
    - cache_entries: one row per durable cache key, value stored as JSON
    - state_bundles: named exported state bundles (document + history + checkpoints)

Expiry is not enforced here; the cache manager checks TTLs on read and calls
``cache_purge_expired`` from its sweep.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from actionrail.core.models import CacheEntry
from actionrail.core.serialization import to_jsonable
from actionrail.storage.base import LocalStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key            TEXT PRIMARY KEY,
    value          TEXT NOT NULL,
    created_at     REAL NOT NULL,
    ttl_seconds    REAL NOT NULL,
    access_count   INTEGER NOT NULL DEFAULT 0,
    last_accessed  REAL
);

CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cache_entries(created_at, ttl_seconds);

CREATE TABLE IF NOT EXISTS state_bundles (
    name           TEXT PRIMARY KEY,
    saved_at       TEXT NOT NULL,
    checksum       TEXT NOT NULL DEFAULT '',
    event_count    INTEGER NOT NULL DEFAULT 0,
    bundle         TEXT NOT NULL
);
"""


class SQLiteStore(LocalStore):
    """Durable-local tier on one aiosqlite connection."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def initialized(self) -> bool:
        return self._db is not None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    # --- Cache entries ---

    async def cache_get(self, key: str) -> CacheEntry | None:
        cursor = await self.db.execute("SELECT * FROM cache_entries WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_entry(row)

    async def cache_set(self, key: str, entry: CacheEntry) -> None:
        await self.db.execute(
            """INSERT OR REPLACE INTO cache_entries
               (key, value, created_at, ttl_seconds, access_count, last_accessed)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                key,
                json.dumps(to_jsonable(entry.value)),
                entry.created_at,
                entry.ttl_seconds,
                entry.access_count,
                entry.last_accessed,
            ),
        )
        await self.db.commit()

    async def cache_touch(self, key: str, accessed_at: float) -> None:
        await self.db.execute(
            """UPDATE cache_entries SET access_count = access_count + 1, last_accessed = ?
               WHERE key = ?""",
            (accessed_at, key),
        )
        await self.db.commit()

    async def cache_delete(self, key: str) -> bool:
        cursor = await self.db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await self.db.commit()
        return cursor.rowcount > 0

    async def cache_keys(self) -> list[str]:
        cursor = await self.db.execute("SELECT key FROM cache_entries ORDER BY created_at ASC")
        rows = await cursor.fetchall()
        return [row["key"] for row in rows]

    async def cache_clear(self) -> int:
        cursor = await self.db.execute("DELETE FROM cache_entries")
        await self.db.commit()
        return cursor.rowcount

    async def cache_purge_expired(self, now: float) -> int:
        cursor = await self.db.execute(
            "DELETE FROM cache_entries WHERE ? > created_at + ttl_seconds", (now,)
        )
        await self.db.commit()
        return cursor.rowcount

    # --- State bundles ---

    async def save_bundle(self, name: str, bundle: dict[str, Any]) -> None:
        metadata = bundle.get("metadata", {})
        await self.db.execute(
            """INSERT OR REPLACE INTO state_bundles
               (name, saved_at, checksum, event_count, bundle)
               VALUES (?, ?, ?, ?, ?)""",
            (
                name,
                datetime.now(timezone.utc).isoformat(),
                metadata.get("checksum", ""),
                len(bundle.get("history", [])),
                json.dumps(to_jsonable(bundle)),
            ),
        )
        await self.db.commit()

    async def load_bundle(self, name: str) -> dict[str, Any] | None:
        cursor = await self.db.execute("SELECT bundle FROM state_bundles WHERE name = ?", (name,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row["bundle"])

    async def list_bundles(self) -> list[dict[str, Any]]:
        cursor = await self.db.execute(
            "SELECT name, saved_at, checksum, event_count FROM state_bundles ORDER BY saved_at DESC"
        )
        rows = await cursor.fetchall()
        return [
            {
                "name": row["name"],
                "saved_at": row["saved_at"],
                "checksum": row["checksum"],
                "event_count": row["event_count"],
            }
            for row in rows
        ]

    async def delete_bundle(self, name: str) -> bool:
        cursor = await self.db.execute("DELETE FROM state_bundles WHERE name = ?", (name,))
        await self.db.commit()
        return cursor.rowcount > 0


# --- Row-to-model helpers ---


def _row_to_entry(row: aiosqlite.Row) -> CacheEntry:
    return CacheEntry(
        value=json.loads(row["value"]),
        created_at=row["created_at"],
        ttl_seconds=row["ttl_seconds"],
        access_count=row["access_count"],
        last_accessed=row["last_accessed"],
    )
