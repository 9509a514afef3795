"""SQLite-backed URL content cache shared by fetch workers.

Entries are immutable once written. Concurrent workers may race on read-check-write for
the same URL; the second write replaces identical content, which is harmless, so no
lock is taken around the check.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite


@dataclass(frozen=True, slots=True)
class CacheEntry:
    url: str
    content: str
    content_type: str
    written_at: datetime


class ContentCache:
    """Async SQLite cache keyed by URL with a time-to-live."""

    def __init__(self, db_path: Path | None = None, *, ttl_seconds: int = 24 * 60 * 60):
        """Initialize ContentCache.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/docs-research/cache.db
            ttl_seconds: Entries older than this are treated as absent.
        """
        if db_path is None:
            from ..config import get_config_dir

            db_path = get_config_dir() / "cache.db"
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        # Concurrent fetch workers race here on first use; PRAGMAs/DDL must run once.
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS pages (
                        url TEXT PRIMARY KEY,
                        content TEXT NOT NULL,
                        content_type TEXT NOT NULL,
                        written_at TEXT NOT NULL
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_written_at ON pages(written_at)")
                await db.commit()

            self._initialized = True

    async def get(self, url: str, *, now: datetime | None = None) -> CacheEntry | None:
        """Return a fresh entry for `url`, or None when absent or expired."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 5000")
            async with db.execute("SELECT url, content, content_type, written_at FROM pages WHERE url = ?", (url,)) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None

        entry = CacheEntry(url=row[0], content=row[1], content_type=row[2], written_at=datetime.fromisoformat(row[3]))
        if self._expired(entry, now or datetime.now(UTC)):
            return None
        return entry

    async def put(self, url: str, content: str, content_type: str, written_at: datetime | None = None) -> CacheEntry:
        """Store content for `url`, replacing any previous (expired or duplicate) entry."""
        await self.initialize()

        entry = CacheEntry(url=url, content=content, content_type=content_type, written_at=written_at or datetime.now(UTC))
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 5000")
            await db.execute(
                "INSERT OR REPLACE INTO pages (url, content, content_type, written_at) VALUES (?, ?, ?, ?)",
                (entry.url, entry.content, entry.content_type, entry.written_at.isoformat()),
            )
            await db.commit()
        return entry

    async def prune(self, *, now: datetime | None = None) -> int:
        """Delete expired entries. Returns count deleted."""
        await self.initialize()

        cutoff = ((now or datetime.now(UTC)) - self.ttl).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM pages WHERE written_at < ?", (cutoff,))
            await db.commit()
            return cursor.rowcount

    async def clear(self) -> int:
        """Delete every entry. Returns count deleted."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM pages")
            await db.commit()
            return cursor.rowcount

    async def count(self) -> int:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM pages") as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    def _expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.written_at > self.ttl
