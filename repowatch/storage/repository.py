"""Entity repositories: monitors, reports and bookmarks.

* :class:`MonitorRepository`: one row per tracked canonical URL.  Its
  :meth:`~MonitorRepository.find_or_create` is the target resolver used by
  the bookmark-updated job; it reports whether the monitor is new.
* :class:`ReportRepository`: latest :class:`~repowatch.core.models.Report`
  per monitor and provider, stored as JSON and upserted on every crawl.
* :class:`BookmarkRepository`: the minimal bookmark slice this engine reads
  (the URL) and writes (the monitor link).

None of these own the connection; they share the
:class:`~repowatch.storage.database.Database` passed in.

Typical usage::

    monitors = MonitorRepository(db)
    monitor, created = await monitors.find_or_create("https://github.com/acme/widget")
"""

from __future__ import annotations

import logging
from datetime import datetime

import aiosqlite

from repowatch.core.clock import from_db, to_db, utcnow
from repowatch.core.exceptions import StorageError
from repowatch.core.ids import new_id
from repowatch.core.models import Bookmark, Monitor, Report
from repowatch.storage.database import Database

__all__ = [
    "BookmarkRepository",
    "MonitorRepository",
    "ReportRepository",
]

logger = logging.getLogger(__name__)

# Latest crawl of any outcome; SQLite's scalar MAX() is NULL if either side is.
_LAST_CRAWL = "COALESCE(MAX(crawl_attempted_at, fetched_at), crawl_attempted_at, fetched_at)"


def _row_to_monitor(row: aiosqlite.Row) -> Monitor:
    return Monitor(
        id=row["id"],
        url=row["url"],
        fetched_at=from_db(row["fetched_at"]),
        crawl_attempted_at=from_db(row["crawl_attempted_at"]),
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


def _row_to_bookmark(row: aiosqlite.Row) -> Bookmark:
    return Bookmark(id=row["id"], url=row["url"], monitor_id=row["monitor_id"])


# ---------------------------------------------------------------------------
# Monitors
# ---------------------------------------------------------------------------


class MonitorRepository:
    """Data-access object for the ``monitors`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_or_create(self, url: str) -> tuple[Monitor, bool]:
        """Return the monitor for canonical *url*, creating it if absent.

        Args:
            url: An already-normalised URL.

        Returns:
            ``(monitor, created)``.
        """
        async with self._db.transaction() as conn:
            async with conn.execute("SELECT * FROM monitors WHERE url = ?", (url,)) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                return _row_to_monitor(row), False

            now = to_db(utcnow())
            async with conn.execute(
                """
                INSERT INTO monitors (id, url, fetched_at, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                RETURNING *
                """,
                (new_id(), url, now, now),
            ) as cursor:
                rows = await cursor.fetchall()

        monitor = _row_to_monitor(rows[0])
        logger.info("Created monitor %s for %s.", monitor.id, url)
        return monitor, True

    async def get(self, monitor_id: str) -> Monitor | None:
        row = await self._db.fetchone("SELECT * FROM monitors WHERE id = ?", (monitor_id,))
        return _row_to_monitor(row) if row is not None else None

    async def find_by_url(self, url: str) -> Monitor | None:
        row = await self._db.fetchone("SELECT * FROM monitors WHERE url = ?", (url,))
        return _row_to_monitor(row) if row is not None else None

    async def list_stale(self, fetched_before: datetime, *, limit: int = 500) -> list[Monitor]:
        """Monitors not crawled since *fetched_before*, least recently crawled first.

        A crawl counts whether it succeeded or not, so a monitor whose crawls
        keep failing waits its turn like any other instead of being picked
        on every sweep.
        """
        rows = await self._db.fetchall(
            f"""
            SELECT * FROM monitors
             WHERE {_LAST_CRAWL} IS NULL OR {_LAST_CRAWL} < ?
             ORDER BY {_LAST_CRAWL} IS NOT NULL, {_LAST_CRAWL}, created_at
             LIMIT ?
            """,
            (to_db(fetched_before), limit),
        )
        return [_row_to_monitor(row) for row in rows]

    async def mark_fetched(self, monitor_id: str, at: datetime | None = None) -> None:
        await self._stamp("fetched_at", monitor_id, at)

    async def mark_crawl_attempted(self, monitor_id: str, at: datetime | None = None) -> None:
        await self._stamp("crawl_attempted_at", monitor_id, at)

    async def _stamp(self, column: str, monitor_id: str, at: datetime | None) -> None:
        stamp = to_db(at or utcnow())
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE monitors SET {column} = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, monitor_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Monitor {monitor_id} does not exist.")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class ReportRepository:
    """Data-access object for the ``reports`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(
        self,
        monitor_id: str,
        provider: str,
        uri: str,
        report: Report,
        fetched_at: datetime | None = None,
    ) -> None:
        """Store *report* as the latest one for ``(monitor_id, provider)``."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO reports (monitor_id, provider, uri, payload, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (monitor_id, provider) DO UPDATE SET
                    uri        = excluded.uri,
                    payload    = excluded.payload,
                    fetched_at = excluded.fetched_at
                """,
                (monitor_id, provider, uri, report.model_dump_json(), to_db(fetched_at or utcnow())),
            )
        logger.debug("Stored %s report for monitor %s (%s).", provider, monitor_id, uri)

    async def get(self, monitor_id: str, provider: str) -> Report | None:
        row = await self._db.fetchone(
            "SELECT payload FROM reports WHERE monitor_id = ? AND provider = ?",
            (monitor_id, provider),
        )
        return Report.model_validate_json(row["payload"]) if row is not None else None

    async def list_for_monitor(self, monitor_id: str) -> dict[str, Report]:
        """Return every stored report of *monitor_id*, keyed by provider."""
        rows = await self._db.fetchall(
            "SELECT provider, payload FROM reports WHERE monitor_id = ? ORDER BY provider",
            (monitor_id,),
        )
        return {row["provider"]: Report.model_validate_json(row["payload"]) for row in rows}


# ---------------------------------------------------------------------------
# Bookmarks
# ---------------------------------------------------------------------------


class BookmarkRepository:
    """Data-access object for the ``bookmarks`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(self, url: str) -> Bookmark:
        now = to_db(utcnow())
        bookmark_id = new_id()
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT INTO bookmarks (id, url, monitor_id, created_at, updated_at) "
                "VALUES (?, ?, NULL, ?, ?)",
                (bookmark_id, url, now, now),
            )
        return Bookmark(id=bookmark_id, url=url)

    async def get(self, bookmark_id: str) -> Bookmark | None:
        row = await self._db.fetchone("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,))
        return _row_to_bookmark(row) if row is not None else None

    async def set_monitor(self, bookmark_id: str, monitor_id: str) -> None:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE bookmarks SET monitor_id = ?, updated_at = ? WHERE id = ?",
                (monitor_id, to_db(utcnow()), bookmark_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Bookmark {bookmark_id} does not exist.")
