"""SQLite database initialisation and access for Repowatch.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring low-level PRAGMA settings (WAL journal mode, foreign keys,
  busy timeout).
* Bootstrapping the schema via ``CREATE … IF NOT EXISTS``; safe to call on
  every start-up because every statement is idempotent.
* Serialising access to the single shared connection (:class:`Database`).

Transactions
------------
The connection runs in autocommit mode (``isolation_level=None``); explicit
transactions are opened with ``BEGIN IMMEDIATE`` by
:meth:`Database.transaction`.  Because every coroutine shares one
connection, *all* statements (reads included) go through the same
:class:`asyncio.Lock`; otherwise a statement from one worker could land
inside another worker's open transaction.

Cross-process safety does not depend on that lock: the job claim is a single
conditional ``UPDATE … RETURNING`` and the active-job invariant is a partial
unique index, both enforced by SQLite itself.

Typical usage::

    from repowatch.storage.database import Database

    async def main() -> None:
        db = await Database.open(Path("data/repowatch.db"))
        async with db.transaction() as conn:
            await conn.execute("UPDATE …", (...))
        await db.close()
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from repowatch.core.exceptions import StorageError

__all__ = [
    "DEFAULT_DB_PATH",
    "Database",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("data/repowatch.db")

#: Milliseconds a connection waits on a lock held by another connection.
_BUSY_TIMEOUT_MS: int = 5000

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``jobs`` is the durable queue.
#:
#: Column notes
#: ------------
#: id            Opaque id generated on enqueue.
#: name          Job-type discriminator (``bookmark_updated`` …).
#: target_kind   Kind of the referenced entity (``bookmark`` / ``monitor``).
#: target_id     Id of the referenced entity.
#: dedup_key     ``name:target_kind:target_id``.
#: run_at        Earliest claim time, fixed-width UTC string (see core.clock).
#: state         pending / running / succeeded / failed.
#: attempts      Failed executions so far.
#: max_attempts  Failed executions after which the job is terminal.
#: last_error    Text of the most recent failure.
_DDL_JOBS = """\
CREATE TABLE IF NOT EXISTS jobs (
    id            TEXT     NOT NULL PRIMARY KEY,
    name          TEXT     NOT NULL,
    target_kind   TEXT     NOT NULL,
    target_id     TEXT     NOT NULL,
    dedup_key     TEXT     NOT NULL,
    run_at        TEXT     NOT NULL,
    state         TEXT     NOT NULL DEFAULT 'pending',
    attempts      INTEGER  NOT NULL DEFAULT 0,
    max_attempts  INTEGER  NOT NULL DEFAULT 1,
    last_error    TEXT,
    created_at    TEXT     NOT NULL,
    updated_at    TEXT     NOT NULL
)"""

#: At most one active (pending or running) job per dedup key.
_DDL_JOBS_ACTIVE_DEDUP = """\
CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_active_dedup
    ON jobs (dedup_key)
    WHERE state IN ('pending', 'running')"""

_DDL_JOBS_DUE = """\
CREATE INDEX IF NOT EXISTS ix_jobs_due
    ON jobs (state, run_at, created_at)"""

#: ``monitors`` holds one row per tracked canonical URL.
#: fetched_at is the last successful crawl, crawl_attempted_at the last crawl
#: started, whatever its outcome.
_DDL_MONITORS = """\
CREATE TABLE IF NOT EXISTS monitors (
    id            TEXT     NOT NULL PRIMARY KEY,
    url           TEXT     NOT NULL UNIQUE,
    fetched_at    TEXT,
    crawl_attempted_at TEXT,
    created_at    TEXT     NOT NULL,
    updated_at    TEXT     NOT NULL
)"""

#: ``reports`` keeps the latest report per monitor and provider.
#: payload is the JSON-serialised Report model.
_DDL_REPORTS = """\
CREATE TABLE IF NOT EXISTS reports (
    monitor_id    TEXT     NOT NULL REFERENCES monitors (id) ON DELETE CASCADE,
    provider      TEXT     NOT NULL,
    uri           TEXT     NOT NULL,
    payload       TEXT     NOT NULL,
    fetched_at    TEXT     NOT NULL,
    PRIMARY KEY (monitor_id, provider)
)"""

#: ``bookmarks`` is the minimal slice of user bookmarks the engine touches.
_DDL_BOOKMARKS = """\
CREATE TABLE IF NOT EXISTS bookmarks (
    id            TEXT     NOT NULL PRIMARY KEY,
    url           TEXT     NOT NULL,
    monitor_id    TEXT     REFERENCES monitors (id) ON DELETE SET NULL,
    created_at    TEXT     NOT NULL,
    updated_at    TEXT     NOT NULL
)"""

_SCHEMA: tuple[str, ...] = (
    _DDL_JOBS,
    _DDL_JOBS_ACTIVE_DEDUP,
    _DDL_JOBS_DUE,
    _DDL_MONITORS,
    _DDL_REPORTS,
    _DDL_BOOKMARKS,
)

#: Columns added after the first release; back-filled onto older files.
_ADDED_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("monitors", "crawl_attempted_at", "TEXT"),
)

# ---------------------------------------------------------------------------
# Connection bootstrap
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap the schema.

    Args:
        path: Filesystem path for the SQLite file.  Defaults to
            :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection` in autocommit mode with
        ``row_factory = aiosqlite.Row``.  The caller closes it.

    Raises:
        StorageError: If the database cannot be opened or initialised.
    """
    db_path = Path(path or DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", db_path)

    try:
        conn: aiosqlite.Connection = await aiosqlite.connect(db_path, isolation_level=None)
    except aiosqlite.Error as exc:
        raise StorageError(f"Cannot open database {db_path}: {exc}") from exc
    conn.row_factory = aiosqlite.Row

    try:
        await _configure_pragmas(conn)
        await create_schema(conn)
    except aiosqlite.Error as exc:
        await conn.close()
        raise StorageError(f"Cannot initialise database {db_path}: {exc}") from exc

    logger.info("SQLite database ready at %s", db_path)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all tables and indexes if they do not already exist.

    Idempotent; never drops or alters existing data.
    """
    for statement in _SCHEMA:
        await conn.execute(statement)
    for table, column, decl in _ADDED_COLUMNS:
        async with conn.execute(f"PRAGMA table_info({table})") as cursor:
            existing = {row[1] for row in await cursor.fetchall()}
        if column not in existing:
            await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            logger.info("Added column %s.%s to an existing database.", table, column)
    logger.debug("Schema bootstrap complete (jobs, monitors, reports, bookmarks)")


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.warning("Requested WAL journal mode but SQLite reported: %r.", mode)

    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")


# ---------------------------------------------------------------------------
# Database wrapper
# ---------------------------------------------------------------------------


class Database:
    """Serialised access to one shared :class:`aiosqlite.Connection`.

    Args:
        conn: Connection returned by :func:`open_db`.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Path | str | None = None) -> Database:
        """Open the database file at *path* and wrap it."""
        return cls(await open_db(path))

    async def close(self) -> None:
        async with self._lock:
            await self._conn.close()
        logger.debug("SQLite connection closed.")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` … ``COMMIT``.

        Rolls back if the block raises (cancellation included).  A
        cancellation that lands while ``BEGIN`` or ``COMMIT`` is in flight
        on the driver thread still ends with the connection outside any
        transaction.

        Yields:
            The raw connection, for use only inside the block.
        """
        async with self._lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                yield self._conn
                await asyncio.shield(self._execute("COMMIT"))
            except BaseException:
                await asyncio.shield(self._rollback())
                raise

    async def _execute(self, sql: str) -> None:
        await self._conn.execute(sql)

    async def _rollback(self) -> None:
        # Queued behind any BEGIN/COMMIT still running on the driver thread.
        try:
            await self._conn.execute("ROLLBACK")
        except sqlite3.OperationalError as exc:
            logger.debug("Nothing to roll back: %s", exc)

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._lock:
            async with self._conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            async with self._conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
