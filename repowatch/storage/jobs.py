"""Job repository: the durable queue behind the dispatcher.

Provides :class:`JobRepository`, the single data-access object for the
``jobs`` table, and :class:`JobSpec`, the insert-side description of a job.

State transitions
-----------------
::

    enqueue ──► pending ──claim──► running ──complete──► succeeded
                   ▲                  │
                   └─────retry────────┤
                                      └──────fail──────► failed

* :meth:`JobRepository.enqueue` is idempotent per dedup key: if an active
  (pending or running) row exists, it is returned instead of inserting.
* :meth:`JobRepository.claim` is **one** conditional ``UPDATE … RETURNING``;
  of two concurrent claimers exactly one gets the row.
* :meth:`JobRepository.complete` marks the job succeeded and enqueues its
  follow-up jobs in the same transaction, so a crash can never leave a
  succeeded job without its follow-ups (or follow-ups of a job that will
  run again).
* ``retry`` / ``fail`` / ``complete`` only act on rows still ``running``;
  a worker that lost its claim (e.g. to crash recovery) gets
  :class:`~repowatch.core.exceptions.StorageError`.

Typical usage::

    repo = JobRepository(db)
    record, created = await repo.enqueue(JobSpec("monitor_crawler", "monitor", mid))
    claimed = await repo.claim()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

import aiosqlite

from repowatch.core.clock import from_db, to_db, utcnow
from repowatch.core.exceptions import StorageError
from repowatch.core.ids import dedup_key, new_id
from repowatch.core.models import JobRecord, JobState, TargetKind
from repowatch.storage.database import Database

__all__ = ["JobSpec", "JobRepository"]

logger = logging.getLogger(__name__)

_ACTIVE_STATES: tuple[str, str] = (JobState.PENDING.value, JobState.RUNNING.value)

#: Maximum length of ``last_error`` kept in the table.
_MAX_ERROR_CHARS: int = 2000


@dataclass(frozen=True)
class JobSpec:
    """Everything needed to insert a job row.

    Attributes:
        name: Job-type discriminator.
        target_kind: Kind of the referenced entity.
        target_id: Id of the referenced entity.
        run_at: Earliest claim time; ``None`` means immediately.
        max_attempts: Retry budget for the new row.
    """

    name: str
    target_kind: TargetKind
    target_id: str
    run_at: datetime | None = None
    max_attempts: int = 1

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.name, self.target_kind, self.target_id)


def _row_to_record(row: aiosqlite.Row) -> JobRecord:
    return JobRecord(
        id=row["id"],
        name=row["name"],
        target_kind=TargetKind(row["target_kind"]),
        target_id=row["target_id"],
        dedup_key=row["dedup_key"],
        run_at=from_db(row["run_at"]),
        state=JobState(row["state"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


def _truncate(error: str) -> str:
    if len(error) <= _MAX_ERROR_CHARS:
        return error
    return error[: _MAX_ERROR_CHARS - 1] + "…"


class JobRepository:
    """Data-access object for the ``jobs`` table.

    Args:
        db: Shared :class:`~repowatch.storage.database.Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, spec: JobSpec) -> tuple[JobRecord, bool]:
        """Insert *spec* unless an active job with its dedup key exists.

        Returns:
            ``(record, created)``: the new row and ``True``, or the existing
            active row and ``False``.
        """
        async with self._db.transaction() as conn:
            return await self._enqueue_in(conn, spec)

    async def _enqueue_in(
        self, conn: aiosqlite.Connection, spec: JobSpec
    ) -> tuple[JobRecord, bool]:
        key = spec.dedup_key
        async with conn.execute(
            "SELECT * FROM jobs WHERE dedup_key = ? AND state IN (?, ?) LIMIT 1",
            (key, *_ACTIVE_STATES),
        ) as cursor:
            existing = await cursor.fetchone()
        if existing is not None:
            logger.debug("Coalesced enqueue of %s into job %s.", key, existing["id"])
            return _row_to_record(existing), False

        now = to_db(utcnow())
        run_at = to_db(spec.run_at) if spec.run_at is not None else now
        try:
            async with conn.execute(
                """
                INSERT INTO jobs
                    (id, name, target_kind, target_id, dedup_key, run_at,
                     state, attempts, max_attempts, last_error, created_at, updated_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, 'pending', 0, ?, NULL, ?, ?)
                RETURNING *
                """,
                (
                    new_id(),
                    spec.name,
                    str(spec.target_kind),
                    spec.target_id,
                    key,
                    run_at,
                    spec.max_attempts,
                    now,
                    now,
                ),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.IntegrityError as exc:
            raise StorageError(f"Could not enqueue {key}: {exc}") from exc

        return _row_to_record(rows[0]), True

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(self, now: datetime | None = None) -> JobRecord | None:
        """Atomically move the earliest-due pending job to ``running``.

        Returns:
            The claimed record, or ``None`` if no pending job is due.
        """
        stamp = to_db(now or utcnow())
        async with self._db.transaction() as conn:
            async with conn.execute(
                """
                UPDATE jobs
                   SET state = 'running', updated_at = ?
                 WHERE id = (
                        SELECT id FROM jobs
                         WHERE state = 'pending' AND run_at <= ?
                         ORDER BY run_at, created_at
                         LIMIT 1
                       )
                   AND state = 'pending'
                RETURNING *
                """,
                (stamp, stamp),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return None
        return _row_to_record(rows[0])

    # ------------------------------------------------------------------
    # Terminal / retry transitions
    # ------------------------------------------------------------------

    async def complete(
        self, job_id: str, follow_ups: Sequence[JobSpec] = ()
    ) -> tuple[JobRecord, list[tuple[JobRecord, bool]]]:
        """Mark *job_id* succeeded and enqueue *follow_ups* atomically.

        Returns:
            The succeeded record and one ``(record, created)`` pair per
            follow-up, in order.

        Raises:
            StorageError: If the job is no longer ``running``.
        """
        async with self._db.transaction() as conn:
            record = await self._transition(
                conn,
                job_id,
                "UPDATE jobs SET state = 'succeeded', last_error = NULL, updated_at = ? "
                "WHERE id = ? AND state = 'running' RETURNING *",
                (to_db(utcnow()), job_id),
            )
            spawned = [await self._enqueue_in(conn, spec) for spec in follow_ups]
        return record, spawned

    async def retry(self, job_id: str, error: str, run_at: datetime) -> JobRecord:
        """Count a failed attempt and re-arm *job_id* as pending at *run_at*."""
        async with self._db.transaction() as conn:
            return await self._transition(
                conn,
                job_id,
                "UPDATE jobs SET state = 'pending', attempts = attempts + 1, "
                "last_error = ?, run_at = ?, updated_at = ? "
                "WHERE id = ? AND state = 'running' RETURNING *",
                (_truncate(error), to_db(run_at), to_db(utcnow()), job_id),
            )

    async def fail(self, job_id: str, error: str, *, count_attempt: bool = True) -> JobRecord:
        """Mark *job_id* terminally failed.

        Args:
            job_id: The running job.
            error: Failure text stored in ``last_error``.
            count_attempt: Whether the failure consumed an attempt
                (``False`` for validation failures).
        """
        async with self._db.transaction() as conn:
            return await self._transition(
                conn,
                job_id,
                "UPDATE jobs SET state = 'failed', attempts = attempts + ?, "
                "last_error = ?, updated_at = ? "
                "WHERE id = ? AND state = 'running' RETURNING *",
                (1 if count_attempt else 0, _truncate(error), to_db(utcnow()), job_id),
            )

    async def _transition(
        self,
        conn: aiosqlite.Connection,
        job_id: str,
        sql: str,
        params: tuple[object, ...],
    ) -> JobRecord:
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            raise StorageError(f"Job {job_id} is not running; transition rejected.")
        return _row_to_record(rows[0])

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_running(self) -> list[JobRecord]:
        """Re-arm every ``running`` job as ``pending``.

        Only safe while no worker of any process is running, i.e. at
        start-up.  Attempts are left untouched.
        """
        now = to_db(utcnow())
        async with self._db.transaction() as conn:
            async with conn.execute(
                "UPDATE jobs SET state = 'pending', run_at = ?, updated_at = ? "
                "WHERE state = 'running' RETURNING *",
                (now, now),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> JobRecord | None:
        row = await self._db.fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return _row_to_record(row) if row is not None else None

    async def find_active(self, key: str) -> JobRecord | None:
        """Return the active job for dedup key *key*, if any."""
        row = await self._db.fetchone(
            "SELECT * FROM jobs WHERE dedup_key = ? AND state IN (?, ?) LIMIT 1",
            (key, *_ACTIVE_STATES),
        )
        return _row_to_record(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        states: Iterable[JobState] | None = None,
        name: str | None = None,
        limit: int = 100,
    ) -> list[JobRecord]:
        """List jobs, newest first, optionally filtered by state and name."""
        clauses: list[str] = []
        params: list[object] = []
        if states is not None:
            wanted = [str(s) for s in states]
            if not wanted:
                return []
            clauses.append(f"state IN ({', '.join('?' * len(wanted))})")
            params.extend(wanted)
        if name is not None:
            clauses.append("name = ?")
            params.append(name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetchall(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_record(row) for row in rows]

    async def counts(self) -> dict[JobState, int]:
        """Return the number of jobs in every state (zero-filled)."""
        rows = await self._db.fetchall("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state")
        result = {state: 0 for state in JobState}
        for row in rows:
            result[JobState(row["state"])] = row["n"]
        return result

    async def has_due(self, now: datetime | None = None) -> bool:
        """``True`` if a pending job is claimable at *now*."""
        row = await self._db.fetchone(
            "SELECT 1 FROM jobs WHERE state = 'pending' AND run_at <= ? LIMIT 1",
            (to_db(now or utcnow()),),
        )
        return row is not None
