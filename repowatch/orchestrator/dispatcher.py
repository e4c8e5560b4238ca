"""Dispatcher: durable job queue engine and worker pool.

The dispatcher owns the job lifecycle on top of
:class:`~repowatch.storage.jobs.JobRepository`:

1. :meth:`Dispatcher.enqueue` persists a job (or coalesces into the active
   one with the same dedup key).
2. Workers repeatedly :meth:`~repowatch.storage.jobs.JobRepository.claim`
   the earliest-due pending job; the claim is one atomic conditional update,
   so no two workers ever run the same row.
3. The claimed record is rebuilt into a :class:`~repowatch.jobs.base.Job`,
   validated, then executed.
4. Outcome:

   * **success**: the job is marked ``succeeded`` and its follow-up jobs
     are enqueued in the same transaction;
   * **validation failure**: ``failed`` without consuming an attempt;
   * **retryable failure** with attempts left: re-armed to ``pending`` with
     ``run_at = now + backoff``;
   * otherwise: ``failed``.

Every transition is reported to the :class:`~repowatch.notifiers.Notifier`.

No exception escapes a worker.  Unexpected errors are recorded as
``last_error`` and treated as transient.  Cancellation while a job executes
is also recorded as a retryable failure before the cancellation propagates.

While a job runs, :data:`~repowatch.core.logging_config.JOB_ID_CTX` holds its
id, so every log line emitted on its behalf carries ``[<job id>]``.

Backoff
-------
``delay = min(base * 2 ** (attempts - 1), max)`` seconds, plus up to
``jitter`` × delay of random spread, where *attempts* counts failed
executions so far (1 after the first failure).

Typical usage::

    dispatcher = Dispatcher(jobs, context, notifier, job_types=default_job_types())
    await dispatcher.enqueue(BookmarkUpdatedJob(bookmark.id))

    stop = asyncio.Event()
    await dispatcher.run(stop, workers=4)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from repowatch.core import events
from repowatch.core.clock import utcnow
from repowatch.core.exceptions import (
    DispatcherError,
    ValidationFailedError,
    is_retryable,
)
from repowatch.core.logging_config import JOB_ID_CTX
from repowatch.core.models import JobEvent, JobRecord
from repowatch.jobs.base import Job, JobContext, JobTypeTable
from repowatch.notifiers.notifier import Notifier
from repowatch.orchestrator.metrics import DispatcherStats
from repowatch.storage.jobs import JobRepository

__all__ = ["Dispatcher", "backoff_delay"]

logger = logging.getLogger(__name__)

_DEFAULT_MAX_ATTEMPTS: int = 5
_DEFAULT_BACKOFF_BASE: float = 2.0
_DEFAULT_BACKOFF_MAX: float = 3600.0
_DEFAULT_POLL_INTERVAL: float = 1.0
_DEFAULT_JITTER: float = 0.1


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """Seconds to wait before the next try after *attempts* failed executions.

    Example::

        >>> [backoff_delay(n, 2.0, 60.0) for n in range(1, 7)]
        [2.0, 4.0, 8.0, 16.0, 32.0, 60.0]
    """
    exponent = max(attempts - 1, 0)
    try:
        delay = base * (2.0 ** exponent)
    except OverflowError:
        return maximum
    return min(delay, maximum)


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class Dispatcher:
    """Runs queued jobs with a pool of symmetric workers.

    Args:
        jobs: Queue persistence.
        context: Collaborators handed to every job.
        notifier: Lifecycle event sink.
        job_types: Table used to rebuild jobs from their records.
        max_attempts: Attempt budget given to newly enqueued jobs.
        backoff_base: First retry delay in seconds.
        backoff_max: Retry delay ceiling in seconds.
        poll_interval: Idle worker re-poll cadence in seconds.
        jitter: Random spread added to each backoff, as a fraction of it.
        clock: Returns the current aware UTC datetime.  Override in tests.
        stats: Counter sink; a fresh one is created if omitted.
    """

    def __init__(
        self,
        jobs: JobRepository,
        context: JobContext,
        notifier: Notifier,
        *,
        job_types: JobTypeTable,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = _DEFAULT_BACKOFF_BASE,
        backoff_max: float = _DEFAULT_BACKOFF_MAX,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
        jitter: float = _DEFAULT_JITTER,
        clock: Callable[[], datetime] = utcnow,
        stats: DispatcherStats | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        self._jobs = jobs
        self._context = context
        self._notifier = notifier
        self._job_types = job_types
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._poll_interval = poll_interval
        self._jitter = jitter
        self._clock = clock
        self.stats = stats or DispatcherStats()
        self._wakeup = asyncio.Event()

    @property
    def jobs(self) -> JobRepository:
        return self._jobs

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> tuple[JobRecord, bool]:
        """Persist *job*, or return the active job with the same dedup key.

        Returns:
            ``(record, created)``.
        """
        if job.name not in self._job_types:
            raise DispatcherError(f"Job name {job.name!r} is not registered.")
        record, created = await self._jobs.enqueue(job.to_spec(self._max_attempts))
        self._after_enqueue(record, created)
        return record, created

    def _after_enqueue(self, record: JobRecord, created: bool) -> None:
        if created:
            self.stats.record(record.name, "enqueued")
            logger.info(
                "Enqueued %s for %s (job %s).",
                record.name,
                record.target,
                record.id,
                extra={"event": events.JOB_ENQUEUED},
            )
            self._notify(events.NOTIFY_ENQUEUED, record)
            self._wakeup.set()
        else:
            self.stats.record(record.name, "coalesced")
            logger.debug(
                "%s for %s already active as job %s.",
                record.name,
                record.target,
                record.id,
                extra={"event": events.JOB_COALESCED},
            )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self) -> list[JobRecord]:
        """Re-arm jobs left ``running`` by a previous process.

        Call once at start-up, before any worker runs.
        """
        recovered = await self._jobs.recover_running()
        for record in recovered:
            logger.warning(
                "Recovered orphaned job %s (%s for %s).",
                record.id,
                record.name,
                record.target,
                extra={"event": events.JOB_RECOVERED},
            )
        return recovered

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_one(self) -> bool:
        """Claim and run one due job.

        Returns:
            ``True`` if a job was processed, ``False`` if none was due.
        """
        record = await self._jobs.claim(self._clock())
        if record is None:
            return False

        token = JOB_ID_CTX.set(record.id)
        try:
            self.stats.record(record.name, "claimed")
            logger.debug(
                "Claimed %s for %s (attempt %d/%d).",
                record.name,
                record.target,
                record.attempts + 1,
                record.max_attempts,
                extra={"event": events.JOB_CLAIMED},
            )
            try:
                await self._run(record)
            except Exception as exc:  # noqa: BLE001
                await self._rescue(record, exc)
        finally:
            JOB_ID_CTX.reset(token)
        return True

    async def _rescue(self, record: JobRecord, exc: Exception) -> None:
        """Re-arm *record* after its outcome could not be written.

        The failed write counts as a failed attempt.  If that cannot be
        stored either, the job stays ``running`` until :meth:`recover`.
        """
        logger.exception(
            "Could not record the outcome of job %s; re-arming it.",
            record.id,
            extra={"event": events.JOB_RETRY},
        )
        try:
            await self._handle_failure(record, exc)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Job %s left running; it is re-armed on the next start-up.", record.id
            )

    async def _run(self, record: JobRecord) -> None:
        try:
            job = self._job_types.build(record)
        except DispatcherError as exc:
            await self._finish_failed(record, exc, count_attempt=True)
            return

        try:
            await job.validate(self._context)
        except ValidationFailedError as exc:
            await self._finish_failed(record, exc, count_attempt=False)
            return
        except asyncio.CancelledError as exc:
            await self._record_cancellation(record, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            await self._handle_failure(record, exc)
            return

        try:
            follow_ups = await job.execute(self._context)
        except asyncio.CancelledError as exc:
            await self._record_cancellation(record, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            await self._handle_failure(record, exc)
            return

        await self._finish_succeeded(record, follow_ups)

    async def _finish_succeeded(self, record: JobRecord, follow_ups: list[Job]) -> None:
        unknown = [f.name for f in follow_ups if f.name not in self._job_types]
        if unknown:
            await self._handle_failure(
                record, DispatcherError(f"Job emitted unregistered follow-ups: {unknown}")
            )
            return

        done, spawned = await self._jobs.complete(
            record.id, [f.to_spec(self._max_attempts) for f in follow_ups]
        )
        self.stats.record(done.name, "succeeded")
        logger.info(
            "Job %s (%s for %s) succeeded; %d follow-up(s).",
            done.id,
            done.name,
            done.target,
            len(spawned),
            extra={"event": events.JOB_SUCCEEDED},
        )
        self._notify(events.NOTIFY_SUCCEEDED, done, follow_ups=[r.id for r, _ in spawned])
        for spawned_record, created in spawned:
            self._after_enqueue(spawned_record, created)

    async def _handle_failure(self, record: JobRecord, exc: BaseException) -> None:
        attempts = record.attempts + 1
        if is_retryable(exc) and attempts < record.max_attempts:
            delay = self._next_delay(attempts)
            run_at = self._clock() + timedelta(seconds=delay)
            updated = await self._jobs.retry(record.id, _describe(exc), run_at)
            self.stats.record(updated.name, "retried")
            logger.warning(
                "Job %s (%s for %s) failed attempt %d/%d: %s. Retrying in %.1f s.",
                updated.id,
                updated.name,
                updated.target,
                updated.attempts,
                updated.max_attempts,
                _describe(exc),
                delay,
                extra={"event": events.JOB_RETRY},
            )
            self._notify(
                events.NOTIFY_RETRYING,
                updated,
                error=updated.last_error,
                attempts=updated.attempts,
                run_at=updated.run_at.isoformat(),
            )
            return

        await self._finish_failed(record, exc, count_attempt=True)

    async def _finish_failed(
        self, record: JobRecord, exc: BaseException, *, count_attempt: bool
    ) -> None:
        updated = await self._jobs.fail(record.id, _describe(exc), count_attempt=count_attempt)
        self.stats.record(updated.name, "failed")
        logger.error(
            "Job %s (%s for %s) failed after %d attempt(s): %s",
            updated.id,
            updated.name,
            updated.target,
            updated.attempts,
            _describe(exc),
            exc_info=not isinstance(exc, ValidationFailedError | DispatcherError),
            extra={"event": events.JOB_FAILED},
        )
        self._notify(
            events.NOTIFY_FAILED,
            updated,
            error=updated.last_error,
            attempts=updated.attempts,
        )

    async def _record_cancellation(self, record: JobRecord, exc: asyncio.CancelledError) -> None:
        """Persist a cancelled execution as a retryable failure.

        Shielded so the bookkeeping survives the cancellation that caused it.
        """
        try:
            await asyncio.shield(self._handle_failure(record, exc))
        except Exception:  # noqa: BLE001
            logger.exception("Could not record cancellation of job %s.", record.id)

    def _next_delay(self, attempts: int) -> float:
        delay = backoff_delay(attempts, self._backoff_base, self._backoff_max)
        if self._jitter > 0 and delay > 0:
            delay += random.uniform(0.0, delay * self._jitter)
        return delay

    def _notify(self, kind: str, record: JobRecord, **payload: Any) -> None:
        try:
            self._notifier.notify(JobEvent.from_record(kind, record, **payload))
        except Exception:  # noqa: BLE001
            logger.exception("Notifier raised on %s for job %s.", kind, record.id)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _worker(self, index: int, stop: asyncio.Event) -> None:
        logger.debug("Worker %d started.", index, extra={"event": events.WORKER_START})
        while not stop.is_set():
            try:
                processed = await self.process_one()
            except Exception:  # noqa: BLE001
                logger.exception("Worker %d: unexpected error while processing.", index)
                processed = False

            if processed:
                continue
            await self._idle(stop)
        logger.debug("Worker %d stopped.", index, extra={"event": events.WORKER_STOP})

    async def _idle(self, stop: asyncio.Event) -> None:
        """Sleep until *stop*, a new enqueue, or the poll interval elapses."""
        self._wakeup.clear()
        stop_wait = asyncio.ensure_future(stop.wait())
        wake_wait = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait(
                {stop_wait, wake_wait},
                timeout=self._poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_wait.cancel()
            wake_wait.cancel()

    async def run(self, stop: asyncio.Event, *, workers: int = 1) -> None:
        """Run *workers* workers until *stop* is set.

        Workers finish the job they are running before exiting.
        """
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers!r}.")
        logger.info("Dispatcher starting %d worker(s).", workers)
        async with asyncio.TaskGroup() as group:
            for index in range(workers):
                group.create_task(self._worker(index, stop), name=f"repowatch-worker-{index}")
        logger.info("Dispatcher stopped.\n%s", self.stats.format_summary())

    async def drain(self, *, limit: int | None = None) -> int:
        """Process due jobs one at a time until none is due.

        Follow-ups due immediately are processed too; retries scheduled in
        the future are not waited for.

        Args:
            limit: Stop after this many jobs.

        Returns:
            The number of jobs processed.
        """
        processed = 0
        while limit is None or processed < limit:
            if not await self.process_one():
                break
            processed += 1
        return processed
