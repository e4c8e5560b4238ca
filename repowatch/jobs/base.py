"""Job contract and the job-type table.

A :class:`Job` is one named unit of work tied to a target entity.  The
dispatcher only talks to jobs through this capability set:

* :meth:`Job.identify`: ``(name, dedup_key)``; the dedup key enforces at most
  one active job per name and target.
* :meth:`Job.target`: the entity the job concerns.
* :meth:`Job.scheduled_at`: ``None`` means run as soon as claimed.
* :meth:`Job.validate`: cheap pre-check; raising
  :class:`~repowatch.core.exceptions.ValidationFailedError` fails the job
  without consuming an attempt.
* :meth:`Job.execute`: the work itself; returns follow-up jobs, which the
  dispatcher enqueues in the same transaction that marks this job succeeded.

Jobs are persisted as :class:`~repowatch.core.models.JobRecord` rows and
rebuilt from them through a :class:`JobTypeTable`, which maps the ``name``
column back to the job class.

Typical usage::

    class PingJob(Job):
        name = "ping"
        target_kind = TargetKind.MONITOR

        async def execute(self, ctx: JobContext) -> list[Job]:
            ...
            return []

    table = JobTypeTable([PingJob])
    job = table.build(record)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar

from repowatch.core.exceptions import DispatcherError
from repowatch.core.ids import dedup_key
from repowatch.core.models import JobRecord, TargetKind, TargetRef
from repowatch.providers.registry import ProviderRegistry
from repowatch.storage.jobs import JobSpec
from repowatch.storage.repository import BookmarkRepository, MonitorRepository, ReportRepository

__all__ = ["Job", "JobContext", "JobTypeTable"]

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Collaborators handed to every :meth:`Job.validate` / :meth:`Job.execute`.

    Attributes:
        registry: Provider registry used for URL guessing and fetches.
        monitors: Tracked-URL repository (the target resolver).
        reports: Report store.
        bookmarks: Bookmark store.
    """

    registry: ProviderRegistry
    monitors: MonitorRepository
    reports: ReportRepository
    bookmarks: BookmarkRepository


class Job(ABC):
    """Base class for every job variant.

    Subclasses declare :attr:`name` and :attr:`target_kind` and implement
    :meth:`execute`.

    Args:
        target_id: Id of the entity the job concerns.
        run_at: Earliest execution time; ``None`` for immediately.
    """

    name: ClassVar[str]
    target_kind: ClassVar[TargetKind]

    def __init__(self, target_id: str, *, run_at: datetime | None = None) -> None:
        if not target_id:
            raise ValueError(f"{type(self).__name__} needs a target id.")
        self.target_id = target_id
        self._run_at = run_at

    def __repr__(self) -> str:
        return f"{type(self).__name__}(target_id={self.target_id!r})"

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def target(self) -> TargetRef:
        return TargetRef(kind=self.target_kind, id=self.target_id)

    def identify(self) -> tuple[str, str]:
        """Return ``(name, dedup_key)``."""
        return self.name, dedup_key(self.name, self.target_kind, self.target_id)

    def scheduled_at(self) -> datetime | None:
        return self._run_at

    def to_spec(self, max_attempts: int) -> JobSpec:
        """Describe this job for insertion into the queue."""
        return JobSpec(
            name=self.name,
            target_kind=self.target_kind,
            target_id=self.target_id,
            run_at=self.scheduled_at(),
            max_attempts=max_attempts,
        )

    @classmethod
    def from_record(cls, record: JobRecord) -> Job:
        """Rebuild the job from its persisted row."""
        return cls(record.target_id, run_at=record.run_at)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def validate(self, ctx: JobContext) -> None:  # noqa: B027
        """Pre-check run before :meth:`execute`.  Accepts everything by default.

        Raises:
            ValidationFailedError: If the job should not run at all.
        """

    @abstractmethod
    async def execute(self, ctx: JobContext) -> list[Job]:
        """Do the work.

        Returns:
            Follow-up jobs to enqueue (possibly empty).

        Raises:
            TerminalExecutionError: For failures that will never succeed.
            Exception: Anything else is retried within the attempt budget,
                unless :func:`~repowatch.core.exceptions.is_retryable` says
                otherwise.
        """


class JobTypeTable:
    """Maps persisted job names to job classes.

    Args:
        job_types: Job classes to register.
    """

    def __init__(self, job_types: Iterable[type[Job]] = ()) -> None:
        self._types: dict[str, type[Job]] = {}
        for job_type in job_types:
            self.register(job_type)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def register(self, job_type: type[Job]) -> type[Job]:
        """Register *job_type* under its ``name``.  Usable as a decorator."""
        if job_type.name in self._types and self._types[job_type.name] is not job_type:
            raise DispatcherError(f"Job name {job_type.name!r} is already registered.")
        self._types[job_type.name] = job_type
        return job_type

    def names(self) -> list[str]:
        return sorted(self._types)

    def build(self, record: JobRecord) -> Job:
        """Rebuild the :class:`Job` a record describes.

        Raises:
            DispatcherError: If the record's name is not registered or its
                target kind does not match the job class.
        """
        job_type = self._types.get(record.name)
        if job_type is None:
            raise DispatcherError(f"Unknown job name {record.name!r} (job {record.id}).")
        if job_type.target_kind != record.target_kind:
            raise DispatcherError(
                f"Job {record.id} targets {record.target_kind}, "
                f"but {record.name!r} expects {job_type.target_kind}."
            )
        return job_type.from_record(record)
