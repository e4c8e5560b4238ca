"""Repowatch core domain models.

Defines the persisted :class:`JobRecord`, the normalised provider
:class:`Report`, the tracked :class:`Monitor` entity, the minimal
:class:`Bookmark` view this engine needs, and the :class:`JobEvent` handed to
the notifier.

Typical usage::

    from repowatch.core.models import Report

    report = Report(stars=120, watchers=8, license_key="mit")
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "JobState",
    "TargetKind",
    "TargetRef",
    "JobRecord",
    "FundingLink",
    "Report",
    "Monitor",
    "Bookmark",
    "JobEvent",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class JobState(StrEnum):
    """Persisted job states.

    ``pending`` and ``running`` are *active*: at most one active record may
    exist per dedup key.  ``succeeded`` and ``failed`` are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobState.PENDING, JobState.RUNNING)


class TargetKind(StrEnum):
    """Entity types a job can point at."""

    BOOKMARK = "bookmark"
    MONITOR = "monitor"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TargetRef(BaseModel):
    """Polymorphic reference to the entity a job concerns."""

    model_config = {"frozen": True}

    kind: TargetKind
    id: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class JobRecord(BaseModel):
    """Persisted unit of work, one row of the ``jobs`` table.

    Attributes:
        id: Unique identifier generated on enqueue.
        name: Job-type discriminator (e.g. ``"bookmark_updated"``).
        target_kind: Kind of the affected entity.
        target_id: Identifier of the affected entity.
        dedup_key: ``name`` + target reference; unique among active records.
        run_at: Earliest time a worker may claim the job.
        state: Current lifecycle state.
        attempts: Failed executions so far.
        max_attempts: Failed executions after which the job is terminal.
        last_error: Text of the most recent failure, if any.
        created_at: Insert timestamp.
        updated_at: Timestamp of the last state transition.
    """

    id: str
    name: str
    target_kind: TargetKind
    target_id: str
    dedup_key: str
    run_at: datetime
    state: JobState = JobState.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def target(self) -> TargetRef:
        return TargetRef(kind=self.target_kind, id=self.target_id)

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


# ---------------------------------------------------------------------------
# Provider reports
# ---------------------------------------------------------------------------


class FundingLink(BaseModel):
    """One sponsorship link advertised by a repository."""

    model_config = {"frozen": True}

    platform: str
    url: str


class Report(BaseModel):
    """Normalised external-metadata snapshot for one repository.

    Transient: built per fetch and handed to the report store.  Missing
    counters default to ``0`` so consumers never need ``None`` guards on
    arithmetic.
    """

    model_config = {"frozen": True}

    stars: int = Field(default=0, ge=0)
    watchers: int = Field(default=0, ge=0)
    open_issues: int = Field(default=0, ge=0)
    open_pull_requests: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    archived: bool = False
    disabled: bool = False
    mirror: bool = False
    language: str | None = None
    language_color: str | None = None
    license_name: str | None = None
    license_key: str | None = None
    homepage_url: str | None = None
    funding_links: tuple[FundingLink, ...] = ()
    source_updated_at: datetime | None = None

    @field_validator("language", "language_color", "license_name", "license_key",
                     "homepage_url", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        """Coerce blank strings to None."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------------------------------------------------------------------------
# Tracked entities
# ---------------------------------------------------------------------------


class Monitor(BaseModel):
    """A tracked canonical URL; shared by every bookmark pointing at it."""

    id: str
    url: str
    fetched_at: datetime | None = None
    crawl_attempted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Bookmark(BaseModel):
    """The slice of a user bookmark this engine reads and writes."""

    id: str
    url: str = Field(..., min_length=1)
    monitor_id: str | None = None


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class JobEvent(BaseModel):
    """Lifecycle notification handed to the external notifier."""

    model_config = {"frozen": True}

    kind: str
    job_id: str
    job_name: str
    target_kind: TargetKind
    target_id: str
    state: JobState
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(
        cls, kind: str, record: JobRecord, **payload: Any
    ) -> JobEvent:
        return cls(
            kind=kind,
            job_id=record.id,
            job_name=record.name,
            target_kind=record.target_kind,
            target_id=record.target_id,
            state=record.state,
            payload=payload,
        )
