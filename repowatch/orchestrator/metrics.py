"""Cumulative dispatcher statistics.

:class:`DispatcherStats` counts job outcomes for the lifetime of one
dispatcher, overall and per job name.  The scheduler logs
:meth:`DispatcherStats.format_summary` after every stale-monitor sweep and
on shutdown.

Typical usage::

    stats = DispatcherStats()
    stats.record("monitor_crawler", "succeeded")
    logger.info("%s", stats.format_summary())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

__all__ = ["OUTCOMES", "DispatcherStats", "JobTypeStats"]

logger = logging.getLogger(__name__)

#: Outcome names accepted by :meth:`DispatcherStats.record`.
OUTCOMES: tuple[str, ...] = ("enqueued", "coalesced", "claimed", "succeeded", "retried", "failed")


@dataclass
class JobTypeStats:
    """Counters for one job name."""

    name: str
    enqueued: int = 0
    coalesced: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0


@dataclass
class DispatcherStats:
    """Lifetime counters of one :class:`~repowatch.orchestrator.dispatcher.Dispatcher`.

    Attributes:
        enqueued: Jobs inserted.
        coalesced: Enqueues answered with an already-active job.
        claimed: Jobs picked up by a worker.
        succeeded: Jobs that reached ``succeeded``.
        retried: Failed executions that were re-armed.
        failed: Jobs that reached ``failed``.
    """

    enqueued: int = 0
    coalesced: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0

    _start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _started_at: datetime = field(default_factory=lambda: datetime.now(UTC), repr=False)
    _by_name: dict[str, JobTypeStats] = field(default_factory=dict, repr=False)

    @property
    def uptime_s(self) -> float:
        return time.monotonic() - self._start_monotonic

    @property
    def by_name(self) -> dict[str, JobTypeStats]:
        return self._by_name

    def record(self, job_name: str, outcome: str) -> None:
        """Count one *outcome* for *job_name*.

        Raises:
            ValueError: If *outcome* is not one of :data:`OUTCOMES`.
        """
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome {outcome!r}")
        setattr(self, outcome, getattr(self, outcome) + 1)
        per_name = self._by_name.setdefault(job_name, JobTypeStats(name=job_name))
        setattr(per_name, outcome, getattr(per_name, outcome) + 1)

    def format_summary(self) -> str:
        """Return a multi-line summary suitable for one ``logger.info()`` call.

        Example output::

            dispatcher stats, uptime 0h14m22s | enqueued=12 coalesced=3 claimed=12
              succeeded=10 retried=2 failed=1
              bookmark_updated: enqueued=6 claimed=6 succeeded=6 retried=0 failed=0
              monitor_crawler: enqueued=6 claimed=6 succeeded=4 retried=2 failed=1
        """
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)
        lines = [
            f"dispatcher stats, uptime {hours}h{minutes:02d}m{seconds:02d}s | "
            f"enqueued={self.enqueued} coalesced={self.coalesced} claimed={self.claimed}",
            f"  succeeded={self.succeeded} retried={self.retried} failed={self.failed}",
        ]
        for stats in sorted(self._by_name.values(), key=lambda s: s.name):
            lines.append(
                f"  {stats.name}: enqueued={stats.enqueued} claimed={stats.claimed} "
                f"succeeded={stats.succeeded} retried={stats.retried} failed={stats.failed}"
            )
        return "\n".join(lines)

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable snapshot."""
        return {
            "started_at": self._started_at.isoformat(),
            "uptime_s": round(self.uptime_s, 1),
            **{outcome: getattr(self, outcome) for outcome in OUTCOMES},
            "jobs": {
                name: {outcome: getattr(s, outcome) for outcome in OUTCOMES}
                for name, s in sorted(self._by_name.items())
            },
        }
