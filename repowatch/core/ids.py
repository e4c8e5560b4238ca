"""Identifier helpers for Repowatch.

Record ids
----------
Every persisted row (job, monitor, bookmark) gets an opaque id from
:func:`new_id`.  Ids carry no meaning; never parse them.

Dedup keys
----------
A job's dedup key is ``"<name>:<target_kind>:<target_id>"``, e.g.
``"monitor_crawler:monitor:3f2a…"``.  The jobs table enforces at most one
*active* (pending or running) row per key, which is how duplicate enqueues
of the same logical work are coalesced.

Typical usage::

    from repowatch.core.ids import dedup_key, new_id

    job_id = new_id()
    key = dedup_key("bookmark_updated", "bookmark", bookmark_id)
"""

from __future__ import annotations

import logging
import uuid

__all__ = [
    "DEDUP_KEY_SEPARATOR",
    "new_id",
    "dedup_key",
]

logger = logging.getLogger(__name__)

#: Separator placed between the parts of a dedup key.
DEDUP_KEY_SEPARATOR: str = ":"


def new_id() -> str:
    """Return a new random record identifier (32 hex characters)."""
    return uuid.uuid4().hex


def dedup_key(name: str, target_kind: str, target_id: str) -> str:
    """Return the dedup key for a job.

    Args:
        name: Job-type discriminator.
        target_kind: Kind of the targeted entity (``"bookmark"`` …).
        target_id: Identifier of the targeted entity.

    Example::

        assert dedup_key("monitor_crawler", "monitor", "42") == "monitor_crawler:monitor:42"
    """
    return DEDUP_KEY_SEPARATOR.join((name, str(target_kind), target_id))
