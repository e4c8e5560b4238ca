"""Structured log event name constants for the Repowatch engine.

Every key transition in the dispatcher, credential pool and metadata client
emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event``; in text mode the message is self-describing.

The dotted ``NOTIFY_*`` values are the event kinds handed to the external
notifier, not log event names.

Usage example::

    import logging
    from repowatch.core import events

    logger = logging.getLogger(__name__)

    logger.info("Job claimed", extra={"event": events.JOB_CLAIMED})
"""

from __future__ import annotations

__all__ = [
    # Job lifecycle
    "JOB_ENQUEUED",
    "JOB_COALESCED",
    "JOB_CLAIMED",
    "JOB_SUCCEEDED",
    "JOB_RETRY",
    "JOB_FAILED",
    "JOB_RECOVERED",
    # Worker pool
    "WORKER_START",
    "WORKER_STOP",
    "SWEEP_COMPLETE",
    # Credentials
    "CREDENTIAL_EXHAUSTED",
    "CREDENTIAL_UNAVAILABLE",
    # Provider
    "PROVIDER_FETCH_OK",
    "PROVIDER_FETCH_ERROR",
    # Notifier event kinds
    "NOTIFY_ENQUEUED",
    "NOTIFY_SUCCEEDED",
    "NOTIFY_RETRYING",
    "NOTIFY_FAILED",
]

# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

#: A new job record was persisted by ``enqueue``.
JOB_ENQUEUED: str = "JOB_ENQUEUED"

#: ``enqueue`` found an active job with the same dedup key; nothing inserted.
JOB_COALESCED: str = "JOB_COALESCED"

#: A worker transitioned a pending job to running.
JOB_CLAIMED: str = "JOB_CLAIMED"

#: Job finished; follow-up jobs (if any) were enqueued in the same transaction.
JOB_SUCCEEDED: str = "JOB_SUCCEEDED"

#: Job failed with a retryable error and was re-armed with a delayed run_at.
JOB_RETRY: str = "JOB_RETRY"

#: Job reached a terminal failure (validation, terminal error, or budget spent).
JOB_FAILED: str = "JOB_FAILED"

#: A job left ``running`` by a previous process was re-armed at startup.
JOB_RECOVERED: str = "JOB_RECOVERED"

# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

WORKER_START: str = "WORKER_START"
WORKER_STOP: str = "WORKER_STOP"

#: The stale-monitor sweep finished one pass.
SWEEP_COMPLETE: str = "SWEEP_COMPLETE"

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

#: Response headers reported an empty rate-limit window for a credential.
CREDENTIAL_EXHAUSTED: str = "CREDENTIAL_EXHAUSTED"

#: ``acquire`` gave up after the bounded wait.
CREDENTIAL_UNAVAILABLE: str = "CREDENTIAL_UNAVAILABLE"

# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

PROVIDER_FETCH_OK: str = "PROVIDER_FETCH_OK"
PROVIDER_FETCH_ERROR: str = "PROVIDER_FETCH_ERROR"

# ---------------------------------------------------------------------------
# Notifier event kinds
# ---------------------------------------------------------------------------

NOTIFY_ENQUEUED: str = "job.enqueued"
NOTIFY_SUCCEEDED: str = "job.succeeded"
NOTIFY_RETRYING: str = "job.retrying"
NOTIFY_FAILED: str = "job.failed"
