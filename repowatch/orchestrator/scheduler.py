"""Continuous mode: worker pool plus the stale-monitor sweep.

:func:`run_continuous` runs until ``SIGTERM`` or ``SIGINT``:

* re-arms jobs orphaned by a previous crash
  (:meth:`~repowatch.orchestrator.dispatcher.Dispatcher.recover`);
* runs ``settings.worker_count`` dispatcher workers;
* every ``recrawl_check_interval`` seconds, enqueues a crawl job for every
  monitor whose last fetch is older than ``recrawl_interval``
  (:func:`sweep_stale_monitors`).  Dedup keys make the sweep idempotent: a
  monitor whose crawl is already queued is coalesced, not queued twice.

Shutdown is graceful: the signal sets a stop event, the sweep exits, and
each worker finishes the job it is running before returning.

Typical usage::

    async with open_runtime(settings) as runtime:
        await run_continuous(runtime)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from datetime import datetime, timedelta

from repowatch.core import events
from repowatch.core.clock import utcnow
from repowatch.jobs.crawler import MonitorCrawlerJob
from repowatch.orchestrator.dispatcher import Dispatcher
from repowatch.orchestrator.runtime import Runtime
from repowatch.storage.repository import MonitorRepository

__all__ = ["run_continuous", "sweep_stale_monitors"]

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT)


async def sweep_stale_monitors(
    dispatcher: Dispatcher,
    monitors: MonitorRepository,
    recrawl_interval: float,
    *,
    now: datetime | None = None,
) -> int:
    """Enqueue a crawl for every monitor not crawled within *recrawl_interval*.

    Args:
        dispatcher: Where crawl jobs are enqueued.
        monitors: Monitor store.
        recrawl_interval: Maximum age of the last crawl in seconds.  ``0`` disables
            the sweep.
        now: Reference time; defaults to the current time.

    Returns:
        The number of crawl jobs newly enqueued (coalesced ones excluded).
    """
    if recrawl_interval <= 0:
        return 0
    cutoff = (now or utcnow()) - timedelta(seconds=recrawl_interval)
    stale = await monitors.list_stale(cutoff)

    enqueued = 0
    for monitor in stale:
        _, created = await dispatcher.enqueue(MonitorCrawlerJob(monitor.id))
        if created:
            enqueued += 1

    logger.info(
        "Stale sweep: %d stale monitor(s), %d crawl job(s) enqueued.",
        len(stale),
        enqueued,
        extra={"event": events.SWEEP_COMPLETE},
    )
    return enqueued


async def _sweep_loop(runtime: Runtime, stop: asyncio.Event) -> None:
    settings = runtime.settings
    if settings.recrawl_interval <= 0:
        logger.info("Stale-monitor sweep disabled (RECRAWL_INTERVAL=0).")
        return

    while not stop.is_set():
        try:
            await sweep_stale_monitors(
                runtime.dispatcher, runtime.monitors, settings.recrawl_interval
            )
        except Exception:
            logger.exception("Stale sweep failed; will retry after interval.")
        logger.debug("%s", runtime.dispatcher.stats.format_summary())

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=settings.recrawl_check_interval)


async def run_continuous(runtime: Runtime, stop: asyncio.Event | None = None) -> None:
    """Run workers and the stale sweep until *stop* is set or a signal arrives.

    Args:
        runtime: Assembled runtime from
            :func:`~repowatch.orchestrator.runtime.open_runtime`.
        stop: Optional externally controlled stop event.
    """
    stop = stop or asyncio.Event()
    settings = runtime.settings

    await runtime.dispatcher.recover()

    loop = asyncio.get_running_loop()
    received: list[str] = []

    def _request_shutdown(signame: str) -> None:
        if not received:
            received.append(signame)
            logger.info("Received %s; finishing in-flight jobs before exit.", signame)
        stop.set()

    installed: list[signal.Signals] = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s on this platform.", sig.name)

    logger.info(
        "Repowatch entering continuous mode: %d worker(s), recrawl every %d s.",
        settings.worker_count,
        settings.recrawl_interval,
    )
    try:
        async with asyncio.TaskGroup() as group:
            group.create_task(
                runtime.dispatcher.run(stop, workers=settings.worker_count),
                name="repowatch-dispatcher",
            )
            group.create_task(_sweep_loop(runtime, stop), name="repowatch-sweep")
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)

    if received:
        logger.info("Graceful shutdown complete (signal: %s).", received[0])
