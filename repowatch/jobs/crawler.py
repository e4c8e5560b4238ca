"""Monitor-crawler job: fetch provider reports for one monitor.

Asks the provider registry which providers claim the monitor URL, stores the
report each of them returned and stamps the monitor as fetched.  The crawl
attempt is stamped first, so a monitor whose crawls keep failing is not
picked again by the stale sweep before the next interval.  A URL no provider
claims is not an error.
"""

from __future__ import annotations

import logging

from repowatch.core.exceptions import TerminalExecutionError, ValidationFailedError
from repowatch.core.models import TargetKind
from repowatch.jobs.base import Job, JobContext

__all__ = ["MonitorCrawlerJob"]

logger = logging.getLogger(__name__)


class MonitorCrawlerJob(Job):
    name = "monitor_crawler"
    target_kind = TargetKind.MONITOR

    async def validate(self, ctx: JobContext) -> None:
        if await ctx.monitors.get(self.target_id) is None:
            raise ValidationFailedError(f"Monitor {self.target_id} does not exist.")

    async def execute(self, ctx: JobContext) -> list[Job]:
        monitor = await ctx.monitors.get(self.target_id)
        if monitor is None:
            raise TerminalExecutionError(f"Monitor {self.target_id} disappeared.")

        await ctx.monitors.mark_crawl_attempted(monitor.id)
        handles = await ctx.registry.guess(monitor.url)
        if not handles:
            logger.info("No provider claims %s (monitor %s).", monitor.url, monitor.id)

        for handle in handles:
            await ctx.reports.upsert(monitor.id, handle.provider, str(handle.uri), handle.report)

        await ctx.monitors.mark_fetched(monitor.id)
        logger.info(
            "Crawled monitor %s (%s): %d report(s).",
            monitor.id,
            monitor.url,
            len(handles),
        )
        return []
