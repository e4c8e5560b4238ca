"""Bookmark-updated job: link a bookmark to the monitor for its URL.

Runs whenever a bookmark is created or its URL changes.  The bookmark URL is
normalised, the monitor for that canonical URL is found or created, and the
bookmark is pointed at it.  Only a *newly created* monitor gets a crawl
follow-up; an existing monitor is already being crawled (or was crawled).
"""

from __future__ import annotations

import logging

from repowatch.core.exceptions import TerminalExecutionError, ValidationFailedError
from repowatch.core.models import TargetKind
from repowatch.core.urls import normalize_url
from repowatch.jobs.base import Job, JobContext
from repowatch.jobs.crawler import MonitorCrawlerJob

__all__ = ["BookmarkUpdatedJob"]

logger = logging.getLogger(__name__)


class BookmarkUpdatedJob(Job):
    name = "bookmark_updated"
    target_kind = TargetKind.BOOKMARK

    async def validate(self, ctx: JobContext) -> None:
        if await ctx.bookmarks.get(self.target_id) is None:
            raise ValidationFailedError(f"Bookmark {self.target_id} no longer exists.")

    async def execute(self, ctx: JobContext) -> list[Job]:
        bookmark = await ctx.bookmarks.get(self.target_id)
        if bookmark is None:
            raise TerminalExecutionError(f"Bookmark {self.target_id} disappeared.")

        try:
            url = normalize_url(bookmark.url)
        except ValueError as exc:
            raise TerminalExecutionError(f"Bookmark {bookmark.id}: {exc}") from exc

        monitor, created = await ctx.monitors.find_or_create(url)
        if bookmark.monitor_id != monitor.id:
            await ctx.bookmarks.set_monitor(bookmark.id, monitor.id)

        if not created:
            logger.debug("Bookmark %s joined existing monitor %s.", bookmark.id, monitor.id)
            return []

        logger.info("Bookmark %s created monitor %s; scheduling crawl.", bookmark.id, monitor.id)
        return [MonitorCrawlerJob(monitor.id)]
