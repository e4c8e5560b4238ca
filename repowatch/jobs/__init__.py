"""Job variants and the job-type table the dispatcher rebuilds them from."""

from repowatch.jobs.base import Job, JobContext, JobTypeTable
from repowatch.jobs.bookmark import BookmarkUpdatedJob
from repowatch.jobs.crawler import MonitorCrawlerJob

__all__ = [
    "BookmarkUpdatedJob",
    "Job",
    "JobContext",
    "JobTypeTable",
    "MonitorCrawlerJob",
    "default_job_types",
]


def default_job_types() -> JobTypeTable:
    """Return a table with every built-in job variant registered."""
    return JobTypeTable([BookmarkUpdatedJob, MonitorCrawlerJob])
