"""Storage layer: SQLite initialisation and repositories."""

from repowatch.storage.database import Database, open_db
from repowatch.storage.jobs import JobRepository, JobSpec
from repowatch.storage.repository import BookmarkRepository, MonitorRepository, ReportRepository

__all__ = [
    "BookmarkRepository",
    "Database",
    "JobRepository",
    "JobSpec",
    "MonitorRepository",
    "ReportRepository",
    "open_db",
]
