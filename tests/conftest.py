"""Shared pytest fixtures and configuration for the Repowatch test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across the unit tests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from pydantic_settings import SettingsConfigDict

from repowatch.core import configure_logging
from repowatch.core.settings import Settings
from repowatch.storage import (
    BookmarkRepository,
    Database,
    JobRepository,
    MonitorRepository,
    ReportRepository,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    ``force=True`` applies the configuration even when pytest's own
    ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every Repowatch-related env var for the duration of a test.

    Also disables pydantic-settings ``.env`` loading so a developer's local
    tokens never leak into Settings isolation tests.
    """
    prefixes = (
        "GITHUB_",
        "DATABASE_",
        "WORKER_",
        "JOB_",
        "CREDENTIAL_",
        "RECRAWL_",
        "NOTIFY_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Path of a fresh SQLite file inside the test's temp directory."""
    return tmp_path / "repowatch.db"


@pytest.fixture()
async def db(db_path: Path) -> AsyncIterator[Database]:
    """An open :class:`Database` with the schema bootstrapped."""
    database = await Database.open(db_path)
    try:
        yield database
    finally:
        await database.close()


@pytest.fixture()
def job_repo(db: Database) -> JobRepository:
    return JobRepository(db)


@pytest.fixture()
def monitor_repo(db: Database) -> MonitorRepository:
    return MonitorRepository(db)


@pytest.fixture()
def report_repo(db: Database) -> ReportRepository:
    return ReportRepository(db)


@pytest.fixture()
def bookmark_repo(db: Database) -> BookmarkRepository:
    return BookmarkRepository(db)


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to test code."""
    return logging.getLogger("tests")
