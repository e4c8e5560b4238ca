"""Runtime configuration for repowatch.

One :class:`Settings` field per environment variable (``WORKER_COUNT`` ->
``worker_count``); a ``.env`` file in the working directory is read too, with
real environment variables taking precedence.

Typical usage::

    settings = Settings()
    if not settings.github_configured:
        ...
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

__all__ = ["Settings"]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS = ("text", "json")

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_tokens(raw: str) -> list[str]:
    """``"a, b,,c"`` -> ``["a", "b", "c"]``."""
    return [part for part in (piece.strip() for piece in raw.split(",")) if part]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Validated process configuration.

    With no ``GITHUB_TOKENS`` configured the GitHub provider is not
    registered; crawl jobs then find no matching provider and succeed with
    nothing to store.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/repowatch.db",
        description="SQLite file for jobs, monitors, reports and bookmarks.",
    )

    # ------------------------------------------------------------------
    # GitHub provider / credentials
    # ------------------------------------------------------------------
    github_tokens: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="GitHub API tokens (comma-separated in env).",
    )
    github_graphql_url: str = Field(
        default="https://api.github.com/graphql",
        description="GraphQL endpoint used for repository reports.",
    )
    credential_rate_ceiling: int = Field(
        default=5000,
        ge=1,
        description="Calls assumed available after a rate-limit window resets.",
    )
    credential_acquire_timeout: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds to wait for an eligible credential before giving up.",
    )
    credential_poll_interval: float = Field(
        default=0.5,
        gt=0.0,
        description="Seconds between eligibility re-checks while waiting.",
    )

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------
    worker_count: int = Field(
        default=4,
        ge=1,
        description="Number of concurrent dispatcher workers.",
    )
    job_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Executions allowed per job before it is marked failed.",
    )
    job_backoff_base: float = Field(
        default=2.0,
        gt=0.0,
        description="Delay in seconds before the first retry.",
    )
    job_backoff_max: float = Field(
        default=3600.0,
        gt=0.0,
        description="Upper bound on the retry delay in seconds.",
    )
    job_poll_interval: float = Field(
        default=1.0,
        gt=0.0,
        description="Seconds an idle worker sleeps before polling again.",
    )

    # ------------------------------------------------------------------
    # Re-crawl sweep
    # ------------------------------------------------------------------
    recrawl_interval: int = Field(
        default=86400,
        ge=0,
        description="Monitor age in seconds that triggers a re-crawl (0 = disabled).",
    )
    recrawl_check_interval: int = Field(
        default=600,
        ge=1,
        description="Seconds between stale-monitor sweeps.",
    )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    notify_webhook_url: str = Field(
        default="",
        description="Optional URL receiving job lifecycle events as JSON.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Root log level.")
    log_format: str = Field(default="text", description="text or json.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("github_tokens", mode="before")
    @classmethod
    def _parse_csv_tokens(cls, v: str | list[str]) -> list[str]:
        """Accept a comma-separated string **or** an already-parsed list."""
        if isinstance(v, str):
            return _split_tokens(v)
        return v

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        if v.upper() not in _LOG_LEVELS:
            raise ValueError(f"log_level {v!r} is not one of {', '.join(_LOG_LEVELS)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def _normalise_log_format(cls, v: str) -> str:
        if v.lower() not in _LOG_FORMATS:
            raise ValueError(f"log_format {v!r} is not one of {', '.join(_LOG_FORMATS)}")
        return v.lower()

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_backoff(self) -> Settings:
        """Ensure base ≤ max for the retry backoff."""
        if self.job_backoff_base > self.job_backoff_max:
            raise ValueError(
                f"job_backoff_base ({self.job_backoff_base}) "
                f"> job_backoff_max ({self.job_backoff_max})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        return Path(self.database_path).expanduser().resolve()

    @property
    def github_configured(self) -> bool:
        """``True`` if at least one GitHub token is set."""
        return bool(self.github_tokens)

    @property
    def webhook_configured(self) -> bool:
        """``True`` if lifecycle events should also be POSTed to a webhook."""
        return bool(self.notify_webhook_url)
