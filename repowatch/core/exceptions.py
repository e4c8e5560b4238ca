"""Repowatch exception taxonomy.

Every custom exception inherits from :class:`RepowatchError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    RepowatchError
    ├── ConfigError
    ├── StorageError
    ├── CredentialError
    │   └── NoCredentialAvailableError
    ├── ProviderError
    │   ├── UnknownProviderError
    │   ├── ProviderMismatchError
    │   ├── ProviderResponseError
    │   └── MalformedResponseError
    ├── JobError
    │   ├── ValidationFailedError
    │   ├── TransientExecutionError
    │   └── TerminalExecutionError
    └── DispatcherError

The dispatcher decides between *retry* and *give up* with
:func:`is_retryable`; anything not explicitly classified as terminal is
retried within the job's attempt budget.

Usage:

    from repowatch.core.exceptions import ProviderResponseError

    raise ProviderResponseError("github", status_code=502)
"""

from __future__ import annotations

import logging

__all__ = [
    "RepowatchError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    # Credentials
    "CredentialError",
    "NoCredentialAvailableError",
    # Provider
    "ProviderError",
    "UnknownProviderError",
    "ProviderMismatchError",
    "ProviderResponseError",
    "MalformedResponseError",
    # Jobs
    "JobError",
    "ValidationFailedError",
    "TransientExecutionError",
    "TerminalExecutionError",
    # Dispatcher
    "DispatcherError",
    # Classification
    "is_retryable",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class RepowatchError(Exception):
    """Root exception for all Repowatch errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(RepowatchError):
    """Raised when the application configuration is invalid or incomplete."""


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(RepowatchError):
    """Raised when a database or persistence operation fails."""


# ---------------------------------------------------------------------------
# Credential layer
# ---------------------------------------------------------------------------


class CredentialError(RepowatchError):
    """Base class for credential-pool errors."""


class NoCredentialAvailableError(CredentialError):
    """Raised when no credential became eligible within the bounded wait.

    Every credential is either checked out by another caller or has an
    exhausted rate-limit window that resets in the future.

    Args:
        waited: Seconds spent waiting before giving up.
        pool_size: Number of credentials in the pool.
    """

    def __init__(self, waited: float, pool_size: int) -> None:
        self.waited = waited
        self.pool_size = pool_size
        super().__init__(
            f"No credential available after {waited:.1f}s (pool size {pool_size})"
        )


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


class ProviderError(RepowatchError):
    """Base class for all provider-level errors.

    Args:
        provider: Short name of the provider (e.g. ``"github"``).
        message: Human-readable error description.
    """

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class UnknownProviderError(ProviderError):
    """Raised when a provider name is not present in the registry.

    This is a configuration or usage error and is surfaced immediately.
    """

    def __init__(self, provider: str) -> None:
        super().__init__(provider, "unknown provider")


class ProviderMismatchError(ProviderError):
    """Raised by ``ping`` when a URL does not belong to the provider."""

    def __init__(self, provider: str, url: str) -> None:
        self.url = url
        super().__init__(provider, f"URL not handled by this provider: {url!r}")


class ProviderResponseError(ProviderError):
    """Raised when the provider API answers with HTTP status >= 400.

    Args:
        provider: Short name of the provider.
        status_code: HTTP status returned by the provider.
        detail: Optional excerpt of the response body.
    """

    def __init__(self, provider: str, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        suffix = f": {detail}" if detail else ""
        super().__init__(provider, f"API response got HTTP {status_code}{suffix}")


class MalformedResponseError(ProviderError):
    """Raised when a provider payload cannot be decoded into a report.

    Not retried: the same payload would fail the same way again.
    """


# ---------------------------------------------------------------------------
# Job layer
# ---------------------------------------------------------------------------


class JobError(RepowatchError):
    """Base class for errors raised by job hooks."""


class ValidationFailedError(JobError):
    """Raised by ``Job.validate`` when the job should not run at all.

    Terminal: the job is marked failed without consuming an attempt.
    """


class TransientExecutionError(JobError):
    """Raised by ``Job.execute`` for failures worth retrying later."""


class TerminalExecutionError(JobError):
    """Raised by ``Job.execute`` for failures that will never succeed."""


# ---------------------------------------------------------------------------
# Dispatcher layer
# ---------------------------------------------------------------------------


class DispatcherError(RepowatchError):
    """Raised for errors originating in the dispatcher or queue engine.

    Examples:
        - A claimed job record names a job type nobody registered.
        - The dispatcher is started twice.
    """


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

#: Client-side HTTP statuses that are still worth retrying.  GitHub answers
#: 403 when a secondary rate limit trips, so it is treated like 429.
_RETRYABLE_CLIENT_STATUS: frozenset[int] = frozenset({403, 408, 429})

_TERMINAL_TYPES: tuple[type[BaseException], ...] = (
    ValidationFailedError,
    TerminalExecutionError,
    MalformedResponseError,
    UnknownProviderError,
    ProviderMismatchError,
    DispatcherError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` if a job that raised *exc* should be re-armed.

    Terminal classes are listed in :data:`_TERMINAL_TYPES`.  A
    :class:`ProviderResponseError` is terminal for 4xx statuses except 403, 408
    and 429; server errors are transient.  Everything else, including
    unexpected exceptions and cancellation, is transient.
    """
    if isinstance(exc, _TERMINAL_TYPES):
        return False
    if isinstance(exc, ProviderResponseError):
        status = exc.status_code
        if 400 <= status < 500 and status not in _RETRYABLE_CLIENT_STATUS:
            return False
    return True
