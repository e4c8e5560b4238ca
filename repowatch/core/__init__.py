"""Core domain models, settings, logging configuration, and shared utilities."""

from repowatch.core.exceptions import (
    ConfigError,
    CredentialError,
    DispatcherError,
    JobError,
    MalformedResponseError,
    NoCredentialAvailableError,
    ProviderError,
    ProviderMismatchError,
    ProviderResponseError,
    RepowatchError,
    StorageError,
    TerminalExecutionError,
    TransientExecutionError,
    UnknownProviderError,
    ValidationFailedError,
    is_retryable,
)
from repowatch.core.logging_config import JOB_ID_CTX, JsonFormatter, configure_logging
from repowatch.core.models import (
    Bookmark,
    FundingLink,
    JobEvent,
    JobRecord,
    JobState,
    Monitor,
    Report,
    TargetKind,
    TargetRef,
)
from repowatch.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    "JOB_ID_CTX",
    # Domain models
    "Bookmark",
    "FundingLink",
    "JobEvent",
    "JobRecord",
    "JobState",
    "Monitor",
    "Report",
    "TargetKind",
    "TargetRef",
    # Settings
    "Settings",
    # Exceptions: base
    "RepowatchError",
    "ConfigError",
    "StorageError",
    # Exceptions: credentials
    "CredentialError",
    "NoCredentialAvailableError",
    # Exceptions: provider
    "ProviderError",
    "UnknownProviderError",
    "ProviderMismatchError",
    "ProviderResponseError",
    "MalformedResponseError",
    # Exceptions: jobs
    "JobError",
    "ValidationFailedError",
    "TransientExecutionError",
    "TerminalExecutionError",
    "DispatcherError",
    "is_retryable",
]
