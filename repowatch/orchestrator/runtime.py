"""Runtime assembly: wires settings into a ready-to-use object graph.

:func:`open_runtime` opens the database, builds the credential pool, the
provider registry (GitHub is registered when tokens are configured), the
notifier and the dispatcher, and tears everything down in reverse order on
exit.

Typical usage::

    async with open_runtime(settings) as runtime:
        await runtime.dispatcher.enqueue(BookmarkUpdatedJob(bookmark_id))
        await runtime.dispatcher.drain()
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from repowatch.core.settings import Settings
from repowatch.jobs import JobContext, default_job_types
from repowatch.notifiers.notifier import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from repowatch.orchestrator.dispatcher import Dispatcher
from repowatch.providers.credentials import CredentialPool
from repowatch.providers.github import GitHubClient, GitHubProvider
from repowatch.providers.registry import ProviderRegistry
from repowatch.storage.database import Database
from repowatch.storage.jobs import JobRepository
from repowatch.storage.repository import BookmarkRepository, MonitorRepository, ReportRepository

__all__ = ["Runtime", "build_notifier", "build_registry", "open_runtime"]

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a command needs, built from one :class:`Settings`."""

    settings: Settings
    db: Database
    registry: ProviderRegistry
    notifier: Notifier
    jobs: JobRepository
    monitors: MonitorRepository
    reports: ReportRepository
    bookmarks: BookmarkRepository
    dispatcher: Dispatcher
    pool: CredentialPool | None = None


def build_registry(settings: Settings) -> tuple[ProviderRegistry, CredentialPool | None]:
    """Build the provider registry and, if tokens exist, the credential pool."""
    registry = ProviderRegistry()
    if not settings.github_configured:
        logger.warning("No GITHUB_TOKENS configured; the github provider is disabled.")
        return registry, None

    pool = CredentialPool(
        settings.github_tokens,
        rate_ceiling=settings.credential_rate_ceiling,
        acquire_timeout=settings.credential_acquire_timeout,
        poll_interval=settings.credential_poll_interval,
    )
    client = GitHubClient(pool, graphql_url=settings.github_graphql_url)
    registry.register(GitHubProvider(client))
    logger.info("Registered providers: %s (%d credential(s)).", registry.names(), len(pool))
    return registry, pool


def build_notifier(settings: Settings) -> Notifier:
    """Log notifier, plus a webhook notifier when a URL is configured."""
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.webhook_configured:
        notifiers.append(WebhookNotifier(settings.notify_webhook_url))
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)


@contextlib.asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    registry: ProviderRegistry | None = None,
    notifier: Notifier | None = None,
) -> AsyncIterator[Runtime]:
    """Assemble a :class:`Runtime` and close it on exit.

    Args:
        settings: Application settings.
        registry: Pre-built registry (tests); built from *settings* if omitted.
        notifier: Pre-built notifier (tests); built from *settings* if omitted.
    """
    async with contextlib.AsyncExitStack() as stack:
        db = await Database.open(settings.database_path_resolved)
        stack.push_async_callback(db.close)

        pool: CredentialPool | None = None
        if registry is None:
            registry, pool = build_registry(settings)
        stack.push_async_callback(registry.close)

        if notifier is None:
            notifier = build_notifier(settings)
        stack.push_async_callback(notifier.aclose)

        jobs = JobRepository(db)
        monitors = MonitorRepository(db)
        reports = ReportRepository(db)
        bookmarks = BookmarkRepository(db)
        context = JobContext(
            registry=registry,
            monitors=monitors,
            reports=reports,
            bookmarks=bookmarks,
        )
        dispatcher = Dispatcher(
            jobs,
            context,
            notifier,
            job_types=default_job_types(),
            max_attempts=settings.job_max_attempts,
            backoff_base=settings.job_backoff_base,
            backoff_max=settings.job_backoff_max,
            poll_interval=settings.job_poll_interval,
        )
        yield Runtime(
            settings=settings,
            db=db,
            registry=registry,
            notifier=notifier,
            jobs=jobs,
            monitors=monitors,
            reports=reports,
            bookmarks=bookmarks,
            dispatcher=dispatcher,
            pool=pool,
        )
