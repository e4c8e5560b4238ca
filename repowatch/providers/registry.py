"""Provider registry: name → provider lookup plus concurrent URL guessing.

The registry is an explicit object built once at start-up and handed to
whoever needs it (the runtime passes it into every job context).  Mutation
via :meth:`ProviderRegistry.register` is meant for start-up only; after the
dispatcher starts, the registry is read-only.

Guessing
--------
:meth:`ProviderRegistry.guess` pings every registered provider concurrently.
Providers whose ping fails are simply left out.  Every provider whose ping
succeeds is then opened concurrently; all handles are returned together
because a URL may legitimately match more than one provider.  The first
``open`` failure aborts the whole call and cancels the remaining opens.
Callers that need partial results call :meth:`ProviderRegistry.open` per
provider instead.

Typical usage::

    registry = ProviderRegistry()
    registry.register(GitHubProvider(client))

    handles = await registry.guess("https://github.com/acme/widget")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from repowatch.core import events
from repowatch.core.exceptions import UnknownProviderError
from repowatch.core.urls import RepoURI
from repowatch.providers.base import BaseProvider, RepoHandle

__all__ = ["ProviderRegistry"]

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps provider names to :class:`BaseProvider` instances."""

    def __init__(self) -> None:
        self._providers: dict[str, BaseProvider] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider: BaseProvider, name: str | None = None) -> None:
        """Register *provider* under *name* (defaults to ``provider.name``).

        Re-registering a name replaces the previous provider.
        """
        key = name or provider.name
        if key in self._providers:
            logger.info("Replacing provider %r.", key)
        self._providers[key] = provider
        logger.debug("Registered provider %r.", key)

    def names(self) -> list[str]:
        """Return registered provider names, sorted."""
        return sorted(self._providers)

    def get(self, name: str) -> BaseProvider:
        """Return the provider registered as *name*.

        Raises:
            UnknownProviderError: If nothing is registered under *name*.
        """
        try:
            return self._providers[name]
        except KeyError:
            raise UnknownProviderError(name) from None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def open(self, provider_name: str, url: str) -> RepoHandle:
        """Open *url* with the named provider."""
        return await self.get(provider_name).open(url)

    async def parse(self, uri: str) -> RepoHandle:
        """Resolve ``<provider>://<owner>/<repo>`` with the provider it names.

        Raises:
            ValueError: If *uri* is not a repository URI.
            UnknownProviderError: If the named provider is not registered.
        """
        repo_uri = RepoURI.parse(uri)
        return await self.get(repo_uri.provider).parse(repo_uri)

    async def ping(self, provider_name: str, url: str) -> None:
        """Run the named provider's cheap ownership check on *url*."""
        await self.get(provider_name).ping(url)

    async def guess(self, url: str, *, exclude: Iterable[str] = ()) -> list[RepoHandle]:
        """Open *url* with every provider that claims it.

        Args:
            url: Web URL to resolve.
            exclude: Provider names to skip.

        Returns:
            One handle per matching provider, in provider-name order.  Empty
            if nothing matches (or nothing is registered).

        Raises:
            ProviderError: The first ``open`` failure among matching providers.
            NoCredentialAvailableError: Likewise, from a matching provider.
        """
        excluded = set(exclude)
        candidates = [
            (name, provider)
            for name, provider in sorted(self._providers.items())
            if name not in excluded
        ]
        if not candidates:
            return []

        pings = await asyncio.gather(
            *(provider.ping(url) for _, provider in candidates),
            return_exceptions=True,
        )
        matched: list[tuple[str, BaseProvider]] = []
        for (name, provider), outcome in zip(candidates, pings, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.debug("Provider %r does not claim %s: %s", name, url, outcome)
                continue
            matched.append((name, provider))

        if not matched:
            return []

        tasks = [
            asyncio.create_task(provider.open(url), name=f"open:{name}")
            for name, provider in matched
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        for task in tasks:
            if task not in done:
                continue
            exc = task.exception()
            if exc is None:
                continue
            for other in pending:
                other.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Guess for %s aborted by provider %r: %s",
                url,
                task.get_name().removeprefix("open:"),
                exc,
                extra={"event": events.PROVIDER_FETCH_ERROR},
            )
            raise exc

        handles = [task.result() for task in tasks]
        logger.debug("Guess for %s matched %s.", url, [h.provider for h in handles])
        return handles

    async def guess_without(self, excluded: Iterable[str], url: str) -> list[RepoHandle]:
        """:meth:`guess` skipping the providers named in *excluded*."""
        return await self.guess(url, exclude=excluded)

    async def close(self) -> None:
        """Close every registered provider."""
        for provider in self._providers.values():
            await provider.close()
