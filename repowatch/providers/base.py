"""Provider interface contract for all Repowatch metadata sources.

Every provider (one per external code host) subclasses :class:`BaseProvider`
and implements the three capabilities the registry dispatches to:

* :meth:`~BaseProvider.ping`: a cheap format/ownership check; no full fetch.
* :meth:`~BaseProvider.open`: resolve a web URL and fetch its report.
* :meth:`~BaseProvider.parse`: resolve a ``provider://owner/repo`` URI and
  fetch its report.

``open`` and ``parse`` both return a :class:`RepoHandle`, which carries the
provider-qualified address together with the freshly fetched
:class:`~repowatch.core.models.Report`.

Typical usage::

    from repowatch.providers.base import BaseProvider, RepoHandle


    class MyProvider(BaseProvider):
        name = "myhost"

        async def ping(self, url: str) -> None: ...
        async def open(self, url: str) -> RepoHandle: ...
        async def parse(self, uri: RepoURI) -> RepoHandle: ...

    async with MyProvider() as provider:
        handle = await provider.open("https://myhost.example/acme/widget")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType
from typing import ClassVar

from repowatch.core.models import Report
from repowatch.core.urls import RepoURI

__all__ = ["BaseProvider", "RepoHandle"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoHandle:
    """A repository resolved by one provider.

    Attributes:
        provider: Name of the provider that resolved it.
        uri: Provider-qualified address (``github://acme/widget``).
        url: Canonical web URL of the repository.
        report: Metadata fetched while resolving.
    """

    provider: str
    uri: RepoURI
    url: str
    report: Report


class BaseProvider(ABC):
    """Abstract base for all metadata providers.

    Subclasses **must** declare :attr:`name` at class level.  The async
    context manager protocol is provided for free; override :meth:`close` to
    release resources.

    Attributes:
        name: Registry key and ``RepoURI`` scheme for this provider.
    """

    name: ClassVar[str]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this provider.  No-op by default."""

    async def __aenter__(self) -> BaseProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def ping(self, url: str) -> None:
        """Check that *url* belongs to this provider without fetching it.

        Raises:
            ProviderMismatchError: If the URL is not handled here.
        """

    @abstractmethod
    async def open(self, url: str) -> RepoHandle:
        """Resolve the web URL *url* and fetch its report.

        Raises:
            ProviderMismatchError: If the URL is not handled here.
            ProviderError: If the fetch fails.
            NoCredentialAvailableError: If no API credential was free in time.
        """

    @abstractmethod
    async def parse(self, uri: RepoURI) -> RepoHandle:
        """Resolve a provider-qualified *uri* and fetch its report.

        Raises:
            ProviderMismatchError: If ``uri.provider`` is not :attr:`name`.
            ProviderError: If the fetch fails.
        """
