"""GitHub provider: maps github.com URLs and ``github://`` URIs to reports."""

from __future__ import annotations

import logging
import re
from typing import ClassVar

from repowatch.core.exceptions import ProviderMismatchError
from repowatch.core.urls import RepoURI
from repowatch.providers.base import BaseProvider, RepoHandle
from repowatch.providers.github.client import PROVIDER_NAME, GitHubClient

__all__ = ["GitHubProvider"]

logger = logging.getLogger(__name__)

_URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^https?://(?:www\.)?github\.com/([^/?#]+)/([^/?#]+)", re.IGNORECASE),
)


def _split_url(url: str) -> tuple[str, str] | None:
    """Return ``(owner, repo)`` if *url* is a GitHub repository URL."""
    for pattern in _URL_PATTERNS:
        match = pattern.match(url)
        if match:
            owner, repo = match.group(1), match.group(2)
            if repo.endswith(".git"):
                repo = repo[: -len(".git")]
            if owner and repo:
                return owner, repo
    return None


class GitHubProvider(BaseProvider):
    """Provider backed by :class:`GitHubClient`."""

    name: ClassVar[str] = PROVIDER_NAME

    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    async def close(self) -> None:
        await self._client.close()

    async def ping(self, url: str) -> None:
        if _split_url(url) is None:
            raise ProviderMismatchError(self.name, url)

    async def open(self, url: str) -> RepoHandle:
        parts = _split_url(url)
        if parts is None:
            raise ProviderMismatchError(self.name, url)
        owner, repo = parts
        return await self._resolve(RepoURI(provider=self.name, owner=owner, repo=repo))

    async def parse(self, uri: RepoURI) -> RepoHandle:
        if uri.provider != self.name:
            raise ProviderMismatchError(self.name, str(uri))
        return await self._resolve(uri)

    async def _resolve(self, uri: RepoURI) -> RepoHandle:
        report = await self._client.fetch_report(uri.owner, uri.repo)
        return RepoHandle(
            provider=self.name,
            uri=uri,
            url=f"https://github.com/{uri.owner}/{uri.repo}",
            report=report,
        )
