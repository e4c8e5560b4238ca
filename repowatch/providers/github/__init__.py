"""GitHub metadata provider."""

from repowatch.providers.github.client import GitHubClient
from repowatch.providers.github.provider import GitHubProvider

__all__ = ["GitHubClient", "GitHubProvider"]
