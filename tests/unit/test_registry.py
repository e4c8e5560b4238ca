"""Unit tests for :class:`~repowatch.providers.registry.ProviderRegistry`.

Providers are small in-memory fakes so ordering, concurrency and failure
propagation of ``guess`` can be asserted precisely.
"""

from __future__ import annotations

import asyncio
from typing import ClassVar

import pytest

from repowatch.core.exceptions import (
    ProviderMismatchError,
    ProviderResponseError,
    UnknownProviderError,
)
from repowatch.core.models import Report
from repowatch.core.urls import RepoURI
from repowatch.providers.base import BaseProvider, RepoHandle
from repowatch.providers.registry import ProviderRegistry

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _FakeProvider(BaseProvider):
    """Claims URLs whose host contains :attr:`host`."""

    name: ClassVar[str] = "fake"

    def __init__(
        self,
        name: str,
        host: str,
        *,
        stars: int = 1,
        open_error: Exception | None = None,
        open_delay: float = 0.0,
    ) -> None:
        self.name = name  # type: ignore[misc]
        self.host = host
        self.stars = stars
        self.open_error = open_error
        self.open_delay = open_delay
        self.opened: list[str] = []
        self.cancelled = False
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def ping(self, url: str) -> None:
        if f"://{self.host}/" not in url:
            raise ProviderMismatchError(self.name, url)

    async def open(self, url: str) -> RepoHandle:
        self.opened.append(url)
        try:
            await asyncio.sleep(self.open_delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.open_error is not None:
            raise self.open_error
        owner, repo = url.rstrip("/").split("/")[-2:]
        return await self.parse(RepoURI(provider=self.name, owner=owner, repo=repo))

    async def parse(self, uri: RepoURI) -> RepoHandle:
        return RepoHandle(
            provider=self.name,
            uri=uri,
            url=f"https://{self.host}/{uri.owner}/{uri.repo}",
            report=Report(stars=self.stars),
        )


class _BrokenPing(_FakeProvider):
    async def ping(self, url: str) -> None:
        raise RuntimeError("ping exploded")


_GITHUB_URL = "https://github.com/acme/widget"


def _make_registry(*providers: BaseProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    return registry


# ---------------------------------------------------------------------------
# Registration and lookup
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_names_are_sorted(self) -> None:
        registry = _make_registry(_FakeProvider("zeta", "z.io"), _FakeProvider("alpha", "a.io"))
        assert registry.names() == ["alpha", "zeta"]
        assert len(registry) == 2
        assert "alpha" in registry

    def test_reregistering_replaces_provider(self) -> None:
        first = _FakeProvider("github", "github.com")
        second = _FakeProvider("github", "github.com")
        registry = _make_registry(first, second)
        assert registry.get("github") is second
        assert len(registry) == 1

    def test_register_under_explicit_name(self) -> None:
        provider = _FakeProvider("github", "github.com")
        registry = ProviderRegistry()
        registry.register(provider, name="gh-enterprise")
        assert registry.get("gh-enterprise") is provider

    def test_unknown_provider_raises(self) -> None:
        with pytest.raises(UnknownProviderError):
            ProviderRegistry().get("gitlab")

    async def test_open_unknown_provider_raises(self) -> None:
        with pytest.raises(UnknownProviderError):
            await ProviderRegistry().open("gitlab", _GITHUB_URL)

    async def test_close_closes_every_provider(self) -> None:
        a, b = _FakeProvider("a", "a.io"), _FakeProvider("b", "b.io")
        await _make_registry(a, b).close()
        assert a.closed and b.closed


# ---------------------------------------------------------------------------
# Direct dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    async def test_open_uses_named_provider(self) -> None:
        registry = _make_registry(_FakeProvider("github", "github.com", stars=9))
        handle = await registry.open("github", _GITHUB_URL)
        assert handle.report.stars == 9

    async def test_parse_routes_by_uri_scheme(self) -> None:
        registry = _make_registry(
            _FakeProvider("github", "github.com", stars=1),
            _FakeProvider("gitlab", "gitlab.com", stars=2),
        )
        handle = await registry.parse("gitlab://acme/widget")
        assert handle.provider == "gitlab"
        assert handle.report.stars == 2

    async def test_parse_malformed_uri_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            await _make_registry().parse("not a uri")

    async def test_parse_unregistered_scheme_raises(self) -> None:
        with pytest.raises(UnknownProviderError):
            await _make_registry(_FakeProvider("github", "github.com")).parse("gitlab://a/b")

    async def test_ping_mismatch_propagates(self) -> None:
        registry = _make_registry(_FakeProvider("github", "github.com"))
        with pytest.raises(ProviderMismatchError):
            await registry.ping("github", "https://gitlab.com/acme/widget")


# ---------------------------------------------------------------------------
# Guess
# ---------------------------------------------------------------------------


class TestGuess:
    async def test_no_providers_returns_empty(self) -> None:
        assert await ProviderRegistry().guess(_GITHUB_URL) == []

    async def test_single_matching_provider(self) -> None:
        github = _FakeProvider("github", "github.com", stars=42)
        registry = _make_registry(github, _FakeProvider("gitlab", "gitlab.com"))

        handles = await registry.guess(_GITHUB_URL)

        assert len(handles) == 1
        assert handles[0].provider == "github"
        assert str(handles[0].uri) == "github://acme/widget"
        assert handles[0].report.stars == 42

    async def test_no_match_returns_empty_without_opening(self) -> None:
        github = _FakeProvider("github", "github.com")
        handles = await _make_registry(github).guess("https://example.com/acme/widget")
        assert handles == []
        assert github.opened == []

    async def test_multiple_matches_returned_in_name_order(self) -> None:
        registry = _make_registry(
            _FakeProvider("zeta", "github.com", stars=2, open_delay=0.01),
            _FakeProvider("alpha", "github.com", stars=1),
        )
        handles = await registry.guess(_GITHUB_URL)
        assert [h.provider for h in handles] == ["alpha", "zeta"]

    async def test_ping_failure_only_excludes_that_provider(self) -> None:
        registry = _make_registry(
            _BrokenPing("broken", "github.com"),
            _FakeProvider("github", "github.com"),
        )
        handles = await registry.guess(_GITHUB_URL)
        assert [h.provider for h in handles] == ["github"]

    async def test_open_failure_aborts_and_cancels_others(self) -> None:
        slow = _FakeProvider("slow", "github.com", open_delay=10.0)
        failing = _FakeProvider(
            "failing", "github.com", open_error=ProviderResponseError("failing", 500)
        )
        registry = _make_registry(slow, failing)

        with pytest.raises(ProviderResponseError):
            await asyncio.wait_for(registry.guess(_GITHUB_URL), timeout=2.0)

        assert slow.cancelled is True

    async def test_exclude_skips_named_providers(self) -> None:
        registry = _make_registry(
            _FakeProvider("github", "github.com"),
            _FakeProvider("mirror", "github.com"),
        )
        handles = await registry.guess(_GITHUB_URL, exclude=["github"])
        assert [h.provider for h in handles] == ["mirror"]

    async def test_guess_without_matches_guess_with_exclude(self) -> None:
        github = _FakeProvider("github", "github.com")
        registry = _make_registry(github)
        assert await registry.guess_without(["github"], _GITHUB_URL) == []
        assert github.opened == []
