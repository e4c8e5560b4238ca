"""GitHub GraphQL metadata client.

Fetches one repository's statistics in a single GraphQL round trip, so each
report costs exactly one call against a credential's rate limit.

Request flow
------------
1. Lease a credential from the :class:`~repowatch.providers.credentials.CredentialPool`.
2. POST the query with ``Authorization: Bearer <token>``.
3. On **every** response, retried ones included, feed ``X-RateLimit-Remaining``
   and ``X-RateLimit-Reset`` back into the pool.
4. Release the credential (also on error paths).
5. Decode the payload into a :class:`~repowatch.core.models.Report`.

Error mapping
-------------
* HTTP status >= 400 → :class:`~repowatch.core.exceptions.ProviderResponseError`.
* ``repository`` is ``null`` with a ``NOT_FOUND`` GraphQL error →
  ``ProviderResponseError`` with status 404 (terminal for the dispatcher).
* Anything else that cannot be decoded →
  :class:`~repowatch.core.exceptions.MalformedResponseError`.

Typical usage::

    pool = CredentialPool(settings.github_tokens)
    async with GitHubClient(pool) as client:
        report = await client.fetch_report("acme", "widget")
"""

from __future__ import annotations

import logging
from datetime import datetime
from types import TracebackType
from typing import Any, Final

import httpx

from repowatch.core import events
from repowatch.core.exceptions import MalformedResponseError, ProviderResponseError
from repowatch.core.models import FundingLink, Report
from repowatch.providers.credentials import CredentialPool
from repowatch.providers.http_client import ProviderHttpClient

__all__ = [
    "DEFAULT_GRAPHQL_URL",
    "PROVIDER_NAME",
    "REPOSITORY_QUERY",
    "GitHubClient",
    "decode_repository",
]

logger = logging.getLogger(__name__)

PROVIDER_NAME: Final[str] = "github"

DEFAULT_GRAPHQL_URL: Final[str] = "https://api.github.com/graphql"

REPOSITORY_QUERY: Final[str] = """
query($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) {
    stargazers { totalCount }
    updatedAt
    watchers { totalCount }
    homepageUrl
    issues(filterBy: {states: OPEN}) { totalCount }
    pullRequests(states: OPEN) { totalCount }
    isArchived
    isDisabled
    forkCount
    isMirror
    primaryLanguage { name color }
    licenseInfo { name key }
    fundingLinks { platform url }
  }
}
""".strip()


# ---------------------------------------------------------------------------
# Decoding helpers (module-level, stateless)
# ---------------------------------------------------------------------------


def _total_count(repo: dict[str, Any], key: str) -> int:
    """Read ``repo[key].totalCount``; a missing connection counts as 0."""
    node = repo.get(key)
    if node is None:
        return 0
    return int(node["totalCount"])


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 ``2024-05-01T12:00:00Z`` timestamps."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _graphql_error_types(payload: dict[str, Any]) -> list[str]:
    errors = payload.get("errors") or []
    return [str(err.get("type", "")) for err in errors if isinstance(err, dict)]


def decode_repository(payload: Any, owner: str, repo: str) -> Report:
    """Turn a GraphQL response body into a :class:`Report`.

    Args:
        payload: The decoded JSON body.
        owner: Repository owner, for error messages.
        repo: Repository name, for error messages.

    Raises:
        ProviderResponseError: (404) when GitHub reports the repository as
            not found.
        MalformedResponseError: When the payload does not have the expected
            shape.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(PROVIDER_NAME, "response body is not a JSON object")

    data = payload.get("data") or {}
    node = data.get("repository") if isinstance(data, dict) else None
    if node is None:
        error_types = _graphql_error_types(payload)
        if "NOT_FOUND" in error_types:
            raise ProviderResponseError(PROVIDER_NAME, 404, f"{owner}/{repo} not found")
        raise MalformedResponseError(
            PROVIDER_NAME,
            f"no repository in response for {owner}/{repo} (errors={error_types})",
        )

    try:
        language = node.get("primaryLanguage") or {}
        license_info = node.get("licenseInfo") or {}
        return Report(
            stars=_total_count(node, "stargazers"),
            watchers=_total_count(node, "watchers"),
            open_issues=_total_count(node, "issues"),
            open_pull_requests=_total_count(node, "pullRequests"),
            forks=int(node.get("forkCount") or 0),
            archived=bool(node.get("isArchived")),
            disabled=bool(node.get("isDisabled")),
            mirror=bool(node.get("isMirror")),
            language=language.get("name"),
            language_color=language.get("color"),
            license_name=license_info.get("name"),
            license_key=license_info.get("key"),
            homepage_url=node.get("homepageUrl"),
            funding_links=tuple(
                FundingLink(platform=link["platform"], url=link["url"])
                for link in node.get("fundingLinks") or []
            ),
            source_updated_at=_parse_timestamp(node.get("updatedAt")),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        # pydantic.ValidationError is a ValueError subclass.
        raise MalformedResponseError(
            PROVIDER_NAME, f"cannot decode {owner}/{repo}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GitHubClient:
    """Metadata client for the GitHub GraphQL API.

    Args:
        pool: Credentials used to authenticate requests.
        graphql_url: Endpoint to POST queries to.
        http: Optional pre-built HTTP client (tests inject a mock here).
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        http: ProviderHttpClient | None = None,
    ) -> None:
        self._pool = pool
        self._graphql_url = graphql_url
        self._http = http or ProviderHttpClient(PROVIDER_NAME)

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def fetch_report(self, owner: str, repo: str) -> Report:
        """Fetch the current statistics of ``owner/repo``.

        Raises:
            NoCredentialAvailableError: If no credential was free in time.
            ProviderResponseError: On HTTP >= 400 or a not-found repository.
            MalformedResponseError: If the payload cannot be decoded.
            httpx.TransportError: On network failure after client retries.
        """
        async with self._pool.lease() as credential:

            def _record_quota(response: httpx.Response) -> None:
                self._pool.update_from_headers(credential, response.headers)

            try:
                response = await self._http.post(
                    self._graphql_url,
                    json={"query": REPOSITORY_QUERY, "variables": {"owner": owner, "name": repo}},
                    headers={"Authorization": f"Bearer {credential.token}"},
                    on_response=_record_quota,
                )
            except ProviderResponseError as exc:
                logger.warning(
                    "GitHub fetch for %s/%s failed: %s",
                    owner,
                    repo,
                    exc,
                    extra={"event": events.PROVIDER_FETCH_ERROR},
                )
                raise

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                PROVIDER_NAME, f"response for {owner}/{repo} is not JSON"
            ) from exc

        report = decode_repository(payload, owner, repo)
        logger.info(
            "Fetched github:%s/%s (stars=%d, forks=%d).",
            owner,
            repo,
            report.stars,
            report.forks,
            extra={"event": events.PROVIDER_FETCH_OK},
        )
        return report
