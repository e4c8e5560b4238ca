"""URL normalisation and the structured repository URI scheme.

Canonical URLs
--------------
Two bookmarks that point at the same repository must resolve to the same
monitor, so bookmark URLs are normalised before the find-or-create lookup:

* scheme and host are lower-cased; only ``http`` / ``https`` are accepted;
* default ports (``:80`` / ``:443``), user-info, query and fragment are dropped;
* trailing slashes and a trailing ``.git`` suffix are removed from the path.

Path case is preserved: many hosts treat it as significant.

Repository URIs
---------------
Providers also address repositories as ``<provider>://<owner>/<repo>``,
e.g. ``github://acme/widget``.  :class:`RepoURI` parses and formats that
form; the provider name selects the registry entry.

Typical usage::

    from repowatch.core.urls import RepoURI, normalize_url

    normalize_url("HTTPS://GitHub.com/acme/widget.git/")
    # -> "https://github.com/acme/widget"

    uri = RepoURI.parse("github://acme/widget")
    uri.provider, uri.owner, uri.repo   # ("github", "acme", "widget")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

__all__ = ["normalize_url", "RepoURI"]

logger = logging.getLogger(__name__)

_DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}

_PROVIDER_NAME_RE: re.Pattern[str] = re.compile(r"^[a-z][a-z0-9_+.-]*$")


def normalize_url(raw: str) -> str:
    """Return the canonical form of *raw*.

    Args:
        raw: A user-supplied http(s) URL.

    Returns:
        The normalised URL string.

    Raises:
        ValueError: If *raw* is blank, not http(s), or has no host.
    """
    if not raw or not raw.strip():
        raise ValueError("URL must not be blank")

    parts = urlsplit(raw.strip())
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported URL scheme {parts.scheme!r} in {raw!r}")

    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError(f"URL has no host: {raw!r}")

    netloc = host
    if parts.port is not None and parts.port != _DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{parts.port}"

    path = parts.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")].rstrip("/")

    return urlunsplit((scheme, netloc, path, "", ""))


@dataclass(frozen=True)
class RepoURI:
    """A provider-qualified repository address (``provider://owner/repo``)."""

    provider: str
    owner: str
    repo: str

    @classmethod
    def parse(cls, uri: str) -> RepoURI:
        """Parse ``<provider>://<owner>/<repo>``.

        Raises:
            ValueError: If the string does not have exactly that shape.
        """
        provider, sep, rest = uri.partition("://")
        provider = provider.lower()
        if not sep or not _PROVIDER_NAME_RE.match(provider):
            raise ValueError(f"Not a repository URI: {uri!r}")

        segments = rest.strip("/").split("/")
        if len(segments) != 2 or not all(segments):
            raise ValueError(f"Repository URI must be <provider>://<owner>/<repo>: {uri!r}")
        return cls(provider=provider, owner=segments[0], repo=segments[1])

    def __str__(self) -> str:
        return f"{self.provider}://{self.owner}/{self.repo}"
