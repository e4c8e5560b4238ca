"""Async HTTP transport shared by provider clients.

A thin layer over :class:`httpx.AsyncClient` that knows three things about
provider APIs:

* gateway hiccups (502/503/504) and transport failures are retried a few
  times in-process with :mod:`tenacity`; anything more persistent is left
  to the dispatcher's job-level retry;
* every response is shown to an ``on_response`` hook before the status is
  judged, which is how rate-limit headers reach the credential pool even
  when the call fails;
* any status >= 400 that is still standing at the end surfaces as
  :class:`~repowatch.core.exceptions.ProviderResponseError`.

Typical usage::

    async with ProviderHttpClient("github") as http:
        response = await http.post(url, json=body, headers=auth)
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from repowatch.core.exceptions import ProviderResponseError

__all__ = ["ProviderHttpClient", "ResponseHook"]

logger = logging.getLogger(__name__)

#: Observer called with each raw response, retried ones included.
ResponseHook = Callable[[httpx.Response], None]

_GATEWAY_STATUSES: Final[frozenset[int]] = frozenset({502, 503, 504})
_ERROR_DETAIL_LIMIT: Final[int] = 200
_USER_AGENT: Final[str] = "repowatch/0.1 (+https://github.com/repowatch)"

_WAIT_CAP: Final[float] = 30.0


class _GatewayStatus(ProviderResponseError):
    """A gateway status still worth another in-client attempt."""


def _retry_worthy(exc: BaseException) -> bool:
    return isinstance(exc, (_GatewayStatus, httpx.TransportError))


def _provider_wait(retry_state: RetryCallState) -> float:
    """Doubling delay from 1 s with up to 50 % jitter, capped at 30 s."""
    delay = min(2.0 ** (retry_state.attempt_number - 1), _WAIT_CAP)
    return delay + random.uniform(0.0, delay / 2)


def _check_status(provider: str, response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    if status in _GATEWAY_STATUSES:
        raise _GatewayStatus(provider, status)
    raise ProviderResponseError(provider, status, response.text[:_ERROR_DETAIL_LIMIT])


class ProviderHttpClient:
    """Retrying HTTP session owned by a single provider.

    Args:
        provider: Provider name, used for errors and log lines.
        headers: Extra default headers sent with every request.
        connect_timeout: Seconds allowed to establish a connection.
        read_timeout: Seconds allowed between response bytes.
        write_timeout: Seconds allowed to send the request body.
        max_attempts: Attempts per request, first try included.

    Raises:
        ValueError: If ``max_attempts`` is below 1.
    """

    def __init__(
        self,
        provider: str,
        *,
        headers: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        write_timeout: float = 10.0,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        self._provider = provider
        self._max_attempts = max_attempts
        self._session_headers = {
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
            **(headers or {}),
        }
        self._timeout = httpx.Timeout(
            read_timeout, connect=connect_timeout, write=write_timeout, pool=5.0
        )
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ProviderHttpClient:
        self._session()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session; later requests open a fresh one."""
        http, self._http = self._http, None
        if http is not None and not http.is_closed:
            await http.aclose()
            logger.debug("Closed %s HTTP session.", self._provider)

    def _session(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                headers=self._session_headers,
                timeout=self._timeout,
                follow_redirects=True,
            )
            logger.debug("Opened %s HTTP session.", self._provider)
        return self._http

    async def post(
        self,
        url: str,
        *,
        json: Any | None = None,
        headers: dict[str, str] | None = None,
        on_response: ResponseHook | None = None,
    ) -> httpx.Response:
        """POST a JSON body.

        Raises:
            ProviderResponseError: Status >= 400 once retries are spent.
            httpx.TransportError: Network failure once retries are spent.
        """
        return await self.request(
            "POST", url, json=json, headers=headers, on_response=on_response
        )

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        on_response: ResponseHook | None = None,
    ) -> httpx.Response:
        """GET with query parameters; errors as for :meth:`post`."""
        return await self.request(
            "GET", url, params=params, headers=headers, on_response=on_response
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        headers: dict[str, str] | None = None,
        on_response: ResponseHook | None = None,
    ) -> httpx.Response:
        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "%s %s %s failed on attempt %d of %d (%s); retrying.",
                self._provider,
                method,
                url,
                state.attempt_number,
                self._max_attempts,
                exc,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=_provider_wait,
            retry=retry_if_exception(_retry_worthy),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._session().request(
                        method, url, params=params, json=json, headers=headers
                    )
                    logger.debug("%s %s -> %d", method, url, response.status_code)
                    if on_response is not None:
                        on_response(response)
                    _check_status(self._provider, response)
        except _GatewayStatus as exc:
            raise ProviderResponseError(self._provider, exc.status_code) from exc
        return response
