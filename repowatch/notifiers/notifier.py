"""Job lifecycle notification delivery.

The dispatcher reports every enqueue, success, retry and terminal failure as
a :class:`~repowatch.core.models.JobEvent` through a :class:`Notifier`.
Delivery is fire-and-forget: :meth:`Notifier.notify` returns immediately and
never raises, so a broken notification channel can never stall or fail a
job.

Implementations
---------------
* :class:`LogNotifier`: one structured log line per event (the default).
* :class:`WebhookNotifier`: POSTs the event as JSON to a URL from a
  background task, with :mod:`tenacity` retries on network errors and 5xx.
  :meth:`WebhookNotifier.aclose` waits for in-flight deliveries.
* :class:`CompositeNotifier`: fans one event out to several notifiers.

Typical usage::

    notifier = CompositeNotifier([LogNotifier(), WebhookNotifier(url)])
    notifier.notify(JobEvent.from_record("job.failed", record, error="boom"))
    await notifier.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from repowatch.core.models import JobEvent

__all__ = [
    "CompositeNotifier",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
]

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: Final[float] = 10.0
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3
_MAX_BACKOFF_BASE: Final[float] = 10.0
_MAX_BACKOFF_JITTER: Final[float] = 2.0


class Notifier(ABC):
    """Receives job lifecycle events without blocking the caller."""

    @abstractmethod
    def notify(self, event: JobEvent) -> None:
        """Hand *event* over for delivery.  Must not block or raise."""

    async def aclose(self) -> None:  # noqa: B027
        """Flush pending deliveries and release resources."""


class LogNotifier(Notifier):
    """Writes each event as one structured log record."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def notify(self, event: JobEvent) -> None:
        logger.log(
            self._level,
            "%s %s %s:%s (%s)",
            event.kind,
            event.job_name,
            event.target_kind,
            event.target_id,
            event.state,
            extra={"event": event.kind, "job_event": event.model_dump(mode="json")},
        )


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class _RetryableWebhookError(Exception):
    """Internal: a 5xx answer from the webhook, retried by tenacity."""


def _webhook_wait(retry_state: RetryCallState) -> float:
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))


class WebhookNotifier(Notifier):
    """POSTs events as JSON to *url* from background tasks.

    Args:
        url: Webhook endpoint.
        timeout: Per-request timeout in seconds.
        max_attempts: Delivery attempts per event (>= 1).
        http: Optional pre-built client (tests inject a mock here).

    Raises:
        ValueError: If *url* is empty or ``max_attempts`` < 1.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("WebhookNotifier requires a non-empty url.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}.")
        self._url = url
        self._max_attempts = max_attempts
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def notify(self, event: JobEvent) -> None:
        if self._closed:
            logger.warning("Webhook notifier closed; dropping %s for job %s.", event.kind, event.job_id)
            return
        task = asyncio.get_running_loop().create_task(
            self._deliver(event), name=f"webhook:{event.kind}:{event.job_id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: JobEvent) -> None:
        body = event.model_dump(mode="json")
        try:
            async for attempt in AsyncRetrying(
                wait=_webhook_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableWebhookError, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    response = await self._http.post(self._url, json=body)
                    if response.status_code >= 500:
                        raise _RetryableWebhookError(f"HTTP {response.status_code}")
                    if response.status_code >= 400:
                        logger.warning(
                            "Webhook rejected %s for job %s: HTTP %d",
                            event.kind,
                            event.job_id,
                            response.status_code,
                        )
                        return
        except (_RetryableWebhookError, httpx.HTTPError) as exc:
            logger.warning(
                "Webhook delivery of %s for job %s failed: %s",
                event.kind,
                event.job_id,
                exc,
            )
            return
        logger.debug("Webhook delivered %s for job %s.", event.kind, event.job_id)

    async def aclose(self) -> None:
        """Wait for in-flight deliveries, then close the HTTP client."""
        self._closed = True
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class CompositeNotifier(Notifier):
    """Delivers every event to each wrapped notifier in turn."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, event: JobEvent) -> None:
        for notifier in self._notifiers:
            try:
                notifier.notify(event)
            except Exception:  # noqa: BLE001
                logger.exception("Notifier %s failed on %s.", type(notifier).__name__, event.kind)

    async def aclose(self) -> None:
        for notifier in self._notifiers:
            await notifier.aclose()
