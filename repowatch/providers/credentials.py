"""Rate-limited API credential pool.

Tracks a fixed set of API tokens, each with its own rate-limit window, and
hands them out to callers one at a time.

Eligibility
-----------
A credential may be acquired when it is **not checked out** and either

* it still has calls left in its window (``remaining > 0``), or
* its window has reset (``reset_at`` is unknown or in the past), in which
  case ``remaining`` is optimistically restored to the configured ceiling.

Selection
---------
Among eligible credentials the least-recently acquired one wins (a
round-robin over the pool that naturally skips busy or exhausted tokens).
Credentials that were never acquired tie; the tie goes to the highest
``remaining``, then to pool order.

Exclusivity
-----------
Exactly one caller holds a credential at a time.  Checking out is guarded by
an :class:`asyncio.Condition`; :meth:`CredentialPool.release` wakes one
waiter.  Waiters also re-check every ``poll_interval`` seconds because a
window reset is a passage of time, not an event.

Telemetry
---------
:meth:`CredentialPool.update_from_response` overwrites ``remaining`` and
``reset_at`` from provider response headers.  The metadata client calls it
after **every** request, success or failure, before releasing.  An
exhausted credential whose response named no future reset time gets a
default resting window instead.

Typical usage::

    pool = CredentialPool(["ghp_a", "ghp_b"], rate_ceiling=5000)

    async with pool.lease() as credential:
        response = await send(credential.token)
        pool.update_from_headers(credential, response.headers)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from repowatch.core import events
from repowatch.core.clock import utcnow
from repowatch.core.exceptions import NoCredentialAvailableError

__all__ = [
    "Credential",
    "CredentialPool",
    "parse_rate_limit_headers",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_RATE_CEILING: Final[int] = 5000
_DEFAULT_ACQUIRE_TIMEOUT: Final[float] = 30.0
_DEFAULT_POLL_INTERVAL: Final[float] = 0.5
#: Seconds an exhausted credential rests when the response named no reset time.
_DEFAULT_EXHAUSTED_WINDOW: Final[float] = 60.0

#: Header names GitHub-like providers use for quota telemetry.
_REMAINING_HEADER: Final[str] = "x-ratelimit-remaining"
_RESET_HEADER: Final[str] = "x-ratelimit-reset"


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class Credential:
    """One API token and its mutable rate-limit window.

    Compared by identity: two credentials with the same token are still
    distinct pool entries.

    Attributes:
        token: Opaque secret; never logged (see :attr:`label`).
        remaining: Calls left in the current window.
        reset_at: When the window resets; ``None`` if unknown.
        in_use: ``True`` while checked out.
        index: Position in the pool, used as the final tie-breaker.
        last_acquired: Pool-wide acquisition sequence of the latest checkout
            (``0`` = never acquired).
    """

    token: str = field(repr=False)
    remaining: int
    reset_at: datetime | None = None
    in_use: bool = False
    index: int = 0
    last_acquired: int = 0

    @property
    def label(self) -> str:
        """Short, log-safe identifier (``#<index>…<last 4 chars>``)."""
        return f"#{self.index}…{self.token[-4:]}"

    def window_reset(self, now: datetime) -> bool:
        """``True`` if the rate-limit window is known to be over."""
        return self.reset_at is None or self.reset_at <= now


def parse_rate_limit_headers(
    headers: Mapping[str, str],
) -> tuple[int | None, datetime | None]:
    """Extract ``(remaining, reset_at)`` from provider response headers.

    ``X-RateLimit-Reset`` is a Unix epoch in seconds.  Missing or
    unparseable values come back as ``None``.
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    remaining: int | None = None
    raw_remaining = lowered.get(_REMAINING_HEADER)
    if raw_remaining is not None:
        try:
            remaining = int(raw_remaining)
        except ValueError:
            logger.debug("Unparseable %s header %r", _REMAINING_HEADER, raw_remaining)

    reset_at: datetime | None = None
    raw_reset = lowered.get(_RESET_HEADER)
    if raw_reset is not None:
        try:
            reset_at = datetime.fromtimestamp(int(raw_reset), tz=UTC)
        except (ValueError, OverflowError, OSError):
            logger.debug("Unparseable %s header %r", _RESET_HEADER, raw_reset)

    return remaining, reset_at


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class CredentialPool:
    """Hands out credentials with one exclusive holder per credential.

    Args:
        tokens: API tokens; one :class:`Credential` is created per token.
        rate_ceiling: Calls assumed available in a fresh window.
        acquire_timeout: Upper bound in seconds on the wait inside
            :meth:`acquire`.
        poll_interval: Seconds between eligibility re-checks while waiting.
        exhausted_window: Seconds an exhausted credential stays ineligible
            when the provider did not say when its window resets.
        clock: Returns the current aware UTC datetime.  Override in tests.

    Raises:
        ValueError: If no tokens are given.
    """

    def __init__(
        self,
        tokens: Iterable[str],
        *,
        rate_ceiling: int = _DEFAULT_RATE_CEILING,
        acquire_timeout: float = _DEFAULT_ACQUIRE_TIMEOUT,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
        exhausted_window: float = _DEFAULT_EXHAUSTED_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = [
            Credential(token=token, remaining=rate_ceiling, index=i)
            for i, token in enumerate(tokens)
        ]
        if not self._credentials:
            raise ValueError("CredentialPool needs at least one token.")
        self._rate_ceiling = rate_ceiling
        self._acquire_timeout = acquire_timeout
        self._poll_interval = poll_interval
        self._exhausted_window = timedelta(seconds=exhausted_window)
        self._clock = clock
        self._condition = asyncio.Condition()
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._credentials)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _is_eligible(self, credential: Credential, now: datetime) -> bool:
        if credential.in_use:
            return False
        return credential.remaining > 0 or credential.window_reset(now)

    def _effective_remaining(self, credential: Credential, now: datetime) -> int:
        if credential.remaining <= 0 and credential.window_reset(now):
            return self._rate_ceiling
        return credential.remaining

    def _select(self, now: datetime) -> Credential | None:
        eligible = [c for c in self._credentials if self._is_eligible(c, now)]
        if not eligible:
            return None
        return min(
            eligible,
            key=lambda c: (c.last_acquired, -self._effective_remaining(c, now), c.index),
        )

    def _check_out(self, credential: Credential, now: datetime) -> None:
        if credential.remaining <= 0:
            logger.debug(
                "Credential %s window reset; restoring remaining to %d.",
                credential.label,
                self._rate_ceiling,
            )
            credential.remaining = self._rate_ceiling
            credential.reset_at = None
        self._sequence += 1
        credential.last_acquired = self._sequence
        credential.in_use = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def acquire(self) -> Credential:
        """Check out an eligible credential, waiting a bounded time for one.

        Returns:
            The credential, now marked ``in_use``.  The caller must hand it
            back with :meth:`release`.

        Raises:
            NoCredentialAvailableError: If nothing became eligible within
                ``acquire_timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self._acquire_timeout

        async with self._condition:
            while True:
                now = self._clock()
                credential = self._select(now)
                if credential is not None:
                    self._check_out(credential, now)
                    logger.debug(
                        "Acquired credential %s (remaining=%d).",
                        credential.label,
                        credential.remaining,
                    )
                    return credential

                left = deadline - loop.time()
                if left <= 0:
                    waited = loop.time() - started
                    logger.warning(
                        "No credential available after %.1f s (pool size %d).",
                        waited,
                        len(self._credentials),
                        extra={"event": events.CREDENTIAL_UNAVAILABLE},
                    )
                    raise NoCredentialAvailableError(waited, len(self._credentials))

                try:
                    await asyncio.wait_for(
                        self._condition.wait(),
                        timeout=min(self._poll_interval, left),
                    )
                except TimeoutError:
                    pass

    async def release(self, credential: Credential) -> None:
        """Return *credential* to the pool and wake one waiter."""
        async with self._condition:
            if not credential.in_use:
                logger.warning("Credential %s released while not in use.", credential.label)
            credential.in_use = False
            self._condition.notify()

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[Credential]:
        """Acquire a credential for the duration of an ``async with`` block."""
        credential = await self.acquire()
        try:
            yield credential
        finally:
            await self.release(credential)

    def update_from_response(
        self,
        credential: Credential,
        remaining: int | None,
        reset_at: datetime | None,
    ) -> None:
        """Overwrite the rate-limit window of *credential*.

        ``None`` values leave the corresponding field untouched (the response
        carried no such header).  A credential reported exhausted without a
        future reset time rests for ``exhausted_window`` seconds.
        """
        if remaining is not None:
            credential.remaining = remaining
        if reset_at is not None:
            credential.reset_at = reset_at

        if remaining is not None and remaining <= 0:
            now = self._clock()
            if credential.reset_at is None or credential.reset_at <= now:
                credential.reset_at = now + self._exhausted_window
            logger.warning(
                "Credential %s exhausted until %s.",
                credential.label,
                credential.reset_at.isoformat() if credential.reset_at else "unknown",
                extra={"event": events.CREDENTIAL_EXHAUSTED},
            )

    def update_from_headers(self, credential: Credential, headers: Mapping[str, str]) -> None:
        """Parse quota headers and apply them via :meth:`update_from_response`."""
        remaining, reset_at = parse_rate_limit_headers(headers)
        self.update_from_response(credential, remaining, reset_at)

    def snapshot(self) -> list[dict[str, Any]]:
        """Return a log-safe view of every credential's state."""
        return [
            {
                "credential": c.label,
                "remaining": c.remaining,
                "reset_at": c.reset_at.isoformat() if c.reset_at else None,
                "in_use": c.in_use,
            }
            for c in self._credentials
        ]
