"""Unit tests for :mod:`repowatch.notifiers.notifier`.

Covers:
- :class:`LogNotifier`: one structured record per event.
- :class:`WebhookNotifier`: constructor validation, JSON body, retry on 5xx
  and transport errors, no retry on 4xx, delivery failures never raised,
  ``aclose`` flushing and post-close drops.
- :class:`CompositeNotifier`: fan-out and failure isolation.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from repowatch.core.models import JobEvent, JobRecord, JobState, TargetKind
from repowatch.notifiers import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier

_HOOK_URL = "https://hooks.example.com/repowatch"
_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(kind: str = "job.succeeded", **payload: Any) -> JobEvent:
    record = JobRecord(
        id="job-1",
        name="monitor_crawler",
        target_kind=TargetKind.MONITOR,
        target_id="m1",
        dedup_key="monitor_crawler:monitor:m1",
        run_at=_NOW,
        state=JobState.SUCCEEDED,
        created_at=_NOW,
        updated_at=_NOW,
    )
    return JobEvent.from_record(kind, record, **payload)


def _make_http(*outcomes: Any) -> MagicMock:
    """Mock :class:`httpx.AsyncClient` whose ``post`` yields *outcomes* in order."""
    http = MagicMock()
    http.post = AsyncMock(side_effect=list(outcomes))
    http.aclose = AsyncMock()
    return http


def _no_wait() -> Any:
    return patch("repowatch.notifiers.notifier._webhook_wait", new=lambda _state: 0.0)


# ---------------------------------------------------------------------------
# LogNotifier
# ---------------------------------------------------------------------------


class TestLogNotifier:
    def test_logs_one_record_with_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="repowatch.notifiers.notifier"):
            LogNotifier().notify(_make_event(follow_ups=["j2"]))

        records = [r for r in caplog.records if getattr(r, "event", None) == "job.succeeded"]
        assert len(records) == 1
        job_event = records[0].job_event  # type: ignore[attr-defined]
        assert job_event["job_id"] == "job-1"
        assert job_event["state"] == "succeeded"
        assert job_event["payload"] == {"follow_ups": ["j2"]}

    def test_custom_level(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="repowatch.notifiers.notifier"):
            LogNotifier(level=logging.DEBUG).notify(_make_event())
        assert any(r.levelno == logging.DEBUG for r in caplog.records)


# ---------------------------------------------------------------------------
# WebhookNotifier
# ---------------------------------------------------------------------------


class TestWebhookNotifierConstruction:
    def test_empty_url_rejected(self) -> None:
        with pytest.raises(ValueError):
            WebhookNotifier("", http=_make_http())

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValueError):
            WebhookNotifier(_HOOK_URL, max_attempts=0, http=_make_http())


class TestWebhookDelivery:
    async def test_posts_event_as_json(self) -> None:
        http = _make_http(httpx.Response(204))
        notifier = WebhookNotifier(_HOOK_URL, http=http)

        notifier.notify(_make_event(follow_ups=[]))
        await notifier.aclose()

        args, kwargs = http.post.call_args
        assert args == (_HOOK_URL,)
        assert kwargs["json"]["kind"] == "job.succeeded"
        assert kwargs["json"]["target_kind"] == "monitor"
        http.aclose.assert_awaited_once()

    async def test_notify_does_not_block(self) -> None:
        gate = asyncio.Event()

        async def _slow_post(*args: Any, **kwargs: Any) -> httpx.Response:
            await gate.wait()
            return httpx.Response(200)

        http = _make_http()
        http.post = AsyncMock(side_effect=_slow_post)
        notifier = WebhookNotifier(_HOOK_URL, http=http)

        notifier.notify(_make_event())
        assert notifier.pending == 1

        gate.set()
        await notifier.aclose()
        assert notifier.pending == 0

    async def test_server_error_retried_until_success(self) -> None:
        http = _make_http(httpx.Response(503), httpx.Response(200))
        notifier = WebhookNotifier(_HOOK_URL, max_attempts=3, http=http)

        with _no_wait():
            notifier.notify(_make_event())
            await notifier.aclose()

        assert http.post.await_count == 2

    async def test_transport_error_retried(self) -> None:
        http = _make_http(httpx.ConnectError("refused"), httpx.Response(200))
        notifier = WebhookNotifier(_HOOK_URL, max_attempts=2, http=http)

        with _no_wait():
            notifier.notify(_make_event())
            await notifier.aclose()

        assert http.post.await_count == 2

    async def test_client_error_not_retried(self) -> None:
        http = _make_http(httpx.Response(400), httpx.Response(200))
        notifier = WebhookNotifier(_HOOK_URL, max_attempts=3, http=http)

        with _no_wait():
            notifier.notify(_make_event())
            await notifier.aclose()

        assert http.post.await_count == 1

    async def test_exhausted_retries_are_logged_not_raised(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        http = _make_http(*(httpx.Response(500) for _ in range(3)))
        notifier = WebhookNotifier(_HOOK_URL, max_attempts=3, http=http)

        with _no_wait(), caplog.at_level(logging.WARNING):
            notifier.notify(_make_event())
            await notifier.aclose()

        assert http.post.await_count == 3
        assert any("delivery" in r.getMessage() for r in caplog.records)

    async def test_notify_after_close_is_dropped(self) -> None:
        http = _make_http(httpx.Response(200))
        notifier = WebhookNotifier(_HOOK_URL, http=http)
        await notifier.aclose()

        notifier.notify(_make_event())

        assert notifier.pending == 0
        http.post.assert_not_awaited()


# ---------------------------------------------------------------------------
# CompositeNotifier
# ---------------------------------------------------------------------------


class _Collector(Notifier):
    def __init__(self) -> None:
        self.events: list[JobEvent] = []
        self.closed = False

    def notify(self, event: JobEvent) -> None:
        self.events.append(event)

    async def aclose(self) -> None:
        self.closed = True


class TestCompositeNotifier:
    async def test_fans_out_to_every_notifier(self) -> None:
        a, b = _Collector(), _Collector()
        composite = CompositeNotifier([a, b])

        composite.notify(_make_event())
        await composite.aclose()

        assert len(a.events) == len(b.events) == 1
        assert a.closed and b.closed

    def test_one_failing_notifier_does_not_stop_others(self) -> None:
        broken = MagicMock(spec=Notifier)
        broken.notify.side_effect = RuntimeError("down")
        healthy = _Collector()

        CompositeNotifier([broken, healthy]).notify(_make_event())

        assert len(healthy.events) == 1
