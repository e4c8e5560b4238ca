"""Unit tests for the SQLite storage layer.

Covers:
- :func:`~repowatch.storage.database.open_db`: schema bootstrap and pragmas.
- :class:`~repowatch.storage.database.Database`: transaction rollback,
  including on cancellation, and column back-fill on older files.
- :class:`~repowatch.storage.jobs.JobRepository`: idempotent enqueue,
  exclusive claim (including across two connections), due-time ordering,
  complete-with-follow-ups, retry / fail transitions, crash recovery.
- :class:`~repowatch.storage.repository.MonitorRepository`,
  :class:`~repowatch.storage.repository.ReportRepository` and
  :class:`~repowatch.storage.repository.BookmarkRepository`.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest

from repowatch.core.clock import utcnow
from repowatch.core.exceptions import StorageError
from repowatch.core.models import FundingLink, JobState, Report, TargetKind
from repowatch.storage import (
    BookmarkRepository,
    Database,
    JobRepository,
    JobSpec,
    MonitorRepository,
    ReportRepository,
)

# ---------------------------------------------------------------------------
# Factories / helpers
# ---------------------------------------------------------------------------


def _make_spec(
    *,
    name: str = "monitor_crawler",
    target_kind: TargetKind = TargetKind.MONITOR,
    target_id: str = "m1",
    run_at_offset: float | None = None,
    max_attempts: int = 3,
) -> JobSpec:
    """Return a :class:`JobSpec`; *run_at_offset* is seconds from now."""
    run_at = None if run_at_offset is None else utcnow() + timedelta(seconds=run_at_offset)
    return JobSpec(
        name=name,
        target_kind=target_kind,
        target_id=target_id,
        run_at=run_at,
        max_attempts=max_attempts,
    )


async def _claim_running(job_repo: JobRepository, spec: JobSpec | None = None) -> str:
    record, _ = await job_repo.enqueue(spec or _make_spec())
    claimed = await job_repo.claim()
    assert claimed is not None and claimed.id == record.id
    return record.id


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class TestDatabase:
    async def test_open_creates_parent_directory_and_tables(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "repowatch.db"
        db = await Database.open(path)
        try:
            rows = await db.fetchall(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            )
        finally:
            await db.close()
        assert path.exists()
        assert {"bookmarks", "jobs", "monitors", "reports"} <= {row["name"] for row in rows}

    async def test_schema_bootstrap_is_idempotent(self, db_path: Path) -> None:
        first = await Database.open(db_path)
        await first.close()
        second = await Database.open(db_path)
        await second.close()

    async def test_foreign_keys_enabled(self, db: Database) -> None:
        row = await db.fetchone("PRAGMA foreign_keys")
        assert row is not None and row[0] == 1

    async def test_transaction_rolls_back_on_error(
        self, db: Database, bookmark_repo: BookmarkRepository
    ) -> None:
        with pytest.raises(RuntimeError):
            async with db.transaction() as conn:
                await conn.execute(
                    "INSERT INTO bookmarks (id, url, monitor_id, created_at, updated_at) "
                    "VALUES ('b1', 'https://x.io/a/b', NULL, 'x', 'x')"
                )
                raise RuntimeError("abort")
        assert await bookmark_repo.get("b1") is None

    @pytest.mark.parametrize("ticks", range(6))
    async def test_cancellation_never_leaves_transaction_open(
        self, db: Database, ticks: int
    ) -> None:
        async def _hold() -> None:
            async with db.transaction() as conn:
                await conn.execute("SELECT 1")
                await asyncio.sleep(3600)

        task = asyncio.create_task(_hold())
        for _ in range(ticks):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        async with db.transaction() as conn:
            await conn.execute(
                "INSERT INTO bookmarks (id, url, monitor_id, created_at, updated_at) "
                "VALUES ('b1', 'https://x.io/a/b', NULL, 'x', 'x')"
            )
        row = await db.fetchone("SELECT id FROM bookmarks WHERE id = 'b1'")
        assert row is not None

    async def test_missing_monitor_column_added_to_older_file(self, db_path: Path) -> None:
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute(
                "CREATE TABLE monitors (id TEXT PRIMARY KEY, url TEXT NOT NULL UNIQUE, "
                "fetched_at TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            await conn.commit()

        db = await Database.open(db_path)
        try:
            rows = await db.fetchall("PRAGMA table_info(monitors)")
        finally:
            await db.close()
        assert "crawl_attempted_at" in {row["name"] for row in rows}


# ---------------------------------------------------------------------------
# Jobs: enqueue
# ---------------------------------------------------------------------------


class TestJobEnqueue:
    async def test_enqueue_creates_pending_job(self, job_repo: JobRepository) -> None:
        record, created = await job_repo.enqueue(_make_spec(max_attempts=4))
        assert created is True
        assert record.state is JobState.PENDING
        assert record.attempts == 0
        assert record.max_attempts == 4
        assert record.dedup_key == "monitor_crawler:monitor:m1"
        assert record.last_error is None

    async def test_duplicate_enqueue_is_coalesced(self, job_repo: JobRepository) -> None:
        first, created_first = await job_repo.enqueue(_make_spec())
        second, created_second = await job_repo.enqueue(_make_spec())
        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert (await job_repo.counts())[JobState.PENDING] == 1

    async def test_running_job_also_coalesces(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        record, created = await job_repo.enqueue(_make_spec())
        assert created is False
        assert record.id == job_id
        assert record.state is JobState.RUNNING

    async def test_new_job_allowed_after_terminal_state(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        await job_repo.complete(job_id)
        record, created = await job_repo.enqueue(_make_spec())
        assert created is True
        assert record.id != job_id

    async def test_different_targets_are_independent(self, job_repo: JobRepository) -> None:
        await job_repo.enqueue(_make_spec(target_id="m1"))
        _, created = await job_repo.enqueue(_make_spec(target_id="m2"))
        assert created is True

    async def test_concurrent_enqueues_create_one_row(self, job_repo: JobRepository) -> None:
        results = await asyncio.gather(*(job_repo.enqueue(_make_spec()) for _ in range(10)))
        assert sum(created for _, created in results) == 1
        assert len({record.id for record, _ in results}) == 1


# ---------------------------------------------------------------------------
# Jobs: claim
# ---------------------------------------------------------------------------


class TestJobClaim:
    async def test_claim_empty_queue_returns_none(self, job_repo: JobRepository) -> None:
        assert await job_repo.claim() is None

    async def test_claim_moves_job_to_running(self, job_repo: JobRepository) -> None:
        await job_repo.enqueue(_make_spec())
        claimed = await job_repo.claim()
        assert claimed is not None
        assert claimed.state is JobState.RUNNING
        assert await job_repo.claim() is None

    async def test_future_job_not_claimable_until_due(self, job_repo: JobRepository) -> None:
        await job_repo.enqueue(_make_spec(run_at_offset=60))
        assert await job_repo.claim() is None
        assert await job_repo.has_due() is False
        claimed = await job_repo.claim(utcnow() + timedelta(seconds=61))
        assert claimed is not None

    async def test_claims_earliest_due_first(self, job_repo: JobRepository) -> None:
        later, _ = await job_repo.enqueue(_make_spec(target_id="later", run_at_offset=-5))
        earlier, _ = await job_repo.enqueue(_make_spec(target_id="earlier", run_at_offset=-10))
        first = await job_repo.claim()
        second = await job_repo.claim()
        assert first is not None and second is not None
        assert (first.id, second.id) == (earlier.id, later.id)

    async def test_concurrent_claims_are_exclusive(self, job_repo: JobRepository) -> None:
        for i in range(5):
            await job_repo.enqueue(_make_spec(target_id=f"m{i}"))
        claimed = await asyncio.gather(*(job_repo.claim() for _ in range(10)))
        ids = [record.id for record in claimed if record is not None]
        assert len(ids) == 5
        assert len(set(ids)) == 5

    async def test_two_connections_never_claim_the_same_job(self, db_path: Path) -> None:
        """Two processes sharing the file: each job is claimed exactly once."""
        db_a = await Database.open(db_path)
        db_b = await Database.open(db_path)
        try:
            repo_a, repo_b = JobRepository(db_a), JobRepository(db_b)
            for i in range(6):
                await repo_a.enqueue(_make_spec(target_id=f"m{i}"))

            claimed = await asyncio.gather(
                *(repo.claim() for repo in (repo_a, repo_b) for _ in range(6))
            )
        finally:
            await db_a.close()
            await db_b.close()

        ids = [record.id for record in claimed if record is not None]
        assert len(ids) == 6
        assert len(set(ids)) == 6


# ---------------------------------------------------------------------------
# Jobs: transitions
# ---------------------------------------------------------------------------


class TestJobTransitions:
    async def test_complete_marks_succeeded(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        done, spawned = await job_repo.complete(job_id)
        assert done.state is JobState.SUCCEEDED
        assert spawned == []

    async def test_complete_enqueues_follow_ups_atomically(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(
            job_repo, _make_spec(name="bookmark_updated", target_kind=TargetKind.BOOKMARK, target_id="b1")
        )
        done, spawned = await job_repo.complete(
            job_id, [_make_spec(target_id="m1"), _make_spec(target_id="m1")]
        )
        assert done.state is JobState.SUCCEEDED
        assert [created for _, created in spawned] == [True, False]
        assert spawned[0][0].id == spawned[1][0].id

    async def test_complete_rejects_job_not_running(self, job_repo: JobRepository) -> None:
        record, _ = await job_repo.enqueue(_make_spec())
        with pytest.raises(StorageError):
            await job_repo.complete(record.id, [_make_spec(target_id="other")])
        assert await job_repo.find_active("monitor_crawler:monitor:other") is None

    async def test_retry_counts_attempt_and_rearms(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        run_at = utcnow() + timedelta(seconds=30)
        record = await job_repo.retry(job_id, "RuntimeError: boom", run_at)
        assert record.state is JobState.PENDING
        assert record.attempts == 1
        assert record.last_error == "RuntimeError: boom"
        assert abs((record.run_at - run_at).total_seconds()) < 0.001
        assert await job_repo.claim() is None

    async def test_fail_counts_attempt(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        record = await job_repo.fail(job_id, "TerminalExecutionError: nope")
        assert record.state is JobState.FAILED
        assert record.attempts == 1

    async def test_fail_without_counting_attempt(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        record = await job_repo.fail(job_id, "gone", count_attempt=False)
        assert record.state is JobState.FAILED
        assert record.attempts == 0

    async def test_long_errors_are_truncated(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        record = await job_repo.fail(job_id, "x" * 10_000)
        assert record.last_error is not None
        assert len(record.last_error) == 2000

    async def test_retry_of_finished_job_rejected(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        await job_repo.complete(job_id)
        with pytest.raises(StorageError):
            await job_repo.retry(job_id, "late", utcnow())

    async def test_recover_running_rearms_without_counting(self, job_repo: JobRepository) -> None:
        job_id = await _claim_running(job_repo)
        recovered = await job_repo.recover_running()
        assert [r.id for r in recovered] == [job_id]
        assert recovered[0].state is JobState.PENDING
        assert recovered[0].attempts == 0
        claimed = await job_repo.claim()
        assert claimed is not None and claimed.id == job_id


# ---------------------------------------------------------------------------
# Jobs: reads
# ---------------------------------------------------------------------------


class TestJobReads:
    async def test_counts_zero_filled(self, job_repo: JobRepository) -> None:
        counts = await job_repo.counts()
        assert counts == {state: 0 for state in JobState}

    async def test_list_jobs_filters_by_state_and_name(self, job_repo: JobRepository) -> None:
        await job_repo.enqueue(_make_spec(target_id="m1"))
        await job_repo.enqueue(
            _make_spec(name="bookmark_updated", target_kind=TargetKind.BOOKMARK, target_id="b1")
        )
        await job_repo.claim()

        pending = await job_repo.list_jobs(states=[JobState.PENDING])
        crawls = await job_repo.list_jobs(name="monitor_crawler")
        assert len(pending) == 1
        assert [r.name for r in crawls] == ["monitor_crawler"]
        assert await job_repo.list_jobs(states=[]) == []

    async def test_get_missing_returns_none(self, job_repo: JobRepository) -> None:
        assert await job_repo.get("nope") is None


# ---------------------------------------------------------------------------
# Monitors / reports / bookmarks
# ---------------------------------------------------------------------------


class TestMonitorRepository:
    async def test_find_or_create_is_idempotent(self, monitor_repo: MonitorRepository) -> None:
        first, created_first = await monitor_repo.find_or_create("https://github.com/acme/widget")
        second, created_second = await monitor_repo.find_or_create("https://github.com/acme/widget")
        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert first.fetched_at is None

    async def test_list_stale_includes_never_fetched_and_old(
        self, monitor_repo: MonitorRepository
    ) -> None:
        never, _ = await monitor_repo.find_or_create("https://github.com/a/never")
        old, _ = await monitor_repo.find_or_create("https://github.com/a/old")
        fresh, _ = await monitor_repo.find_or_create("https://github.com/a/fresh")
        now = utcnow()
        await monitor_repo.mark_fetched(old.id, now - timedelta(days=2))
        await monitor_repo.mark_fetched(fresh.id, now)

        stale = await monitor_repo.list_stale(now - timedelta(days=1))

        assert [m.id for m in stale] == [never.id, old.id]

    async def test_recently_failed_crawls_do_not_starve_old_fetches(
        self, monitor_repo: MonitorRepository
    ) -> None:
        now = utcnow()
        dead = []
        for i in range(3):
            monitor, _ = await monitor_repo.find_or_create(f"https://github.com/dead/{i}")
            await monitor_repo.mark_crawl_attempted(monitor.id, now - timedelta(minutes=10))
            dead.append(monitor)
        old, _ = await monitor_repo.find_or_create("https://github.com/a/old")
        await monitor_repo.mark_fetched(old.id, now - timedelta(hours=2))

        stale = await monitor_repo.list_stale(now - timedelta(hours=1), limit=1)

        assert [m.id for m in stale] == [old.id]

    async def test_list_stale_orders_by_last_crawl_of_any_outcome(
        self, monitor_repo: MonitorRepository
    ) -> None:
        now = utcnow()
        failed_long_ago, _ = await monitor_repo.find_or_create("https://github.com/a/failed")
        await monitor_repo.mark_crawl_attempted(failed_long_ago.id, now - timedelta(hours=5))
        fetched, _ = await monitor_repo.find_or_create("https://github.com/a/fetched")
        await monitor_repo.mark_fetched(fetched.id, now - timedelta(hours=3))
        never, _ = await monitor_repo.find_or_create("https://github.com/a/never")

        stale = await monitor_repo.list_stale(now - timedelta(hours=1))

        assert [m.id for m in stale] == [never.id, failed_long_ago.id, fetched.id]

    async def test_mark_crawl_attempted_leaves_fetched_at(
        self, monitor_repo: MonitorRepository
    ) -> None:
        monitor, _ = await monitor_repo.find_or_create("https://github.com/a/b")
        await monitor_repo.mark_crawl_attempted(monitor.id)

        refreshed = await monitor_repo.get(monitor.id)
        assert refreshed is not None
        assert refreshed.crawl_attempted_at is not None
        assert refreshed.fetched_at is None

    async def test_mark_fetched_missing_monitor_raises(
        self, monitor_repo: MonitorRepository
    ) -> None:
        with pytest.raises(StorageError):
            await monitor_repo.mark_fetched("missing")


class TestReportRepository:
    async def test_upsert_then_get(
        self, monitor_repo: MonitorRepository, report_repo: ReportRepository
    ) -> None:
        monitor, _ = await monitor_repo.find_or_create("https://github.com/acme/widget")
        report = Report(
            stars=10,
            license_key="mit",
            funding_links=(FundingLink(platform="GITHUB", url="https://github.com/sponsors/acme"),),
        )
        await report_repo.upsert(monitor.id, "github", "github://acme/widget", report)
        assert await report_repo.get(monitor.id, "github") == report

    async def test_upsert_replaces_previous_report(
        self, monitor_repo: MonitorRepository, report_repo: ReportRepository
    ) -> None:
        monitor, _ = await monitor_repo.find_or_create("https://github.com/acme/widget")
        await report_repo.upsert(monitor.id, "github", "github://acme/widget", Report(stars=1))
        await report_repo.upsert(monitor.id, "github", "github://acme/widget", Report(stars=2))
        reports = await report_repo.list_for_monitor(monitor.id)
        assert list(reports) == ["github"]
        assert reports["github"].stars == 2

    async def test_get_missing_returns_none(self, report_repo: ReportRepository) -> None:
        assert await report_repo.get("m", "github") is None


class TestBookmarkRepository:
    async def test_create_and_get(self, bookmark_repo: BookmarkRepository) -> None:
        bookmark = await bookmark_repo.create("https://github.com/acme/widget")
        fetched = await bookmark_repo.get(bookmark.id)
        assert fetched == bookmark
        assert fetched is not None and fetched.monitor_id is None

    async def test_set_monitor_links_bookmark(
        self, bookmark_repo: BookmarkRepository, monitor_repo: MonitorRepository
    ) -> None:
        bookmark = await bookmark_repo.create("https://github.com/acme/widget")
        monitor, _ = await monitor_repo.find_or_create("https://github.com/acme/widget")
        await bookmark_repo.set_monitor(bookmark.id, monitor.id)
        fetched = await bookmark_repo.get(bookmark.id)
        assert fetched is not None and fetched.monitor_id == monitor.id

    async def test_set_monitor_missing_bookmark_raises(
        self, bookmark_repo: BookmarkRepository, monitor_repo: MonitorRepository
    ) -> None:
        monitor, _ = await monitor_repo.find_or_create("https://github.com/acme/widget")
        with pytest.raises(StorageError):
            await bookmark_repo.set_monitor("missing", monitor.id)
