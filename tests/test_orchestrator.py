"""Tests for sync orchestration: run-lock, strategies, missing detection."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from fakes import FakeSource, days_ago, make_record, summary_of
from kb_governance.db.models import (
    Article,
    GovernanceIssue,
    SyncConfig,
    SyncIssue,
    SyncIssueType,
    SyncMode,
    SyncRun,
    SyncRunStatus,
    SyncState,
    SyncTrigger,
)
from kb_governance.exceptions import InvalidSyncModeError, SyncAlreadyRunningError
from kb_governance.governance.detectors import GovernanceDetectorService
from kb_governance.governance.duplicates import DuplicateDetector
from kb_governance.sync.orchestrator import RunCounters, SyncOrchestrator, clamp_page_size
from kb_governance.sync.mirror import OutcomeKind, SyncOutcome
from kb_governance.timeutils import utcnow


async def _run_count(session_maker) -> int:
    async with session_maker() as session:
        return (await session.execute(select(func.count(SyncRun.id)))).scalar_one()


async def _article(session_maker, article_id: int) -> Article | None:
    async with session_maker() as session:
        return await session.get(Article, article_id)


async def _seed_article(session_maker, article_id: int, **fields) -> None:
    async with session_maker() as session:
        session.add(Article(id=article_id, title=f"Local {article_id}", **fields))
        await session.commit()


@pytest.fixture
def now():
    return datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


async def _wait_until_running(orchestrator: SyncOrchestrator) -> None:
    for _ in range(1000):
        if orchestrator.is_running:
            return
        await asyncio.sleep(0)
    raise AssertionError("run never started")


class TestRunCounters:
    """Tests for RunCounters."""

    def test_outcomes_map_to_counters(self):
        counters = RunCounters()
        for kind in (OutcomeKind.CREATED, OutcomeKind.UPDATED, OutcomeKind.NOT_FOUND, OutcomeKind.ERROR):
            counters.record(SyncOutcome(1, kind))
        counters.skipped += 1

        assert (counters.synced, counters.updated, counters.not_found, counters.errors, counters.skipped) == (
            1, 1, 1, 1, 1,
        )
        assert counters.processed == 5

    def test_page_size_is_clamped(self):
        """Page sizes are kept within 10..200."""
        assert clamp_page_size(1) == 10
        assert clamp_page_size(500) == 200
        assert clamp_page_size(50) == 50


class TestRunLock:
    """Tests for mutual exclusion between runs."""

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, orchestrator, source, session_maker):
        """A second trigger while a run is active fails fast and writes no run row."""
        source.add(make_record(1))
        source.gate = asyncio.Event()

        first = asyncio.create_task(orchestrator.run_now(SyncMode.FULL))
        await _wait_until_running(orchestrator)

        with pytest.raises(SyncAlreadyRunningError):
            await orchestrator.run_now(SyncMode.DELTA_SURGICAL, trigger=SyncTrigger.SCHEDULER)

        source.gate.set()
        run = await first

        assert run.status == SyncRunStatus.SUCCESS
        assert await _run_count(session_maker) == 1
        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_failed_run_releases_lock(self, orchestrator, source, session_maker):
        """A run-fatal error marks the run FAILED and frees the lock."""
        source.search_articles = AsyncMock(side_effect=RuntimeError("feed exploded"))

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.status == SyncRunStatus.FAILED
        assert run.note.startswith("RuntimeError: feed exploded")
        assert run.finished_at is not None
        assert orchestrator.is_running is False

        source.search_articles = FakeSource().search_articles
        again = await orchestrator.run_now(SyncMode.FULL)
        assert again.status == SyncRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failure_note_is_truncated(self, orchestrator, source):
        source.search_articles = AsyncMock(side_effect=RuntimeError("x" * 1000))
        run = await orchestrator.run_now(SyncMode.FULL)
        assert len(run.note) == 350

    @pytest.mark.asyncio
    async def test_invalid_mode_creates_no_run(self, orchestrator, session_maker):
        with pytest.raises(InvalidSyncModeError):
            await orchestrator.run_now("SIDEWAYS")
        assert await _run_count(session_maker) == 0
        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_cancel_stops_between_items(self, orchestrator, source):
        """A cancellation request ends the run as FAILED with a cancelled note."""
        source.add(make_record(1), make_record(2))
        source.gate = asyncio.Event()
        task = asyncio.create_task(orchestrator.run_now(SyncMode.FULL))
        await _wait_until_running(orchestrator)

        assert orchestrator.request_cancel() is True
        source.gate.set()
        run = await task

        assert run.status == SyncRunStatus.FAILED
        assert run.note == "cancelled"
        assert source.fetch_calls == []
        assert orchestrator.request_cancel() is False

    @pytest.mark.asyncio
    async def test_background_run(self, orchestrator, source, session_maker):
        """start_background returns the RUNNING record and finishes it later."""
        source.add(make_record(1))
        run = await orchestrator.start_background(SyncMode.FULL)
        assert run.status == SyncRunStatus.RUNNING

        await orchestrator._background
        latest = await orchestrator.latest_run()
        assert latest.id == run.id
        assert latest.status == SyncRunStatus.SUCCESS


class TestFullSync:
    """Tests for the FULL strategy."""

    @pytest.mark.asyncio
    async def test_full_sync_counts_and_missing(self, orchestrator, source, session_maker):
        """Listed articles are synced; unlisted stale ones become MISSING."""
        source.add(make_record(1), make_record(2), make_record(3))
        await _seed_article(session_maker, 99, last_seen_at=days_ago(1), sync_state=SyncState.SYNCED)

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.status == SyncRunStatus.SUCCESS
        assert run.synced_count == 3
        assert run.error_count == 0
        assert run.note == "missing=1"
        assert (await _article(session_maker, 99)).sync_state == SyncState.MISSING
        assert (await _article(session_maker, 1)).sync_state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_recently_seen_article_is_not_missing(self, orchestrator, source, session_maker):
        """Articles seen within the cutoff keep their state."""
        await _seed_article(session_maker, 99, last_seen_at=utcnow() - timedelta(minutes=30), sync_state=SyncState.SYNCED)
        await orchestrator.run_now(SyncMode.FULL)
        assert (await _article(session_maker, 99)).sync_state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_long_scan_keeps_articles_it_listed(self, orchestrator, source, session_maker, monkeypatch):
        """A scan that outlasts the freshness window only marks articles missed by this scan."""
        from kb_governance.sync import orchestrator as orchestrator_module

        source.add(make_record(1), make_record(2))
        await _seed_article(session_maker, 99, last_seen_at=days_ago(1), sync_state=SyncState.SYNCED)
        mark_missing = orchestrator.mark_missing

        async def mark_missing_three_hours_later(**kwargs):
            monkeypatch.setattr(orchestrator_module, "utcnow", lambda: utcnow() + timedelta(hours=3))
            return await mark_missing(**kwargs)

        monkeypatch.setattr(orchestrator, "mark_missing", mark_missing_three_hours_later)

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.note == "missing=1"
        assert (await _article(session_maker, 1)).sync_state == SyncState.SYNCED
        assert (await _article(session_maker, 2)).sync_state == SyncState.SYNCED
        assert (await _article(session_maker, 99)).sync_state == SyncState.MISSING

    @pytest.mark.asyncio
    async def test_stops_on_empty_page_without_total(self, orchestrator, session_maker, mirror):
        """Without a total count, the scan stops at the first empty page."""
        source = FakeSource([make_record(i) for i in range(1, 13)], report_total=False)
        mirror.source = source
        orchestrator.source = source

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.synced_count == 12
        assert source.search_calls == [(1, 10), (2, 10), (3, 10)]

    @pytest.mark.asyncio
    async def test_stops_when_total_reached(self, orchestrator, source):
        source.add(*[make_record(i) for i in range(1, 11)])
        await orchestrator.run_now(SyncMode.FULL)
        assert source.search_calls == [(1, 10)]

    @pytest.mark.asyncio
    async def test_page_cap_skips_missing_detection(self, mirror, session_maker, source):
        """A scan cut short by the page cap never marks anything MISSING."""
        source.add(*[make_record(i) for i in range(1, 31)])
        await _seed_article(session_maker, 99, last_seen_at=days_ago(1), sync_state=SyncState.SYNCED)
        capped = SyncOrchestrator(
            mirror=mirror, session_maker=session_maker, page_size=10, max_pages=2, parallel=False, run_governance=False
        )

        run = await capped.run_now(SyncMode.FULL)

        assert run.status == SyncRunStatus.SUCCESS
        assert run.synced_count == 20
        assert (await _article(session_maker, 99)).sync_state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_per_item_failures_do_not_fail_run(self, orchestrator, source):
        """Not-found and errors are counted; the run still succeeds."""
        source.add(make_record(1), make_record(2))
        source.listing = [summary_of(make_record(1)), summary_of(make_record(2)), summary_of(make_record(3))]
        source.fail[2] = RuntimeError("flaky")

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.status == SyncRunStatus.SUCCESS
        assert (run.synced_count, run.not_found_count, run.error_count) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_parallel_timeout_counts_as_error(self, mirror, session_maker, source):
        """In the worker pool, a slow item times out and is recorded as an error."""
        source.add(make_record(1), make_record(2), make_record(3))
        source.delay[2] = 5.0
        parallel = SyncOrchestrator(
            mirror=mirror,
            session_maker=session_maker,
            page_size=10,
            parallel=True,
            workers=2,
            item_timeout=0.2,
            run_governance=False,
        )

        run = await parallel.run_now(SyncMode.FULL)

        assert run.synced_count == 2
        assert run.error_count == 1
        async with session_maker() as session:
            issues = (
                await session.execute(select(SyncIssue).where(SyncIssue.article_id == 2))
            ).scalars().all()
        assert [i.issue_type for i in issues] == [SyncIssueType.ERROR]
        assert "Timed out" in issues[0].message


class TestWindowSync:
    """Tests for the DELTA_WINDOW strategy."""

    @pytest.mark.asyncio
    async def test_compute_since(self, orchestrator, now):
        """Explicit days win, fallback is 2 days, lookback is capped at 7 days."""
        assert await orchestrator.compute_since(3, now) == now - timedelta(days=3)
        assert await orchestrator.compute_since(30, now) == now - timedelta(days=7)
        assert await orchestrator.compute_since(None, now) == now - timedelta(days=2)

    @pytest.mark.asyncio
    async def test_compute_since_uses_last_success(self, orchestrator, session_maker, now):
        finished = now - timedelta(hours=5)
        async with session_maker() as session:
            session.add(
                SyncRun(
                    mode=SyncMode.FULL,
                    status=SyncRunStatus.SUCCESS,
                    started_at=finished - timedelta(minutes=10),
                    finished_at=finished,
                )
            )
            session.add(
                SyncRun(
                    mode=SyncMode.FULL,
                    status=SyncRunStatus.FAILED,
                    started_at=now - timedelta(hours=1),
                    finished_at=now - timedelta(minutes=50),
                )
            )
            await session.commit()

        assert await orchestrator.compute_since(None, now) == finished

    @pytest.mark.asyncio
    async def test_window_syncs_recent_candidates_only(self, orchestrator, source, session_maker):
        """Only local articles updated inside the window are re-fetched, oldest first."""
        await _seed_article(session_maker, 1, source_updated_at=days_ago(1))
        await _seed_article(session_maker, 2, source_updated_at=days_ago(10))
        await _seed_article(session_maker, 3, source_updated_at=days_ago(2))
        await _seed_article(session_maker, 4, source_updated_at=days_ago(1), sync_state=SyncState.MISSING)
        source.add(*[make_record(i) for i in (1, 2, 3, 4)])

        run = await orchestrator.run_now(SyncMode.DELTA_WINDOW, days_back=3)

        assert source.fetch_calls == [3, 1]
        assert run.updated_count == 2
        assert run.days_back == 3


class TestSurgicalSync:
    """Tests for the DELTA_SURGICAL strategy."""

    @pytest.mark.asyncio
    async def test_only_new_or_changed_are_fetched(self, orchestrator, source, session_maker):
        await _seed_article(session_maker, 1, revision_id=5)
        await _seed_article(session_maker, 3, revision_id=1)
        source.add(make_record(1, revision=5), make_record(2, revision=1), make_record(3, revision=2))

        run = await orchestrator.run_now(SyncMode.DELTA_SURGICAL)

        assert sorted(source.fetch_calls) == [2, 3]
        assert (run.synced_count, run.updated_count, run.skipped_count) == (1, 1, 1)
        assert (await _article(session_maker, 1)).sync_state == SyncState.UNCHANGED
        assert (await _article(session_maker, 2)).sync_state == SyncState.NEW
        assert (await _article(session_maker, 3)).sync_state == SyncState.UPDATED

    @pytest.mark.asyncio
    async def test_surgical_never_marks_missing(self, orchestrator, source, session_maker):
        await _seed_article(session_maker, 99, last_seen_at=days_ago(3), sync_state=SyncState.SYNCED)
        run = await orchestrator.run_now(SyncMode.DELTA_SURGICAL)
        assert run.note is None
        assert (await _article(session_maker, 99)).sync_state == SyncState.SYNCED


class TestPostSyncGovernance:
    """Tests for detectors run after a sync."""

    @pytest.mark.asyncio
    async def test_detectors_and_duplicates_run(self, mirror, session_maker, source, lifecycle):
        source.add(make_record(1, text="Mesmo conteúdo"), make_record(2, text="mesmo   CONTEÚDO"))
        orchestrator = SyncOrchestrator(
            mirror=mirror,
            session_maker=session_maker,
            detectors=GovernanceDetectorService(lifecycle=lifecycle, session_maker=session_maker),
            duplicates=DuplicateDetector(lifecycle=lifecycle, session_maker=session_maker),
            page_size=10,
        )

        run = await orchestrator.run_now(SyncMode.FULL)

        assert run.status == SyncRunStatus.SUCCESS
        async with session_maker() as session:
            types = {row[0] for row in (await session.execute(select(GovernanceIssue.issue_type))).all()}
        assert "DUPLICATE_CONTENT" in {t.value for t in types}
        assert "INCOMPLETE_CONTENT" in {t.value for t in types}

    @pytest.mark.asyncio
    async def test_governance_failure_does_not_fail_run(self, mirror, session_maker, source):
        """A detector crash is noted on the run, which still succeeds."""
        source.add(make_record(1))
        detectors = MagicMock()
        detectors.analyze_recent = AsyncMock(side_effect=ValueError("detector broke"))
        orchestrator = SyncOrchestrator(
            mirror=mirror,
            session_maker=session_maker,
            detectors=detectors,
            duplicates=MagicMock(),
            page_size=10,
        )

        run = await orchestrator.run_now(SyncMode.DELTA_SURGICAL)

        assert run.status == SyncRunStatus.SUCCESS
        assert "[GOVERNANCE_ERROR] ValueError: detector broke" in run.note
        assert len(run.note) <= 150


class TestConfig:
    """Tests for the persisted sync configuration."""

    @pytest.mark.asyncio
    async def test_default_config(self, orchestrator):
        config = await orchestrator.get_config()
        assert config.mode == SyncMode.DELTA_WINDOW
        assert config.interval_minutes == 60

    @pytest.mark.asyncio
    async def test_update_config_clamps_values(self, orchestrator):
        config = await orchestrator.update_config(enabled=True, mode="surgical", interval_minutes=0, days_back=-4)
        assert config.enabled is True
        assert config.mode == SyncMode.DELTA_SURGICAL
        assert config.interval_minutes == 1
        assert config.days_back == 0

    @pytest.mark.asyncio
    async def test_run_uses_config_mode_and_stamps_times(self, orchestrator, session_maker):
        await orchestrator.update_config(mode=SyncMode.DELTA_SURGICAL)
        run = await orchestrator.run_now()

        assert run.mode == SyncMode.DELTA_SURGICAL
        async with session_maker() as session:
            config = await session.get(SyncConfig, 1)
        assert config.last_started_at == run.started_at
        assert config.last_finished_at == run.finished_at
