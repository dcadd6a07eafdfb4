"""Sync orchestration: run-lock, strategy dispatch, run records.

Only one run may execute at a time. Manual triggers and the scheduler compete
for the same non-blocking lock; the loser gets ``SyncAlreadyRunningError``
immediately and no run row is written for it.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_governance.config import settings
from kb_governance.db.database import async_session_maker
from kb_governance.db.models import (
    Article,
    SyncConfig,
    SyncMode,
    SyncRun,
    SyncRunStatus,
    SyncState,
    SyncStatus,
    SyncIssueType,
    SyncTrigger,
)
from kb_governance.exceptions import SyncAlreadyRunningError, SyncCancelledError
from kb_governance.governance.detectors import GovernanceDetectorService
from kb_governance.governance.duplicates import DuplicateDetector
from kb_governance.source.models import ArticleSummary
from kb_governance.sync.change_detector import has_changed
from kb_governance.sync.mirror import ArticleMirror, OutcomeKind, SyncOutcome
from kb_governance.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CONFIG_ID = 1
MIN_PAGE_SIZE = 10
MAX_PAGE_SIZE = 200
FAILURE_NOTE_MAX_LENGTH = 350
GOVERNANCE_NOTE_MAX_LENGTH = 150


class RunLock:
    """Non-blocking, non-reentrant guard: at most one holder, no queue."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


@dataclass
class RunCounters:
    """Per-outcome counters accumulated during a run."""

    synced: int = 0
    updated: int = 0
    skipped: int = 0
    not_found: int = 0
    errors: int = 0

    def record(self, outcome: SyncOutcome) -> None:
        if outcome.kind == OutcomeKind.CREATED:
            self.synced += 1
        elif outcome.kind == OutcomeKind.UPDATED:
            self.updated += 1
        elif outcome.kind == OutcomeKind.NOT_FOUND:
            self.not_found += 1
        else:
            self.errors += 1

    @property
    def processed(self) -> int:
        return self.synced + self.updated + self.skipped + self.not_found + self.errors


def clamp_page_size(page_size: int | None) -> int:
    if not page_size or page_size <= 0:
        return settings.SYNC_PAGE_SIZE
    return max(MIN_PAGE_SIZE, min(MAX_PAGE_SIZE, page_size))


class SyncOrchestrator:
    """Top-level coordinator for sync runs.

    Inject one instance per process; the run-lock lives on the instance.
    """

    def __init__(
        self,
        mirror: ArticleMirror | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        detectors: GovernanceDetectorService | None = None,
        duplicates: DuplicateDetector | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        parallel: bool | None = None,
        workers: int | None = None,
        item_timeout: float | None = None,
        run_governance: bool = True,
    ):
        self.session_maker = session_maker or async_session_maker
        self.mirror = mirror or ArticleMirror(session_maker=self.session_maker)
        self.source = self.mirror.source
        self.detectors = detectors or GovernanceDetectorService(
            lifecycle=self.mirror.lifecycle, session_maker=self.session_maker
        )
        self.duplicates = duplicates or DuplicateDetector(
            lifecycle=self.mirror.lifecycle, session_maker=self.session_maker
        )
        self.page_size = clamp_page_size(page_size or settings.SYNC_PAGE_SIZE)
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.parallel = settings.SYNC_PARALLEL if parallel is None else parallel
        self.workers = max(1, workers or settings.SYNC_WORKERS)
        self.item_timeout = item_timeout or settings.SYNC_ITEM_TIMEOUT
        self.run_governance = run_governance

        self._lock = RunLock()
        self._cancel_event: asyncio.Event | None = None
        self._background: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_now(
        self,
        mode: SyncMode | str | None = None,
        days_back: int | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncRun:
        """Run a sync to completion and return the finalized run.

        Raises:
            SyncAlreadyRunningError: another run holds the lock
        """
        run, mode, days_back = await self._begin(mode, days_back, trigger)
        return await self._execute(run, mode, days_back)

    async def start_background(
        self,
        mode: SyncMode | str | None = None,
        days_back: int | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncRun:
        """Acquire the lock and create the run, then finish it in a background task."""
        run, mode, days_back = await self._begin(mode, days_back, trigger)
        self._background = asyncio.create_task(self._execute(run, mode, days_back))
        return run

    def request_cancel(self) -> bool:
        """Ask the running sync to stop between items. Returns False when idle."""
        if not self.is_running or self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.warning("Cancellation requested for the running sync")
        return True

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _begin(
        self,
        mode: SyncMode | str | None,
        days_back: int | None,
        trigger: SyncTrigger,
    ) -> tuple[SyncRun, SyncMode, int | None]:
        if not self._lock.try_acquire():
            raise SyncAlreadyRunningError()
        try:
            self._cancel_event = asyncio.Event()
            config = await self.get_config()
            mode = SyncMode.parse(mode, default=SyncMode(config.mode))
            if days_back is None and config.days_back > 0:
                days_back = config.days_back

            async with self.session_maker() as session:
                run = SyncRun(
                    mode=mode,
                    trigger=SyncTrigger(trigger),
                    status=SyncRunStatus.RUNNING,
                    days_back=days_back,
                    started_at=utcnow(),
                    synced_count=0,
                    updated_count=0,
                    skipped_count=0,
                    not_found_count=0,
                    error_count=0,
                )
                session.add(run)
                await session.commit()
        except BaseException:
            self._lock.release()
            raise

        logger.info(f"Sync run {run.id} started: mode={mode.value} days_back={days_back} trigger={run.trigger.value}")
        return run, mode, days_back

    async def _execute(self, run: SyncRun, mode: SyncMode, days_back: int | None) -> SyncRun:
        counters = RunCounters()
        started = time.monotonic()
        notes: list[str] = []
        try:
            error: BaseException | None = None
            try:
                if mode == SyncMode.FULL:
                    complete = await self._run_full(counters)
                    if complete:
                        missing = await self.mark_missing(scan_started_at=run.started_at)
                        notes.append(f"missing={missing}")
                    else:
                        notes.append("scan incomplete; missing detection skipped")
                elif mode == SyncMode.DELTA_WINDOW:
                    await self._run_window(counters, days_back)
                else:
                    await self._run_surgical(counters)
            except SyncCancelledError as e:
                error = e
            except asyncio.CancelledError:
                await self._finalize(run, counters, started, SyncCancelledError(), notes)
                raise
            except Exception as e:
                logger.exception(f"Sync run {run.id} failed")
                error = e

            if error is None and self.run_governance:
                governance_error = await self._post_sync_governance()
                if governance_error:
                    notes.append(governance_error)

            return await self._finalize(run, counters, started, error, notes)
        finally:
            self._cancel_event = None
            self._lock.release()

    async def _finalize(
        self,
        run: SyncRun,
        counters: RunCounters,
        started: float,
        error: BaseException | None,
        notes: list[str],
    ) -> SyncRun:
        """Stamp the final state of the run exactly once."""
        finished = utcnow()
        async with self.session_maker() as session:
            run = await session.get(SyncRun, run.id)
            run.finished_at = finished
            run.duration_ms = int((time.monotonic() - started) * 1000)
            run.synced_count = counters.synced
            run.updated_count = counters.updated
            run.skipped_count = counters.skipped
            run.not_found_count = counters.not_found
            run.error_count = counters.errors
            if error is None:
                run.status = SyncRunStatus.SUCCESS
                run.note = " | ".join(notes) or None
            else:
                run.status = SyncRunStatus.FAILED
                detail = str(error) if isinstance(error, SyncCancelledError) else f"{type(error).__name__}: {error}"
                run.note = detail[:FAILURE_NOTE_MAX_LENGTH]

            config = await self._get_or_create_config(session)
            config.last_started_at = run.started_at
            config.last_finished_at = finished
            await session.commit()

        logger.info(
            f"Sync run {run.id} {run.status.value}: {counters.synced} synced, "
            f"{counters.updated} updated, {counters.skipped} skipped, "
            f"{counters.not_found} not found, {counters.errors} errors in {run.duration_ms}ms"
        )
        return run

    async def _post_sync_governance(self) -> str | None:
        """Run detectors over recent articles and all duplicate groups.

        Failures here are reported in the run note and never fail the run.
        """
        try:
            await self.detectors.analyze_recent(settings.GOVERNANCE_RECENT_LIMIT)
            await self.duplicates.analyze_all()
        except Exception as e:
            logger.exception("Post-sync governance failed")
            return f"[GOVERNANCE_ERROR] {type(e).__name__}: {e}"[:GOVERNANCE_NOTE_MAX_LENGTH]
        return None

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise SyncCancelledError()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _run_full(self, counters: RunCounters) -> bool:
        """Walk the whole catalog. Returns True when the scan reached the end."""
        page_size = self.page_size
        for page in range(1, self.max_pages + 1):
            self._check_cancelled()
            result = await self.source.search_articles(page, page_size)
            if not result.items:
                logger.info(f"Full sync: page {page} is empty, stopping")
                return True

            await self._stamp_seen([item.id for item in result.items])
            if self.parallel:
                await self._sync_parallel(result.items, counters)
            else:
                for item in result.items:
                    self._check_cancelled()
                    counters.record(await self.mirror.sync(item.id, summary=item))

            logger.info(f"Full sync: page {page} done ({counters.processed} processed)")
            if result.total_size is not None and page * page_size >= result.total_size:
                return True

        logger.warning(f"Full sync stopped at the {self.max_pages} page safety cap")
        return False

    async def _sync_parallel(self, items: list[ArticleSummary], counters: RunCounters) -> None:
        """Sync one page with a bounded worker pool and a timeout per item."""
        semaphore = asyncio.Semaphore(self.workers)

        async def _sync_one(item: ArticleSummary) -> SyncOutcome:
            async with semaphore:
                self._check_cancelled()
                return await asyncio.wait_for(
                    self.mirror.sync(item.id, summary=item), timeout=self.item_timeout
                )

        tasks = [asyncio.create_task(_sync_one(item)) for item in items]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for item, result in zip(items, results):
            if isinstance(result, SyncCancelledError):
                raise result
            if isinstance(result, asyncio.TimeoutError):
                counters.errors += 1
                message = f"Timed out after {self.item_timeout}s"
                logger.warning(f"Article {item.id}: {message}")
                await self.mirror.mark_failed(item.id, SyncStatus.ERROR, SyncIssueType.ERROR, message)
            elif isinstance(result, BaseException):
                counters.errors += 1
                logger.warning(f"Article {item.id} failed: {type(result).__name__}: {result}")
            else:
                counters.record(result)

    async def _run_window(self, counters: RunCounters, days_back: int | None) -> None:
        since = await self.compute_since(days_back)
        async with self.session_maker() as session:
            result = await session.execute(
                select(Article.id)
                .where(
                    Article.source_updated_at >= since,
                    Article.sync_state != SyncState.MISSING,
                )
                .order_by(Article.source_updated_at, Article.id)
            )
            article_ids = [row[0] for row in result.all()]

        logger.info(f"Window sync since {since.isoformat()}: {len(article_ids)} candidates")
        for article_id in article_ids:
            self._check_cancelled()
            counters.record(await self.mirror.sync(article_id))

    async def _run_surgical(self, counters: RunCounters) -> None:
        page_size = clamp_page_size(settings.SYNC_SURGICAL_PAGE_SIZE)
        for page in range(1, settings.SYNC_SURGICAL_PAGES + 1):
            self._check_cancelled()
            result = await self.source.search_articles(page, page_size)
            if not result.items:
                break

            ids = [item.id for item in result.items]
            async with self.session_maker() as session:
                rows = await session.execute(select(Article).where(Article.id.in_(ids)))
                existing = {article.id: article for article in rows.scalars().all()}

            unchanged = []
            for item in result.items:
                self._check_cancelled()
                article = existing.get(item.id)
                if article is None:
                    counters.record(await self.mirror.sync(item.id, summary=item, sync_state=SyncState.NEW))
                elif has_changed(article, item):
                    counters.record(
                        await self.mirror.sync(item.id, summary=item, sync_state=SyncState.UPDATED)
                    )
                else:
                    unchanged.append(item.id)
                    counters.skipped += 1

            await self._stamp_seen(unchanged, state=SyncState.UNCHANGED)
            if result.total_size is not None and page * page_size >= result.total_size:
                break

    # ------------------------------------------------------------------
    # Mirror bookkeeping
    # ------------------------------------------------------------------

    async def _stamp_seen(self, article_ids: list[int], state: SyncState | None = None) -> None:
        """Record that the source listed these articles just now."""
        if not article_ids:
            return
        values: dict = {"last_seen_at": utcnow()}
        if state is not None:
            values["sync_state"] = state
        chunk = max(1, settings.SYNC_COMMIT_CHUNK_SIZE)
        async with self.session_maker() as session:
            for start in range(0, len(article_ids), chunk):
                await session.execute(
                    update(Article)
                    .where(Article.id.in_(article_ids[start : start + chunk]))
                    .values(**values)
                )
                await session.commit()

    async def mark_missing(
        self,
        cutoff: datetime | None = None,
        scan_started_at: datetime | None = None,
    ) -> int:
        """Mark articles not seen since the cutoff as MISSING. Returns how many.

        The default cutoff is the freshness window before now, pulled back to
        the start of the scan so nothing the scan listed is marked.
        """
        if cutoff is None:
            cutoff = utcnow() - timedelta(hours=settings.SYNC_MISSING_CUTOFF_HOURS)
            if scan_started_at is not None:
                cutoff = min(cutoff, ensure_utc(scan_started_at))
        async with self.session_maker() as session:
            result = await session.execute(
                select(Article.id).where(
                    or_(Article.last_seen_at.is_(None), Article.last_seen_at < cutoff),
                    Article.sync_state != SyncState.MISSING,
                )
            )
            article_ids = [row[0] for row in result.all()]
            chunk = max(1, settings.SYNC_COMMIT_CHUNK_SIZE)
            for start in range(0, len(article_ids), chunk):
                await session.execute(
                    update(Article)
                    .where(Article.id.in_(article_ids[start : start + chunk]))
                    .values(sync_state=SyncState.MISSING)
                )
                await session.commit()

        if article_ids:
            logger.info(f"Marked {len(article_ids)} articles as MISSING (not seen since {cutoff.isoformat()})")
        return len(article_ids)

    async def compute_since(self, days_back: int | None, now: datetime | None = None) -> datetime:
        """Lower bound for the window delta.

        Explicit days_back wins, then the end of the last successful run, then a
        fixed fallback; the result never reaches further back than the max lookback.
        """
        now = now or utcnow()
        if days_back is not None and days_back > 0:
            since = now - timedelta(days=days_back)
        else:
            last = await self.last_success_finished_at()
            since = last or now - timedelta(days=settings.SYNC_FALLBACK_DAYS)
        floor = now - timedelta(days=settings.SYNC_MAX_LOOKBACK_DAYS)
        return max(ensure_utc(since), floor)

    async def last_success_finished_at(self) -> datetime | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun.finished_at)
                .where(SyncRun.status == SyncRunStatus.SUCCESS, SyncRun.finished_at.is_not(None))
                .order_by(SyncRun.finished_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Configuration and run history
    # ------------------------------------------------------------------

    async def get_config(self) -> SyncConfig:
        async with self.session_maker() as session:
            config = await self._get_or_create_config(session)
            await session.commit()
            return config

    async def update_config(
        self,
        enabled: bool | None = None,
        mode: SyncMode | str | None = None,
        interval_minutes: int | None = None,
        days_back: int | None = None,
    ) -> SyncConfig:
        """Update the singleton config; omitted fields keep their value."""
        async with self.session_maker() as session:
            config = await self._get_or_create_config(session)
            if enabled is not None:
                config.enabled = enabled
            if mode is not None:
                config.mode = SyncMode.parse(mode, default=SyncMode.DELTA_WINDOW)
            if interval_minutes is not None:
                config.interval_minutes = max(1, interval_minutes)
            if days_back is not None:
                config.days_back = max(0, days_back)
            config.updated_at = utcnow()
            await session.commit()
            logger.info(
                f"Sync config updated: enabled={config.enabled} mode={SyncMode(config.mode).value} "
                f"interval={config.interval_minutes}m days_back={config.days_back}"
            )
            return config

    async def _get_or_create_config(self, session: AsyncSession) -> SyncConfig:
        config = await session.get(SyncConfig, CONFIG_ID)
        if config is None:
            config = SyncConfig(
                id=CONFIG_ID,
                enabled=settings.SYNC_SCHEDULER_ENABLED,
                mode=SyncMode.DELTA_WINDOW,
                interval_minutes=60,
                days_back=0,
                updated_at=utcnow(),
            )
            session.add(config)
            await session.flush()
        return config

    async def latest_run(self) -> SyncRun | None:
        runs = await self.list_runs(limit=1)
        return runs[0] if runs else None

    async def list_runs(self, limit: int = 20) -> list[SyncRun]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def get_run(self, run_id: int) -> SyncRun | None:
        async with self.session_maker() as session:
            return await session.get(SyncRun, run_id)
