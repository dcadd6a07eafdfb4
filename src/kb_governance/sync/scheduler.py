"""Periodic sync trigger driven by the persisted sync config."""

import asyncio
import logging
from datetime import datetime, timedelta

from kb_governance.config import settings
from kb_governance.db.models import SyncConfig, SyncMode, SyncRunStatus, SyncTrigger
from kb_governance.exceptions import SyncAlreadyRunningError
from kb_governance.sync.orchestrator import SyncOrchestrator
from kb_governance.timeutils import business_tz, ensure_utc, utcnow

logger = logging.getLogger(__name__)

FAILURE_ALERT_THRESHOLD = 5

# weekday -> (start hour, end hour), local business time; Sunday has no window
WORKING_HOURS: dict[int, tuple[int, int]] = {
    0: (8, 18),
    1: (8, 18),
    2: (8, 18),
    3: (8, 18),
    4: (8, 18),
    5: (8, 12),
}


def is_working_hours(now: datetime, timezone_name: str | None = None) -> bool:
    local = ensure_utc(now).astimezone(business_tz(timezone_name))
    window = WORKING_HOURS.get(local.weekday())
    if window is None:
        return False
    start, end = window
    return start <= local.hour < end


def effective_interval(
    interval_minutes: int,
    now: datetime,
    respect_working_hours: bool = True,
    timezone_name: str | None = None,
) -> timedelta:
    """Configured interval, doubled outside working hours."""
    minutes = max(1, interval_minutes)
    if respect_working_hours and not is_working_hours(now, timezone_name):
        minutes *= 2
    return timedelta(minutes=minutes)


class SyncScheduler:
    """Ticks on a fixed period and starts a run when the config says one is due."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        tick_seconds: int | None = None,
        respect_working_hours: bool | None = None,
    ):
        self.orchestrator = orchestrator
        self.tick_seconds = tick_seconds or settings.SYNC_SCHEDULER_TICK_SECONDS
        self.respect_working_hours = (
            settings.SYNC_RESPECT_WORKING_HOURS if respect_working_hours is None else respect_working_hours
        )
        self.consecutive_failures = 0
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Sync scheduler started (tick every {self.tick_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    def is_due(self, config: SyncConfig, now: datetime) -> bool:
        if not config.enabled:
            return False
        if config.last_started_at is None:
            return True
        interval = effective_interval(config.interval_minutes, now, self.respect_working_hours)
        return ensure_utc(now) - ensure_utc(config.last_started_at) >= interval

    async def tick(self, now: datetime | None = None) -> bool:
        """Check the config once and run a sync if it is due. Returns True if a run happened."""
        now = now or utcnow()
        if self.orchestrator.is_running:
            logger.debug("Scheduler tick skipped: a sync is running")
            return False
        if self.respect_working_hours and not is_working_hours(now):
            logger.debug("Scheduler tick skipped: outside working hours")
            return False
        config = await self.orchestrator.get_config()
        if not self.is_due(config, now):
            return False

        try:
            run = await self.orchestrator.run_now(
                mode=SyncMode(config.mode),
                days_back=config.days_back or None,
                trigger=SyncTrigger.SCHEDULER,
            )
        except SyncAlreadyRunningError:
            logger.debug("Scheduled sync skipped: another run is in progress")
            return False

        if run.status == SyncRunStatus.SUCCESS:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            if self.consecutive_failures >= FAILURE_ALERT_THRESHOLD:
                logger.error(
                    f"Scheduled sync failed {self.consecutive_failures} times in a row; last note: {run.note}"
                )
        return True
