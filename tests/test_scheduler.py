"""Tests for the periodic sync scheduler."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from kb_governance.db.models import SyncMode, SyncRunStatus, SyncTrigger
from kb_governance.exceptions import SyncAlreadyRunningError
from kb_governance.sync.scheduler import SyncScheduler, effective_interval, is_working_hours

UTC = timezone.utc
SAO_PAULO = "America/Sao_Paulo"

# 2024-06-17 is a Monday; Sao Paulo is UTC-3
MONDAY_9AM = datetime(2024, 6, 17, 12, 0, tzinfo=UTC)
MONDAY_8PM = datetime(2024, 6, 17, 23, 0, tzinfo=UTC)
SATURDAY_10AM = datetime(2024, 6, 15, 13, 0, tzinfo=UTC)
SATURDAY_1PM = datetime(2024, 6, 15, 16, 0, tzinfo=UTC)
SUNDAY_NOON = datetime(2024, 6, 16, 15, 0, tzinfo=UTC)


def _config(enabled=True, last_started_at=None, interval_minutes=60, mode=SyncMode.DELTA_WINDOW, days_back=0):
    return SimpleNamespace(
        enabled=enabled,
        last_started_at=last_started_at,
        interval_minutes=interval_minutes,
        mode=mode,
        days_back=days_back,
    )


def _scheduler(config, run=None, side_effect=None, respect_working_hours=False) -> SyncScheduler:
    orchestrator = MagicMock()
    orchestrator.is_running = False
    orchestrator.get_config = AsyncMock(return_value=config)
    orchestrator.run_now = AsyncMock(return_value=run, side_effect=side_effect)
    return SyncScheduler(orchestrator, tick_seconds=1, respect_working_hours=respect_working_hours)


class TestWorkingHours:
    """Tests for the working-hours window."""

    def test_weekday_window(self):
        assert is_working_hours(MONDAY_9AM, SAO_PAULO) is True
        assert is_working_hours(MONDAY_8PM, SAO_PAULO) is False

    def test_saturday_morning_only(self):
        assert is_working_hours(SATURDAY_10AM, SAO_PAULO) is True
        assert is_working_hours(SATURDAY_1PM, SAO_PAULO) is False

    def test_sunday_is_off(self):
        assert is_working_hours(SUNDAY_NOON, SAO_PAULO) is False

    def test_interval_doubles_off_hours(self):
        """Outside working hours the configured interval is doubled."""
        assert effective_interval(30, MONDAY_9AM, timezone_name=SAO_PAULO) == timedelta(minutes=30)
        assert effective_interval(30, MONDAY_8PM, timezone_name=SAO_PAULO) == timedelta(minutes=60)
        assert effective_interval(30, MONDAY_8PM, respect_working_hours=False) == timedelta(minutes=30)


class TestIsDue:
    """Tests for SyncScheduler.is_due()."""

    def test_disabled_is_never_due(self):
        scheduler = _scheduler(_config(enabled=False))
        assert scheduler.is_due(scheduler.orchestrator.get_config.return_value, MONDAY_9AM) is False

    def test_first_run_is_due(self):
        config = _config()
        assert _scheduler(config).is_due(config, MONDAY_9AM) is True

    def test_due_after_interval(self):
        config = _config(last_started_at=MONDAY_9AM - timedelta(minutes=61))
        assert _scheduler(config).is_due(config, MONDAY_9AM) is True

    def test_not_due_inside_interval(self):
        config = _config(last_started_at=MONDAY_9AM - timedelta(minutes=10))
        assert _scheduler(config).is_due(config, MONDAY_9AM) is False


class TestTick:
    """Tests for SyncScheduler.tick()."""

    @pytest.mark.asyncio
    async def test_runs_configured_mode(self):
        """A due tick starts a scheduler-triggered run with the config's mode."""
        config = _config(mode=SyncMode.DELTA_SURGICAL, days_back=3)
        scheduler = _scheduler(config, run=SimpleNamespace(status=SyncRunStatus.SUCCESS, note=None))

        assert await scheduler.tick(MONDAY_9AM) is True

        scheduler.orchestrator.run_now.assert_awaited_once_with(
            mode=SyncMode.DELTA_SURGICAL, days_back=3, trigger=SyncTrigger.SCHEDULER
        )

    @pytest.mark.asyncio
    async def test_zero_days_back_means_default(self):
        scheduler = _scheduler(_config(days_back=0), run=SimpleNamespace(status=SyncRunStatus.SUCCESS, note=None))
        await scheduler.tick(MONDAY_9AM)
        assert scheduler.orchestrator.run_now.await_args.kwargs["days_back"] is None

    @pytest.mark.asyncio
    async def test_not_due_does_nothing(self):
        scheduler = _scheduler(_config(enabled=False))
        assert await scheduler.tick(MONDAY_9AM) is False
        scheduler.orchestrator.run_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_busy_lock_skips_quietly(self):
        """A run already in progress makes the tick a no-op."""
        scheduler = _scheduler(_config(), side_effect=SyncAlreadyRunningError())
        assert await scheduler.tick(MONDAY_9AM) is False
        assert scheduler.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_outside_working_hours_skips(self):
        """With working hours respected, an off-hours tick never starts a run."""
        run = SimpleNamespace(status=SyncRunStatus.SUCCESS, note=None)
        scheduler = _scheduler(_config(), run=run, respect_working_hours=True)

        assert await scheduler.tick(MONDAY_8PM) is False
        assert await scheduler.tick(SUNDAY_NOON) is False
        scheduler.orchestrator.run_now.assert_not_awaited()

        assert await scheduler.tick(MONDAY_9AM) is True
        scheduler.orchestrator.run_now.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_running_sync_skips_before_reading_config(self):
        scheduler = _scheduler(_config())
        scheduler.orchestrator.is_running = True

        assert await scheduler.tick(MONDAY_9AM) is False
        scheduler.orchestrator.get_config.assert_not_awaited()
        scheduler.orchestrator.run_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_consecutive_failures_alert(self, caplog):
        """Five failed runs in a row log an error; a success resets the count."""
        failed = SimpleNamespace(status=SyncRunStatus.FAILED, note="RuntimeError: down")
        scheduler = _scheduler(_config(), run=failed)

        with caplog.at_level(logging.ERROR, logger="kb_governance.sync.scheduler"):
            for _ in range(5):
                await scheduler.tick(MONDAY_9AM)

        assert scheduler.consecutive_failures == 5
        assert "failed 5 times in a row" in caplog.text

        scheduler.orchestrator.run_now.return_value = SimpleNamespace(status=SyncRunStatus.SUCCESS, note=None)
        await scheduler.tick(MONDAY_9AM)
        assert scheduler.consecutive_failures == 0


class TestLoop:
    """Tests for starting and stopping the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = _scheduler(_config(enabled=False))
        scheduler.start()
        assert scheduler.running is True
        for _ in range(3):
            await asyncio.sleep(0)

        await scheduler.stop()

        assert scheduler.running is False
        scheduler.orchestrator.get_config.assert_awaited()
