"""Tests for the notification scheduler."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.monitoring.scheduler import DIGEST_JOB_ID, STATUS_JOB_ID, NotificationScheduler


class TestNotificationScheduler:
    @pytest.mark.asyncio
    async def test_start_registers_both_jobs(self):
        scheduler = NotificationScheduler(MagicMock(), status_interval_seconds=60)

        with (
            patch.object(scheduler, "run_status_now", AsyncMock()),
            patch.object(scheduler, "run_digest_now", AsyncMock()),
        ):
            scheduler.start()
            try:
                assert scheduler.is_running is True
                jobs = {job.id: job for job in scheduler._scheduler.get_jobs()}
                assert set(jobs) == {STATUS_JOB_ID, DIGEST_JOB_ID}
                assert jobs[STATUS_JOB_ID].trigger.interval.total_seconds() == 60
                assert jobs[DIGEST_JOB_ID].trigger.interval.total_seconds() == 300
            finally:
                scheduler.stop()

        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        scheduler = NotificationScheduler(MagicMock())

        with (
            patch.object(scheduler, "run_status_now", AsyncMock()),
            patch.object(scheduler, "run_digest_now", AsyncMock()),
        ):
            scheduler.start()
            first = scheduler._scheduler
            scheduler.start()
            assert scheduler._scheduler is first
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_status_job_uses_fresh_storage(self, storage_factory):
        bot = MagicMock()
        scheduler = NotificationScheduler(bot)

        with (
            patch("src.monitoring.scheduler.get_storage", storage_factory),
            patch("src.monitoring.scheduler.notification_tick", AsyncMock(return_value=None)) as tick,
        ):
            await scheduler.run_status_now()

        tick.assert_awaited_once()
        assert tick.await_args[0][1] is bot

    @pytest.mark.asyncio
    async def test_digest_job_passes_session_store(self, storage_factory, session_store):
        scheduler = NotificationScheduler(MagicMock())

        with (
            patch("src.monitoring.scheduler.get_storage", storage_factory),
            patch("src.monitoring.scheduler.digest_tick", AsyncMock(return_value=1)) as tick,
        ):
            assert await scheduler.run_digest_now() == 1

        assert tick.await_args[0][1] is session_store

    @pytest.mark.asyncio
    async def test_job_failure_is_logged_not_raised(self):
        scheduler = NotificationScheduler(MagicMock())

        with patch(
            "src.monitoring.scheduler.get_storage", MagicMock(side_effect=RuntimeError("no db"))
        ):
            assert await scheduler.run_status_now() is None
            assert await scheduler.run_digest_now() is None
