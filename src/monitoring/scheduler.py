"""Notification scheduler using APScheduler.

Runs two periodic jobs on the bot's event loop:
- request status / watch-alert notifications (every minute)
- the daily admin digest check (every five minutes)

Both jobs fire once right after start. Every replica schedules them; the
advisory locks decide which replica does the work on a given tick.

Usage:
    from telegram import Bot
    from src.monitoring import NotificationScheduler

    scheduler = NotificationScheduler(bot)
    scheduler.start()

    # On shutdown:
    scheduler.stop()
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.monitoring.digest import digest_tick
from src.monitoring.notifier import TickReport, notification_tick
from src.session import get_session_store
from src.user.storage import get_storage

if TYPE_CHECKING:
    from telegram import Bot

logger = structlog.get_logger(__name__)

STATUS_JOB_ID = "request_status_notifications"
DIGEST_JOB_ID = "admin_daily_digest"

# A stalled tick must not keep the next one from trying the lock
MAX_JOB_INSTANCES = 3


class NotificationScheduler:
    """Manages the periodic notification and digest jobs."""

    def __init__(
        self,
        bot: "Bot",
        status_interval_seconds: int | None = None,
        digest_interval_seconds: int | None = None,
    ):
        """Initialize the scheduler.

        Args:
            bot: Telegram Bot instance for sending notifications
            status_interval_seconds: Period of the status job
            digest_interval_seconds: Period of the digest job
        """
        self._bot = bot
        self._status_interval = status_interval_seconds or settings.status_poll_interval_seconds
        self._digest_interval = digest_interval_seconds or settings.digest_poll_interval_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Start the scheduler and run both jobs immediately."""
        if self._is_running:
            logger.warning("scheduler_already_running")
            return

        self._scheduler = AsyncIOScheduler()
        now = datetime.now(UTC)

        self._scheduler.add_job(
            self.run_status_now,
            trigger=IntervalTrigger(seconds=self._status_interval),
            id=STATUS_JOB_ID,
            name="Request Status Notifications",
            replace_existing=True,
            max_instances=MAX_JOB_INSTANCES,
            coalesce=True,
            next_run_time=now,
        )
        self._scheduler.add_job(
            self.run_digest_now,
            trigger=IntervalTrigger(seconds=self._digest_interval),
            id=DIGEST_JOB_ID,
            name="Admin Daily Digest",
            replace_existing=True,
            max_instances=MAX_JOB_INSTANCES,
            coalesce=True,
            next_run_time=now,
        )

        self._scheduler.start()
        self._is_running = True

        logger.info(
            "notification_scheduler_started",
            status_interval_seconds=self._status_interval,
            digest_interval_seconds=self._digest_interval,
        )

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self._scheduler and self._is_running:
            self._scheduler.shutdown(wait=True)
            self._is_running = False
            logger.info("notification_scheduler_stopped")

    async def run_status_now(self) -> TickReport | None:
        """Run one notification tick immediately."""
        try:
            async with get_storage() as storage:
                return await notification_tick(storage, self._bot)
        except Exception as e:
            logger.exception("status_job_failed", error=str(e))
            return None

    async def run_digest_now(self) -> int | None:
        """Run one digest check immediately."""
        try:
            async with get_storage() as storage:
                return await digest_tick(storage, get_session_store(), self._bot)
        except Exception as e:
            logger.exception("digest_job_failed", error=str(e))
            return None
