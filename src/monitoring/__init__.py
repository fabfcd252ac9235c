"""Background notification module.

This module provides:
- Request status change and watch-alert notifications
- The daily admin digest
- APScheduler integration for both periodic jobs

Usage:
    from src.monitoring import NotificationScheduler

    scheduler = NotificationScheduler(bot)
    scheduler.start()
"""

from src.monitoring.digest import digest_tick
from src.monitoring.notifier import notification_tick
from src.monitoring.scheduler import NotificationScheduler

__all__ = [
    "NotificationScheduler",
    "digest_tick",
    "notification_tick",
]
