"""Daily admin digest.

Sent at most once per calendar date (in the configured timezone) to every
linked admin, during a short window after the configured hour. A shared
"sent" marker in the session store makes the digest exactly-once across
replicas and restarts; the advisory lock keeps two replicas from racing on
the marker.
"""

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from src.config import settings
from src.media.lemedia import LeMediaClient, LeMediaError
from src.monitoring.notifier import deliver
from src.security import IntegrityError, reveal
from src.session import BaseSessionStore
from src.user.storage import BaseStorage, JobFailureSummary, LinkedAdmin

logger = structlog.get_logger(__name__)

DIGEST_LOCK_ID = 450002

MAX_FAILURE_MESSAGE_LENGTH = 120

SERVICES_UNAVAILABLE_LINE = "⚠️ Unable to fetch services"


def _esc(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def digest_timezone() -> ZoneInfo:
    return ZoneInfo(settings.digest_timezone)


def digest_date_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def in_digest_window(now: datetime, hour: int | None = None, window_minutes: int | None = None) -> bool:
    """Whether `now` falls inside the daily send window."""
    hour = settings.digest_hour if hour is None else hour
    window_minutes = settings.digest_window_minutes if window_minutes is None else window_minutes
    return now.hour == hour and now.minute < window_minutes


def format_failures(failures: list[JobFailureSummary]) -> str:
    if not failures:
        return "✅ No job failures in last 24h"
    lines = []
    for i, failure in enumerate(failures, 1):
        message = failure.message
        if len(message) > MAX_FAILURE_MESSAGE_LENGTH:
            message = message[: MAX_FAILURE_MESSAGE_LENGTH - 1] + "…"
        lines.append(f"{i}. <b>{_esc(failure.job_name)}</b>: {_esc(message)} ({failure.count})")
    return "\n".join(lines)


def format_digest(pending_count: int, failures: list[JobFailureSummary], service_line: str) -> str:
    return (
        "🗓 <b>Admin Daily Digest</b>\n"
        f"Pending requests: <b>{pending_count}</b>\n"
        f"{service_line}\n\n"
        "<b>Top failures (24h)</b>\n"
        f"{format_failures(failures)}"
    )


async def admin_service_line(admin: LinkedAdmin) -> str:
    """Summarize failing services as seen with this admin's credential."""
    try:
        token = reveal(admin.api_token_encrypted)
        async with LeMediaClient(token, max_retries=0) as api:
            services = await api.get_service_health()
    except (IntegrityError, LeMediaError) as e:
        logger.warning("digest_services_failed", user_id=admin.user_id, error=str(e))
        return SERVICES_UNAVAILABLE_LINE

    failing = [s.name for s in services if not s.healthy]
    if not failing:
        return "✅ No failing services"
    return "⚠️ Failing services: " + ", ".join(_esc(name) for name in failing)


async def run_digest_pass(
    storage: BaseStorage,
    sessions: BaseSessionStore,
    bot: Any,
    now: datetime | None = None,
) -> int | None:
    """Send today's digest if it is due and not yet sent.

    Must run while holding the digest lock.

    Returns:
        Number of admins the digest was delivered to, or None if not due
    """
    now = now or datetime.now(digest_timezone())
    if not in_digest_window(now):
        return None

    date_key = digest_date_key(now)
    if await sessions.is_digest_sent(date_key):
        logger.debug("digest_already_sent", date=date_key)
        return None

    pending = await storage.count_pending_requests()
    failures = await storage.get_top_job_failures(hours=24, limit=settings.digest_failure_limit)
    admins = await storage.list_linked_admins()

    delivered = 0
    errors = 0
    for admin in admins:
        try:
            service_line = await admin_service_line(admin)
        except Exception as e:
            errors += 1
            logger.exception("digest_admin_failed", user_id=admin.user_id, error=str(e))
            service_line = SERVICES_UNAVAILABLE_LINE
        if await deliver(bot, admin.telegram_id, format_digest(pending, failures, service_line)):
            delivered += 1

    # Marked even with no admins so the window is not re-evaluated all day
    await sessions.mark_digest_sent(date_key)
    logger.info(
        "digest_sent",
        date=date_key,
        admins=len(admins),
        delivered=delivered,
        errors=errors,
        pending=pending,
    )
    return delivered


async def digest_tick(
    storage: BaseStorage,
    sessions: BaseSessionStore,
    bot: Any,
    now: datetime | None = None,
) -> int | None:
    """Run the digest pass if this replica gets the digest lock."""
    try:
        async with storage.advisory_lock(DIGEST_LOCK_ID) as acquired:
            if not acquired:
                logger.info("scheduler_tick_skipped_locked", job="digest", lock_id=DIGEST_LOCK_ID)
                return None
            return await run_digest_pass(storage, sessions, bot, now)
    except Exception as e:
        logger.exception("digest_tick_failed", error=str(e))
        return None
