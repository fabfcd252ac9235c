"""Request status and watch-alert notifications.

One tick, run under a cluster-wide advisory lock:

1. Status delta pass: for every (linked chat, request) pair in a notifiable
   status, compare with the last recorded state. The first observation only
   records a baseline. A changed status, or a changed reason while failed,
   sends exactly one message. State is written for every row.
2. Watch-alert pass: every active alert whose title became available for its
   owner gets one "available now" message and is deactivated, also when the
   message could not be delivered.

Delivery is best effort: a failed send is logged and skipped, never retried,
and never stops the pass.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog
from telegram import LinkPreviewOptions

from src.config import settings
from src.user.storage import BaseStorage, RequestStatusRow, RequestStatusState, WatchAlert

logger = structlog.get_logger(__name__)

STATUS_LOCK_ID = 450001

NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


@dataclass
class StatusPassReport:
    """Counters of one status delta pass."""

    rows: int = 0
    baselined: int = 0
    notified: int = 0
    delivery_failures: int = 0
    errors: int = 0


@dataclass
class AlertPassReport:
    """Counters of one watch-alert pass."""

    triggered: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    errors: int = 0


@dataclass
class TickReport:
    status: StatusPassReport
    alerts: AlertPassReport


# =============================================================================
# Message formatting
# =============================================================================


def _esc(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def media_link(media_type: str, tmdb_id: int | None) -> str:
    """Web app link of a title; "episode" requests live under /tv."""
    if not settings.app_base_url or tmdb_id is None:
        return ""
    path = "movie" if media_type == "movie" else "tv"
    return f"{settings.app_base_url}/{path}/{tmdb_id}"


def failed_retry_hint(reason: str | None) -> str:
    """Suggest a next step for a failed download based on its reason."""
    value = (reason or "").lower()
    if "radarr" in value:
        return "Try checking Radarr queue/health and profile settings."
    if "sonarr" in value:
        return "Try checking Sonarr queue/health and series monitor status."
    if "timeout" in value or "timed out" in value:
        return "Looks like a timeout. Try again in a few minutes."
    if "unauthorized" in value or "forbidden" in value:
        return "Auth issue detected. Re-check API keys/permissions."
    return "Please review request comments/logs in LeMedia and retry."


def status_message(row: RequestStatusRow) -> str | None:
    """Notification text for a request's new status."""
    title = _esc(row.title)
    link = media_link(row.request_type, row.tmdb_id)

    if row.status == "available":
        text = f"✅ <b>{title}</b> is now available!"
        if link:
            text += f'\n<a href="{link}">Open in LeMedia →</a>'
        return text

    if row.status == "downloading":
        text = f"⬇️ Download started for <b>{title}</b>."
        if link:
            text += f'\n<a href="{link}">Track in LeMedia →</a>'
        return text

    if row.status == "failed":
        reason = f"\nReason: <i>{_esc(row.status_reason)}</i>" if row.status_reason else ""
        hint = _esc(failed_retry_hint(row.status_reason))
        return f"❌ Download failed for <b>{title}</b>.{reason}\n💡 {hint}"

    return None


def watch_alert_message(alert: WatchAlert) -> str:
    text = f"🔔 <b>{_esc(alert.title)}</b> is available now!"
    link = media_link(alert.media_type, alert.tmdb_id)
    if link:
        text += f'\n<a href="{link}">Open in LeMedia →</a>'
    return text


def has_changed(previous: RequestStatusState, row: RequestStatusRow) -> bool:
    """Whether a row differs meaningfully from its recorded state."""
    if previous.last_status != row.status:
        return True
    return row.status == "failed" and (previous.last_reason or "") != (row.status_reason or "")


# =============================================================================
# Delivery
# =============================================================================


async def deliver(bot: Any, chat_id: str | int, text: str, timeout: float | None = None) -> bool:
    """Send one message, best effort.

    Returns:
        True if Telegram accepted the message
    """
    timeout = timeout if timeout is not None else settings.telegram_send_timeout
    try:
        await asyncio.wait_for(
            bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                link_preview_options=NO_PREVIEW,
            ),
            timeout=timeout,
        )
        return True
    except Exception as e:
        logger.warning("notification_delivery_failed", chat_id=str(chat_id), error=str(e))
        return False


# =============================================================================
# Passes
# =============================================================================


async def run_status_pass(
    storage: BaseStorage, bot: Any, send_timeout: float | None = None
) -> StatusPassReport:
    """Diff request statuses against recorded state and notify on change."""
    report = StatusPassReport()
    rows = await storage.list_linked_request_statuses()
    report.rows = len(rows)

    for row in rows:
        try:
            previous = await storage.get_request_status_state(row.telegram_id, row.request_id)

            if previous is None:
                await storage.upsert_request_status_state(
                    row.telegram_id, row.request_id, row.status, row.status_reason
                )
                report.baselined += 1
                continue

            if has_changed(previous, row):
                text = status_message(row)
                if text:
                    if await deliver(bot, row.telegram_id, text, send_timeout):
                        report.notified += 1
                        logger.info(
                            "status_notification_sent",
                            telegram_id=row.telegram_id,
                            request_id=row.request_id,
                            status=row.status,
                        )
                    else:
                        report.delivery_failures += 1

            await storage.upsert_request_status_state(
                row.telegram_id, row.request_id, row.status, row.status_reason
            )
        except Exception as e:
            report.errors += 1
            logger.exception(
                "status_row_failed",
                telegram_id=row.telegram_id,
                request_id=row.request_id,
                error=str(e),
            )

    return report


async def run_watch_alert_pass(
    storage: BaseStorage, bot: Any, send_timeout: float | None = None
) -> AlertPassReport:
    """Fire every triggered watch alert once."""
    report = AlertPassReport()
    alerts = await storage.list_triggered_watch_alerts()
    report.triggered = len(alerts)

    for alert in alerts:
        try:
            if await deliver(bot, alert.telegram_id, watch_alert_message(alert), send_timeout):
                report.delivered += 1
                logger.info(
                    "watch_alert_sent",
                    telegram_id=alert.telegram_id,
                    alert_id=alert.id,
                    tmdb_id=alert.tmdb_id,
                )
            else:
                report.delivery_failures += 1
            # At most once: deactivate whether or not the send went through
            await storage.complete_watch_alert(alert.id)
        except Exception as e:
            report.errors += 1
            logger.exception("watch_alert_failed", alert_id=alert.id, error=str(e))

    return report


async def notification_tick(
    storage: BaseStorage, bot: Any, send_timeout: float | None = None
) -> TickReport | None:
    """Run both passes if this replica gets the status lock.

    Returns:
        TickReport, or None when the lock was busy or the tick failed
    """
    try:
        async with storage.advisory_lock(STATUS_LOCK_ID) as acquired:
            if not acquired:
                logger.info("scheduler_tick_skipped_locked", job="status", lock_id=STATUS_LOCK_ID)
                return None

            status = await run_status_pass(storage, bot, send_timeout)
            alerts = await run_watch_alert_pass(storage, bot, send_timeout)
    except Exception as e:
        logger.exception("notification_tick_failed", error=str(e))
        return None

    logger.info(
        "notification_tick_completed",
        rows=status.rows,
        baselined=status.baselined,
        notified=status.notified,
        delivery_failures=status.delivery_failures + alerts.delivery_failures,
        alerts_fired=alerts.triggered,
    )
    return TickReport(status=status, alerts=alerts)
