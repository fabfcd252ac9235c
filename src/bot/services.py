"""Admin commands: service health and pending-request triage.

/services shows every enabled service with its role. /pending sends one
message per pending request with ``appr:<id>`` / ``deny:<id>`` buttons.
Each button press re-resolves the tapping identity and re-checks admin
privilege before calling the API; a request that was already decided comes
back as a failed action and leaves its state untouched.
"""

import structlog
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from src.bot.common import esc_html, linked_or_reply, open_api, telegram_identity
from src.media.lemedia import LeMediaError, ServiceDetail

logger = structlog.get_logger(__name__)

APPROVE_PREFIX = "appr:"
DENY_PREFIX = "deny:"

TYPE_LABELS = {
    "radarr": "Movies",
    "sonarr": "TV Shows",
    "jellyfin": "Media Server",
    "prowlarr": "Indexers",
    "lidarr": "Music",
    "readarr": "Books",
    "whisparr": "Adult",
    "qbittorrent": "Torrent",
    "deluge": "Torrent",
    "transmission": "Torrent",
    "nzbget": "Usenet",
    "sabnzbd": "Usenet",
}


def type_label(service_type: str) -> str:
    return TYPE_LABELS.get(service_type.lower(), service_type)


def service_icon(healthy: bool) -> str:
    return "🟢" if healthy else "🔴"


def format_service(service: ServiceDetail) -> str:
    line = (
        f"{service_icon(service.healthy)} <b>{esc_html(service.name)}</b> "
        f"<i>({esc_html(type_label(service.type))})</i>"
    )
    if service.queue_size > 0:
        line += f" · Queue: {service.queue_size}"
    if not service.healthy and service.status_text:
        line += f"\n   ⚠️ {esc_html(service.status_text)}"
    return line


async def services_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /services (admin)."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text
    logger.info("services_command", telegram_id=telegram_id)

    linked = await linked_or_reply(telegram_id, reply, admin=True)
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            services = await api.get_service_health()
    except LeMediaError as e:
        logger.warning("service_health_failed", telegram_id=telegram_id, error=str(e))
        await reply("❌ Couldn't fetch service status. Please try again.")
        return

    if not services:
        await reply("🖥 <b>Service Status</b>\n\nNo services configured.", parse_mode="HTML")
        return

    lines = [format_service(service) for service in services]
    await reply("🖥 <b>Service Status</b>\n\n" + "\n".join(lines), parse_mode="HTML")


async def pending_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pending (admin)."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text
    logger.info("pending_command", telegram_id=telegram_id)

    linked = await linked_or_reply(telegram_id, reply, admin=True)
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            requests = await api.get_pending_requests()
    except LeMediaError as e:
        logger.warning("pending_fetch_failed", telegram_id=telegram_id, error=str(e))
        await reply("❌ Couldn't fetch pending requests. Please try again.")
        return

    if not requests:
        await reply("✅ No pending requests.")
        return

    for item in requests:
        icon = "🎬" if item.request_type == "movie" else "📺"
        keyboard = InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton("✅ Approve", callback_data=f"{APPROVE_PREFIX}{item.id}"),
                    InlineKeyboardButton("❌ Deny", callback_data=f"{DENY_PREFIX}{item.id}"),
                ]
            ]
        )
        await reply(
            f"{icon} <b>{esc_html(item.title)}</b>\n<i>Status: {esc_html(item.status)}</i>",
            parse_mode="HTML",
            reply_markup=keyboard,
        )


async def triage_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``appr:`` and ``deny:`` buttons."""
    query = update.callback_query
    await query.answer()

    data = query.data or ""
    approve = data.startswith(APPROVE_PREFIX)
    request_id = data.removeprefix(APPROVE_PREFIX if approve else DENY_PREFIX)
    telegram_id = telegram_identity(update)

    linked = await linked_or_reply(
        telegram_id, query.edit_message_text, admin=True, admin_message="⛔ Admins only."
    )
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            if approve:
                result = await api.approve_request(request_id)
            else:
                result = await api.deny_request(request_id)
    except LeMediaError as e:
        logger.warning("triage_failed", request_id=request_id, error=str(e))
        await query.edit_message_text("❌ Something went wrong. Please try again.")
        return

    verb = "approve" if approve else "deny"
    logger.info(
        "triage_action",
        telegram_id=telegram_id,
        request_id=request_id,
        action=verb,
        ok=result.ok,
    )

    original = esc_html(query.message.text) if query.message and query.message.text else ""
    if result.ok:
        header = "✅ Approved!" if approve else "❌ Denied."
        await query.edit_message_text(f"{header}\n{original}", parse_mode="HTML")
    else:
        await query.edit_message_text(
            f"❌ Failed to {verb}: {esc_html(result.message)}", parse_mode="HTML"
        )
