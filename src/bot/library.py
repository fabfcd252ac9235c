"""Personal request list and recently added library items.

/mystuff lists the user's most recent requests with their status.
/newstuff (also /new, /recent) lists what was recently added to the library.
"""

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from src.bot.common import (
    NO_PREVIEW,
    app_link,
    esc_html,
    linked_or_reply,
    open_api,
    telegram_identity,
)
from src.media.lemedia import LeMediaError, NewStuffItem, RequestItem

logger = structlog.get_logger(__name__)

STATUS_ICONS = {
    "pending": "⏳",
    "approved": "👍",
    "queued": "📥",
    "submitted": "📥",
    "downloading": "⬇️",
    "partially_available": "🟡",
    "available": "✅",
    "failed": "❌",
    "denied": "🚫",
    "removed": "🗑",
}


def request_link_type(request_type: str) -> str:
    """Web app path segment for a request type ("episode" requests are TV)."""
    return "movie" if request_type == "movie" else "tv"


def format_request(item: RequestItem) -> str:
    icon = "🎬" if item.request_type == "movie" else "📺"
    status_icon = STATUS_ICONS.get(item.status.lower().replace(" ", "_"), "•")
    line = f"{icon} <b>{esc_html(item.title)}</b>\n    {status_icon} <i>{esc_html(item.status)}</i>"
    if item.tmdb_id:
        link = app_link(request_link_type(item.request_type), item.tmdb_id)
        if link:
            line += f' · <a href="{link}">View</a>'
    return line


def format_new_item(item: NewStuffItem) -> str:
    icon = "🎬" if item.type == "movie" else "📺"
    year = f" ({item.year})" if item.year else ""
    badge = " ✅" if item.available else ""
    return f"{icon} <b>{esc_html(item.title)}</b>{esc_html(year)}{badge}"


async def mystuff_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /mystuff."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text
    logger.info("mystuff_command", telegram_id=telegram_id)

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            requests = await api.get_my_requests()
    except LeMediaError as e:
        logger.warning("my_requests_failed", telegram_id=telegram_id, error=str(e))
        await reply("❌ Couldn't fetch your requests. Please try again.")
        return

    if not requests:
        await reply("📋 You haven't requested anything yet. Try /request to find something!")
        return

    await reply(
        "📋 <b>Your Recent Requests</b>\n\n" + "\n\n".join(format_request(r) for r in requests),
        parse_mode="HTML",
        link_preview_options=NO_PREVIEW,
    )


async def newstuff_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newstuff, /new and /recent."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text
    logger.info("newstuff_command", telegram_id=telegram_id)

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            items = await api.get_recently_added()
    except LeMediaError as e:
        logger.warning("recently_added_failed", telegram_id=telegram_id, error=str(e))
        await reply("❌ Couldn't fetch new additions. Please try again.")
        return

    if not items:
        await reply("🆕 Nothing new in the library yet.")
        return

    await reply(
        "🆕 <b>Recently Added</b>\n\n" + "\n".join(format_new_item(item) for item in items),
        parse_mode="HTML",
    )
