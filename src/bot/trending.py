"""Trending browse flow (/trending, /popular).

category buttons (``trend:movie`` / ``trend:tv``) -> numbered list of popular
titles (``trend:pick:<index>``) -> a regular title search for the picked
title. Picks always go through search so the user sees current request and
library status before requesting.
"""

import structlog
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from src.bot.common import esc_html, linked_or_reply, open_api, telegram_identity
from src.bot.request import parse_index, run_search
from src.media.lemedia import LeMediaError, TrendingItem
from src.session import PendingKind, get_session_store

logger = structlog.get_logger(__name__)

CALLBACK_PREFIX = "trend:"
PICK_PREFIX = "trend:pick:"
BUTTONS_PER_ROW = 4

CATEGORY_TITLES = {"movie": "Movies", "tv": "TV Shows"}


def build_category_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("🎬 Movies", callback_data="trend:movie"),
                InlineKeyboardButton("📺 TV Shows", callback_data="trend:tv"),
            ]
        ]
    )


def build_trending_keyboard(items: list[TrendingItem]) -> InlineKeyboardMarkup:
    """Numbered pick buttons, four per row, then Cancel."""
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for i in range(len(items)):
        row.append(InlineKeyboardButton(str(i + 1), callback_data=f"{PICK_PREFIX}{i}"))
        if len(row) == BUTTONS_PER_ROW:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([InlineKeyboardButton("❌ Cancel", callback_data="trend:cancel")])
    return InlineKeyboardMarkup(rows)


def format_trending(items: list[TrendingItem], media_type: str) -> str:
    icon = "🎬" if media_type == "movie" else "📺"
    lines = []
    for i, item in enumerate(items):
        year = f" ({item.year})" if item.year else ""
        rating = f" ⭐ {item.vote_average}" if item.vote_average else ""
        lines.append(
            f"{i + 1}. {icon} <b>{esc_html(item.title)}</b>{esc_html(year)}{esc_html(rating)}"
        )
    return (
        f"📈 <b>Trending {CATEGORY_TITLES[media_type]}</b>\n\n"
        + "\n".join(lines)
        + "\n\n<i>Tap a number to request it:</i>"
    )


async def trending_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /trending and /popular."""
    telegram_id = telegram_identity(update)
    logger.info("trending_command", telegram_id=telegram_id)

    linked = await linked_or_reply(telegram_id, update.message.reply_text)
    if linked is None:
        return

    await update.message.reply_text(
        "📈 <b>What's Popular</b>\n\nChoose a category:",
        parse_mode="HTML",
        reply_markup=build_category_keyboard(),
    )


async def trending_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``trend:`` buttons."""
    query = update.callback_query
    await query.answer()

    telegram_id = telegram_identity(update)
    chat_id = update.effective_chat.id
    data = query.data or ""
    store = get_session_store()

    if data in ("trend:movie", "trend:tv"):
        media_type = data.removeprefix(CALLBACK_PREFIX)

        linked = await linked_or_reply(telegram_id, query.edit_message_text)
        if linked is None:
            return

        try:
            async with open_api(linked.api_token) as api:
                items = await api.get_trending(media_type)
        except LeMediaError as e:
            logger.warning("trending_fetch_failed", telegram_id=telegram_id, error=str(e))
            await query.edit_message_text("❌ Couldn't fetch trending. Please try again.")
            return

        if not items:
            await query.edit_message_text("😕 No trending results found.")
            return

        await store.set_pending_items(PendingKind.TRENDING, chat_id, items)
        await query.edit_message_text(
            format_trending(items, media_type),
            parse_mode="HTML",
            reply_markup=build_trending_keyboard(items),
        )
        return

    if data.startswith(PICK_PREFIX):
        index = parse_index(data.removeprefix(PICK_PREFIX))
        items = None
        if index is not None:
            items = await store.take_pending_items(PendingKind.TRENDING, chat_id, TrendingItem)
        if not items or index is None or not 0 <= index < len(items):
            await query.edit_message_text("❌ Session expired. Use /trending to start again.")
            return

        item = items[index]
        logger.info("trending_pick", telegram_id=telegram_id, tmdb_id=item.id)
        await query.edit_message_text(
            f"🔍 Searching for <b>{esc_html(item.title)}</b>…", parse_mode="HTML"
        )
        await run_search(update, item.title, announce=False)
        return

    if data == "trend:cancel":
        await store.clear_pending(PendingKind.TRENDING, chat_id)
        await query.edit_message_text("Cancelled.")
