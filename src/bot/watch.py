"""Watch-alert flow.

/watch <title> searches and offers ``watchpick:<index>`` buttons; the tapped
title gets a one-shot availability alert. "/watch", "/watch this" and
"/watch alert me when available" use the last media item the user picked in
this chat instead; without one the bot asks for a title and treats the next
free-text message as the answer.

/alerts lists active alerts with ``watchstop:<id>`` / ``watchstop:all``
buttons, /stopalerts [all|id] stops them by command.
"""

import re
from enum import Enum

import structlog
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from src.bot.common import (
    LinkedContext,
    Reply,
    esc_html,
    linked_or_reply,
    open_api,
    telegram_identity,
)
from src.bot.request import parse_index
from src.media.lemedia import LeMediaError, SearchResult
from src.session import AwaitingKind, PendingKind, get_session_store
from src.user.storage import get_storage

logger = structlog.get_logger(__name__)

PICK_PREFIX = "watchpick:"
STOP_PREFIX = "watchstop:"
BUTTONS_PER_ROW = 2

LAST_SELECTED_PATTERNS = (
    re.compile(r"^(this|that)$", re.IGNORECASE),
    re.compile(r"alert me when available", re.IGNORECASE),
)

WATCH_PROMPT = "🔔 What would you like to put on your watchlist?"


class WatchOutcome(str, Enum):
    """Terminal states of the watch-alert flow."""

    ALERT_ARMED = "alert_armed"
    ALREADY_ACTIVE = "already_active"
    ALREADY_AVAILABLE = "already_available"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


def refers_to_last_selected(query: str) -> bool:
    """Whether a /watch argument means "the title I just looked at"."""
    return not query or any(p.search(query) for p in LAST_SELECTED_PATTERNS)


def _is_available(available: bool, request_status: str | None) -> bool:
    return available or request_status == "available"


async def arm_alert(
    linked: LinkedContext,
    media_type: str,
    tmdb_id: int,
    title: str,
    available: bool = False,
    request_status: str | None = None,
) -> WatchOutcome:
    """Arm (or re-arm) an alert unless the title is already available."""
    if _is_available(available, request_status):
        return WatchOutcome.ALREADY_AVAILABLE

    async with get_storage() as storage:
        _, created = await storage.upsert_watch_alert(
            telegram_id=linked.telegram_id,
            user_id=linked.user_id,
            media_type=media_type,
            tmdb_id=tmdb_id,
            title=title,
        )
    return WatchOutcome.ALERT_ARMED if created else WatchOutcome.ALREADY_ACTIVE


def render_outcome(outcome: WatchOutcome, title: str = "") -> str:
    name = esc_html(title)
    if outcome == WatchOutcome.ALREADY_AVAILABLE:
        return f"✅ <b>{name}</b> is already available, so no alert is needed."
    if outcome == WatchOutcome.ALERT_ARMED:
        return f"🔔 Alert saved for <b>{name}</b>. I'll message you when it's available."
    if outcome == WatchOutcome.ALREADY_ACTIVE:
        return f"🔁 Alert was already set for <b>{name}</b> and remains active."
    if outcome == WatchOutcome.CANCELLED:
        return "Cancelled."
    return "❌ Session expired. Try /watch again."


def build_pick_keyboard(results: list[SearchResult]) -> InlineKeyboardMarkup:
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for i in range(len(results)):
        row.append(InlineKeyboardButton(f"Alert {i + 1}", callback_data=f"{PICK_PREFIX}{i}"))
        if len(row) == BUTTONS_PER_ROW:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([InlineKeyboardButton("❌ Cancel", callback_data=f"{PICK_PREFIX}cancel")])
    return InlineKeyboardMarkup(rows)


async def show_watch_results(
    linked: LinkedContext,
    chat_id: int,
    query: str,
    reply: Reply,
) -> None:
    """Search a title and offer alert buttons for the results."""
    await reply(f"🔍 Searching for <b>{esc_html(query)}</b> to set an alert…", parse_mode="HTML")

    try:
        async with open_api(linked.api_token) as api:
            results = await api.search(query)
    except LeMediaError as e:
        logger.warning("watch_search_failed", telegram_id=linked.telegram_id, error=str(e))
        await reply("❌ Search failed. Please try again.")
        return

    if not results:
        await reply(f'😕 No results found for "<b>{esc_html(query)}</b>".', parse_mode="HTML")
        return

    await get_session_store().set_pending_items(PendingKind.WATCH_SEARCH, chat_id, results)

    lines = []
    for i, item in enumerate(results):
        icon = "🎬" if item.media_type == "movie" else "📺"
        year = f" ({item.year})" if item.year else ""
        status = (
            " · ✅ already available"
            if _is_available(item.available, item.request_status)
            else ""
        )
        lines.append(f"{i + 1}. {icon} <b>{esc_html(item.title)}</b>{esc_html(year)}{status}")

    await reply(
        "🔔 <b>Set availability alert</b>\n\n"
        + "\n".join(lines)
        + "\n\n<i>Tap an item to alert when available:</i>",
        parse_mode="HTML",
        reply_markup=build_pick_keyboard(results),
    )


# =============================================================================
# Alert creation
# =============================================================================


async def watch_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /watch and /alert."""
    telegram_id = telegram_identity(update)
    chat_id = update.effective_chat.id
    reply = update.message.reply_text
    query = " ".join(context.args or []).strip()

    logger.info("watch_command", telegram_id=telegram_id, has_query=bool(query))

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    store = get_session_store()
    if refers_to_last_selected(query):
        last = await store.get_last_selected(chat_id)
        if last is None:
            await store.set_awaiting(AwaitingKind.WATCH_QUERY, telegram_id)
            await reply(WATCH_PROMPT)
            return

        outcome = await arm_alert(
            linked,
            media_type=last.media_type,
            tmdb_id=last.id,
            title=last.title,
            available=last.available,
            request_status=last.request_status,
        )
        await reply(render_outcome(outcome, last.title), parse_mode="HTML")
        return

    await show_watch_results(linked, chat_id, query, reply)


async def handle_awaiting_watch_query(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> bool:
    """Treat this message as the answer to the /watch prompt.

    Returns:
        True if the user was being asked for a title
    """
    telegram_id = telegram_identity(update)
    store = get_session_store()
    if not await store.consume_awaiting(AwaitingKind.WATCH_QUERY, telegram_id):
        return False

    reply = update.message.reply_text
    text = (update.message.text or "").strip()
    if not text:
        await store.set_awaiting(AwaitingKind.WATCH_QUERY, telegram_id)
        await reply(WATCH_PROMPT)
        return True

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return True

    await show_watch_results(linked, update.effective_chat.id, text, reply)
    return True


async def watch_pick_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``watchpick:`` buttons."""
    query = update.callback_query
    await query.answer()

    telegram_id = telegram_identity(update)
    chat_id = update.effective_chat.id
    action = (query.data or "").removeprefix(PICK_PREFIX)
    store = get_session_store()

    if action == "cancel":
        await store.clear_pending(PendingKind.WATCH_SEARCH, chat_id)
        await query.edit_message_text(render_outcome(WatchOutcome.CANCELLED))
        return

    index = parse_index(action)
    results = None
    if index is not None:
        results = await store.take_pending_items(PendingKind.WATCH_SEARCH, chat_id, SearchResult)
    if not results or index is None or not 0 <= index < len(results):
        await query.edit_message_text(render_outcome(WatchOutcome.EXPIRED))
        return

    selected = results[index]
    if _is_available(selected.available, selected.request_status):
        await query.edit_message_text(
            render_outcome(WatchOutcome.ALREADY_AVAILABLE, selected.title), parse_mode="HTML"
        )
        return

    linked = await linked_or_reply(telegram_id, query.edit_message_text)
    if linked is None:
        return

    outcome = await arm_alert(
        linked,
        media_type=selected.media_type,
        tmdb_id=selected.id,
        title=selected.title,
    )
    logger.info("watch_pick", telegram_id=telegram_id, tmdb_id=selected.id, outcome=outcome.value)
    await query.edit_message_text(render_outcome(outcome, selected.title), parse_mode="HTML")


# =============================================================================
# Alert management
# =============================================================================


def _stopped_message(count: int) -> str:
    if count == 0:
        return "🔕 You had no active alerts."
    return f"🛑 Stopped {count} alert{'' if count == 1 else 's'}."


async def alerts_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /alerts and /myalerts."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    async with get_storage() as storage:
        alerts = await storage.list_active_watch_alerts(telegram_id)

    if not alerts:
        await reply("🔕 You have no active alerts. Use /watch <title> to add one.")
        return

    lines = []
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for i, alert in enumerate(alerts):
        icon = "🎬" if alert.media_type == "movie" else "📺"
        lines.append(
            f"{i + 1}. {icon} <b>{esc_html(alert.title)}</b> (ID {alert.id}, TMDB {alert.tmdb_id})"
        )
        row.append(InlineKeyboardButton(f"Stop {i + 1}", callback_data=f"{STOP_PREFIX}{alert.id}"))
        if len(row) == BUTTONS_PER_ROW:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([InlineKeyboardButton("Stop all", callback_data=f"{STOP_PREFIX}all")])

    await reply(
        "🔔 <b>Your Active Alerts</b>\n\n" + "\n".join(lines) + "\n\nTap a button to stop alerts:",
        parse_mode="HTML",
        reply_markup=InlineKeyboardMarkup(rows),
    )


async def stop_alerts_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stopalerts [all|id]."""
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text
    arg = " ".join(context.args or []).strip()

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    if not arg or arg.lower() == "all":
        async with get_storage() as storage:
            count = await storage.disable_all_watch_alerts(telegram_id)
        await reply(_stopped_message(count))
        return

    alert_id = parse_index(arg)
    if alert_id is None or alert_id <= 0:
        await reply("Use /stopalerts or /stopalerts <alert-id>. You can get IDs from /alerts.")
        return

    async with get_storage() as storage:
        removed = await storage.disable_watch_alert_by_id(telegram_id, alert_id)
    await reply("🛑 Alert stopped." if removed else "Couldn't find that active alert ID.")


async def watch_stop_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``watchstop:`` buttons."""
    query = update.callback_query
    await query.answer()

    telegram_id = telegram_identity(update)
    linked = await linked_or_reply(telegram_id, query.edit_message_text)
    if linked is None:
        return

    payload = (query.data or "").removeprefix(STOP_PREFIX)
    if payload == "all":
        async with get_storage() as storage:
            count = await storage.disable_all_watch_alerts(telegram_id)
        await query.edit_message_text(_stopped_message(count))
        return

    alert_id = parse_index(payload)
    if alert_id is None or alert_id <= 0:
        await query.edit_message_text("Invalid alert selection.")
        return

    async with get_storage() as storage:
        removed = await storage.disable_watch_alert_by_id(telegram_id, alert_id)
    await query.edit_message_text("🛑 Alert stopped." if removed else "Couldn't find that active alert.")
