"""Search-and-request flow.

/request (also /movie, /tv, /search) with a title runs a search and shows up
to five results with numbered buttons (``req:<index>``, ``req:cancel``). With no
title the bot asks for one and treats the user's next free-text message as the
query.

The result list lives in the session store under the chat id until the user
picks an item, cancels, or the session TTL runs out. A pick consumes the list;
a stale or out-of-range pick ends in PickOutcome.SESSION_EXPIRED.
"""

from dataclasses import dataclass
from enum import Enum

import structlog
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from src.bot.common import (
    NO_PREVIEW,
    app_link,
    esc_html,
    linked_or_reply,
    open_api,
    telegram_identity,
)
from src.media.lemedia import LeMediaError, RequestOutcome, SearchResult
from src.session import (
    AwaitingKind,
    BaseSessionStore,
    LastSelectedMedia,
    PendingKind,
    get_session_store,
)

logger = structlog.get_logger(__name__)

CALLBACK_PREFIX = "req:"
BUTTONS_PER_ROW = 3


class PickOutcome(str, Enum):
    """Terminal states of the search-and-request flow."""

    ALREADY_AVAILABLE = "already_available"
    ALREADY_REQUESTED = "already_requested"
    SUBMITTED = "submitted"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class PickResolution:
    """Result of resolving a button tap against the cached results.

    outcome is None when the picked title still has to be submitted.
    """

    outcome: PickOutcome | None
    result: SearchResult | None = None


# =============================================================================
# Formatting
# =============================================================================


def status_text(result: SearchResult) -> str:
    """Human-readable availability of a search result."""
    if result.available:
        return "Already in library"
    if result.request_status == "available":
        return "Available"
    if result.request_status == "downloading":
        return "Downloading…"
    if result.request_status == "pending":
        return "Awaiting approval"
    if result.request_status:
        return "Requested"
    return ""


def format_result(result: SearchResult, index: int) -> str:
    year = f" ({result.year})" if result.year else ""
    icon = "🎬" if result.media_type == "movie" else "📺"
    rating = f" ⭐ {result.vote_average}" if result.vote_average else ""
    status = status_text(result)
    line = f"{index + 1}. {icon} <b>{esc_html(result.title)}</b>{esc_html(year)}{esc_html(rating)}"
    if status:
        line += f"\n    <i>{esc_html(status)}</i>"
    return line


def build_results_keyboard(results: list[SearchResult]) -> InlineKeyboardMarkup:
    """Numbered pick buttons, three per row, then Cancel."""
    rows: list[list[InlineKeyboardButton]] = []
    row: list[InlineKeyboardButton] = []
    for i, result in enumerate(results):
        if result.available:
            label = f"✅ {i + 1}"
        elif result.request_status:
            label = f"⏳ {i + 1}"
        else:
            label = f"Request {i + 1}"
        row.append(InlineKeyboardButton(label, callback_data=f"{CALLBACK_PREFIX}{i}"))
        if len(row) == BUTTONS_PER_ROW:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([InlineKeyboardButton("❌ Cancel", callback_data=f"{CALLBACK_PREFIX}cancel")])
    return InlineKeyboardMarkup(rows)


def _view_link(result: SearchResult, separator: str = " ") -> str:
    link = app_link(result.media_type, result.id)
    return f'{separator}<a href="{link}">View in LeMedia →</a>' if link else ""


def render_pick(outcome: PickOutcome, result: SearchResult | None, message: str = "") -> str:
    """Text shown in place of the result list after a pick."""
    if outcome == PickOutcome.CANCELLED:
        return "Request cancelled."
    if outcome == PickOutcome.SESSION_EXPIRED or result is None:
        return "❌ Session expired. Please search again."

    title = esc_html(result.title)
    if outcome == PickOutcome.ALREADY_AVAILABLE:
        return f"✅ <b>{title}</b> is already in the library!{_view_link(result)}"
    if outcome == PickOutcome.ALREADY_REQUESTED:
        status = status_text(result)
        status_line = f"\nStatus: <i>{esc_html(status)}</i>" if status else ""
        return f"⏳ <b>{title}</b> has already been requested.{status_line}{_view_link(result)}"
    if outcome == PickOutcome.SUBMITTED:
        kind = "Movie" if result.media_type == "movie" else "TV Show"
        year = f" ({result.year})" if result.year else ""
        link = _view_link(result, "\n\n")
        return (
            f"✅ <b>{kind} requested!</b>\n\n"
            f"📽 <b>{title}{esc_html(year)}</b>\n\n"
            f"You'll be notified when it's available.{link}"
        )
    if message:
        return f"❌ Request failed: {esc_html(message)}"
    return "❌ Something went wrong. Please try again."


# =============================================================================
# State transitions
# =============================================================================


def parse_index(action: str) -> int | None:
    try:
        return int(action)
    except ValueError:
        return None


async def resolve_pick(store: BaseSessionStore, chat_id: int, action: str) -> PickResolution:
    """Apply a ``req:<action>`` tap to the cached results of a chat.

    Args:
        store: Session store
        chat_id: Chat the results were shown in
        action: "cancel" or a zero-based index

    Returns:
        PickResolution; outcome None means the title must be submitted
    """
    if action == "cancel":
        await store.clear_pending(PendingKind.SEARCH, chat_id)
        return PickResolution(PickOutcome.CANCELLED)

    index = parse_index(action)
    if index is None:
        return PickResolution(PickOutcome.SESSION_EXPIRED)

    results = await store.take_pending_items(PendingKind.SEARCH, chat_id, SearchResult)
    if not results or not 0 <= index < len(results):
        return PickResolution(PickOutcome.SESSION_EXPIRED)

    result = results[index]
    await store.set_last_selected(
        chat_id,
        LastSelectedMedia(
            id=result.id,
            media_type=result.media_type,
            title=result.title,
            year=result.year,
            available=result.available,
            request_status=result.request_status,
        ),
    )

    if result.available:
        return PickResolution(PickOutcome.ALREADY_AVAILABLE, result)
    if result.request_status:
        return PickResolution(PickOutcome.ALREADY_REQUESTED, result)
    return PickResolution(None, result)


async def submit_pick(api_token: str, result: SearchResult) -> tuple[PickOutcome, str]:
    """Submit a picked title, mapping the API outcome to a PickOutcome."""
    try:
        async with open_api(api_token) as api:
            submitted = await api.submit_request(result.media_type, result.id)
    except LeMediaError as e:
        logger.warning("request_submit_error", tmdb_id=result.id, error=str(e))
        return PickOutcome.FAILED, ""

    if submitted.outcome == RequestOutcome.ALREADY_REQUESTED:
        return PickOutcome.ALREADY_REQUESTED, submitted.message
    if submitted.outcome == RequestOutcome.SUBMITTED:
        return PickOutcome.SUBMITTED, submitted.message
    return PickOutcome.FAILED, submitted.message


# =============================================================================
# Handlers
# =============================================================================


async def run_search(update: Update, query: str, announce: bool = True) -> None:
    """Search a title and show the pick list.

    Entry point shared by /request, the awaiting-query prompt, natural
    language requests and trending picks.
    """
    telegram_id = telegram_identity(update)
    chat_id = update.effective_chat.id
    reply = update.effective_message.reply_text

    linked = await linked_or_reply(telegram_id, reply)
    if linked is None:
        return

    if announce:
        await reply(f"🔍 Searching for <b>{esc_html(query)}</b>…", parse_mode="HTML")

    try:
        async with open_api(linked.api_token) as api:
            results = await api.search(query)
    except LeMediaError as e:
        logger.warning("search_failed", telegram_id=telegram_id, query=query, error=str(e))
        await reply("❌ Search failed. Please try again.")
        return

    if not results:
        await reply(
            f'😕 No results found for "<b>{esc_html(query)}</b>"\n\n'
            "Try a different spelling or title.",
            parse_mode="HTML",
        )
        return

    store = get_session_store()
    await store.set_pending_items(PendingKind.SEARCH, chat_id, results)

    lines = [format_result(result, i) for i, result in enumerate(results)]
    await reply(
        "\n\n".join(lines) + "\n\n<i>Tap a number to request it:</i>",
        parse_mode="HTML",
        reply_markup=build_results_keyboard(results),
    )
    logger.info("search_results_shown", telegram_id=telegram_id, results_count=len(results))


async def request_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /request, /movie, /tv and /search."""
    telegram_id = telegram_identity(update)
    query = " ".join(context.args or []).strip()

    logger.info("request_command", telegram_id=telegram_id, has_query=bool(query))

    if not query:
        await get_session_store().set_awaiting(AwaitingKind.REQUEST_QUERY, telegram_id)
        await update.message.reply_text(
            "🎬 What would you like to request?\n\nJust type the movie or TV show name:"
        )
        return

    await run_search(update, query)


async def handle_awaiting_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    """Treat this message as the answer to "What would you like to request?".

    Returns:
        True if the user was being asked for a title
    """
    telegram_id = telegram_identity(update)
    if not await get_session_store().consume_awaiting(AwaitingKind.REQUEST_QUERY, telegram_id):
        return False

    query = (update.message.text or "").strip()
    if not query:
        await update.message.reply_text("Please type a movie or TV show name to search for.")
        return True

    await run_search(update, query)
    return True


async def search_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``req:`` buttons."""
    query = update.callback_query
    await query.answer()

    telegram_id = telegram_identity(update)
    chat_id = update.effective_chat.id
    action = (query.data or "").removeprefix(CALLBACK_PREFIX)

    resolution = await resolve_pick(get_session_store(), chat_id, action)
    outcome, result, message = resolution.outcome, resolution.result, ""

    if outcome is None and result is not None:
        linked = await linked_or_reply(telegram_id, query.edit_message_text)
        if linked is None:
            return
        outcome, message = await submit_pick(linked.api_token, result)

    logger.info(
        "search_pick_resolved",
        telegram_id=telegram_id,
        outcome=outcome.value if outcome else None,
        tmdb_id=result.id if result else None,
    )
    await query.edit_message_text(
        render_pick(outcome, result, message),
        parse_mode="HTML",
        link_preview_options=NO_PREVIEW,
    )
