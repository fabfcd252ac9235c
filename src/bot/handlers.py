"""Message handlers for the Telegram bot."""

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from src.bot.natural import handle_natural_language
from src.bot.request import handle_awaiting_query
from src.bot.watch import handle_awaiting_watch_query

logger = structlog.get_logger(__name__)

HELP_TEXT = (
    "🎬 <b>LeMedia Bot</b>\n\n"
    "<b>Getting started</b>\n"
    "/link - Link your LeMedia account\n"
    "/unlink - Unlink this chat\n\n"
    "<b>Requests</b>\n"
    "/request &lt;title&gt; - Search and request a movie or show\n"
    "/movie, /tv, /search - Same as /request\n"
    "/mystuff - Your recent requests\n"
    "/trending - What's popular right now\n"
    "/newstuff - Recently added to the library\n\n"
    "<b>Alerts</b>\n"
    "/watch &lt;title&gt; - Get notified when a title becomes available\n"
    "/alerts - Your active alerts\n"
    "/stopalerts - Turn off all alerts\n\n"
    "<b>Admins</b>\n"
    "/services - Service health\n"
    "/pending - Approve or deny pending requests\n\n"
    "You can also just type things like <i>\"request Dune\"</i> or "
    "<i>\"is everything running?\"</i>"
)


async def start_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the /start command.

    Sends a welcome message followed by the command list.

    Args:
        update: Telegram update object
        context: Callback context
    """
    user = update.effective_user

    logger.info(
        "start_command",
        user_id=user.id,
        username=user.username,
    )

    name = user.first_name or "there"
    welcome = (
        f"👋 Hi {name}!\n\n"
        "I can search, request and track movies and TV shows on your LeMedia server.\n"
        "Start by linking your account with /link.\n\n"
    )

    try:
        await update.message.reply_text(welcome + HELP_TEXT, parse_mode="HTML")
        logger.info("start_response_sent", user_id=user.id)
    except Exception as e:
        logger.exception("start_handler_failed", user_id=user.id, error=str(e))
        # Fallback without markup if parsing fails
        await update.message.reply_text("👋 Hi! I'm the LeMedia bot. Use /help for commands.")


async def help_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the /help command."""
    logger.info("help_command", user_id=update.effective_user.id)
    await update.message.reply_text(HELP_TEXT, parse_mode="HTML")


async def text_message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Route a plain text message.

    A pending /watch prompt wins over a pending /request prompt; anything
    else goes through intent detection.
    """
    message = update.message
    if message is None or not message.text or message.text.startswith("/"):
        return

    if await handle_awaiting_watch_query(update, context):
        return
    if await handle_awaiting_query(update, context):
        return
    if await handle_natural_language(update, context):
        return

    logger.debug("text_message_unhandled", user_id=update.effective_user.id)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle errors that occur during update processing.

    Args:
        update: Telegram update object (or None)
        context: Callback context containing error information
    """
    logger.error(
        "telegram_error",
        error=str(context.error),
        exc_info=context.error,
    )

    # Try to notify the user if possible
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(
                "❌ Something went wrong while handling your request. Please try again."
            )
        except Exception as e:
            logger.error("error_notification_failed", error=str(e))
