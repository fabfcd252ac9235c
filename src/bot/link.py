"""Account linking commands.

/link issues a one-time code that the user enters on their LeMedia profile
page; the web app redeems it and stores the user's encrypted API token.
/unlink removes the binding.
"""

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from src.bot.common import NO_PREVIEW, esc_html, telegram_identity
from src.config import settings
from src.user.storage import get_storage

logger = structlog.get_logger(__name__)


def link_instructions(code: str) -> str:
    profile_url = f"{settings.app_base_url}/profile" if settings.app_base_url else ""
    where = (
        f'<a href="{profile_url}">your LeMedia profile</a>'
        if profile_url
        else "your LeMedia profile page"
    )
    return (
        "🔗 <b>Link your LeMedia account</b>\n\n"
        f"Your code: <code>{esc_html(code)}</code>\n\n"
        f"Open {where}, find <b>Telegram</b> and enter this code.\n"
        f"The code expires in {settings.link_code_ttl_minutes} minutes."
    )


async def link_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /link."""
    user = update.effective_user
    telegram_id = telegram_identity(update)
    logger.info("link_command", telegram_id=telegram_id)

    async with get_storage() as storage:
        existing = await storage.get_linked_user(telegram_id)
        code = await storage.issue_link_code(
            telegram_id,
            telegram_username=user.username,
            ttl_minutes=settings.link_code_ttl_minutes,
        )

    text = link_instructions(code)
    if existing:
        text += "\n\n<i>This chat is already linked; redeeming the code replaces that link.</i>"

    await update.message.reply_text(text, parse_mode="HTML", link_preview_options=NO_PREVIEW)


async def unlink_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unlink."""
    telegram_id = telegram_identity(update)
    logger.info("unlink_command", telegram_id=telegram_id)

    async with get_storage() as storage:
        removed = await storage.unlink(telegram_id)

    if removed:
        await update.message.reply_text("🔓 Your LeMedia account has been unlinked.")
    else:
        await update.message.reply_text("ℹ️ This chat isn't linked to a LeMedia account.")
