"""Shared helpers for conversational handlers.

Resolves the chat identity of an update to a linked LeMedia account with a
usable API token, and holds the small formatting helpers every flow uses.
"""

import html
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from telegram import LinkPreviewOptions, Update

from src.config import settings
from src.media.lemedia import LeMediaClient
from src.security.vault import IntegrityError, reveal
from src.user.storage import get_storage

logger = structlog.get_logger(__name__)

LINK_FIRST_MESSAGE = "❌ Please link your LeMedia account first.\n\nSend /link to get started."
CREDENTIAL_ERROR_MESSAGE = (
    "❌ Your saved LeMedia credentials could not be read.\n\n"
    "Please send /link to connect your account again."
)
ADMIN_ONLY_MESSAGE = "⛔ This command is only available to admins."

NO_PREVIEW = LinkPreviewOptions(is_disabled=True)

Reply = Callable[..., Awaitable[Any]]


class NotLinkedError(Exception):
    """Raised when a chat identity has no linked LeMedia account."""

    pass


class NotAdminError(Exception):
    """Raised when an admin-only action is attempted by a regular user."""

    pass


@dataclass(frozen=True)
class LinkedContext:
    """A chat identity resolved to a LeMedia account."""

    telegram_id: str
    user_id: int
    api_token: str


def esc_html(text: Any) -> str:
    """Escape text for Telegram's HTML parse mode."""
    return html.escape(str(text), quote=False)


def app_link(media_type: str, tmdb_id: int) -> str:
    """Public web app URL of a title, empty when APP_BASE_URL is not set."""
    if not settings.app_base_url:
        return ""
    return f"{settings.app_base_url}/{media_type}/{tmdb_id}"


def telegram_identity(update: Update) -> str:
    """Chat identity as stored in the shared database."""
    return str(update.effective_user.id)


def open_api(api_token: str, max_retries: int | None = None) -> LeMediaClient:
    """Build an API client for a user's token."""
    return LeMediaClient(api_token, max_retries=max_retries)


async def require_linked(telegram_id: str, admin: bool = False) -> LinkedContext:
    """Resolve a chat identity to its account and plaintext API token.

    Privileges are read from the database on every call.

    Raises:
        NotLinkedError: No account is linked to this identity
        NotAdminError: admin=True and the account is not an administrator
        IntegrityError: The stored token cannot be decrypted
    """
    async with get_storage() as storage:
        linked = await storage.get_linked_user(telegram_id)
        if linked is None:
            raise NotLinkedError(telegram_id)
        if admin and not await storage.is_user_admin(linked.user_id):
            raise NotAdminError(telegram_id)

    return LinkedContext(
        telegram_id=telegram_id,
        user_id=linked.user_id,
        api_token=reveal(linked.api_token_encrypted),
    )


async def linked_or_reply(
    telegram_id: str,
    reply: Reply,
    admin: bool = False,
    admin_message: str = ADMIN_ONLY_MESSAGE,
) -> LinkedContext | None:
    """Resolve an account, answering the user instead when that is impossible.

    Args:
        telegram_id: Chat identity
        reply: reply_text or edit_message_text of the current update
        admin: Require administrator privileges
        admin_message: Text sent to non-admins

    Returns:
        LinkedContext, or None after a reply was sent
    """
    try:
        return await require_linked(telegram_id, admin=admin)
    except NotLinkedError:
        await reply(LINK_FIRST_MESSAGE)
    except NotAdminError:
        logger.info("admin_action_denied", telegram_id=telegram_id)
        await reply(admin_message)
    except IntegrityError as e:
        logger.warning("api_token_unreadable", telegram_id=telegram_id, error=str(e))
        await reply(CREDENTIAL_ERROR_MESSAGE)
    return None
