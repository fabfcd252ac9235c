"""Natural-language entry point for free-text messages.

Messages classified as health queries get a conversational service summary
(admins only); request phrases start a title search.
"""

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from src.bot.common import esc_html, linked_or_reply, open_api, telegram_identity
from src.bot.intent import IntentKind, classify
from src.bot.request import run_search
from src.bot.services import service_icon
from src.media.lemedia import LeMediaError, ServiceDetail

logger = structlog.get_logger(__name__)


def _names(services: list[ServiceDetail]) -> str:
    return ", ".join(f"<b>{esc_html(s.name)}</b>" for s in services)


def summarize_services(services: list[ServiceDetail]) -> str:
    """One-sentence verdict followed by the full per-service list."""
    healthy = [s for s in services if s.healthy]
    unhealthy = [s for s in services if not s.healthy]

    if not unhealthy:
        plural = "" if len(services) == 1 else "s"
        summary = f"✅ All {len(services)} service{plural} are running absolutely fine! 🎉"
    elif not healthy:
        summary = (
            f"🔴 All services appear to be down: {_names(unhealthy)}. "
            "You may want to check your setup."
        )
    else:
        down_verb = "is" if len(unhealthy) == 1 else "are"
        up_verb = "is" if len(healthy) == 1 else "are"
        summary = (
            f"⚠️ {_names(unhealthy)} {down_verb} currently down, "
            f"but {_names(healthy)} {up_verb} running fine."
        )

    lines = [f"{service_icon(s.healthy)} {esc_html(s.name)}" for s in services]
    return f"{summary}\n\n<b>Full status:</b>\n" + "\n".join(lines)


async def reply_service_summary(update: Update) -> None:
    telegram_id = telegram_identity(update)
    reply = update.message.reply_text

    linked = await linked_or_reply(
        telegram_id,
        reply,
        admin=True,
        admin_message="⛔ Service status is only available to admins.",
    )
    if linked is None:
        return

    try:
        async with open_api(linked.api_token) as api:
            services = await api.get_service_health()
    except LeMediaError as e:
        logger.warning("natural_services_failed", telegram_id=telegram_id, error=str(e))
        await reply("❌ Couldn't fetch service status right now. Please try again.")
        return

    if not services:
        await reply("🖥 No services are configured yet.")
        return

    await reply(summarize_services(services), parse_mode="HTML")


async def handle_natural_language(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    """Route a free-text message by intent.

    Returns:
        True if the message was handled
    """
    intent = classify(update.message.text or "")
    logger.debug("intent_classified", kind=intent.kind.value)

    if intent.kind == IntentKind.HEALTH:
        await reply_service_summary(update)
        return True

    if intent.kind == IntentKind.REQUEST and intent.title:
        await run_search(update, intent.title)
        return True

    return False
