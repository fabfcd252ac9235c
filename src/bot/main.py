"""Main entry point for the Telegram bot.

This module initializes the bot and sets up handlers for commands and messages.
Supports both polling (development) and webhook (production) modes.
Includes an HTTP health check endpoint for container health monitoring.
"""

import asyncio
import contextlib
import json
import sys
from asyncio import StreamReader, StreamWriter
from typing import NoReturn

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    MessageHandler,
    filters,
)

from src.bot.handlers import error_handler, help_handler, start_handler, text_message_handler
from src.bot.library import mystuff_command, newstuff_command
from src.bot.link import link_command, unlink_command
from src.bot.request import request_command, search_callback
from src.bot.services import pending_command, services_command, triage_callback
from src.bot.trending import trending_callback, trending_command
from src.bot.watch import (
    alerts_command,
    stop_alerts_command,
    watch_command,
    watch_pick_callback,
    watch_stop_callback,
)
from src.config import settings
from src.logger import get_logger
from src.monitoring import NotificationScheduler
from src.session import close_session_store, get_session_store
from src.user.storage import get_storage

logger = get_logger(__name__)

SERVICE_NAME = "lemedia-bot"

# Global flag to track bot health
_bot_healthy = False

# Global notification scheduler instance
_notification_scheduler: NotificationScheduler | None = None

COMMANDS = (
    (("start",), start_handler),
    (("help",), help_handler),
    (("link",), link_command),
    (("unlink",), unlink_command),
    (("request", "movie", "tv", "search"), request_command),
    (("watch", "alert"), watch_command),
    (("alerts", "myalerts"), alerts_command),
    (("stopalerts", "stopalert"), stop_alerts_command),
    (("mystuff",), mystuff_command),
    (("trending", "popular"), trending_command),
    (("newstuff", "new", "recent"), newstuff_command),
    (("services",), services_command),
    (("pending",), pending_command),
)

CALLBACKS = (
    ("^req:", search_callback),
    ("^trend:", trending_callback),
    ("^watchpick:", watch_pick_callback),
    ("^watchstop:", watch_stop_callback),
    ("^appr:", triage_callback),
    ("^deny:", triage_callback),
)


def create_application() -> Application:
    """Create and configure the Telegram bot application.

    Returns:
        Configured Application instance
    """
    logger.info("creating_application", environment=settings.environment)

    application = (
        Application.builder().token(settings.telegram_bot_token.get_secret_value()).build()
    )

    for names, callback in COMMANDS:
        application.add_handler(CommandHandler(list(names), callback))

    for pattern, callback in CALLBACKS:
        application.add_handler(CallbackQueryHandler(callback, pattern=pattern))

    # Free text: awaiting prompts first, then intent detection
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, text_message_handler))

    application.add_error_handler(error_handler)

    logger.info(
        "application_created",
        commands=sum(len(names) for names, _ in COMMANDS),
        callbacks=len(CALLBACKS),
    )

    return application


async def prepare_state() -> None:
    """Make sure shared state is reachable before taking updates.

    Pings the session store and opens storage once so schema migrations run.
    """
    await get_session_store().ping()
    async with get_storage():
        pass
    logger.info("state_ready", redis=settings.has_redis, postgres=settings.has_database_url)


async def _shutdown(application: Application, health_server: asyncio.Server) -> None:
    global _bot_healthy, _notification_scheduler

    _bot_healthy = False
    if _notification_scheduler:
        _notification_scheduler.stop()
        _notification_scheduler = None
    health_server.close()
    await health_server.wait_closed()
    await application.updater.stop()
    await application.stop()
    await application.shutdown()
    await close_session_store()
    logger.info("bot_stopped")


async def run_polling(application: Application) -> None:
    """Run the bot in polling mode (for development).

    Also starts a health server for local testing of deployment readiness.

    Args:
        application: The bot application instance
    """
    global _bot_healthy, _notification_scheduler

    health_port = settings.health_port
    logger.info("starting_polling_mode", health_port=health_port)

    health_server = await start_health_server(health_port)

    await application.initialize()
    await application.start()
    await application.updater.start_polling(
        allowed_updates=Update.ALL_TYPES,
        drop_pending_updates=True,
    )

    _notification_scheduler = NotificationScheduler(application.bot)
    _notification_scheduler.start()

    _bot_healthy = True

    logger.info(
        "bot_started_polling",
        mode="polling",
        health_endpoint=f"http://localhost:{health_port}/health",
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("bot_stopping", reason="user_interrupt")
    finally:
        await _shutdown(application, health_server)


def _http_response(status_code: int, reason: str, payload: dict) -> bytes:
    body = json.dumps(payload)
    return (
        f"HTTP/1.1 {status_code} {reason}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    ).encode("utf-8")


async def handle_health_request(reader: StreamReader, writer: StreamWriter) -> None:
    """Answer ``GET /health`` with the bot's readiness; 404 for anything else.

    Args:
        reader: Async stream reader for the connection
        writer: Async stream writer for the connection
    """
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
        if not request_line:
            return

        # Drain headers
        while True:
            line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            if line in (b"\r\n", b"\n", b""):
                break

        parts = request_line.decode("utf-8").strip().split(" ")
        method, path = (parts[0], parts[1]) if len(parts) >= 2 else ("GET", "/")

        if path == "/health" and method == "GET":
            payload = {
                "status": "healthy" if _bot_healthy else "starting",
                "service": SERVICE_NAME,
                "ready": _bot_healthy,
            }
            if _bot_healthy:
                response = _http_response(200, "OK", payload)
            else:
                response = _http_response(503, "Service Unavailable", payload)
        else:
            response = _http_response(404, "Not Found", {"error": "Not Found"})

        writer.write(response)
        await writer.drain()

    except TimeoutError:
        logger.debug("health_request_timeout")
    except Exception as e:
        logger.debug("health_request_error", error=str(e))
    finally:
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()


async def start_health_server(port: int) -> asyncio.Server:
    """Start the HTTP health check server.

    Args:
        port: Port to listen on for health checks

    Returns:
        The running asyncio Server instance
    """
    server = await asyncio.start_server(handle_health_request, "0.0.0.0", port)
    logger.info("health_server_started", port=port, endpoint="/health")
    return server


async def run_webhook(application: Application) -> None:
    """Run the bot in webhook mode (for production).

    Starts both the webhook server for Telegram updates and
    an HTTP health check server for deployment monitoring.

    Args:
        application: The bot application instance
    """
    global _bot_healthy, _notification_scheduler

    webhook_url = settings.webhook_url
    webhook_path = settings.webhook_path
    port = settings.port
    health_port = settings.health_port

    if not webhook_url:
        logger.error("webhook_url_not_configured")
        raise ValueError("WEBHOOK_URL must be set for webhook mode")

    logger.info(
        "starting_webhook_mode",
        webhook_url=webhook_url,
        webhook_path=webhook_path,
        webhook_port=port,
        health_port=health_port,
    )

    # Health server first so the platform can see we're starting
    health_server = await start_health_server(health_port)

    await application.initialize()
    await application.start()

    # start_webhook calls set_webhook internally
    await application.updater.start_webhook(
        listen="0.0.0.0",
        port=port,
        url_path=webhook_path,
        webhook_url=f"{webhook_url}{webhook_path}",
        drop_pending_updates=True,
        allowed_updates=Update.ALL_TYPES,
    )

    _notification_scheduler = NotificationScheduler(application.bot)
    _notification_scheduler.start()

    _bot_healthy = True

    logger.info(
        "bot_started_webhook",
        mode="webhook",
        url=f"{webhook_url}{webhook_path}",
        health_endpoint=f"http://0.0.0.0:{health_port}/health",
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("bot_stopping", reason="user_interrupt")
    finally:
        await _shutdown(application, health_server)


async def main_async() -> None:
    """Main async entry point for the bot."""
    logger.info(
        "bot_starting",
        environment=settings.environment,
        log_level=settings.log_level,
        config=settings.get_safe_dict(),
    )

    await prepare_state()

    application = create_application()

    if settings.is_production and settings.webhook_url:
        logger.info("using_webhook_mode")
        await run_webhook(application)
    else:
        logger.info("using_polling_mode")
        await run_polling(application)


def main() -> NoReturn:
    """Main entry point for the bot.

    This function is called when running the module directly.
    """
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("bot_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("bot_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
