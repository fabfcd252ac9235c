"""Tests for text routing, the error handler and the health endpoint."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import src.bot.main as bot_main
from src.bot.handlers import error_handler, help_handler, text_message_handler
from src.bot.main import COMMANDS, create_application, start_health_server
from src.session import AwaitingKind


async def http_get(port: int, path: str) -> tuple[int, dict]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    raw = await reader.read()
    writer.close()
    head, _, body = raw.decode().partition("\r\n\r\n")
    return int(head.split(" ")[1]), json.loads(body)


# =============================================================================
# Text routing
# =============================================================================


class TestTextRouting:
    @pytest.mark.asyncio
    async def test_commands_are_ignored(self, mock_update, mock_context):
        mock_update.message.text = "/unknown"

        with patch("src.bot.handlers.handle_natural_language", AsyncMock()) as natural:
            await text_message_handler(mock_update, mock_context)

        natural.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_watch_prompt_wins_over_request_prompt(
        self, mock_update, mock_context, session_store, patch_linked
    ):
        await session_store.set_awaiting(AwaitingKind.WATCH_QUERY, "12345")
        await session_store.set_awaiting(AwaitingKind.REQUEST_QUERY, "12345")
        mock_update.message.text = "Severance"

        with (
            patch("src.bot.watch.show_watch_results", AsyncMock()) as watch_search,
            patch("src.bot.request.run_search", AsyncMock()) as request_search,
        ):
            await text_message_handler(mock_update, mock_context)

        watch_search.assert_awaited_once()
        request_search.assert_not_awaited()
        # The request prompt is still pending for the next message
        assert await session_store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "12345") is True

    @pytest.mark.asyncio
    async def test_plain_text_falls_through_to_intent(
        self, mock_update, mock_context, session_store
    ):
        mock_update.message.text = "hello there"

        with patch(
            "src.bot.handlers.handle_natural_language", AsyncMock(return_value=False)
        ) as natural:
            await text_message_handler(mock_update, mock_context)

        natural.assert_awaited_once_with(mock_update, mock_context)


class TestBasicHandlers:
    @pytest.mark.asyncio
    async def test_help_lists_commands(self, mock_update, mock_context):
        await help_handler(mock_update, mock_context)

        text = mock_update.message.reply_text.call_args[0][0]
        for command in ("/request", "/watch", "/alerts", "/link", "/services", "/pending"):
            assert command in text

    @pytest.mark.asyncio
    async def test_error_handler_replies(self, mock_update):
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(mock_update, context)

        assert "Something went wrong" in mock_update.effective_message.reply_text.call_args[0][0]

    @pytest.mark.asyncio
    async def test_error_handler_without_update(self):
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(None, context)


# =============================================================================
# Application wiring
# =============================================================================


class TestApplication:
    def test_every_command_is_registered(self):
        application = create_application()

        registered = set()
        for handler in application.handlers[0]:
            registered.update(getattr(handler, "commands", ()))

        for names, _ in COMMANDS:
            assert set(names) <= registered


class TestHealthServer:
    @pytest.mark.asyncio
    async def test_health_reflects_readiness(self):
        server = await start_health_server(0)
        port = server.sockets[0].getsockname()[1]
        try:
            with patch.object(bot_main, "_bot_healthy", False):
                status, body = await http_get(port, "/health")
                assert (status, body["ready"]) == (503, False)

            with patch.object(bot_main, "_bot_healthy", True):
                status, body = await http_get(port, "/health")
                assert (status, body["status"]) == (200, "healthy")

            status, _ = await http_get(port, "/metrics")
            assert status == 404
        finally:
            server.close()
            await server.wait_closed()
