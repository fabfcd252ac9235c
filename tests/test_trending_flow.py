"""Tests for the trending browse flow."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.bot.trending import (
    build_trending_keyboard,
    format_trending,
    trending_callback,
    trending_command,
)
from src.media.lemedia import LeMediaUnavailableError, TrendingItem
from src.session import PendingKind

TRENDING = [
    TrendingItem(id=1, media_type="movie", title="Alien: Romulus", year=2024, vote_average=7.2),
    TrendingItem(id=2, media_type="movie", title="Dune: Part Two", year=2024),
    TrendingItem(id=3, media_type="movie", title="Deadpool & Wolverine"),
    TrendingItem(id=4, media_type="movie", title="Inside Out 2"),
    TrendingItem(id=5, media_type="movie", title="Wicked"),
]


class TestFormatting:
    def test_keyboard_four_per_row_then_cancel(self):
        keyboard = build_trending_keyboard(TRENDING).inline_keyboard

        assert [len(row) for row in keyboard] == [4, 1, 1]
        assert keyboard[1][0].callback_data == "trend:pick:4"
        assert keyboard[-1][0].callback_data == "trend:cancel"

    def test_format_escapes_titles(self):
        text = format_trending(TRENDING, "movie")

        assert text.startswith("📈 <b>Trending Movies</b>")
        assert "Deadpool &amp; Wolverine" in text
        assert "⭐ 7.2" in text


class TestTrendingFlow:
    @pytest.mark.asyncio
    async def test_command_offers_categories(self, mock_update, mock_context, patch_linked):
        await trending_command(mock_update, mock_context)

        keyboard = mock_update.message.reply_text.call_args.kwargs["reply_markup"].inline_keyboard
        assert [b.callback_data for b in keyboard[0]] == ["trend:movie", "trend:tv"]

    @pytest.mark.asyncio
    async def test_category_then_pick_runs_search(
        self, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(get_trending=TRENDING)
        query = callback_update.callback_query

        query.data = "trend:movie"
        with patch("src.bot.trending.open_api", MagicMock(return_value=api)):
            await trending_callback(callback_update, mock_context)

        api.get_trending.assert_awaited_once_with("movie")
        assert "Trending Movies" in query.edit_message_text.call_args[0][0]

        query.data = "trend:pick:1"
        with patch("src.bot.trending.run_search", AsyncMock()) as run_search:
            await trending_callback(callback_update, mock_context)

        run_search.assert_awaited_once_with(callback_update, "Dune: Part Two", announce=False)
        assert await session_store.get_pending(PendingKind.TRENDING, 12345) is None

    @pytest.mark.asyncio
    async def test_pick_without_list_expires(self, callback_update, mock_context, session_store):
        callback_update.callback_query.data = "trend:pick:0"

        with patch("src.bot.trending.run_search", AsyncMock()) as run_search:
            await trending_callback(callback_update, mock_context)

        run_search.assert_not_awaited()
        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert "Session expired" in text

    @pytest.mark.asyncio
    async def test_fetch_failure(
        self, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(get_trending=LeMediaUnavailableError("down"))
        callback_update.callback_query.data = "trend:tv"

        with patch("src.bot.trending.open_api", MagicMock(return_value=api)):
            await trending_callback(callback_update, mock_context)

        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert text == "❌ Couldn't fetch trending. Please try again."

    @pytest.mark.asyncio
    async def test_cancel(self, callback_update, mock_context, session_store):
        await session_store.set_pending_items(PendingKind.TRENDING, 12345, TRENDING)
        callback_update.callback_query.data = "trend:cancel"

        await trending_callback(callback_update, mock_context)

        callback_update.callback_query.edit_message_text.assert_awaited_once_with("Cancelled.")
        assert await session_store.get_pending(PendingKind.TRENDING, 12345) is None
