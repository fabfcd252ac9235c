"""Tests for the watch-alert flow."""

from unittest.mock import MagicMock, patch

import pytest

from src.bot.watch import (
    WatchOutcome,
    alerts_command,
    handle_awaiting_watch_query,
    refers_to_last_selected,
    render_outcome,
    stop_alerts_command,
    watch_command,
    watch_pick_callback,
    watch_stop_callback,
)
from src.media.lemedia import SearchResult
from src.session import AwaitingKind, LastSelectedMedia, PendingKind

SEVERANCE = SearchResult(id=95396, media_type="tv", title="Severance", year=2022)
DUNE_AVAILABLE = SearchResult(id=438631, media_type="movie", title="Dune", available=True)


@pytest.fixture
def watch_storage(storage_factory):
    with patch("src.bot.watch.get_storage", storage_factory):
        yield


class TestHelpers:
    @pytest.mark.parametrize("query", ["", "this", "That", "alert me when available"])
    def test_refers_to_last_selected(self, query):
        assert refers_to_last_selected(query) is True

    def test_title_is_not_last_selected(self):
        assert refers_to_last_selected("Severance") is False

    def test_render_outcomes(self):
        assert "Alert saved" in render_outcome(WatchOutcome.ALERT_ARMED, "Severance")
        assert "remains active" in render_outcome(WatchOutcome.ALREADY_ACTIVE, "Severance")
        assert "already available" in render_outcome(WatchOutcome.ALREADY_AVAILABLE, "Dune")


class TestWatchThis:
    @pytest.mark.asyncio
    async def test_this_uses_last_selected(
        self, mock_update, mock_context, session_store, patch_linked, watch_storage, storage
    ):
        await session_store.set_last_selected(
            12345, LastSelectedMedia(id=95396, media_type="tv", title="Severance")
        )
        mock_context.args = ["this"]

        await watch_command(mock_update, mock_context)

        assert "Alert saved for <b>Severance</b>" in mock_update.message.reply_text.call_args[0][0]
        alerts = await storage.list_active_watch_alerts("12345")
        assert [(a.media_type, a.tmdb_id, a.user_id) for a in alerts] == [("tv", 95396, 7)]

    @pytest.mark.asyncio
    async def test_repeat_keeps_single_alert(
        self, mock_update, mock_context, session_store, patch_linked, watch_storage, storage
    ):
        await session_store.set_last_selected(
            12345, LastSelectedMedia(id=95396, media_type="tv", title="Severance")
        )

        await watch_command(mock_update, mock_context)
        await watch_command(mock_update, mock_context)

        assert "remains active" in mock_update.message.reply_text.call_args[0][0]
        assert len(await storage.list_active_watch_alerts("12345")) == 1

    @pytest.mark.asyncio
    async def test_available_last_selected_arms_nothing(
        self, mock_update, mock_context, session_store, patch_linked, watch_storage, storage
    ):
        await session_store.set_last_selected(
            12345,
            LastSelectedMedia(id=438631, media_type="movie", title="Dune", available=True),
        )

        await watch_command(mock_update, mock_context)

        assert "already available" in mock_update.message.reply_text.call_args[0][0]
        assert await storage.list_active_watch_alerts("12345") == []

    @pytest.mark.asyncio
    async def test_without_selection_prompts(
        self, mock_update, mock_context, session_store, patch_linked
    ):
        await watch_command(mock_update, mock_context)

        assert "watchlist" in mock_update.message.reply_text.call_args[0][0]
        assert await session_store.consume_awaiting(AwaitingKind.WATCH_QUERY, "12345") is True


class TestWatchSearch:
    @pytest.mark.asyncio
    async def test_title_search_then_pick(
        self,
        callback_update,
        mock_context,
        session_store,
        patch_linked,
        watch_storage,
        storage,
        make_api,
    ):
        api = make_api(search=[SEVERANCE, DUNE_AVAILABLE])
        mock_context.args = ["Severance"]

        with patch("src.bot.watch.open_api", MagicMock(return_value=api)):
            await watch_command(callback_update, mock_context)

        listing = callback_update.message.reply_text.call_args
        assert "already available" in listing[0][0]
        keyboard = listing.kwargs["reply_markup"].inline_keyboard
        assert keyboard[0][0].callback_data == "watchpick:0"

        callback_update.callback_query.data = "watchpick:0"
        await watch_pick_callback(callback_update, mock_context)

        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert "Alert saved" in text
        assert len(await storage.list_active_watch_alerts("12345")) == 1
        assert await session_store.get_pending(PendingKind.WATCH_SEARCH, 12345) is None

    @pytest.mark.asyncio
    async def test_pick_available_item(
        self, callback_update, mock_context, session_store, patch_linked, watch_storage, storage
    ):
        await session_store.set_pending_items(
            PendingKind.WATCH_SEARCH, 12345, [SEVERANCE, DUNE_AVAILABLE]
        )
        callback_update.callback_query.data = "watchpick:1"

        await watch_pick_callback(callback_update, mock_context)

        assert "already available" in callback_update.callback_query.edit_message_text.call_args[0][0]
        assert await storage.list_active_watch_alerts("12345") == []

    @pytest.mark.asyncio
    async def test_stale_pick_expires(self, callback_update, mock_context, session_store):
        callback_update.callback_query.data = "watchpick:0"

        await watch_pick_callback(callback_update, mock_context)

        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert text == render_outcome(WatchOutcome.EXPIRED)

    @pytest.mark.asyncio
    async def test_cancel(self, callback_update, mock_context, session_store):
        await session_store.set_pending_items(PendingKind.WATCH_SEARCH, 12345, [SEVERANCE])
        callback_update.callback_query.data = "watchpick:cancel"

        await watch_pick_callback(callback_update, mock_context)

        callback_update.callback_query.edit_message_text.assert_awaited_once_with("Cancelled.")
        assert await session_store.get_pending(PendingKind.WATCH_SEARCH, 12345) is None

    @pytest.mark.asyncio
    async def test_awaiting_answer_runs_search(
        self, mock_update, mock_context, session_store, patch_linked, make_api
    ):
        await session_store.set_awaiting(AwaitingKind.WATCH_QUERY, "12345")
        mock_update.message.text = "Severance"
        api = make_api(search=[SEVERANCE])

        with patch("src.bot.watch.open_api", MagicMock(return_value=api)):
            assert await handle_awaiting_watch_query(mock_update, mock_context) is True

        api.search.assert_awaited_once_with("Severance")
        assert await handle_awaiting_watch_query(mock_update, mock_context) is False


class TestAlertManagement:
    @pytest.mark.asyncio
    async def test_alerts_lists_with_stop_buttons(
        self, mock_update, mock_context, patch_linked, watch_storage, storage
    ):
        alert, _ = await storage.upsert_watch_alert("12345", 7, "tv", 95396, "Severance")

        await alerts_command(mock_update, mock_context)

        call = mock_update.message.reply_text.call_args
        assert "Severance" in call[0][0]
        keyboard = call.kwargs["reply_markup"].inline_keyboard
        assert keyboard[0][0].callback_data == f"watchstop:{alert.id}"
        assert keyboard[-1][0].callback_data == "watchstop:all"

    @pytest.mark.asyncio
    async def test_alerts_empty(self, mock_update, mock_context, patch_linked, watch_storage):
        await alerts_command(mock_update, mock_context)

        assert "no active alerts" in mock_update.message.reply_text.call_args[0][0]

    @pytest.mark.asyncio
    async def test_stop_all_command(
        self, mock_update, mock_context, patch_linked, watch_storage, storage
    ):
        await storage.upsert_watch_alert("12345", 7, "tv", 1, "One")
        await storage.upsert_watch_alert("12345", 7, "movie", 2, "Two")

        await stop_alerts_command(mock_update, mock_context)

        assert mock_update.message.reply_text.call_args[0][0] == "🛑 Stopped 2 alerts."

    @pytest.mark.asyncio
    async def test_stop_by_id_command(
        self, mock_update, mock_context, patch_linked, watch_storage, storage
    ):
        alert, _ = await storage.upsert_watch_alert("12345", 7, "tv", 1, "One")
        mock_context.args = [str(alert.id)]

        await stop_alerts_command(mock_update, mock_context)
        await stop_alerts_command(mock_update, mock_context)

        replies = [c[0][0] for c in mock_update.message.reply_text.call_args_list]
        assert replies == ["🛑 Alert stopped.", "Couldn't find that active alert ID."]

    @pytest.mark.asyncio
    async def test_stop_callback_only_touches_own_alerts(
        self, callback_update, mock_context, patch_linked, watch_storage, storage
    ):
        foreign, _ = await storage.upsert_watch_alert("999", 8, "tv", 1, "Someone else's")
        callback_update.callback_query.data = f"watchstop:{foreign.id}"

        await watch_stop_callback(callback_update, mock_context)

        assert "Couldn't find" in callback_update.callback_query.edit_message_text.call_args[0][0]
        assert len(await storage.list_active_watch_alerts("999")) == 1
