"""Tests for the search-and-request flow."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.bot.request import (
    PickOutcome,
    build_results_keyboard,
    handle_awaiting_query,
    render_pick,
    request_command,
    resolve_pick,
    search_callback,
)
from src.media.lemedia import LeMediaUnavailableError, RequestOutcome, SearchResult, SubmitResult
from src.session import AwaitingKind, PendingKind

DUNE_RESULTS = [
    SearchResult(id=438631, media_type="movie", title="Dune", year=2021),
    SearchResult(id=693134, media_type="movie", title="Dune: Part Two", year=2024, available=True),
    SearchResult(id=90228, media_type="tv", title="Dune: Prophecy", request_status="pending"),
]


def submitted(outcome: RequestOutcome, message: str = "") -> SubmitResult:
    return SubmitResult(outcome=outcome, message=message)


# =============================================================================
# Pure helpers
# =============================================================================


class TestKeyboard:
    def test_numbered_buttons_three_per_row_then_cancel(self):
        results = DUNE_RESULTS + [SearchResult(id=1, media_type="movie", title="Extra")]

        keyboard = build_results_keyboard(results).inline_keyboard

        assert [len(row) for row in keyboard] == [3, 1, 1]
        assert keyboard[0][0].callback_data == "req:0"
        assert keyboard[0][1].text == "✅ 2"
        assert keyboard[0][2].text == "⏳ 3"
        assert keyboard[-1][0].callback_data == "req:cancel"


class TestRenderPick:
    def test_cancelled(self):
        assert render_pick(PickOutcome.CANCELLED, None) == "Request cancelled."

    def test_failed_with_message(self):
        text = render_pick(PickOutcome.FAILED, DUNE_RESULTS[0], "Quota <exceeded>")

        assert text == "❌ Request failed: Quota &lt;exceeded&gt;"

    def test_submitted_tv(self):
        text = render_pick(PickOutcome.SUBMITTED, DUNE_RESULTS[2])

        assert "TV Show requested!" in text
        assert "Dune: Prophecy" in text


# =============================================================================
# State transitions
# =============================================================================


class TestResolvePick:
    @pytest.mark.asyncio
    async def test_pick_consumes_results_and_remembers_selection(self, session_store):
        await session_store.set_pending_items(PendingKind.SEARCH, 1, DUNE_RESULTS)

        resolution = await resolve_pick(session_store, 1, "0")

        assert resolution.outcome is None
        assert resolution.result.title == "Dune"
        assert await session_store.get_pending(PendingKind.SEARCH, 1) is None
        last = await session_store.get_last_selected(1)
        assert last.id == 438631

    @pytest.mark.asyncio
    async def test_available_and_requested_short_circuit(self, session_store):
        await session_store.set_pending_items(PendingKind.SEARCH, 1, DUNE_RESULTS)
        assert (await resolve_pick(session_store, 1, "1")).outcome == PickOutcome.ALREADY_AVAILABLE

        await session_store.set_pending_items(PendingKind.SEARCH, 1, DUNE_RESULTS)
        assert (await resolve_pick(session_store, 1, "2")).outcome == PickOutcome.ALREADY_REQUESTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["7", "-1", "abc"])
    async def test_bad_index_is_session_expired(self, session_store, action):
        await session_store.set_pending_items(PendingKind.SEARCH, 1, DUNE_RESULTS)

        resolution = await resolve_pick(session_store, 1, action)

        assert resolution.outcome == PickOutcome.SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_missing_results_is_session_expired(self, session_store):
        resolution = await resolve_pick(session_store, 1, "0")

        assert resolution.outcome == PickOutcome.SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_cancel_clears_results(self, session_store):
        await session_store.set_pending_items(PendingKind.SEARCH, 1, DUNE_RESULTS)

        resolution = await resolve_pick(session_store, 1, "cancel")

        assert resolution.outcome == PickOutcome.CANCELLED
        assert await session_store.get_pending(PendingKind.SEARCH, 1) is None


# =============================================================================
# Handlers
# =============================================================================


class TestRequestCommand:
    @pytest.mark.asyncio
    async def test_without_title_asks_and_sets_awaiting(
        self, mock_update, mock_context, session_store
    ):
        await request_command(mock_update, mock_context)

        assert "What would you like to request?" in mock_update.message.reply_text.call_args[0][0]
        assert await session_store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "12345") is True

    @pytest.mark.asyncio
    async def test_dune_search_then_pick_submits(
        self, mock_update, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(
            search=DUNE_RESULTS,
            submit_request=submitted(RequestOutcome.SUBMITTED, "success"),
        )
        mock_context.args = ["Dune"]

        with (
            patch("src.bot.request.open_api", MagicMock(return_value=api)),
            patch.object(
                session_store, "set_pending_items", wraps=session_store.set_pending_items
            ) as spy,
        ):
            await request_command(mock_update, mock_context)

            api.search.assert_awaited_once_with("Dune")
            spy.assert_awaited_once()
            assert spy.await_args[0][0] == PendingKind.SEARCH

            listing = mock_update.message.reply_text.call_args
            assert "Dune: Prophecy" in listing[0][0]
            assert listing.kwargs["reply_markup"] is not None

            callback_update.callback_query.data = "req:0"
            await search_callback(callback_update, mock_context)

        callback_update.callback_query.answer.assert_awaited_once()
        api.submit_request.assert_awaited_once_with("movie", 438631)
        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert "Movie requested!" in text
        assert await session_store.get_pending(PendingKind.SEARCH, 12345) is None

    @pytest.mark.asyncio
    async def test_second_tap_is_session_expired(
        self, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(submit_request=submitted(RequestOutcome.SUBMITTED))
        await session_store.set_pending_items(PendingKind.SEARCH, 12345, DUNE_RESULTS)
        callback_update.callback_query.data = "req:0"

        with patch("src.bot.request.open_api", MagicMock(return_value=api)):
            await search_callback(callback_update, mock_context)
            await search_callback(callback_update, mock_context)

        assert api.submit_request.await_count == 1
        last_text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert last_text == "❌ Session expired. Please search again."

    @pytest.mark.asyncio
    async def test_conflict_renders_already_requested(
        self, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(submit_request=submitted(RequestOutcome.ALREADY_REQUESTED))
        await session_store.set_pending_items(PendingKind.SEARCH, 12345, DUNE_RESULTS)
        callback_update.callback_query.data = "req:0"

        with patch("src.bot.request.open_api", MagicMock(return_value=api)):
            await search_callback(callback_update, mock_context)

        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert "has already been requested" in text

    @pytest.mark.asyncio
    async def test_available_pick_does_not_submit(
        self, callback_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(submit_request=submitted(RequestOutcome.SUBMITTED))
        await session_store.set_pending_items(PendingKind.SEARCH, 12345, DUNE_RESULTS)
        callback_update.callback_query.data = "req:1"

        with patch("src.bot.request.open_api", MagicMock(return_value=api)):
            await search_callback(callback_update, mock_context)

        api.submit_request.assert_not_awaited()
        text = callback_update.callback_query.edit_message_text.call_args[0][0]
        assert "already in the library" in text

    @pytest.mark.asyncio
    async def test_search_failure_is_reported(
        self, mock_update, mock_context, session_store, patch_linked, make_api
    ):
        api = make_api(search=LeMediaUnavailableError("down"))
        mock_context.args = ["Dune"]

        with patch("src.bot.request.open_api", MagicMock(return_value=api)):
            await request_command(mock_update, mock_context)

        assert mock_update.message.reply_text.call_args[0][0] == "❌ Search failed. Please try again."
        assert await session_store.get_pending(PendingKind.SEARCH, 12345) is None

    @pytest.mark.asyncio
    async def test_no_results(self, mock_update, mock_context, session_store, patch_linked, make_api):
        api = make_api(search=[])
        mock_context.args = ["zzzz"]

        with patch("src.bot.request.open_api", MagicMock(return_value=api)):
            await request_command(mock_update, mock_context)

        assert "No results found" in mock_update.message.reply_text.call_args[0][0]

    @pytest.mark.asyncio
    async def test_unlinked_user_gets_no_search(self, mock_update, mock_context, session_store):
        mock_context.args = ["Dune"]
        open_api = MagicMock()

        with (
            patch("src.bot.request.linked_or_reply", AsyncMock(return_value=None)),
            patch("src.bot.request.open_api", open_api),
        ):
            await request_command(mock_update, mock_context)

        open_api.assert_not_called()


class TestAwaitingQuery:
    @pytest.mark.asyncio
    async def test_not_awaiting_returns_false(self, mock_update, mock_context, session_store):
        mock_update.message.text = "Dune"

        assert await handle_awaiting_query(mock_update, mock_context) is False

    @pytest.mark.asyncio
    async def test_awaiting_runs_search_once(self, mock_update, mock_context, session_store):
        await session_store.set_awaiting(AwaitingKind.REQUEST_QUERY, "12345")
        mock_update.message.text = "  Dune  "

        with patch("src.bot.request.run_search", AsyncMock()) as run_search:
            assert await handle_awaiting_query(mock_update, mock_context) is True
            assert await handle_awaiting_query(mock_update, mock_context) is False

        run_search.assert_awaited_once_with(mock_update, "Dune")
