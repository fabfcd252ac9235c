"""Tests for the session store."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import SecretStr

from src.config import settings
from src.media.lemedia import SearchResult
from src.session import AwaitingKind, LastSelectedMedia, MemorySessionStore, PendingKind
from src.session.store import RedisSessionStore, SessionStoreConfigError, create_session_store


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemorySessionStore:
    return MemorySessionStore(namespace="test", ttl_seconds=60, clock=clock)


SAMPLE_RESULTS = [
    SearchResult(id=438631, media_type="movie", title="Dune", year=2021),
    SearchResult(id=693134, media_type="movie", title="Dune: Part Two", year=2024),
]


class TestAwaitingFlags:
    @pytest.mark.asyncio
    async def test_consume_clears_flag(self, store):
        await store.set_awaiting(AwaitingKind.REQUEST_QUERY, "42")

        assert await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "42") is True
        assert await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "42") is False

    @pytest.mark.asyncio
    async def test_flags_are_independent(self, store):
        await store.set_awaiting(AwaitingKind.WATCH_QUERY, "42")

        assert await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "42") is False
        assert await store.consume_awaiting(AwaitingKind.WATCH_QUERY, "42") is True

    @pytest.mark.asyncio
    async def test_flag_expires(self, store, clock):
        await store.set_awaiting(AwaitingKind.REQUEST_QUERY, "42")
        clock.now += 61

        assert await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "42") is False


class TestPendingItems:
    @pytest.mark.asyncio
    async def test_items_round_trip_in_order(self, store):
        await store.set_pending_items(PendingKind.SEARCH, 42, SAMPLE_RESULTS)

        items = await store.get_pending_items(PendingKind.SEARCH, 42, SearchResult)

        assert [item.title for item in items] == ["Dune", "Dune: Part Two"]

    @pytest.mark.asyncio
    async def test_take_consumes_once(self, store):
        await store.set_pending_items(PendingKind.SEARCH, 42, SAMPLE_RESULTS)

        first = await store.take_pending_items(PendingKind.SEARCH, 42, SearchResult)
        second = await store.take_pending_items(PendingKind.SEARCH, 42, SearchResult)

        assert len(first) == 2
        assert second is None

    @pytest.mark.asyncio
    async def test_expired_reads_as_absent(self, store, clock):
        await store.set_pending_items(PendingKind.SEARCH, 42, SAMPLE_RESULTS)
        clock.now += 61

        assert await store.get_pending_items(PendingKind.SEARCH, 42, SearchResult) is None

    @pytest.mark.asyncio
    async def test_malformed_payload_reads_as_absent(self, store):
        await store.set_pending(PendingKind.SEARCH, 42, [{"unexpected": True}])

        assert await store.get_pending_items(PendingKind.SEARCH, 42, SearchResult) is None

    @pytest.mark.asyncio
    async def test_keys_are_scoped_by_chat(self, store):
        await store.set_pending_items(PendingKind.SEARCH, 1, SAMPLE_RESULTS)

        assert await store.get_pending_items(PendingKind.SEARCH, 2, SearchResult) is None

    @pytest.mark.asyncio
    async def test_clear_pending(self, store):
        await store.set_pending_items(PendingKind.TRENDING, 42, SAMPLE_RESULTS)
        await store.clear_pending(PendingKind.TRENDING, 42)

        assert await store.get_pending(PendingKind.TRENDING, 42) is None


class TestLastSelected:
    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        media = LastSelectedMedia(id=1, media_type="tv", title="Severance", year=2022)
        await store.set_last_selected(42, media)

        assert await store.get_last_selected(42) == media

    @pytest.mark.asyncio
    async def test_unknown_media_type_is_ignored(self, store):
        await store.set_pending(
            PendingKind.LAST_SELECTED, 42, {"id": 1, "media_type": "person", "title": "X"}
        )

        assert await store.get_last_selected(42) is None


class TestDigestMarker:
    @pytest.mark.asyncio
    async def test_marker_outlives_session_ttl(self, clock):
        store = MemorySessionStore(ttl_seconds=60, digest_ttl_seconds=36 * 3600, clock=clock)
        await store.mark_digest_sent("2026-10-18")
        clock.now += 24 * 3600

        assert await store.is_digest_sent("2026-10-18") is True
        assert await store.is_digest_sent("2026-10-19") is False


class TestRedisSessionStore:
    @pytest.mark.asyncio
    async def test_uses_namespaced_keys_with_ttl(self):
        client = MagicMock()
        client.set = AsyncMock()
        client.getdel = AsyncMock(return_value="1")
        store = RedisSessionStore("redis://unused", namespace="ns", ttl_seconds=30, client=client)

        await store.set_awaiting(AwaitingKind.REQUEST_QUERY, "42")
        consumed = await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, "42")

        client.set.assert_awaited_once_with("ns:awaiting_query:42", "1", ex=30)
        client.getdel.assert_awaited_once_with("ns:awaiting_query:42")
        assert consumed is True


class TestCreateSessionStore:
    def test_development_without_redis_uses_memory(self):
        assert isinstance(create_session_store(), MemorySessionStore)

    def test_redis_url_selects_redis(self):
        with patch.object(settings, "redis_url", SecretStr("redis://redis:6379/0")):
            store = create_session_store()

        assert isinstance(store, RedisSessionStore)

    def test_production_with_shared_database_requires_redis(self):
        with (
            patch.object(settings, "environment", "production"),
            patch.object(settings, "database_url", SecretStr("postgresql://db/lemedia")),
            patch.object(settings, "redis_url", None),
        ):
            with pytest.raises(SessionStoreConfigError):
                create_session_store()

    def test_production_on_sqlite_may_use_memory(self):
        with (
            patch.object(settings, "environment", "production"),
            patch.object(settings, "database_url", None),
            patch.object(settings, "redis_url", None),
        ):
            assert isinstance(create_session_store(), MemorySessionStore)
