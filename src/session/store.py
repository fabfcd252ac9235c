"""Ephemeral conversational state with a bounded time-to-live.

Telegram delivers every message and button tap as an independent update, so
multi-step flows (search -> pick -> confirm) keep their in-between state here:
"awaiting free text" flags, cached result lists and the last media item a user
touched. Entries expire on their own; an expired entry reads exactly like one
that was never set.

Two backends share one interface:
- RedisSessionStore: shared between bot replicas, survives restarts
- MemorySessionStore: single process, used for development and tests

Keys always have the form ``<namespace>:<kind>:<identity>``.

Usage:
    store = get_session_store()
    await store.set_awaiting(AwaitingKind.REQUEST_QUERY, telegram_id)
    if await store.consume_awaiting(AwaitingKind.REQUEST_QUERY, telegram_id):
        ...
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_NAMESPACE = "lemedia:bot"
DEFAULT_TTL_SECONDS = 60 * 20
DEFAULT_DIGEST_TTL_SECONDS = 60 * 60 * 36

ModelT = TypeVar("ModelT", bound=BaseModel)


class SessionStoreConfigError(Exception):
    """Raised when a deployment needs a shared session store but has none."""

    pass


class AwaitingKind(str, Enum):
    """Flags meaning "the next free-text message from this user is an answer"."""

    REQUEST_QUERY = "awaiting_query"
    WATCH_QUERY = "awaiting_watch_query"


class PendingKind(str, Enum):
    """Structured payloads kept between a bot reply and the user's next action."""

    SEARCH = "pending_search"
    TRENDING = "pending_trending"
    WATCH_SEARCH = "pending_watch_search"
    LAST_SELECTED = "last_selected"


class LastSelectedMedia(BaseModel):
    """The media item a user most recently picked, for "/watch this"."""

    id: int
    media_type: str
    title: str
    year: int | None = None
    available: bool = False
    request_status: str | None = None


# =============================================================================
# Abstract Store Interface
# =============================================================================


class BaseSessionStore(ABC):
    """Abstract base class for session store backends."""

    def __init__(
        self,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        digest_ttl_seconds: int = DEFAULT_DIGEST_TTL_SECONDS,
    ):
        """Initialize store.

        Args:
            namespace: Key prefix shared by all entries
            ttl_seconds: Lifetime of session entries, refreshed on each write
            digest_ttl_seconds: Lifetime of the daily digest marker
        """
        self._namespace = namespace
        self._ttl = ttl_seconds
        self._digest_ttl = digest_ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        """Session entry lifetime."""
        return self._ttl

    def key(self, kind: str, identity: str | int) -> str:
        """Build a scoped key."""
        return f"{self._namespace}:{kind}:{identity}"

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _set(self, key: str, value: str, ttl: int) -> None:
        """Store a value with expiry."""
        pass

    @abstractmethod
    async def _get(self, key: str) -> str | None:
        """Read a value, None when absent or expired."""
        pass

    @abstractmethod
    async def _pop(self, key: str) -> str | None:
        """Atomically read and delete a value."""
        pass

    @abstractmethod
    async def _delete(self, key: str) -> None:
        """Delete a value if present."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Check that the backend is reachable."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        pass

    # -------------------------------------------------------------------------
    # Awaiting flags
    # -------------------------------------------------------------------------

    async def set_awaiting(self, kind: AwaitingKind, identity: str | int) -> None:
        """Mark that the next free-text message of this identity answers a prompt."""
        await self._set(self.key(kind.value, identity), "1", self._ttl)

    async def consume_awaiting(self, kind: AwaitingKind, identity: str | int) -> bool:
        """Check-and-clear an awaiting flag.

        Two concurrent messages from the same user cannot both see True.

        Returns:
            True if the flag was set
        """
        return await self._pop(self.key(kind.value, identity)) is not None

    # -------------------------------------------------------------------------
    # Pending payloads
    # -------------------------------------------------------------------------

    async def set_pending(self, kind: PendingKind, key: str | int, value: Any) -> None:
        """Store a JSON-serialisable payload."""
        await self._set(self.key(kind.value, key), json.dumps(value), self._ttl)

    async def get_pending(self, kind: PendingKind, key: str | int) -> Any | None:
        """Read a payload, None when absent, expired or unreadable."""
        raw = await self._get(self.key(kind.value, key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("session_payload_corrupt", kind=kind.value)
            return None

    async def clear_pending(self, kind: PendingKind, key: str | int) -> None:
        """Delete a payload."""
        await self._delete(self.key(kind.value, key))

    async def set_pending_items(
        self,
        kind: PendingKind,
        key: str | int,
        items: Sequence[BaseModel],
    ) -> None:
        """Store an ordered list of models."""
        await self.set_pending(kind, key, [item.model_dump(mode="json") for item in items])

    async def get_pending_items(
        self,
        kind: PendingKind,
        key: str | int,
        model: type[ModelT],
    ) -> list[ModelT] | None:
        """Read an ordered list of models, None if absent or malformed."""
        raw = await self.get_pending(kind, key)
        if not isinstance(raw, list):
            return None
        try:
            return [model.model_validate(item) for item in raw]
        except ValidationError:
            logger.warning("session_items_invalid", kind=kind.value)
            return None

    async def take_pending_items(
        self,
        kind: PendingKind,
        key: str | int,
        model: type[ModelT],
    ) -> list[ModelT] | None:
        """Atomically read and delete an ordered list of models.

        Of two concurrent takers at most one gets the list.
        """
        raw = await self._pop(self.key(kind.value, key))
        if raw is None:
            return None
        try:
            items = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("session_payload_corrupt", kind=kind.value)
            return None
        if not isinstance(items, list):
            return None
        try:
            return [model.model_validate(item) for item in items]
        except ValidationError:
            logger.warning("session_items_invalid", kind=kind.value)
            return None

    async def set_last_selected(self, chat_id: int, media: LastSelectedMedia) -> None:
        """Remember the last media item picked in this chat."""
        await self.set_pending(PendingKind.LAST_SELECTED, chat_id, media.model_dump(mode="json"))

    async def get_last_selected(self, chat_id: int) -> LastSelectedMedia | None:
        """Read the last media item picked in this chat."""
        raw = await self.get_pending(PendingKind.LAST_SELECTED, chat_id)
        if not isinstance(raw, dict):
            return None
        try:
            media = LastSelectedMedia.model_validate(raw)
        except ValidationError:
            return None
        if media.media_type not in ("movie", "tv"):
            return None
        return media

    # -------------------------------------------------------------------------
    # Digest marker
    # -------------------------------------------------------------------------

    async def mark_digest_sent(self, date_key: str) -> None:
        """Record that the admin digest went out on this date."""
        await self._set(self.key("digest_sent", date_key), "1", self._digest_ttl)

    async def is_digest_sent(self, date_key: str) -> bool:
        """Check whether the admin digest already went out on this date."""
        return await self._get(self.key("digest_sent", date_key)) == "1"


# =============================================================================
# Redis Backend
# =============================================================================


class RedisSessionStore(BaseSessionStore):
    """Redis-backed session store shared by all bot replicas."""

    def __init__(
        self,
        redis_url: str,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        digest_ttl_seconds: int = DEFAULT_DIGEST_TTL_SECONDS,
        client: Any = None,
    ):
        """Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            namespace: Key prefix
            ttl_seconds: Session entry lifetime
            digest_ttl_seconds: Digest marker lifetime
            client: Pre-built redis.asyncio client (tests)
        """
        super().__init__(namespace, ttl_seconds, digest_ttl_seconds)
        self._redis_url = redis_url
        self._client = client

    @property
    def client(self) -> Any:
        """Get (lazily create) the Redis client."""
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def _set(self, key: str, value: str, ttl: int) -> None:
        await self.client.set(key, value, ex=ttl)

    async def _get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def _pop(self, key: str) -> str | None:
        return await self.client.getdel(key)

    async def _delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ping(self) -> None:
        await self.client.ping()
        logger.debug("redis_session_store_ready")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# In-Memory Backend
# =============================================================================


class MemorySessionStore(BaseSessionStore):
    """Process-local session store.

    State is lost on restart and not shared between replicas.
    """

    def __init__(
        self,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        digest_ttl_seconds: int = DEFAULT_DIGEST_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize in-memory store.

        Args:
            namespace: Key prefix
            ttl_seconds: Session entry lifetime
            digest_ttl_seconds: Digest marker lifetime
            clock: Monotonic time source in seconds
        """
        super().__init__(namespace, ttl_seconds, digest_ttl_seconds)
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def _set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def _get(self, key: str) -> str | None:
        return self._live(key)

    async def _pop(self, key: str) -> str | None:
        # No await between read and delete: atomic on the event loop
        value = self._live(key)
        self._data.pop(key, None)
        return value

    async def _delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._data.clear()


# =============================================================================
# Factory Functions
# =============================================================================

_session_store: BaseSessionStore | None = None


def create_session_store(redis_url: str | None = None) -> BaseSessionStore:
    """Create a session store backend from settings.

    Production on a shared database requires Redis so that every replica
    sees the same awaiting flags, cached results and digest marker.

    Args:
        redis_url: Redis URL; falls back to settings, then to in-memory

    Returns:
        RedisSessionStore or MemorySessionStore

    Raises:
        SessionStoreConfigError: Production with DATABASE_URL but no REDIS_URL
    """
    from src.config import settings

    url = redis_url
    if url is None and settings.has_redis:
        url = settings.redis_url.get_secret_value()

    if url:
        logger.info("using_redis_session_store")
        return RedisSessionStore(
            url,
            namespace=settings.session_namespace,
            ttl_seconds=settings.session_ttl_seconds,
            digest_ttl_seconds=settings.digest_marker_ttl_seconds,
        )

    if settings.is_production and settings.has_database_url:
        raise SessionStoreConfigError(
            "REDIS_URL is required in production when DATABASE_URL is set"
        )

    logger.info("using_memory_session_store")
    return MemorySessionStore(
        namespace=settings.session_namespace,
        ttl_seconds=settings.session_ttl_seconds,
        digest_ttl_seconds=settings.digest_marker_ttl_seconds,
    )


def get_session_store() -> BaseSessionStore:
    """Get the process-wide session store."""
    global _session_store
    if _session_store is None:
        _session_store = create_session_store()
    return _session_store


def set_session_store(store: BaseSessionStore | None) -> None:
    """Replace the process-wide session store (None resets it)."""
    global _session_store
    _session_store = store


async def close_session_store() -> None:
    """Close and forget the process-wide session store."""
    global _session_store
    if _session_store is not None:
        await _session_store.close()
        _session_store = None
