"""Conversational session state.

This module provides:
- TTL-bound awaiting flags and pending payloads keyed by chat identity
- Redis backend for multi-replica deployments, in-memory fallback
- The daily digest sent marker

Usage:
    from src.session import AwaitingKind, get_session_store

    store = get_session_store()
    await store.set_awaiting(AwaitingKind.REQUEST_QUERY, telegram_id)
"""

from src.session.store import (
    AwaitingKind,
    BaseSessionStore,
    LastSelectedMedia,
    MemorySessionStore,
    PendingKind,
    RedisSessionStore,
    SessionStoreConfigError,
    close_session_store,
    get_session_store,
    set_session_store,
)

__all__ = [
    "AwaitingKind",
    "BaseSessionStore",
    "LastSelectedMedia",
    "MemorySessionStore",
    "PendingKind",
    "RedisSessionStore",
    "SessionStoreConfigError",
    "close_session_store",
    "get_session_store",
    "set_session_store",
]
