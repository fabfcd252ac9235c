"""Shared fixtures.

Settings are read at import time, so the environment is prepared before any
``src`` module is imported.
"""

import os

os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")
os.environ.setdefault("SERVICES_SECRET_KEY", "test-services-secret")
os.environ["ENVIRONMENT"] = "development"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)

from pathlib import Path  # noqa: E402
from unittest.mock import AsyncMock, MagicMock, patch  # noqa: E402

import pytest  # noqa: E402
from telegram import CallbackQuery, Chat, Message, Update, User  # noqa: E402
from telegram.ext import ContextTypes  # noqa: E402

from src.bot.common import LinkedContext  # noqa: E402
from src.security import CredentialVault  # noqa: E402
from src.session import MemorySessionStore, set_session_store  # noqa: E402
from src.user.storage import SQLiteStorage  # noqa: E402

TELEGRAM_ID = 12345


# =============================================================================
# Storage and session fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary SQLite database path."""
    return tmp_path / "bot.db"


@pytest.fixture
async def storage(db_path: Path) -> SQLiteStorage:
    """Connected SQLite storage."""
    storage = SQLiteStorage(db_path)
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def session_store() -> MemorySessionStore:
    """In-memory session store installed as the process-wide store."""
    store = MemorySessionStore()
    set_session_store(store)
    yield store
    set_session_store(None)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault.from_secrets("test-services-secret")


@pytest.fixture
def storage_factory(db_path: Path):
    """Patchable replacement for get_storage() bound to the temp database."""
    from contextlib import asynccontextmanager

    @asynccontextmanager
    async def _factory():
        storage = SQLiteStorage(db_path)
        async with storage:
            yield storage

    return _factory


# =============================================================================
# Telegram fixtures
# =============================================================================


@pytest.fixture
def linked() -> LinkedContext:
    return LinkedContext(telegram_id=str(TELEGRAM_ID), user_id=7, api_token="plain-token")


@pytest.fixture
def mock_user():
    """Create a mock Telegram user."""
    user = MagicMock(spec=User)
    user.id = TELEGRAM_ID
    user.username = "testuser"
    user.first_name = "Test"
    return user


@pytest.fixture
def mock_message(mock_user):
    """Create a mock Telegram message."""
    message = MagicMock(spec=Message)
    message.from_user = mock_user
    message.chat = MagicMock(spec=Chat)
    message.chat.id = TELEGRAM_ID
    message.text = ""
    message.reply_text = AsyncMock()
    return message


@pytest.fixture
def mock_update(mock_user, mock_message):
    """Create a mock Telegram update for a private chat."""
    update = MagicMock(spec=Update)
    update.effective_user = mock_user
    update.effective_chat = MagicMock(spec=Chat)
    update.effective_chat.id = TELEGRAM_ID
    update.message = mock_message
    update.effective_message = mock_message
    return update


@pytest.fixture
def mock_callback_query(mock_user, mock_message):
    """Create a mock callback query."""
    query = MagicMock(spec=CallbackQuery)
    query.from_user = mock_user
    query.data = ""
    query.message = mock_message
    query.answer = AsyncMock()
    query.edit_message_text = AsyncMock()
    return query


@pytest.fixture
def callback_update(mock_update, mock_callback_query):
    """Mock update carrying a callback query."""
    mock_update.callback_query = mock_callback_query
    return mock_update


@pytest.fixture
def mock_context():
    """Create a mock context."""
    context = MagicMock(spec=ContextTypes.DEFAULT_TYPE)
    context.args = []
    return context


@pytest.fixture
def make_api():
    """Build a fake LeMediaClient usable as ``async with open_api(...) as api``."""

    def _make(**methods):
        api = MagicMock()
        for name, value in methods.items():
            if isinstance(value, BaseException):
                setattr(api, name, AsyncMock(side_effect=value))
            else:
                setattr(api, name, AsyncMock(return_value=value))
        api.__aenter__ = AsyncMock(return_value=api)
        api.__aexit__ = AsyncMock(return_value=None)
        return api

    return _make


@pytest.fixture
def patch_linked(linked):
    """Make every flow module resolve the test user as linked."""
    modules = ("request", "watch", "trending", "services", "natural", "library")
    patches = [
        patch(f"src.bot.{name}.linked_or_reply", AsyncMock(return_value=linked))
        for name in modules
    ]
    for p in patches:
        p.start()
    yield linked
    for p in patches:
        p.stop()
