"""Tests for settings helpers."""

from unittest.mock import AsyncMock, patch

import pytest
from pydantic import SecretStr

from src.bot import main as bot_main
from src.config import settings


class TestSafeDict:
    def test_secrets_are_masked(self):
        with patch.object(settings, "redis_url", SecretStr("redis://:hunter2@redis:6379/0")):
            safe = settings.get_safe_dict()

        assert safe["telegram_bot_token"] == "***"
        assert safe["services_secret_key"] == "***"
        assert safe["redis_url"] == "***"
        assert safe["database_url"] is None
        assert safe["digest_hour"] == settings.digest_hour

    def test_has_redis_ignores_empty_url(self):
        with patch.object(settings, "redis_url", SecretStr("")):
            assert settings.has_redis is False


class TestStartup:
    @pytest.mark.asyncio
    async def test_startup_logs_masked_config(self):
        with (
            patch.object(bot_main, "logger") as logger,
            patch.object(bot_main, "prepare_state", AsyncMock()),
            patch.object(bot_main, "create_application"),
            patch.object(bot_main, "run_polling", AsyncMock()),
        ):
            await bot_main.main_async()

        starting = next(c for c in logger.info.call_args_list if c[0][0] == "bot_starting")
        assert starting.kwargs["config"]["telegram_bot_token"] == "***"
