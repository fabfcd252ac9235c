"""Configuration management using pydantic-settings.

All environment variables are loaded and validated here.
Sensitive data (tokens, secrets) are marked as sensitive to prevent logging.
"""

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All sensitive fields use SecretStr to prevent accidental logging.
    Required fields will raise ValidationError if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Required: Telegram Bot Configuration
    telegram_bot_token: SecretStr = Field(
        ...,
        description="Telegram bot token from @BotFather",
    )

    # Required: Security (shared with the web app, decrypts per-user API tokens)
    services_secret_key: SecretStr = Field(
        ...,
        description="Secret the web app uses to encrypt per-user API tokens",
    )

    services_secret_key_version: str = Field(
        default="1",
        description="Version tag written into payloads sealed with the current key",
    )

    services_secret_key_previous: SecretStr | None = Field(
        default=None,
        description="Previous secret, still accepted for decryption during key rotation",
    )

    services_secret_key_previous_version: str = Field(
        default="legacy",
        description="Version tag of the previous secret",
    )

    # Database Configuration (Postgres preferred, SQLite fallback)
    database_url: SecretStr | None = Field(
        default=None,
        description="PostgreSQL connection URL shared with the web app",
    )

    sqlite_path: str = Field(
        default="data/bot.db",
        description="SQLite database path used when DATABASE_URL is not set",
    )

    # Session store (Redis preferred, in-memory fallback)
    redis_url: SecretStr | None = Field(
        default=None,
        description="Redis URL for conversational session state (e.g., redis://redis:6379/0)",
    )

    session_namespace: str = Field(
        default="lemedia:bot",
        description="Key prefix for session entries",
    )

    session_ttl_seconds: int = Field(
        default=60 * 20,
        description="Lifetime of conversational session entries",
        ge=1,
    )

    digest_marker_ttl_seconds: int = Field(
        default=60 * 60 * 36,
        description="Lifetime of the daily digest sent marker",
        ge=1,
    )

    # LeMedia web application
    internal_app_base_url: str = Field(
        default="http://lemedia-web:3010",
        description="Base URL the bot uses to call the LeMedia API",
    )

    app_base_url: str = Field(
        default="",
        description="Public LeMedia URL used for links in messages (optional)",
    )

    api_timeout: float = Field(
        default=15.0,
        description="Timeout in seconds for LeMedia API calls",
        gt=0,
    )

    api_max_retries: int = Field(
        default=2,
        description="Extra attempts for transient LeMedia API failures in chat flows",
        ge=0,
    )

    # Account linking
    link_code_ttl_minutes: int = Field(
        default=10,
        description="Lifetime of a /link code",
        ge=1,
    )

    # Scheduler
    status_poll_interval_seconds: int = Field(
        default=60,
        description="Interval of the request status and watch alert pass",
        ge=1,
    )

    digest_poll_interval_seconds: int = Field(
        default=300,
        description="Interval of the admin digest check",
        ge=1,
    )

    digest_hour: int = Field(
        default=9,
        description="Hour of day the admin digest is sent",
        ge=0,
        le=23,
    )

    digest_window_minutes: int = Field(
        default=10,
        description="Minutes after digest_hour during which the digest may be sent",
        ge=1,
        le=60,
    )

    digest_timezone: str = Field(
        default="UTC",
        description="Timezone used for the digest hour and calendar date",
    )

    digest_failure_limit: int = Field(
        default=5,
        description="Number of job failure groups included in the digest",
        ge=1,
    )

    telegram_send_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for scheduler message delivery",
        gt=0,
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    environment: str = Field(
        default="production",
        description="Environment name (development, production)",
    )

    webhook_url: str | None = Field(
        default=None,
        description="Webhook URL for Telegram (polling is used when unset)",
    )

    webhook_path: str = Field(
        default="/webhook",
        description="Webhook path",
    )

    port: int = Field(
        default=8000,
        description="Port for webhook server",
        ge=1,
        le=65535,
    )

    health_port: int = Field(
        default=8080,
        description="Port for health check server (separate from webhook)",
        ge=1,
        le=65535,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is development or production."""
        allowed = {"development", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @field_validator("internal_app_base_url", "app_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Drop trailing slashes so paths can be appended directly."""
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def has_database_url(self) -> bool:
        """Check if external database (Postgres) is configured."""
        return self.database_url is not None

    @property
    def has_redis(self) -> bool:
        """Check if a shared session store is configured."""
        return bool(self.redis_url and self.redis_url.get_secret_value())

    def get_safe_dict(self) -> dict[str, str | int | float | None]:
        """Get configuration as dict with sensitive values masked.

        Returns:
            Dictionary with SecretStr values shown as '***'
        """
        result = {}
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)

            # Mask SecretStr values
            if isinstance(value, SecretStr):
                result[field_name] = "***"
            elif value is None:
                result[field_name] = None
            else:
                result[field_name] = value

        return result


# Global settings instance
settings = Settings()
