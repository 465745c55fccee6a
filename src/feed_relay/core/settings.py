"""Application settings and configuration.

This module defines all configuration options for the Feed Relay service.
Settings are loaded from environment variables with sensible defaults.
"""

import socket

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-relay"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    This class defines all configuration options for the Feed Relay service.
    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Feed Relay", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./feed_relay.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Instance identity and the messaging session lease
    instance_id: str = Field(default_factory=_default_instance_id, alias="INSTANCE_ID")
    lease_resource: str = Field(default="messaging-session", alias="LEASE_RESOURCE")
    lease_ttl_seconds: int = Field(default=120, alias="LEASE_TTL_SECONDS")
    lease_min_ttl_seconds: int = Field(default=10, alias="LEASE_MIN_TTL_SECONDS")
    lease_poll_interval_seconds: float = Field(
        default=30.0,
        alias="LEASE_POLL_INTERVAL_SECONDS",
    )
    lease_backoff_max_seconds: float = Field(default=120.0, alias="LEASE_BACKOFF_MAX_SECONDS")

    # Background loops
    schedulers_enabled: bool = Field(default=True, alias="SCHEDULERS_ENABLED")
    schedule_tick_seconds: float = Field(default=60.0, alias="SCHEDULE_TICK_SECONDS")
    dispatch_interval_seconds: float = Field(default=5.0, alias="DISPATCH_INTERVAL_SECONDS")
    retry_sweep_interval_seconds: float = Field(
        default=60.0,
        alias="RETRY_SWEEP_INTERVAL_SECONDS",
    )
    task_stop_timeout_seconds: float = Field(default=10.0, alias="TASK_STOP_TIMEOUT_SECONDS")

    # Feed polling
    feed_poll_interval_seconds: float = Field(default=30.0, alias="FEED_POLL_INTERVAL_SECONDS")
    feed_default_interval_seconds: int = Field(
        default=300,
        alias="FEED_DEFAULT_INTERVAL_SECONDS",
    )
    feed_min_interval_seconds: int = Field(default=60, alias="FEED_MIN_INTERVAL_SECONDS")
    feed_retry_interval_seconds: int = Field(default=60, alias="FEED_RETRY_INTERVAL_SECONDS")
    feed_fetch_timeout_seconds: float = Field(default=15.0, alias="FEED_FETCH_TIMEOUT_SECONDS")
    feed_max_redirects: int = Field(default=5, alias="FEED_MAX_REDIRECTS")
    feed_user_agent: str = Field(default="FeedRelay/0.1", alias="FEED_USER_AGENT")
    allow_private_urls: bool = Field(default=False, alias="ALLOW_PRIVATE_URLS")

    # Schedule engine
    max_items_per_tick: int = Field(default=100, alias="MAX_ITEMS_PER_TICK")
    batch_grace_minutes: int = Field(default=8, alias="BATCH_GRACE_MINUTES")
    default_batch_times: list[str] = Field(
        default=["07:00", "15:00", "22:00"],
        alias="DEFAULT_BATCH_TIMES",
    )
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")

    # Dispatch queue
    dispatch_batch_size: int = Field(default=25, alias="DISPATCH_BATCH_SIZE")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    processing_timeout_minutes: int = Field(default=30, alias="PROCESSING_TIMEOUT_MINUTES")
    send_timeout_seconds: float = Field(default=15.0, alias="SEND_TIMEOUT_SECONDS")

    # Send pacing
    global_send_delay_seconds: float = Field(default=1.0, alias="GLOBAL_SEND_DELAY_SECONDS")
    destination_send_delay_seconds: float = Field(
        default=5.0,
        alias="DESTINATION_SEND_DELAY_SECONDS",
    )
    throttle_eviction_seconds: float = Field(default=3600.0, alias="THROTTLE_EVICTION_SECONDS")
    throttle_max_entries: int = Field(default=1000, alias="THROTTLE_MAX_ENTRIES")

    # Messaging gateway
    sender_gateway_url: str | None = Field(default=None, alias="SENDER_GATEWAY_URL")
    sender_gateway_token: str | None = Field(default=None, alias="SENDER_GATEWAY_TOKEN")
    sender_http_timeout_seconds: float = Field(
        default=10.0,
        alias="SENDER_HTTP_TIMEOUT_SECONDS",
    )

    # CORS configuration for the admin frontend
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.

        Returns:
            Database URL compatible with synchronous database drivers
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def processing_timeout_seconds(self) -> float:
        """Return the stuck-row watchdog timeout in seconds."""
        return float(self.processing_timeout_minutes * 60)


settings = Settings()
