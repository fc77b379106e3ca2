from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    _project_root = Path(__file__).parent.parent

    model_config = SettingsConfigDict(
        env_file=str(_project_root / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment / mode
    environment: str = Field(
        "development",
        alias="APP_ENV",
        description="Runtime environment, e.g. development / production",
    )
    cors_allow_origins: str = Field(
        "http://localhost:3000",
        alias="CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
    )

    # Storage
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL, e.g. 'redis://redis:6379/0'",
    )
    database_url: str = Field(
        "sqlite+pysqlite:///./chatcache.db",
        alias="DATABASE_URL",
        description="SQLAlchemy URL of the durable thread/message store",
    )
    auto_create_tables: bool = Field(
        True,
        alias="AUTO_CREATE_TABLES",
        description="Create missing tables on startup",
    )

    # Logging
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: Optional[str] = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Europe/Berlin'. Defaults to system local time.",
    )
    log_dir: str = Field(
        "logs",
        alias="LOG_DIR",
        description="Directory for the daily rotating application log files",
    )

    # Identity
    secret_key: str = Field(
        "please-change-me",
        alias="SECRET_KEY",
        description="Secret used to derive ip / user-agent / fingerprint hashes; override in production",
    )
    auth_jwt_secret: str = Field(
        "please-change-me",
        alias="AUTH_JWT_SECRET",
        description="Shared secret used to verify access tokens issued by the auth provider",
    )
    auth_jwt_algorithm: str = Field("HS256", alias="AUTH_JWT_ALGORITHM")

    # Anonymous sessions
    session_ttl_seconds: int = Field(
        24 * 60 * 60,
        alias="SESSION_TTL_SECONDS",
        description="Sliding TTL of an anonymous session; refreshed on every read",
        ge=60,
    )
    max_messages_per_session: int = Field(
        10,
        alias="MAX_MESSAGES_PER_SESSION",
        description="Message budget of one anonymous session",
        ge=1,
    )
    session_cookie_name: str = Field("anon_session_id", alias="SESSION_COOKIE_NAME")
    session_data_ttl_seconds: int = Field(
        1800,
        alias="SESSION_DATA_TTL_SECONDS",
        description="Default TTL of session-scoped transient keys",
        ge=1,
    )
    claim_record_ttl_seconds: int = Field(
        7 * 24 * 60 * 60,
        alias="CLAIM_RECORD_TTL_SECONDS",
        description="How long a finished claim is remembered for idempotent retries",
        ge=60,
    )
    lease_ttl_seconds: int = Field(
        30,
        alias="LEASE_TTL_SECONDS",
        description="TTL of 'operation in progress' markers (claims, clones)",
        ge=1,
    )

    # Conversation context cache
    context_ttl_seconds: int = Field(
        7200,
        alias="CONTEXT_TTL_SECONDS",
        description="TTL of a cached conversation context",
        ge=1,
    )
    context_max_messages: int = Field(
        10,
        alias="CONTEXT_MAX_MESSAGES",
        description="Rolling window size of a cached conversation context",
        ge=1,
    )
    context_max_tokens: int = Field(8000, alias="CONTEXT_MAX_TOKENS", ge=1)
    default_model: str = Field("gemini-2.0-flash", alias="DEFAULT_MODEL")
    system_prompt: str = Field(
        "You are a helpful AI assistant. You are knowledgeable, accurate, "
        "and aim to provide useful responses.",
        alias="SYSTEM_PROMPT",
    )

    # Share links
    share_token_ttl_seconds: int = Field(86400, alias="SHARE_TOKEN_TTL_SECONDS", ge=60)

    # Rate limits: (max requests, window seconds)
    anonymous_burst_max_requests: int = Field(
        5,
        alias="ANONYMOUS_BURST_MAX_REQUESTS",
        description="Chat turns one anonymous session may send per burst window",
    )
    anonymous_burst_window_seconds: int = Field(60, alias="ANONYMOUS_BURST_WINDOW_SECONDS", ge=1)
    anonymous_ip_second_limit: int = Field(1, alias="ANONYMOUS_IP_SECOND_LIMIT")
    anonymous_ip_second_window_seconds: int = Field(2, alias="ANONYMOUS_IP_SECOND_WINDOW_SECONDS", ge=1)
    anonymous_ip_minute_limit: int = Field(5, alias="ANONYMOUS_IP_MINUTE_LIMIT")
    anonymous_ip_minute_window_seconds: int = Field(60, alias="ANONYMOUS_IP_MINUTE_WINDOW_SECONDS", ge=1)
    user_max_requests: int = Field(
        30,
        alias="USER_MAX_REQUESTS",
        description="Chat turns an authenticated user may send per window",
    )
    user_window_seconds: int = Field(60, alias="USER_WINDOW_SECONDS", ge=1)
    context_api_max_requests: int = Field(30, alias="CONTEXT_API_MAX_REQUESTS")
    context_batch_max_requests: int = Field(10, alias="CONTEXT_BATCH_MAX_REQUESTS")

    def get_cors_origins(self) -> List[str]:
        """
        Return configured CORS origins; whitespace and empty entries are dropped.
        """
        if not self.cors_allow_origins:
            return []
        return [
            item.strip()
            for item in self.cors_allow_origins.split(",")
            if item.strip()
        ]

    def session_rate_windows(self) -> List[int]:
        """
        Window sizes under which per-session rate counters are kept.
        """
        return [self.anonymous_burst_window_seconds]


settings = Settings()  # Reads from environment if available


__all__ = ["Settings", "settings"]
