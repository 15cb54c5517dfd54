from __future__ import annotations

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = Field(default="zira-api")
    ENV: str = Field(default="dev")
    DEBUG: bool = Field(default=True)

    API_V1_PREFIX: str = Field(default="/api/v1")
    CORS_ORIGINS: list[str] | str = Field(default_factory=lambda: ["*"])  # allow list or comma string
    LOG_LEVEL: str = Field(default="INFO")
    ACCOUNT_HEADER: str = Field(default="X-Account-ID")

    DATABASE_URL: str | None = Field(default=None)
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_TIMEOUT: float = Field(default=30.0)
    DB_ECHO: bool = Field(default=False)

    REDIS_URL: str | None = Field(default=None)
    REDIS_MAX_CONNECTIONS: int = Field(default=100)
    REDIS_SOCKET_TIMEOUT: float | None = Field(default=None)

    # Credential encryption
    MPESA_ENCRYPTION_KEY: str | None = Field(default=None)

    # Payment initiation rules
    MPESA_COUNTRY_CODE: str = Field(default="254")
    MPESA_MIN_AMOUNT: Decimal = Field(default=Decimal("1"))
    MPESA_MAX_AMOUNT: Decimal = Field(default=Decimal("1000000"))

    # Status polling
    MPESA_POLL_INTERVAL_SECONDS: float = Field(default=5.0)
    MPESA_POLL_MAX_ATTEMPTS: int = Field(default=60)
    MPESA_SERVER_POLLING: bool = Field(default=True)

    # Draft edits expire after 30 minutes
    MPESA_DRAFT_TTL_SECONDS: int = Field(default=1800)

    MPESA_TOKEN_REFRESH_MARGIN_SECONDS: int = Field(default=60)
    MPESA_HTTP_TIMEOUT_SECONDS: float = Field(default=30.0)

    MPESA_CALLBACK_URL: str | None = Field(default=None)
    KOPOKOPO_CALLBACK_URL: str | None = Field(default=None)

    # Platform default credential set (shared fallback merchant account)
    MPESA_PLATFORM_CONSUMER_KEY: str | None = Field(default=None)
    MPESA_PLATFORM_CONSUMER_SECRET: str | None = Field(default=None)
    MPESA_PLATFORM_SHORTCODE: str | None = Field(default=None)
    MPESA_PLATFORM_PASSKEY: str | None = Field(default=None)
    MPESA_PLATFORM_ENVIRONMENT: str = Field(default="sandbox")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ZIRA_",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        value = self.CORS_ORIGINS
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            if value.strip() == "*":
                return ["*"]
            # split on commas and strip
            return [p.strip() for p in value.split(",") if p.strip()]
        return ["*"]

    @property
    def platform_credentials_configured(self) -> bool:
        return all(
            (
                self.MPESA_PLATFORM_CONSUMER_KEY,
                self.MPESA_PLATFORM_CONSUMER_SECRET,
                self.MPESA_PLATFORM_SHORTCODE,
                self.MPESA_PLATFORM_PASSKEY,
            )
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
        # normalize CORS to list for starlette
        _settings.CORS_ORIGINS = _settings.cors_origins_list
    return _settings
