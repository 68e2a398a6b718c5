from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = Field(default="commerce-api")
    ENV: str = Field(default="dev")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")

    DATABASE_URL: str | None = Field(default=None)
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_TIMEOUT: float = Field(default=30.0)
    DB_ECHO: bool = Field(default=False)

    # Vault key: 64 hex chars (256 bits) or a passphrase run through PBKDF2
    PAYMENT_ENCRYPTION_KEY: SecretStr | None = Field(default=None)

    GATEWAY_TIMEOUT_SECONDS: float = Field(default=5.0)

    REFUND_RATE_LIMIT_MAX_REQUESTS: int = Field(default=100)
    REFUND_RATE_LIMIT_WINDOW_SECONDS: float = Field(default=3600.0)
    REFUND_RATE_LIMIT_MAX_TENANTS: int = Field(default=10000)
    REFUND_HISTORY_SIZE: int = Field(default=1000)
    REFUND_DEGRADED_THRESHOLD: int = Field(default=500)

    DEFAULT_FEE_TIER: str = Field(default="starter")
    AUTHORIZATION_TTL_DAYS: int = Field(default=7)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="COMMERCE_",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def async_database_url(self) -> str | None:
        value = self.DATABASE_URL
        if not value:
            return None
        if value.startswith("postgresql://"):
            return value.replace("postgresql://", "postgresql+asyncpg://", 1)
        if value.startswith("sqlite://"):
            return value.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return value


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
