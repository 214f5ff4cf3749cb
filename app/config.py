"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProductInfo(BaseModel):
    """Catalog metadata for one App Store product identifier."""

    period: Optional[str] = Field(default=None, pattern="^(monthly|yearly)$")
    trial_eligible: bool = True


DEFAULT_PRODUCT_CATALOG = {
    "com.entitlements.premium.monthly": ProductInfo(period="monthly", trial_eligible=True),
    "com.entitlements.premium.yearly": ProductInfo(period="yearly", trial_eligible=True),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000)

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # App Store Server API
    APPSTORE_KEY_ID: str = Field(default="")
    APPSTORE_ISSUER_ID: str = Field(default="")
    APPSTORE_BUNDLE_ID: str = Field(default="")
    APPSTORE_PRIVATE_KEY: str = Field(default="", description="PEM text of the .p8 key")
    APPSTORE_ENVIRONMENT: str = Field(default="Sandbox", pattern="^(Sandbox|Production)$")
    APPSTORE_APP_APPLE_ID: Optional[int] = Field(default=None)
    APPSTORE_ROOT_CERTIFICATES_DIR: str = Field(default="certs/apple")
    APPSTORE_ENABLE_ONLINE_CHECKS: bool = Field(default=True)
    APPSTORE_API_TIMEOUT_SECONDS: float = Field(default=10.0)
    APPSTORE_API_RETRY_BACKOFF_SECONDS: float = Field(default=0.5)
    APPSTORE_HISTORY_MAX_PAGES: int = Field(default=20)

    # Subscription status caching
    SUBSCRIPTION_CACHE_TTL_SECONDS: int = Field(default=600)  # 10 minutes
    SUBSCRIPTION_DUPLICATE_WINDOW_SECONDS: int = Field(default=300)  # 5 minutes
    SUBSCRIPTION_DATA_VERSION: str = Field(default="v2")

    # Product catalog and trial detection
    PRODUCT_CATALOG: dict[str, ProductInfo] = Field(
        default_factory=lambda: dict(DEFAULT_PRODUCT_CATALOG)
    )
    TRIAL_OFFER_TYPES: List[int] = Field(default_factory=lambda: [1])

    # Internal QA / store-review identities: email -> canned profile name
    TEST_ACCOUNTS: dict[str, str] = Field(default_factory=dict)

    # Webhooks
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = Field(default=86400 * 7)  # 7 days

    # Migration window
    LEGACY_SUBSCRIPTION_LOOKUP_ENABLED: bool = Field(default=False)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def appstore_private_key_bytes(self) -> bytes:
        """Private key as bytes, with escaped newlines restored."""
        return self.APPSTORE_PRIVATE_KEY.replace("\\n", "\n").encode("utf-8")

    @property
    def appstore_configured(self) -> bool:
        """Check whether App Store API credentials are present."""
        return all((
            self.APPSTORE_KEY_ID,
            self.APPSTORE_ISSUER_ID,
            self.APPSTORE_BUNDLE_ID,
            self.APPSTORE_PRIVATE_KEY,
        ))

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @field_validator("TEST_ACCOUNTS")
    @classmethod
    def normalize_test_account_emails(cls, v: dict[str, str]) -> dict[str, str]:
        """Match test identities case-insensitively."""
        return {email.strip().lower(): profile for email, profile in v.items()}


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
