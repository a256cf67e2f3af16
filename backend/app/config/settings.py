"""
Application Settings for the Membership Billing backend

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The database is either given explicitly (DATABASE_URL) or derived from
    the hosted Supabase project (SUPABASE_URL + SUPABASE_PASSWORD).
    """

    # Supabase Configuration
    supabase_url: Optional[str] = None
    supabase_password: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_version: str = "2024-12-18.acacia"

    # Membership Configuration
    default_currency: str = "DKK"

    # Admin endpoints (catalog sync, gift codes, operator queue)
    admin_api_key: Optional[str] = None

    # Purchase confirmation polling (webhook may lag behind the redirect)
    confirmation_wait_seconds: float = 4.0
    confirmation_poll_interval_seconds: float = 0.5

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_payment_config(self) -> "Settings":
        """Normalize currency and require Stripe secrets in production."""
        self.default_currency = self.default_currency.upper()

        if self.is_production:
            missing = [
                name for name, value in (
                    ("STRIPE_SECRET_KEY", self.stripe_secret_key),
                    ("STRIPE_WEBHOOK_SECRET", self.stripe_webhook_secret),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required when ENVIRONMENT=production"
                )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
