"""
Application Settings for Signatura Billing

Centralized configuration using Pydantic Settings with .env support.
Gateway credentials are optional at load time and checked by the
adapters right before they are needed.
"""

from functools import lru_cache
from typing import Any, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    SUBSCRIPTION_ENABLED is the global kill switch:
    - true: tier limits and feature gates are enforced
    - anything else: every check is permissive, usage is still tracked
    """

    # Subscription enforcement
    subscription_enabled: bool = False
    grace_period_days: int = 3

    # Grow (Meshulam) payment gateway
    grow_api_url: Optional[str] = None
    grow_user_id: Optional[str] = None
    grow_webhook_key: Optional[str] = None

    # Grow page codes, one per tier x billing period
    grow_page_code_momentum_monthly: Optional[str] = None
    grow_page_code_momentum_quarterly: Optional[str] = None
    grow_page_code_momentum_yearly: Optional[str] = None
    grow_page_code_accelerate_monthly: Optional[str] = None
    grow_page_code_accelerate_quarterly: Optional[str] = None
    grow_page_code_accelerate_yearly: Optional[str] = None
    grow_page_code_elite_monthly: Optional[str] = None
    grow_page_code_elite_quarterly: Optional[str] = None
    grow_page_code_elite_yearly: Optional[str] = None

    # Morning (Green Invoice) invoicing
    morning_api_url: Optional[str] = None
    morning_api_key: Optional[str] = None
    morning_api_secret: Optional[str] = None

    # Scheduled jobs
    cron_secret: Optional[str] = None

    # Public origin used for checkout callback URLs
    app_url: str = "http://localhost:3000"

    # Supabase Auth (JWT verification)
    supabase_url: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None

    # Runtime
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Browser origins allowed to call the API
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Outbound HTTP / Retry Configuration
    http_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Subscription store (asyncpg via SQLModel)
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

    @field_validator("subscription_enabled", mode="before")
    @classmethod
    def parse_kill_switch(cls, value: Any) -> bool:
        """Only the literal string 'true' turns enforcement on."""
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        return str(value).strip().lower() == "true"

    def grow_page_code(self, tier: str, billing_period: str) -> Optional[str]:
        """Look up the Grow page code for a tier/billing period pair."""
        return getattr(self, f"grow_page_code_{tier}_{billing_period}", None)

    def missing_grow_keys(self) -> list[str]:
        """Environment variable names of unset Grow configuration."""
        names = ["grow_api_url", "grow_user_id", "grow_webhook_key"]
        names += [
            name for name in type(self).model_fields
            if name.startswith("grow_page_code_")
        ]
        return [name.upper() for name in names if not getattr(self, name)]


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()

# Module-level instance for import-time configuration (logging, CORS)
settings = get_settings()
