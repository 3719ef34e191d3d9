"""Application settings using Pydantic for environment-based configuration."""
import base64
import binascii
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum webhook signature age (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Ledger database URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL used for the sweeper lock"
    )
    sweeper_lock_timeout: int = Field(default=300, description="Sweeper lock timeout (seconds)")

    # Application Configuration
    app_name: str = Field(default="escrow-market", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    user_id_header: str = Field(default="X-User-Id", description="Resolved caller id header")
    user_role_header: str = Field(default="X-User-Role", description="Resolved caller role header")

    # Secure payloads
    vault_master_key: str = Field(
        ..., description="Base64-encoded 32-byte key wrapping per-payload data keys"
    )

    # Escrow
    platform_fee_bps: int = Field(default=500, description="Platform fee in basis points")
    buyer_verification_window_hours: int = Field(
        default=24, description="Hours a paid order waits for buyer verification"
    )
    dispute_window_hours: int = Field(
        default=24, description="Hours a delivered order stays open to disputes"
    )
    payout_max_cents: int = Field(default=1_000_000, description="Largest single payout request")

    # Expiry sweeper
    sweep_interval_seconds: float = Field(default=600.0, description="Seconds between sweeps")
    sweeper_enabled: bool = Field(default=True, description="Run the sweeper inside the API")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("vault_master_key")
    @classmethod
    def validate_master_key(cls, v: str) -> str:
        """Master key must decode to exactly 32 bytes (AES-256)."""
        try:
            raw = base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("vault_master_key must be base64 encoded")
        if len(raw) != 32:
            raise ValueError("vault_master_key must decode to 32 bytes")
        return v

    @field_validator("platform_fee_bps")
    @classmethod
    def validate_fee(cls, v: int) -> int:
        """Fee must stay within 0..10000 basis points."""
        if not 0 <= v <= 10_000:
            raise ValueError("platform_fee_bps must be between 0 and 10000")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def master_key_bytes(self) -> bytes:
        return base64.b64decode(self.vault_master_key)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
