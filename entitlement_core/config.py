"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

import json
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


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
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Caller identity (tokens are issued by the auth provider)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")

    # Service-to-service key for campaign control and internal push
    INTERNAL_API_KEY: str = Field(default="")

    # Apple receipt verification
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_PRODUCTION_VERIFY_URL: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt"
    )
    APPLE_SANDBOX_VERIFY_URL: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # Google service account (Play publisher API + FCM)
    GOOGLE_PLAY_SERVICE_ACCOUNT_JSON: str = Field(default="")
    GOOGLE_TOKEN_URL: str = Field(default="https://oauth2.googleapis.com/token")
    GOOGLE_PLAY_PUBLISHER_BASE_URL: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3"
    )
    FCM_BASE_URL: str = Field(default="https://fcm.googleapis.com/v1")

    # Pub/Sub push endpoint shared token (optional)
    PUBSUB_VERIFICATION_TOKEN: Optional[str] = Field(default=None)

    # Entitlements
    FREE_PLAN: str = Field(default="free")

    # Campaign dispatch
    DISPATCH_BATCH_SIZE: int = Field(default=100, ge=1)
    DISPATCH_MAX_BATCHES_PER_RUN: int = Field(default=30, ge=1)
    DISPATCH_BATCH_PAUSE_SECONDS: float = Field(default=0.05, ge=0)
    CAMPAIGN_STALL_MINUTES: int = Field(default=10, ge=1)
    CONTINUATION_WORKER_ENABLED: bool = Field(default=True)

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0)

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
    def service_account(self) -> Optional[dict]:
        """Parsed Google service-account JSON, or None when not configured."""
        if not self.GOOGLE_PLAY_SERVICE_ACCOUNT_JSON:
            return None
        return json.loads(self.GOOGLE_PLAY_SERVICE_ACCOUNT_JSON)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
