"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
All settings are validated at startup - invalid values will raise an error.

Production Mode:
    When app_env="production", additional validations apply:
    - state_backend must be "redis" and redis_url must be set
    - log_format must be "json"
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log renderer (json for production, console for local runs)",
    )

    # -------------------------------------------------------------------------
    # State Persistence
    # -------------------------------------------------------------------------
    state_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where state snapshots are persisted",
    )
    redis_url: str | None = Field(default=None, description="Redis connection URL")
    state_key_prefix: str = Field(
        default="stackplan:state",
        description="Prefix for state keys; snapshots are namespaced by unit name",
    )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    max_concurrency: int = Field(
        default=1,
        ge=1,
        description="Maximum provider operations in flight per unit (1 = strict plan order)",
    )
    replace_strategy: Literal["delete_before_create", "create_before_destroy"] = Field(
        default="delete_before_create",
        description="Order of the two provider calls used to replace a resource",
    )

    # -------------------------------------------------------------------------
    # Provider Retry Policy
    # -------------------------------------------------------------------------
    provider_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per provider operation before it is reported as failed",
    )
    provider_backoff_multiplier: float = Field(
        default=1.0,
        ge=0,
        description="Multiplier for exponential backoff between attempts",
    )
    provider_backoff_min_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Lower bound for the backoff wait",
    )
    provider_backoff_max_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for the backoff wait",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "Settings":
        """Backoff bounds must be ordered."""
        if self.provider_backoff_min_seconds > self.provider_backoff_max_seconds:
            raise ValueError(
                "provider_backoff_min_seconds cannot exceed provider_backoff_max_seconds"
            )
        return self

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate that production settings are safe for shared state."""
        if self.app_env == "production":
            errors = []

            # In-memory state cannot guard against concurrent runs across processes
            if self.state_backend != "redis":
                errors.append("state_backend must be 'redis' in production")

            if self.state_backend == "redis" and not self.redis_url:
                errors.append("redis_url must be set when state_backend is 'redis'")

            if self.log_format != "json":
                errors.append("log_format must be 'json' in production")

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
