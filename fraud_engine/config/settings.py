"""
Fraud Engine - Configuration Settings

Centralized configuration using Pydantic Settings for type-safe
environment variable handling with validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Example: STORE_BACKEND=redis will set store_backend to "redis"
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application Settings
    # =========================================================================
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    app_debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # =========================================================================
    # Storage Backend
    # =========================================================================
    store_backend: Literal["memory", "redis", "postgres"] = Field(
        default="memory",
        description="Key-value store used for fingerprints, usage, rules and assessments"
    )

    # =========================================================================
    # Redis Configuration
    # =========================================================================
    redis_host: str = Field(
        default="localhost",
        description="Redis server hostname"
    )
    redis_port: int = Field(
        default=6379,
        description="Redis server port"
    )
    redis_db: int = Field(
        default=0,
        description="Redis database number"
    )
    redis_key_prefix: str = Field(
        default="fraud_engine:",
        description="Prefix for all Redis keys to avoid conflicts"
    )
    redis_password: str | None = Field(
        default=None,
        description="Redis password (optional)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # =========================================================================
    # PostgreSQL Configuration
    # =========================================================================
    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL server hostname"
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL server port"
    )
    postgres_db: str = Field(
        default="fraud_engine",
        description="PostgreSQL database name"
    )
    postgres_user: str = Field(
        default="fraud_user",
        description="PostgreSQL username"
    )
    postgres_password: str = Field(
        default="",
        description="PostgreSQL password (set via POSTGRES_PASSWORD env var)"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def postgres_url(self) -> str:
        """Construct PostgreSQL connection URL for asyncpg."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================================================================
    # API Configuration
    # =========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server bind address"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # =========================================================================
    # Security / Access Control
    # =========================================================================
    api_token: str | None = Field(
        default=None,
        description="API token for assessment endpoints (optional)"
    )
    admin_token: str | None = Field(
        default=None,
        description="Admin token for rule CRUD, blacklisting and review endpoints (optional)"
    )
    metrics_token: str | None = Field(
        default=None,
        description="Token required to access /metrics (optional)"
    )
    fingerprint_hash_key: str = Field(
        default="development-fingerprint-key",
        description="Secret key for HMAC hashing of payment and device signals"
    )
    cors_allow_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins"
    )

    # =========================================================================
    # Metrics Configuration
    # =========================================================================
    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics endpoint"
    )
    metrics_external_enabled: bool = Field(
        default=False,
        description="Enable standalone metrics server (binds separate port)"
    )
    metrics_port: int = Field(
        default=9100,
        description="Prometheus metrics port"
    )

    # =========================================================================
    # Fingerprint Registry
    # =========================================================================
    shared_instrument_penalty: int = Field(
        default=25,
        ge=0,
        le=100,
        description="Risk score added each time a shared fingerprint is seen again"
    )
    cas_max_retries: int = Field(
        default=5,
        ge=1,
        description="Optimistic write attempts before ConcurrentModification surfaces"
    )

    # =========================================================================
    # Retention Windows
    # =========================================================================
    usage_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days of usage records kept in the ledger"
    )
    assessment_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days of stored assessments kept for audit"
    )
    pattern_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days of detected risk patterns kept for dashboards"
    )
    assessment_history_limit: int = Field(
        default=1000,
        ge=1,
        description="Max assessments returned by a history query"
    )

    # =========================================================================
    # Recommendation Thresholds (0-100 risk score)
    # =========================================================================
    block_score_threshold: float = Field(
        default=80.0,
        ge=0.0,
        le=100.0,
        description="Overall risk score at or above which the recommendation is block"
    )
    review_score_threshold: float = Field(
        default=40.0,
        ge=0.0,
        le=100.0,
        description="Overall risk score at or above which the recommendation is review"
    )

    # =========================================================================
    # Rules and Transactions
    # =========================================================================
    rules_path: str | None = Field(
        default=None,
        description="Optional YAML file with the fraud rule set loaded at startup"
    )
    default_currency: str = Field(
        default="NOK",
        description="Currency recorded when a usage event does not carry one"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cors_allow_origins_list(self) -> list[str]:
        """Return CORS origins as a list."""
        if not self.cors_allow_origins:
            return []
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        """Review threshold must sit below the block threshold."""
        if self.review_score_threshold >= self.block_score_threshold:
            raise ValueError(
                f"review_score_threshold ({self.review_score_threshold}) "
                f"must be less than block_score_threshold ({self.block_score_threshold})"
            )
        return self

    @model_validator(mode="after")
    def _validate_production_security(self) -> "Settings":
        """Enforce required security settings in production."""
        if self.app_env == "production":
            missing: list[str] = []
            if not self.api_token:
                missing.append("API_TOKEN")
            if not self.admin_token:
                missing.append("ADMIN_TOKEN")
            if not self.metrics_token:
                missing.append("METRICS_TOKEN")
            if self.fingerprint_hash_key == "development-fingerprint-key":
                missing.append("FINGERPRINT_HASH_KEY")
            if missing:
                raise ValueError(
                    "Missing required settings for production: "
                    + ", ".join(missing)
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment on every call.
    """
    return Settings()


# Singleton settings instance for easy import
settings = get_settings()
