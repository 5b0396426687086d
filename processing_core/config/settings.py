"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Webhook provider secrets (a provider without a secret is rejected)
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret (whsec_...)"
    )
    stripe_signature_tolerance: int = Field(
        default=300, description="Max age of a Stripe signature timestamp (seconds)"
    )
    paystack_secret_key: Optional[str] = Field(
        default=None, description="Paystack secret key used for HMAC-SHA512 signatures"
    )
    flutterwave_webhook_hash: Optional[str] = Field(
        default=None, description="Flutterwave verif-hash shared secret"
    )

    # Event Ledger
    webhook_max_replays: int = Field(
        default=10,
        description="Automatic replays of a failed ledger entry after its first claim, before escalation",
    )
    webhook_handler_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single webhook event handler"
    )

    # Work Queue
    queue_default_max_attempts: int = Field(default=3, description="Default job max attempts")
    queue_batch_limit: int = Field(default=20, description="Default claim batch size")
    queue_max_batch_limit: int = Field(default=100, description="Upper bound on claim batch size")
    queue_normal_priority_share: float = Field(
        default=0.2, description="Share of each batch reserved for normal-priority jobs"
    )
    queue_time_budget_seconds: float = Field(
        default=240.0, description="Time budget for one drain of the queue"
    )
    queue_retry_base_delay_seconds: float = Field(
        default=30.0, description="Base delay for job retry backoff (seconds)"
    )
    queue_retry_max_delay_seconds: float = Field(
        default=3600.0, description="Cap on job retry backoff (seconds)"
    )
    queue_poll_interval_seconds: float = Field(
        default=5.0, description="Idle polling interval for the job poller worker"
    )
    job_handler_timeout_seconds: float = Field(
        default=120.0, description="Timeout for a single job handler invocation"
    )

    # Stale claim sweeper
    stale_claim_timeout_seconds: int = Field(
        default=900, description="Lease after which a processing claim is considered stale"
    )
    sweeper_interval_seconds: float = Field(
        default=60.0, description="Interval between stale claim sweeps"
    )

    # Collaborators
    face_recognition_url: str = Field(
        default="http://localhost:8081", description="Face Recognition Service base URL"
    )
    preview_service_url: str = Field(
        default="http://localhost:8082", description="Preview Generation Service base URL"
    )
    object_storage_url: str = Field(
        default="http://localhost:8083", description="Object storage base URL"
    )
    collaborator_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single collaborator HTTP call"
    )
    collaborator_retry_attempts: int = Field(
        default=3, description="Attempts per collaborator call on transport errors"
    )

    # Application Configuration
    app_name: str = Field(default="processing-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log renderer (json for shipping, console for local runs)"
    )
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")

    # Security
    cron_secret: Optional[str] = Field(
        default=None, description="Bearer secret for scheduled and operator endpoints"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("queue_normal_priority_share")
    @classmethod
    def validate_priority_share(cls, v: float) -> float:
        """Share must be a fraction of the batch."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("queue_normal_priority_share must be between 0 and 1")
        return v

    @field_validator("queue_default_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Attempt ceilings must allow at least one attempt."""
        if v < 1:
            raise ValueError("Attempt ceilings must be at least 1")
        return v

    @field_validator("webhook_max_replays")
    @classmethod
    def validate_max_replays(cls, v: int) -> int:
        """Zero disables automatic replays."""
        if v < 0:
            raise ValueError("webhook_max_replays cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_claim_lease(self) -> "Settings":
        """A claim must outlive the handler timeout, or live work gets swept."""
        longest_handler = max(
            self.job_handler_timeout_seconds, self.webhook_handler_timeout_seconds
        )
        if self.stale_claim_timeout_seconds <= longest_handler:
            raise ValueError(
                "stale_claim_timeout_seconds must exceed the job and webhook handler timeouts"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured store is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
