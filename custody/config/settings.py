"""
Application settings using Pydantic Settings.

Loads configuration from environment variables with validation.
"""

from typing import List, Optional
from decimal import Decimal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are loaded from .env file or environment variables.
    Uses Pydantic for validation and type checking.
    """

    # App Configuration
    APP_NAME: str = Field(default="Custody Lifecycle Coordinator")
    APP_VERSION: str = Field(default="1.0.0")
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)

    # Server
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Database
    MONGODB_URL: str = Field(default="mongodb://localhost:27017", description="MongoDB connection string")
    MONGODB_DB_NAME: str = Field(default="custody_coordinator", description="MongoDB database name")

    # Redis / Celery
    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis connection string")
    CELERY_BROKER_URL: Optional[str] = Field(default=None)
    CELERY_RESULT_BACKEND: Optional[str] = Field(default=None)
    SNAPSHOT_CACHE_TTL_SECONDS: int = Field(default=86400)

    # Agent key encryption (Fernet key)
    ENCRYPTION_KEY: str = Field(default="", description="Fernet key for custodial key material")

    # Venue collaborators
    LEDGER_SERVICE_URL: str = Field(default="http://localhost:9100")
    TX_BUILD_SERVICE_URL: str = Field(default="http://localhost:9200")
    SUBMISSION_SERVICE_URL: str = Field(default="http://localhost:9300")
    VENUE_API_KEY: str = Field(default="")
    VENUE_HTTP_TIMEOUT_SECONDS: float = Field(default=30.0)

    # Equity aggregator
    SNAPSHOT_POLL_INTERVAL_SECONDS: int = Field(default=30)

    # Reconciliation
    RECONCILE_INTERVAL_SECONDS: int = Field(default=60)
    RECONCILE_STALE_SECONDS: int = Field(default=60)
    RECONCILE_SIZE_TOLERANCE: Decimal = Field(default=Decimal("0.0001"))
    RECONCILE_BALANCE_TOLERANCE: Decimal = Field(default=Decimal("0.01"))

    # Transaction confirmation (bounded poll with backoff)
    CONFIRMATION_MAX_ATTEMPTS: int = Field(default=8)
    CONFIRMATION_INITIAL_DELAY_SECONDS: float = Field(default=1.0)
    CONFIRMATION_MAX_DELAY_SECONDS: float = Field(default=15.0)
    CONFIRMATION_BACKOFF_FACTOR: float = Field(default=2.0)

    # Operations left awaiting a signature are only auto-abandoned when this is set
    OPERATION_ABANDON_AFTER_HOURS: Optional[float] = Field(default=None)

    # Orphaned subaccount cleanup
    ORPHAN_CLEANUP_INTERVAL_MINUTES: int = Field(default=10)
    ORPHAN_CLEANUP_MAX_RETRIES: int = Field(default=5)

    # Balances at or below these thresholds are treated as empty
    BALANCE_DUST_THRESHOLD: Decimal = Field(default=Decimal("0.000001"))
    NATIVE_DUST_THRESHOLD: Decimal = Field(default=Decimal("0.00001"))

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE_PATH: str = Field(default="logs/custody.log")

    # CORS
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v) -> List[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return []

    @field_validator(
        "SNAPSHOT_POLL_INTERVAL_SECONDS",
        "RECONCILE_INTERVAL_SECONDS",
        "RECONCILE_STALE_SECONDS",
        "ORPHAN_CLEANUP_INTERVAL_MINUTES",
        "CONFIRMATION_MAX_ATTEMPTS",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate intervals and attempt counts are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("CONFIRMATION_BACKOFF_FACTOR")
    @classmethod
    def validate_backoff_factor(cls, v: float) -> float:
        """Backoff must not shrink the delay."""
        if v < 1:
            raise ValueError("CONFIRMATION_BACKOFF_FACTOR must be >= 1")
        return v

    @field_validator("OPERATION_ABANDON_AFTER_HOURS")
    @classmethod
    def validate_abandon_after(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("OPERATION_ABANDON_AFTER_HOURS must be positive when set")
        return v

    @property
    def celery_broker(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


# Global settings instance
def get_settings() -> Settings:
    """Get settings instance (lazy loading)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

_settings: Settings | None = None

settings = get_settings()
