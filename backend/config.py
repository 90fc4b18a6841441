"""
Goal Reconciliation Core - Configuration Management

Centralized configuration for environment variables, CORS and the
reconciliation tolerances. This module ensures:
- No hardcoded secrets
- No missing required variables in production
- Tolerances fixed for the life of a process
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy connection URL (postgresql+asyncpg://...)"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Key expected in X-Internal-Api-Key for reconciliation endpoints"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated additional keys accepted during rotation"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== RECONCILIATION ====================
    RECON_AMOUNT_TOLERANCE_PERCENT: float = Field(
        default=0.01,
        description="Amount tolerance as a fraction of the reference amount"
    )
    RECON_AMOUNT_TOLERANCE_MIN: float = Field(
        default=1000,
        description="Amount tolerance floor"
    )
    RECON_DATE_WINDOW_DAYS: int = Field(
        default=30,
        description="Days apart within which a date difference is tolerated"
    )
    RECON_INSTRUMENT_TOLERANCE_PERCENT: float = Field(
        default=0.01,
        description="Instrument distribution tolerance as a fraction of the ledger amount"
    )
    RECON_SEVERITY_LOW: float = Field(default=1000, description="Differences below this are LOW")
    RECON_SEVERITY_MEDIUM: float = Field(default=10000, description="Differences below this are MEDIUM")
    RECON_SEVERITY_HIGH: float = Field(default=50000, description="Differences below this are HIGH, otherwise CRITICAL")
    RECON_SWEEP_WINDOW_DAYS: int = Field(
        default=30,
        description="Days around a tagged record searched by the resolution sweep"
    )
    RECON_TIMING_WINDOW_DAYS: int = Field(
        default=3,
        description="Date gap at which a timing difference counts as resolved"
    )
    RECON_SPLIT_SEARCH_LIMIT: int = Field(
        default=10,
        description="Maximum items enumerated when searching split combinations"
    )
    RECON_BATCH_SIZE: int = Field(
        default=100,
        description="Goals processed per batch matching call"
    )
    RECON_EXCLUDED_CHANNELS: str = Field(
        default="Transfer_Reversal",
        description="Comma-separated ledger channels ignored by matching"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Goal Reconciliation Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the local frontend ports.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_tolerances(self) -> List[str]:
        """Return a list of problems with the RECON_* values."""
        errors = []

        if self.RECON_AMOUNT_TOLERANCE_PERCENT < 0 or self.RECON_AMOUNT_TOLERANCE_MIN < 0:
            errors.append("Amount tolerances must be non-negative")
        if self.RECON_INSTRUMENT_TOLERANCE_PERCENT < 0:
            errors.append("RECON_INSTRUMENT_TOLERANCE_PERCENT must be non-negative")
        if self.RECON_DATE_WINDOW_DAYS < 0:
            errors.append("RECON_DATE_WINDOW_DAYS must be non-negative")
        if not (self.RECON_SEVERITY_LOW <= self.RECON_SEVERITY_MEDIUM <= self.RECON_SEVERITY_HIGH):
            errors.append("RECON_SEVERITY_LOW/MEDIUM/HIGH must be ascending")
        if self.RECON_SPLIT_SEARCH_LIMIT < 2:
            errors.append("RECON_SPLIT_SEARCH_LIMIT must be at least 2")
        if self.RECON_BATCH_SIZE < 1:
            errors.append("RECON_BATCH_SIZE must be at least 1")

        return errors

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = self.validate_tolerances()

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if not self.internal_api_keys:
                errors.append("INTERNAL_API_KEY is required")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    errors = settings.validate_tolerances()
    if settings.is_production:
        errors = settings.validate_production_config()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-User-Id",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }


# Export settings instance for convenience
settings = get_settings()
