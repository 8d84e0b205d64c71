"""
Fiscalismia - Core Config

Settings are read from the process environment (or a local .env file in
development) through pydantic-settings.

REQUIRED for the raw data ETL:
  API_GW_SECRET_KEY        - Authorization value for the AWS API Gateway route
  AWS_API_GATEWAY_ENDPOINT - Base URL of the API Gateway stage

REQUIRED for database access:
  DATABASE_URL             - Postgres connection string

A missing or malformed DATABASE_URL does not crash the app. It boots in
degraded mode: /api/fiscalismia/hc answers, /api/fiscalismia/db_hc returns 503.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

API_ADDRESS = "/api/fiscalismia"
PUBLIC_DOMAIN = "fiscalismia.com"
PUBLIC_DEMO_DOMAIN = "demo.fiscalismia.com"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Postgres connection string",
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    BACKEND_VERSION: str = Field(
        default="local-development",
        description="Version string reported by the health check",
    )

    # =========================================================================
    # SERVER CONFIGURATION
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3002)
    FISCALISMIA_CORS_ORIGINS: str | None = Field(default=None)
    RATE_LIMIT_MULTIPLICATOR: float = Field(
        default=1.0,
        gt=0,
        description="Global modifier applied to every rate limit",
    )

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    FISCALISMIA_JWT_SECRET: str | None = Field(default=None)

    # =========================================================================
    # RAW DATA ETL
    # =========================================================================

    API_GW_SECRET_KEY: str | None = Field(default=None)
    AWS_API_GATEWAY_ENDPOINT: str = Field(default="")
    RAW_DATA_ETL_TRIGGER_PATH: str = Field(
        default="/api/fiscalismia/post/raw_data_etl/invoke_lambda/return_tsv_file_urls",
    )
    ETL_TRIGGER_TIMEOUT_S: float = Field(default=10.0, gt=0)
    S3_PRESIGNED_URL_TIMEOUT_S: float = Field(default=10.0, gt=0)
    TRANSFORM_TIMEOUT_S: float = Field(default=30.0, gt=0)
    INTERNAL_API_BASE_URL: str | None = Field(
        default=None,
        description="Base URL of this service for TSV conversion sub-requests",
    )

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @model_validator(mode="after")
    def _warn_on_degraded_config(self) -> "Settings":
        """Log (never raise) when the database or ETL config is unusable."""
        db_url = self.DATABASE_URL.strip()
        if not db_url:
            logger.warning(
                "DATABASE_URL not configured - entering DEGRADED MODE. "
                "Database operations will fail until configured."
            )
        elif not db_url.startswith(("postgresql://", "postgres://")):
            logger.warning(
                f"DATABASE_URL has invalid format - entering DEGRADED MODE. "
                f"Expected postgresql://... got {db_url[:12]}..."
            )

        if self.is_production and not self.API_GW_SECRET_KEY:
            logger.warning("API_GW_SECRET_KEY not set - raw data ETL will fail")
        return self

    # =========================================================================
    # DERIVED VALUES
    # =========================================================================

    @property
    def database_url(self) -> str:
        """Database URL, empty when missing or malformed."""
        db_url = self.DATABASE_URL.strip()
        if db_url.startswith(("postgresql://", "postgres://")):
            return db_url
        return ""

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def protocol(self) -> str:
        return "https" if self.is_production else "http"

    @property
    def server_address(self) -> str:
        return f"{self.protocol}://localhost:{self.PORT}{API_ADDRESS}"

    @property
    def internal_api_base_url(self) -> str:
        """Where the TSV conversion routes live, without trailing slash."""
        base = self.INTERNAL_API_BASE_URL or f"http://localhost:{self.PORT}{API_ADDRESS}"
        return base.rstrip("/")

    @property
    def raw_data_etl_endpoint(self) -> str:
        return f"{self.AWS_API_GATEWAY_ENDPOINT.rstrip('/')}{self.RAW_DATA_ETL_TRIGGER_PATH}"

    @property
    def cors_allowed_origins(self) -> list[str]:
        """
        Parse FISCALISMIA_CORS_ORIGINS into a list.

        Defaults to the public domains in production and to [] elsewhere.
        """
        if self.FISCALISMIA_CORS_ORIGINS:
            raw = self.FISCALISMIA_CORS_ORIGINS.replace(",", " ")
            origins = [o.strip().rstrip("/") for o in raw.split() if o.strip().startswith("http")]
            if origins:
                return origins
        if self.is_production:
            return [f"https://{PUBLIC_DOMAIN}", f"https://{PUBLIC_DEMO_DOMAIN}"]
        return []


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing or environment switch)."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure application logging based on settings.

    In production, uses structured JSON logging for observability.
    In development, uses colored console output.
    """
    if settings is None:
        settings = get_settings()

    from .logging import configure_structured_logging

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.is_production,
        service_name="fiscalismia",
    )

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)


__all__ = [
    "API_ADDRESS",
    "Settings",
    "get_settings",
    "reset_settings",
    "configure_logging",
]
