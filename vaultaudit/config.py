"""
Vault Audit - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
"""

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

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
        description="SQLAlchemy async URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)"
    )
    DATABASE_ECHO: bool = Field(default=False)
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="vaultaudit")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")

    # ==================== ACCOUNT SOURCE ====================
    ACCOUNT_SOURCE_URL: str = Field(
        default="",
        description="Base URL of the account inventory service"
    )
    ACCOUNT_SOURCE_TOKEN: str = Field(
        default="",
        description="Bearer token for the account inventory service"
    )
    ACCOUNT_SOURCE_TIMEOUT_SECONDS: float = Field(default=30.0)

    # ==================== RECONCILIATION ====================
    RECONCILE_RUN_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        description="Abort (and roll back) a platform run after this many seconds"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(default="")
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional accepted API keys"
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
    API_TITLE: str = Field(default="Vault Coverage Audit API")
    API_VERSION: str = Field(default="1.0.0")

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend([k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip()])
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        try:
            url = self.get_database_url()
        except ValueError:
            url = ""
            errors.append("DATABASE_URL is required")

        if not self.ACCOUNT_SOURCE_URL:
            errors.append("ACCOUNT_SOURCE_URL is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")

        if self.is_production:
            if url.startswith("sqlite"):
                errors.append("DATABASE_URL cannot use SQLite in production")

            if "localhost" in url.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment(settings: Optional[Settings] = None) -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = settings or get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("ACCOUNT_SOURCE_TOKEN", settings.ACCOUNT_SOURCE_TOKEN, "Account source requests are unauthenticated"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    return status
