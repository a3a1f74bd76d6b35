"""
Membership Reconciliation - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets (CRM API key, CMS application password)
- Tunable matching, caching and retry behaviour
- Environment-specific settings (dev/staging/prod)
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
        description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://... (required)"
    )
    DATABASE_CREATE_TABLES: bool = Field(
        default=False,
        description="Create missing tables on startup (local development only)"
    )

    # ==================== CRM ====================
    CRM_API_BASE: str = Field(
        default="https://rest.gohighlevel.com/v1",
        description="Base URL of the CRM REST API"
    )
    CRM_API_KEY: str = Field(
        default="",
        description="Bearer token for the CRM API (required)"
    )
    CRM_LOCATION_ID: str = Field(
        default="",
        description="CRM location/sub-account identifier"
    )
    CRM_PAGE_SIZE: int = Field(
        default=100,
        description="Contacts requested per page when listing the directory"
    )
    CRM_MAX_CONTACTS: int = Field(
        default=1000,
        description="Upper bound on contacts loaded into the directory cache"
    )
    CRM_FIELD_MEMBERSHIP_TYPE: str = Field(
        default="gH97LlNC9Y4PlkKVlY8V",
        description="Custom field id holding the membership type"
    )
    CRM_FIELD_RENEWAL_DATE: str = Field(
        default="cWMPNiNAfReHOumOhBB2",
        description="Custom field id holding the membership renewal date"
    )

    # ==================== CMS ====================
    CMS_API_URL: str = Field(
        default="",
        description="Base URL of the content site (REST API lives under /wp-json/wp/v2)"
    )
    CMS_API_USERNAME: str = Field(default="")
    CMS_API_PASSWORD: str = Field(
        default="",
        description="CMS application password"
    )

    # ==================== MATCHING ====================
    CONTACT_CACHE_TTL_SECONDS: int = Field(
        default=300,
        description="Lifetime of the contact directory snapshot"
    )
    RECONCILED_EXCLUSION_DAYS: int = Field(
        default=30,
        description="Contacts reconciled within this window are not suggested again"
    )
    MATCH_MIN_CONFIDENCE: float = Field(default=0.3)
    MATCH_MAX_SUGGESTIONS: int = Field(default=5)

    # ==================== RETRY ====================
    RETRY_MAX_RETRIES: int = Field(
        default=3,
        description="Retries after the first attempt for external calls"
    )
    RETRY_INITIAL_DELAY_SECONDS: float = Field(default=1.0)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=10.0)
    EXTERNAL_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Per-attempt timeout for CRM/CMS calls"
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
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON log lines (disable for local readability)"
    )

    # ==================== API ====================
    API_TITLE: str = Field(default="Membership Reconciliation API")
    API_VERSION: str = Field(default="1.0.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

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
    def cms_configured(self) -> bool:
        return bool(self.CMS_API_URL and self.CMS_API_USERNAME and self.CMS_API_PASSWORD)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not self.CRM_API_KEY:
            errors.append("CRM_API_KEY is required")

        if self.RETRY_INITIAL_DELAY_SECONDS > self.RETRY_MAX_DELAY_SECONDS:
            errors.append("RETRY_INITIAL_DELAY_SECONDS cannot exceed RETRY_MAX_DELAY_SECONDS")

        if self.is_production:
            if "sqlite" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot use SQLite in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the configured database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        raise ValueError("No database configuration found. Set DATABASE_URL.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"CMS integration: {'configured' if settings.cms_configured else 'disabled'}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings
