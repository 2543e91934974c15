import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "your-secret-key-here-change-in-production"


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    # SECURITY: In production, explicitly set APP_MODE=prod
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production.
    # Also forces the "development" cookie environment.
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./auth_tokens.db"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Public base URL of this service, used for the cookie policy smoke test at startup
    PUBLIC_URL: str = "http://localhost:8000"

    # Access token (signed, stateless)
    # SECURITY: SECRET_KEY has no secure default - MUST be set via environment variable
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY
    JWT_ISSUER: str = "auth-token-service"
    ACCESS_TOKEN_EXPIRE_SECONDS: int = 3600  # 1 hour

    # Refresh token (opaque, server tracked)
    # Key for the HMAC used to hash refresh tokens at rest; falls back to SECRET_KEY
    REFRESH_TOKEN_HASH_KEY: Optional[str] = None
    REFRESH_TOKEN_EXPIRE_SECONDS: int = 30 * 24 * 60 * 60  # 30 days
    REFRESH_TOKEN_BYTES: int = 32
    ROTATE_REFRESH_TOKENS: bool = True
    # A rotated-away token presented again after this many seconds revokes the session
    REPLAY_GRACE_SECONDS: int = 10

    # Refresh token store
    VALIDATION_CACHE_TTL_SECONDS: int = 300  # 5 minutes
    # auto: Redis when REDIS_URL is set, otherwise no cache.
    # memory: per-process cache, only correct with a single worker.
    VALIDATION_CACHE_BACKEND: Literal["auto", "redis", "memory", "none"] = "auto"
    CLEANUP_GRACE_SECONDS: int = 24 * 60 * 60
    CLEANUP_INTERVAL_SECONDS: int = 3600
    STORAGE_TIMEOUT_SECONDS: float = 5.0

    # Redis URL for the validation cache (optional, no cache if not set)
    REDIS_URL: Optional[str] = None

    # Trusted proxy networks (comma-separated CIDR notation)
    # Example: "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16"
    # SECURITY: Only IPs from these networks are trusted to set X-Forwarded-* headers
    TRUSTED_PROXIES: Optional[str] = None

    # CORS
    CORS_ALLOWED_ORIGINS: str = ""  # Comma-separated list of allowed origins

    # Refresh cookie overrides. Any value set here wins over the
    # environment-detected defaults.
    COOKIE_ENABLED: Optional[bool] = None
    COOKIE_NAME: Optional[str] = None
    COOKIE_SAMESITE: Optional[str] = None
    COOKIE_SECURE: Optional[bool] = None
    COOKIE_HTTPONLY: Optional[bool] = None
    COOKIE_PATH: Optional[str] = None
    COOKIE_DOMAIN: Optional[str] = None
    COOKIE_LIFETIME: Optional[int] = None
    COOKIE_AUTO_DETECT: bool = True
    # Debug only: permits a refresh cookie readable from JavaScript
    COOKIE_ALLOW_INSECURE_HTTPONLY: bool = False
    # Path the production cookie is restricted to (the auth router)
    COOKIE_AUTH_PATH: str = "/api/auth"

    @property
    def refresh_token_hash_key(self) -> str:
        return self.REFRESH_TOKEN_HASH_KEY or self.SECRET_KEY

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: never return ["*"]; credentialed requests (the refresh cookie)
        require an explicit origin list.
        """
        origins = []

        if self.APP_MODE == AppMode.DEV:
            origins = [
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:3000",
                "http://127.0.0.1:5173",
            ]

        if self.CORS_ALLOWED_ORIGINS:
            custom_origins = [
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            ]
            origins.extend(custom_origins)

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked. "
                "Set CORS_ALLOWED_ORIGINS environment variable to allow specific origins."
            )

        return origins

    @property
    def LOG_LEVEL(self) -> str:
        return "DEBUG" if self.DEBUG else "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env variables
    )


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    SECURITY: This function ensures critical security settings are properly
    configured in production environments.
    """
    if settings.ACCESS_TOKEN_EXPIRE_SECONDS <= 0:
        raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive")
    if settings.REFRESH_TOKEN_EXPIRE_SECONDS <= 0:
        raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must be positive")
    if settings.REFRESH_TOKEN_BYTES < 16:
        raise ValueError("REFRESH_TOKEN_BYTES must be at least 16")

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if using default secret key in production
        if settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY:
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        # CRITICAL: Fail fast if DEBUG is enabled in production
        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Debug mode forces development cookie settings. "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if settings.COOKIE_ALLOW_INSECURE_HTTPONLY:
            error_msg = (
                "CRITICAL SECURITY ERROR: COOKIE_ALLOW_INSECURE_HTTPONLY=True in production! "
                "The refresh token cookie must never be readable from JavaScript."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        # Warn if SECRET_KEY appears to be weak (less than 32 characters)
        if len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters). "
                "Consider using a longer, more random key for production.",
                SecurityWarning,
                stacklevel=2,
            )

        if settings.VALIDATION_CACHE_BACKEND == "memory":
            error_msg = (
                "CRITICAL SECURITY ERROR: VALIDATION_CACHE_BACKEND=memory in production! "
                "A per-process cache keeps revoked refresh tokens valid in other workers. "
                "Use REDIS_URL or VALIDATION_CACHE_BACKEND=none."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        # A per-process cache cannot see revocations made by other workers,
        # so production runs without a validation cache unless Redis is set.
        if not settings.REDIS_URL and settings.VALIDATION_CACHE_BACKEND != "none":
            logger.warning(
                "REDIS_URL not configured in production. "
                "Refresh token validation cache is disabled; every validation hits the database."
            )

    return settings


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    This function validates settings on first access and raises errors
    for critical security misconfigurations in production.
    """
    settings = Settings()
    return _validate_settings(settings)
