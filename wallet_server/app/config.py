"""
Configuration module for the Wallet Server.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC identity provider, session cookies, the KMS / EDV / authorization
server endpoints used during wallet provisioning, storage, and CORS.

Environment variables are loaded from .env file or system environment.
The resulting Settings object is frozen and shared by every component.
"""

import base64
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


COOKIE_KEY_LENGTH = 32


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the OIDC login flow, cookie sessions, remote
    provisioning services and server runtime is defined here.
    """

    # =========================================================================
    # OIDC Identity Provider
    # =========================================================================

    OIDC_PROVIDER_URL: str = Field(
        ...,
        description="Issuer URL of the OIDC provider (discovery document is served below it)",
        min_length=1,
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="OAuth2 client ID registered with the provider",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="OAuth2 client secret (optional for public clients)",
    )

    OIDC_CALLBACK_URL: str = Field(
        ...,
        description="Redirect URI registered with the provider (e.g., https://wallet.example.com/callback)",
        min_length=1,
    )

    OIDC_SCOPES: str = Field(
        default="openid,profile,email",
        description="Comma-separated list of scopes requested at login",
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider's JWKS keys in seconds",
        ge=60,
        le=86400,
    )

    # =========================================================================
    # Session Cookies
    # =========================================================================

    COOKIE_AUTH_KEY: str = Field(
        ...,
        description="Base64 encoded 32-byte key used to sign session cookies",
    )

    COOKIE_ENC_KEY: str = Field(
        ...,
        description="Base64 encoded 32-byte key used to encrypt session cookies",
    )

    COOKIE_MAX_AGE: int = Field(
        default=900,
        description="Session cookie lifetime in seconds",
        ge=60,
    )

    COOKIE_NAME: str = Field(
        default="wallet_session",
        description="Name of the session cookie",
        min_length=1,
    )

    COOKIE_SECURE: bool = Field(
        default=True,
        description="Only send the session cookie over HTTPS",
    )

    # =========================================================================
    # Provisioning Services
    # =========================================================================

    AUTHZ_KMS_URL: str = Field(
        ...,
        description="Base URL of the authorization KMS (holds the user's signing key)",
    )

    OPS_KMS_URL: str = Field(
        ...,
        description="Base URL of the operational KMS (holds EDV encryption keys)",
    )

    OPS_KMS_CONTROLLER: Optional[str] = Field(
        None,
        description="Identity named as invoker of the key vault capability (defaults to OPS_KMS_URL)",
    )

    KEY_EDV_URL: str = Field(
        ...,
        description="Base URL of the EDV server that stores operational key material",
    )

    USER_EDV_URL: str = Field(
        ...,
        description="Base URL of the EDV server that stores the user's wallet data",
    )

    HUB_AUTH_URL: str = Field(
        ...,
        description="Base URL of the authorization server (secret shares and bootstrap data)",
    )

    CAPABILITY_EXPIRY_DAYS: int = Field(
        default=365,
        description="Lifetime of delegated vault capabilities in days",
        ge=1,
    )

    # =========================================================================
    # Wallet UI
    # =========================================================================

    WALLET_DASHBOARD_URL: str = Field(
        ...,
        description="Where the browser is sent after a successful login",
        min_length=1,
    )

    # =========================================================================
    # Storage
    # =========================================================================

    DATABASE_URL: Optional[str] = Field(
        None,
        description="SQLAlchemy database URL for user tokens (unset keeps them in memory)",
    )

    DATABASE_PREFIX: str = Field(
        default="",
        description="Prefix applied to every store namespace",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every outbound HTTP call",
        gt=0,
    )

    WALLET_SERVER_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the wallet server",
    )

    WALLET_SERVER_PORT: int = Field(
        default=8090,
        description="Port to bind the wallet server",
        ge=1,
        le=65535,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def oidc_scopes_list(self) -> List[str]:
        """
        Parse OIDC_SCOPES into a list, making sure "openid" is present.

        Returns:
            List of scope strings in configured order.
        """
        scopes = [s.strip() for s in self.OIDC_SCOPES.split(",") if s.strip()]
        if "openid" not in scopes:
            scopes.insert(0, "openid")
        return scopes

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def cookie_auth_key_bytes(self) -> bytes:
        """Raw bytes of the cookie signing key."""
        return _decode_key(self.COOKIE_AUTH_KEY)

    @property
    def cookie_enc_key_bytes(self) -> bytes:
        """Raw bytes of the cookie encryption key."""
        return _decode_key(self.COOKIE_ENC_KEY)

    @property
    def ops_kms_invoker(self) -> str:
        """Invoker named in the key vault capability."""
        return self.OPS_KMS_CONTROLLER or self.OPS_KMS_URL

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("COOKIE_AUTH_KEY", "COOKIE_ENC_KEY")
    @classmethod
    def validate_cookie_key(cls, v: str) -> str:
        """
        Validate that a cookie key is base64 of exactly 32 bytes.

        Args:
            v: Base64 (standard or URL-safe) encoded key

        Returns:
            The key string unchanged

        Raises:
            ValueError: If the value is not base64 or has the wrong length
        """
        try:
            key = _decode_key(v)
        except ValueError as e:
            raise ValueError(f"cookie key is not valid base64: {e}")

        if len(key) != COOKIE_KEY_LENGTH:
            raise ValueError(
                f"cookie key must decode to {COOKIE_KEY_LENGTH} bytes, got {len(key)}"
            )

        return v

    @field_validator(
        "OIDC_PROVIDER_URL",
        "AUTHZ_KMS_URL",
        "OPS_KMS_URL",
        "KEY_EDV_URL",
        "USER_EDV_URL",
        "HUB_AUTH_URL",
    )
    @classmethod
    def validate_service_url(cls, v: str) -> str:
        """
        Validate a remote service URL and strip its trailing slash.

        Args:
            v: URL string

        Returns:
            URL without trailing slash

        Raises:
            ValueError: If the URL is not http(s)
        """
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize LOG_LEVEL and reject unknown levels."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


def _decode_key(value: str) -> bytes:
    value = value.strip()
    padded = value + "=" * (-len(value) % 4)
    if "-" in value or "_" in value:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate settings combinations and return a status report.

    Called during application startup. Errors abort startup, warnings are
    only logged.

    Args:
        settings: Loaded settings

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    if settings.COOKIE_AUTH_KEY == settings.COOKIE_ENC_KEY:
        errors.append("COOKIE_AUTH_KEY and COOKIE_ENC_KEY must be different keys")

    if not settings.COOKIE_SECURE:
        warnings.append("COOKIE_SECURE is disabled (session cookie is sent over plain HTTP)")

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (required for confidential clients)")

    if not settings.DATABASE_URL:
        warnings.append("DATABASE_URL is not set, user tokens are kept in memory")

    for name in ("AUTHZ_KMS_URL", "OPS_KMS_URL", "KEY_EDV_URL", "USER_EDV_URL", "HUB_AUTH_URL"):
        url = getattr(settings, name)
        if url.startswith("http://") and "localhost" not in url and "127.0.0.1" not in url:
            warnings.append(f"{name} does not use TLS")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "cookie_max_age": settings.COOKIE_MAX_AGE,
    }
