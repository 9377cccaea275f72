"""Application configuration loaded from environment variables.

Settings for database access (primary and privileged roles), API, identity
resolution, and the completion fallback tiers. Uses pydantic-settings for
validation and .env file support.
"""

import uuid
from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "onboarding_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "profile_onboarding"
    database_user: str = "onboarding_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Privileged database role used only for the secondary completion path.
    # Empty user disables the privileged tier entirely.
    privileged_database_user: str = ""
    privileged_database_password: SecretStr = SecretStr("")

    # API
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # CRITICAL: Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Identity
    # Local-first mode: DEFAULT_IDENTITY_ID provides identity context without JWT
    # Hosted mode: auth_enabled=True, JWT cookie required on every request
    default_identity_id: uuid.UUID | None = None
    default_identity_email: str = "local@onboarding.invalid"
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "profile-onboarding"
    auth_audience: str = "profile-onboarding"
    auth_cookie_name: str = "onboarding.session-token"
    auth_cookie_samesite: Literal["lax", "strict", "none"] = "lax"

    # Completion fallback
    # Degraded mode accepts completions into pending_profile_syncs when both
    # the primary and privileged paths are refused by the store.
    degraded_mode_enabled: bool = False
    pending_sync_max_attempts: int = 5
    # Seconds between background reconciliation passes; 0 disables the worker
    # and leaves reconciliation to session start and the operator script.
    pending_sync_interval_seconds: int = 0

    # Rate Limiting (Security)
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_onboarding: str = "30/minute"
    # Each completion may run up to three store transactions
    rate_limit_completion: str = "5/minute"
    rate_limit_enabled: bool = True  # Disable for testing

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def privileged_database_url(self) -> str | None:
        """Async URL for the privileged role, or None when not configured."""
        if not self.privileged_database_user:
            return None
        password = self.privileged_database_password.get_secret_value()
        return (
            f"postgresql+asyncpg://{self.privileged_database_user}:{password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate configuration invariants and production security.

        Checks:
        - PENDING_SYNC_MAX_ATTEMPTS must be at least 1 (all environments)
        - PENDING_SYNC_INTERVAL_SECONDS must not be negative (all environments)
        - CORS must not use wildcard origin (incompatible with credentials)
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars when auth is enabled in production
        """
        if self.pending_sync_max_attempts < 1:
            msg = (
                "PENDING_SYNC_MAX_ATTEMPTS must be at least 1. "
                f"Got: {self.pending_sync_max_attempts}"
            )
            raise ValueError(msg)

        if self.pending_sync_interval_seconds < 0:
            msg = (
                "PENDING_SYNC_INTERVAL_SECONDS must not be negative. "
                f"Got: {self.pending_sync_interval_seconds}"
            )
            raise ValueError(msg)

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if self.auth_enabled:
                secret_value = self.auth_secret.get_secret_value()
                if not secret_value:
                    msg = (
                        "AUTH_SECRET must be set when AUTH_ENABLED=true in production. "
                        'Generate with: python -c "import secrets; '
                        'print(secrets.token_hex(32))"'
                    )
                    raise ValueError(msg)
                if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                    msg = (
                        f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                        "characters for adequate security."
                    )
                    raise ValueError(msg)

        return self


settings = Settings()
