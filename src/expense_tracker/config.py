"""Configuration module for the Expense Tracker family service.

Configuration is loaded through Pydantic Settings from the environment or from a
dotenv-style config file.

Config discovery order:
    1. The file named by the `EXPENSE_TRACKER_CONFIG_PATH` environment variable
    2. `.env` in the project root
    3. Environment variables only

Secrets (JWT key, MongoDB URL) are never hardcoded and must be provided through
the environment or the config file; validators enforce this at startup.

How to extend/maintain:
    - Add new config fields to the `Settings` class and document them.
    - Family and join-request policy knobs live here so that policy changes are
      configuration, not code changes.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "EXPENSE_TRACKER_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable EXPENSE_TRACKER_CONFIG_PATH
    2. .env in project root
    3. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=False)


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All fields are loaded from the environment or the config file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    APP_NAME: str = "expense-tracker"
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    ENV: str = "dev"

    # JWT configuration (tokens are issued elsewhere, only verified here)
    SECRET_KEY: SecretStr = SecretStr("")
    ALGORITHM: str = "HS256"

    # MongoDB configuration
    MONGODB_URL: str = ""
    MONGODB_DATABASE: str = "expense_tracker"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Collections
    USERS_COLLECTION: str = "users"
    FAMILIES_COLLECTION: str = "families"
    JOIN_REQUESTS_COLLECTION: str = "family_join_requests"
    FAMILY_NOTIFICATIONS_COLLECTION: str = "family_notifications"
    SYSTEM_COLLECTION: str = "system"

    # Redis / route rate limiting
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_PERIOD_SECONDS: int = 60
    FAMILY_CREATE_RATE_LIMIT: int = 5  # Max families created per hour per user
    FAMILY_JOIN_REQUEST_RATE_LIMIT: int = 20  # Max join-request calls per hour per user
    FAMILY_HEAD_ACTION_RATE_LIMIT: int = 30  # Max head actions per hour per user

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # Family limits
    FAMILY_MAX_SIZE: int = 10
    FAMILY_ALIAS_LENGTH: int = 6
    FAMILY_ALIAS_MAX_GENERATION_ATTEMPTS: int = 100
    FAMILY_NAME_MIN_LENGTH: int = 2
    FAMILY_NAME_MAX_LENGTH: int = 100
    FAMILY_WRITE_RETRIES: int = 3  # Optimistic write retries before reporting a conflict

    # Join request throttle policy
    JOIN_REQUEST_MAX_ATTEMPTS_PER_FAMILY: int = 5
    JOIN_REQUEST_ATTEMPT_WINDOW_SECONDS: int = 7 * 24 * 60 * 60
    JOIN_REQUEST_MAX_ATTEMPTS_PER_WINDOW: int = 3
    JOIN_REQUEST_BACKOFF_SCHEDULE_SECONDS: List[int] = [0, 6 * 3600, 12 * 3600, 24 * 3600]

    # Expiry and cleanup
    JOIN_REQUEST_TTL_SECONDS: int = 3 * 24 * 60 * 60
    JOIN_REQUEST_SWEEP_INTERVAL_SECONDS: int = 60 * 60
    JOIN_REQUEST_SWEEP_INITIAL_DELAY_SECONDS: int = 5 * 60
    ORPHAN_CLEANUP_INTERVAL_SECONDS: int = 5 * 60
    # A pending_join_requests entry with no PENDING row is only dropped once the
    # pair has been quiet this long, so an in-flight resend is never undone.
    JOIN_REQUEST_MIRROR_GRACE_SECONDS: int = 5 * 60

    @field_validator("SECRET_KEY", mode="before")
    @classmethod
    def no_hardcoded_secrets(cls, v, info):
        if not v or "change" in str(v).lower() or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or config file and not hardcoded!")
        return v

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or config file and not empty!")
        return v

    @field_validator(
        "FAMILY_MAX_SIZE",
        "FAMILY_ALIAS_LENGTH",
        "FAMILY_WRITE_RETRIES",
        "JOIN_REQUEST_MAX_ATTEMPTS_PER_FAMILY",
        "JOIN_REQUEST_MAX_ATTEMPTS_PER_WINDOW",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that family limits are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @field_validator("JOIN_REQUEST_BACKOFF_SCHEDULE_SECONDS")
    @classmethod
    def validate_backoff_schedule(cls, v):
        if not v:
            raise ValueError("JOIN_REQUEST_BACKOFF_SCHEDULE_SECONDS must contain at least one entry")
        if any(step < 0 for step in v):
            raise ValueError("JOIN_REQUEST_BACKOFF_SCHEDULE_SECONDS entries must not be negative")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG


# Global settings instance
settings: Settings = Settings()
