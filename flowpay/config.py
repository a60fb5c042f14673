"""Configuration management for FlowPay.

Centralises environment variable loading and validation logic while keeping the
public API intentionally simple.
"""

from __future__ import annotations

import os
import warnings
from typing import Any, List, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}

DEV_SECRET = "dev-secret-CHANGE-ME-IN-PRODUCTION"


class AppConfig(TypedDict):
    """Typed representation of the application's configuration."""

    FLASK_SECRET_KEY: Optional[str]
    FLASK_ENV: str
    FLASK_DEBUG: bool
    APP_URL: str
    TRANSFER_EXPIRY_DAYS: int
    SUPPORTED_TOKENS: List[str]
    LEDGER_BACKEND: str
    FLOW_ACCESS_NODE: str
    FLOW_SIGNER_URL: str
    FLOW_SIGNER_API_KEY: Optional[str]
    FLOW_ESCROW_CONTRACT: str
    LEDGER_SEAL_TIMEOUT_SECONDS: int
    LEDGER_POLL_INTERVAL_SECONDS: int
    LEDGER_HTTP_TIMEOUT_SECONDS: int
    RESEND_API_KEY: Optional[str]
    RESEND_API_URL: str
    FROM_EMAIL: str
    CRON_SECRET: str
    REMINDER_WINDOW_HOURS: int
    CORS_ORIGINS: str
    RATE_LIMIT_ENABLED: bool
    RATE_LIMIT_DEFAULT: str
    FORCE_HTTPS: bool
    LOG_LEVEL: str
    DATABASE_URL: Optional[str]
    DB_HOST: str
    DB_PORT: int
    DB_USER: str
    DB_PASSWORD: Optional[str]
    DB_NAME: str
    REDIS_HOST: Optional[str]
    REDIS_PORT: int
    REDIS_PASSWORD: Optional[str]
    REDIS_DB: int
    REDIS_URL: Optional[str]
    APP_NAME: str
    APP_VERSION: str
    APP_HOST: str
    APP_PORT: int


def _get_env_bool(name: str, default: bool) -> bool:
    """Return an environment variable as a boolean."""

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in _TRUTHY_VALUES


def _get_env_int(name: str, default: int) -> int:
    """Return an environment variable as an integer, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {raw_value!r})") from exc


def _get_env_list(name: str, default: str) -> List[str]:
    raw_value = os.getenv(name) or default
    return [item.strip().upper() for item in raw_value.split(",") if item.strip()]


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    return {
        # Flask Configuration
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        "FLASK_ENV": os.getenv("FLASK_ENV", "development"),
        "FLASK_DEBUG": _get_env_bool("FLASK_DEBUG", False),
        # Transfers
        "APP_URL": (os.getenv("APP_URL") or os.getenv("NEXT_PUBLIC_APP_URL") or "http://localhost:5000").rstrip("/"),
        "TRANSFER_EXPIRY_DAYS": _get_env_int("TRANSFER_EXPIRY_DAYS", 7),
        "SUPPORTED_TOKENS": _get_env_list("SUPPORTED_TOKENS", "FLOW,USDC"),
        # Ledger (Flow escrow)
        "LEDGER_BACKEND": os.getenv("LEDGER_BACKEND", "memory").strip().lower(),
        "FLOW_ACCESS_NODE": os.getenv("FLOW_ACCESS_NODE", "https://rest-testnet.onflow.org").rstrip("/"),
        "FLOW_SIGNER_URL": os.getenv("FLOW_SIGNER_URL", "http://localhost:8701").rstrip("/"),
        "FLOW_SIGNER_API_KEY": os.getenv("FLOW_SIGNER_API_KEY"),
        "FLOW_ESCROW_CONTRACT": os.getenv("FLOW_ESCROW_CONTRACT", "0x1234567890abcdef"),
        "LEDGER_SEAL_TIMEOUT_SECONDS": _get_env_int("LEDGER_SEAL_TIMEOUT_SECONDS", 90),
        "LEDGER_POLL_INTERVAL_SECONDS": _get_env_int("LEDGER_POLL_INTERVAL_SECONDS", 2),
        "LEDGER_HTTP_TIMEOUT_SECONDS": _get_env_int("LEDGER_HTTP_TIMEOUT_SECONDS", 10),
        # Email (Resend)
        "RESEND_API_KEY": os.getenv("RESEND_API_KEY"),
        "RESEND_API_URL": os.getenv("RESEND_API_URL", "https://api.resend.com").rstrip("/"),
        "FROM_EMAIL": os.getenv("FROM_EMAIL") or os.getenv("NEXT_PUBLIC_FROM_EMAIL") or "noreply@useflopay.xyz",
        # Scheduled jobs
        "CRON_SECRET": os.getenv("CRON_SECRET", DEV_SECRET),
        "REMINDER_WINDOW_HOURS": _get_env_int("REMINDER_WINDOW_HOURS", 24),
        # CORS Configuration
        "CORS_ORIGINS": os.getenv("CORS_ORIGINS", "*"),
        # Rate Limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "100/hour"),
        "FORCE_HTTPS": _get_env_bool(
            "FORCE_HTTPS",
            os.getenv("FLASK_ENV", "development").lower() == "production",
        ),
        # Logging
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Database Configuration (REQUIRED for production)
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        "DB_HOST": os.getenv("DB_HOST", "localhost"),
        "DB_PORT": _get_env_int("DB_PORT", 5432),
        "DB_USER": os.getenv("DB_USER", "flowpay"),
        "DB_PASSWORD": os.getenv("DB_PASSWORD"),
        "DB_NAME": os.getenv("DB_NAME", "flowpay"),
        # Redis Configuration (optional: rate limits and the sweep lock)
        "REDIS_HOST": os.getenv("REDIS_HOST"),
        "REDIS_PORT": _get_env_int("REDIS_PORT", 6379),
        "REDIS_PASSWORD": os.getenv("REDIS_PASSWORD"),
        "REDIS_DB": _get_env_int("REDIS_DB", 0),
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "FlowPay"),
        "APP_VERSION": os.getenv("APP_VERSION", "1.0.0"),
        "APP_HOST": os.getenv("APP_HOST", "0.0.0.0"),
        "APP_PORT": _get_env_int("APP_PORT", 5000),
    }


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    if config.get("TRANSFER_EXPIRY_DAYS", 7) <= 0:
        raise ValueError("TRANSFER_EXPIRY_DAYS must be positive")

    if config.get("LEDGER_BACKEND", "memory") not in ("memory", "flow"):
        raise ValueError(f"Unknown LEDGER_BACKEND {config.get('LEDGER_BACKEND')!r} (expected 'memory' or 'flow')")

    # Check for insecure defaults in production
    flask_env = config.get("FLASK_ENV")

    if flask_env == "production":
        if not config.get("FLASK_SECRET_KEY"):
            raise ValueError("⚠️  FLASK_SECRET_KEY must be set for production!")

        if config.get("CRON_SECRET") == DEV_SECRET:
            raise ValueError("⚠️  CRON_SECRET must be changed for production!")

        if config.get("LEDGER_BACKEND") == "memory":
            raise ValueError("⚠️  LEDGER_BACKEND=memory cannot hold real funds; use 'flow' in production!")

        database_url = config.get("DATABASE_URL")
        db_password = config.get("DB_PASSWORD")

        if not database_url and not db_password:
            warnings.warn(
                "⚠️  DATABASE_URL or DB_PASSWORD not set - database connectivity may fail!",
                stacklevel=2,
            )

        if not config.get("RESEND_API_KEY"):
            warnings.warn("⚠️  RESEND_API_KEY not set - claim emails will not be delivered!", stacklevel=2)

        if (config.get("REDIS_HOST") or config.get("REDIS_URL")) and not config.get("REDIS_PASSWORD"):
            warnings.warn("⚠️  REDIS_PASSWORD not set - Redis will be unprotected!", stacklevel=2)

    return True
