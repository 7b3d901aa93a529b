"""Configuration management for lnbridge.

Centralises environment variable loading and validation logic. The resulting
mapping is passed explicitly into the application factory and into every
engine, so nothing below the factory reads the environment on its own.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}

DEFAULT_JWT_SECRET = "dev-secret-CHANGE-ME-IN-PRODUCTION"
MAX_WITHDRAWAL_EXPIRY_HOURS = 24 * 30


class AppConfig(TypedDict, total=False):
    """Typed representation of the application's configuration."""

    FLASK_SECRET_KEY: Optional[str]
    FLASK_ENV: str
    FLASK_DEBUG: bool
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_ISSUER: str
    JWT_AUDIENCE: str
    JWT_EXPIRATION_HOURS: int
    LNURL_BASE_URL: str
    LIGHTNING_AUTH_URL: str
    LND_REST_URL: str
    LND_MACAROON: str
    LND_TLS_CERT_PATH: Optional[str]
    LND_TIMEOUT_SECONDS: int
    LOGIN_CHALLENGE_TTL_SECONDS: int
    WITHDRAWAL_EXPIRY_HOURS: int
    MIN_WITHDRAWAL_SATS: int
    LIGHTNING_BONUS_SATS: int
    WITHDRAWAL_DESCRIPTION_PREFIX: str
    NOTIFY_WEBHOOK_URL: Optional[str]
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
    REDIS_URL: Optional[str]
    APP_NAME: str
    APP_VERSION: str


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


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    lnurl_base_url = os.getenv("LNURL_BASE_URL", "http://localhost:5000").rstrip("/")

    return {
        # Flask Configuration
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        "FLASK_ENV": os.getenv("FLASK_ENV", "development"),
        "FLASK_DEBUG": _get_env_bool("FLASK_DEBUG", False),
        # Session tokens
        "JWT_SECRET": os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET),
        "JWT_ALGORITHM": os.getenv("JWT_ALGORITHM", "HS256"),
        "JWT_ISSUER": os.getenv("JWT_ISSUER") or lnurl_base_url,
        "JWT_AUDIENCE": os.getenv("JWT_AUDIENCE", "lnbridge"),
        "JWT_EXPIRATION_HOURS": _get_env_int("JWT_EXPIRATION_HOURS", 168),
        # LNURL Configuration
        "LNURL_BASE_URL": lnurl_base_url,
        "LIGHTNING_AUTH_URL": os.getenv("LIGHTNING_AUTH_URL", f"{lnurl_base_url}/api/auth/lightning").rstrip("/"),
        "LOGIN_CHALLENGE_TTL_SECONDS": _get_env_int("LOGIN_CHALLENGE_TTL_SECONDS", 300),
        # LND REST node
        "LND_REST_URL": os.getenv("LND_REST_URL", "").rstrip("/"),
        "LND_MACAROON": os.getenv("LND_MACAROON") or os.getenv("LND_MACAROON_HEX", ""),
        "LND_TLS_CERT_PATH": os.getenv("LND_TLS_CERT_PATH"),
        "LND_TIMEOUT_SECONDS": _get_env_int("LND_TIMEOUT_SECONDS", 30),
        # Payout policy
        "WITHDRAWAL_EXPIRY_HOURS": _get_env_int("WITHDRAWAL_EXPIRY_HOURS", 24),
        "MIN_WITHDRAWAL_SATS": _get_env_int("MIN_WITHDRAWAL_SATS", 100),
        "LIGHTNING_BONUS_SATS": _get_env_int("LIGHTNING_BONUS_SATS", 1),
        "WITHDRAWAL_DESCRIPTION_PREFIX": os.getenv("WITHDRAWAL_DESCRIPTION_PREFIX", "Payout"),
        "NOTIFY_WEBHOOK_URL": os.getenv("NOTIFY_WEBHOOK_URL"),
        # Rate Limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "200/hour"),
        "FORCE_HTTPS": _get_env_bool(
            "FORCE_HTTPS",
            os.getenv("FLASK_ENV", "development").lower() == "production",
        ),
        # Logging
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Database Configuration
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        "DB_HOST": os.getenv("DB_HOST", "localhost"),
        "DB_PORT": _get_env_int("DB_PORT", 5432),
        "DB_USER": os.getenv("DB_USER", "lnbridge"),
        "DB_PASSWORD": os.getenv("DB_PASSWORD"),
        "DB_NAME": os.getenv("DB_NAME", "lnbridge"),
        # Redis (rate limiter storage)
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "lnbridge"),
        "APP_VERSION": os.getenv("APP_VERSION", "1.0.0"),
    }


def get_database_url(config: Mapping[str, Any]) -> str:
    """Return the database URL, building a PostgreSQL DSN from parts if needed."""

    db_url = config.get("DATABASE_URL")
    if db_url:
        return str(db_url)

    db_host = config.get("DB_HOST", "localhost")
    db_port = config.get("DB_PORT", 5432)
    db_user = config.get("DB_USER", "lnbridge")
    db_password = config.get("DB_PASSWORD") or "lnbridge"
    db_name = config.get("DB_NAME", "lnbridge")
    return f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    for key in ("LOGIN_CHALLENGE_TTL_SECONDS", "WITHDRAWAL_EXPIRY_HOURS"):
        if key in config and int(config[key]) <= 0:
            raise ValueError(f"{key} must be positive")

    if int(config.get("WITHDRAWAL_EXPIRY_HOURS", 24)) > MAX_WITHDRAWAL_EXPIRY_HOURS:
        raise ValueError(f"WITHDRAWAL_EXPIRY_HOURS cannot exceed {MAX_WITHDRAWAL_EXPIRY_HOURS}")

    if int(config.get("MIN_WITHDRAWAL_SATS", 1)) < 1:
        raise ValueError("MIN_WITHDRAWAL_SATS must be at least 1")

    if int(config.get("LIGHTNING_BONUS_SATS", 0)) < 0:
        raise ValueError("LIGHTNING_BONUS_SATS cannot be negative")

    if config.get("FLASK_ENV") == "production":
        if config.get("JWT_SECRET") == DEFAULT_JWT_SECRET:
            raise ValueError("⚠️  JWT_SECRET must be changed for production!")

        if not config.get("FLASK_SECRET_KEY"):
            raise ValueError("⚠️  FLASK_SECRET_KEY must be set for production!")

        if not str(config.get("LNURL_BASE_URL", "")).startswith("https://"):
            raise ValueError("⚠️  LNURL_BASE_URL must use https in production (wallets refuse plain http)")

        if not config.get("LND_REST_URL") or not config.get("LND_MACAROON"):
            import warnings

            warnings.warn("⚠️  LND_REST_URL / LND_MACAROON not set - withdrawals will be unavailable!", stacklevel=2)

    return True
