from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from identcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_keyring(raw: str | None) -> dict[str, str]:
    """Parse ``kid:secret,kid:secret`` into a keyring mapping.

    Secrets may themselves contain ``:``; only the first one separates the key id.
    """
    keyring: dict[str, str] = {}
    if not raw:
        return keyring
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        kid, sep, secret = entry.partition(":")
        if not sep or not kid.strip() or not secret.strip():
            raise ValueError(f"invalid keyring entry: {kid.strip() or '<empty>'}")
        keyring[kid.strip()] = secret.strip()
    return keyring


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/identcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory where the in-memory account store mirrors its state",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour; enables in-memory fallbacks.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Socket/statement timeout applied to every store call",
    )
    store_read_retries: int = env_field(
        2,
        "STORE_READ_RETRIES",
        description="Extra attempts for idempotent reads after a transient store failure",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("k1", "JWT_KEY_ID")
    jwt_previous_keys: str | None = env_field(
        None,
        "JWT_PREVIOUS_KEYS",
        description="Retired signing keys still accepted for verification (kid:secret,...)",
    )
    jwt_issuer: str = env_field("identcore", "JWT_ISSUER")
    jwt_audience: str = env_field("identcore-clients", "JWT_AUDIENCE")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES"
    )
    # 0 keeps strict reuse detection: any replay of a rotated token revokes the family
    refresh_reuse_grace_seconds: int = env_field(
        0,
        "REFRESH_REUSE_GRACE_SECONDS",
        description="Window in which replaying the immediately previous refresh token is treated as a client race",
    )

    # One-time codes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH")
    otp_secret: str | None = env_field(
        None,
        "OTP_SECRET",
        description="HMAC key for stored OTP hashes; defaults to the active JWT secret",
    )

    # Rate limits (limit <= 0 disables a scope)
    otp_issue_limit: int = env_field(1, "OTP_ISSUE_LIMIT")
    otp_issue_window_seconds: int = env_field(60, "OTP_ISSUE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS")
    otp_verify_limit: int = env_field(10, "OTP_VERIFY_LIMIT")
    otp_verify_window_seconds: int = env_field(15 * 60, "OTP_VERIFY_WINDOW_SECONDS")

    # Password hashing (argon2id)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # Notifier (SMTP); unset host means log-only dev mode
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout_seconds: float = env_field(30.0, "SMTP_TIMEOUT_SECONDS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Identcore", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Tokens signed with a generated secret do not survive a restart or
        # verify on another instance; acceptable only for local runs.
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; generated an ephemeral signing key",
        )
        return secrets.token_urlsafe(64)

    @field_validator("jwt_previous_keys")
    @classmethod
    def _validate_previous_keys(cls, value: str | None) -> str | None:
        parse_keyring(value)
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_ttl_minutes",
        "otp_max_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("otp_code_length")
    @classmethod
    def _code_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP code length must be between 4 and 10 digits")
        return value

    @model_validator(mode="after")
    def _check_token_ttls(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError("refresh token TTL must exceed access token TTL")
        if self.jwt_key_id in self.previous_keyring:
            raise ValueError("active JWT key id also listed in JWT_PREVIOUS_KEYS")
        return self

    @property
    def previous_keyring(self) -> dict[str, str]:
        return parse_keyring(self.jwt_previous_keys)

    @property
    def signing_keyring(self) -> dict[str, str]:
        """All verification keys, active key included."""
        return {**self.previous_keyring, self.jwt_key_id: self.jwt_secret}


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
