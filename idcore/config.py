from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idcore.logging import get_logger

logger = get_logger(__name__)

# Lifetime of the token handed out between password check and second factor.
TWO_FACTOR_PENDING_TTL_SECONDS = 300

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep OTP codes and counters in process memory instead of Redis",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-memory fallbacks",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("idcore", "JWT_ISSUER")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS", ge=1)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", ge=1
    )
    temp_token_ttl_seconds: int = env_field(900, "TEMP_TOKEN_TTL_SECONDS", ge=1)

    login_max_failures: int = env_field(
        5,
        "LOGIN_MAX_FAILURES",
        ge=1,
        description="Failed logins per email inside the lockout window; IPs get twice this",
    )
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", ge=1)

    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_expiry_seconds: int = env_field(300, "OTP_EXPIRY_SECONDS", ge=1)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    otp_rate_limit_per_hour: int = env_field(3, "OTP_RATE_LIMIT_PER_HOUR", ge=1)

    two_factor_issuer: str = env_field("Zaed", "TWO_FACTOR_ISSUER")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT", ge=1, le=50)
    two_factor_max_failures: int = env_field(5, "TWO_FACTOR_MAX_FAILURES", ge=1)
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS", ge=1)
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest (defaults to JWT_SECRET)",
    )

    hash_time_cost: int = env_field(3, "HASH_TIME_COST", ge=1)
    hash_memory_cost: int = env_field(65536, "HASH_MEMORY_COST", ge=8)
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM", ge=1)

    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_username: str | None = env_field(None, "SMS_USERNAME")
    sms_password: str | None = env_field(None, "SMS_PASSWORD")
    sms_sender_id: str | None = env_field(None, "SMS_SENDER_ID")
    sms_otp_template: str = env_field(
        "Zaed: your verification code is {code}", "SMS_OTP_TEMPLATE"
    )
    sms_language: str = env_field("1", "SMS_LANGUAGE", description="1 English, 2 Arabic")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)
    sms_max_attempts: int = env_field(3, "SMS_MAX_ATTEMPTS", ge=1, le=5)
    sms_base_delay_ms: int = env_field(1000, "SMS_BASE_DELAY_MS", ge=0)
    sms_max_concurrency: int = env_field(10, "SMS_MAX_CONCURRENCY", ge=1)

    app_name: str = env_field("Identity Core", "APP_NAME")
    build_sha: str = env_field("dev", "BUILD_SHA")

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
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens are invalidated on restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"HS256", "HS384", "HS512"}:
            raise ValueError("only HMAC signing algorithms are supported")
        return normalized

    @property
    def login_ip_max_failures(self) -> int:
        return self.login_max_failures * 2

    @property
    def sms_configured(self) -> bool:
        return bool(self.sms_api_url and self.sms_username and self.sms_password)


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
