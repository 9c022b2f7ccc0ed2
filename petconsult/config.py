from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from petconsult.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d|w)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
}


def parse_duration(value: str | int) -> timedelta:
    """Parse ``15m`` / ``30d`` / ``3600`` style durations.

    Bare numbers are seconds. Raises ``ValueError`` for anything else.
    """

    if isinstance(value, int):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = int(amount) * _DURATION_UNITS[(unit or "s").lower()]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the consultation auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/petconsult", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None, "REDIS_URL", description="Optional rate-limit backend"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors used by CI.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_expires_in: str = env_field("15m", "JWT_EXPIRES_IN")
    jwt_refresh_expires_in: str = env_field("30d", "JWT_REFRESH_EXPIRES_IN")
    jwt_issuer: str = env_field("petconsult", "JWT_ISSUER")
    jwt_audience: str = env_field("petconsult-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS", ge=0)

    bcrypt_salt_rounds: int = env_field(
        12,
        "BCRYPT_SALT_ROUNDS",
        ge=4,
        le=16,
        description="Logarithmic password hashing work factor",
    )

    registration_requires_verification: bool = env_field(
        True,
        "REGISTRATION_REQUIRES_VERIFICATION",
        description="Require an SMS code before a new account can log in",
    )
    login_requires_verification: bool = env_field(
        False,
        "LOGIN_REQUIRES_VERIFICATION",
        description="Refuse login until the registration code has been confirmed",
    )
    verification_code_length: int = env_field(
        6, "VERIFICATION_CODE_LENGTH", ge=4, le=8
    )
    verification_code_ttl_minutes: int = env_field(
        5, "VERIFICATION_CODE_TTL_MINUTES", ge=1
    )
    verification_max_attempts: int = env_field(5, "VERIFICATION_MAX_ATTEMPTS", ge=1)

    sms_provider: str = env_field("mock", "SMS_PROVIDER")
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender: str | None = env_field(None, "SMS_SENDER")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    code_request_rate_limit_per_minute: int = env_field(
        3, "CODE_REQUEST_RATE_LIMIT_PER_MINUTE"
    )
    refresh_rate_limit_per_minute: int = env_field(
        30, "REFRESH_RATE_LIMIT_PER_MINUTE"
    )
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

    refresh_token_retention_days: int = env_field(
        7, "REFRESH_TOKEN_RETENTION_DAYS", ge=0
    )
    token_purge_interval_seconds: int = env_field(
        3600, "TOKEN_PURGE_INTERVAL_SECONDS", gt=0
    )

    cors_allow_origins: str = env_field("http://localhost:5173", "CORS_ALLOW_ORIGINS")

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

    @field_validator("redis_url", "sms_api_url", "sms_api_key", "sms_sender")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @field_validator("sms_provider")
    @classmethod
    def _validate_sms_provider(cls, value: str) -> str:
        normalized = (value or "mock").strip().lower()
        if normalized not in {"mock", "http"}:
            raise ValueError("SMS_PROVIDER must be 'mock' or 'http'")
        return normalized

    @field_validator("jwt_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @model_validator(mode="after")
    def _validate_secrets(self) -> "Settings":
        # Startup fails here instead of surfacing as per-request errors.
        for env_name, secret in (
            ("JWT_SECRET", self.jwt_secret),
            ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
        ):
            if not secret:
                raise ValueError(f"{env_name} must be set")
            if len(secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{env_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.sms_provider == "http" and not (self.sms_api_url and self.sms_api_key):
            raise ValueError("SMS_PROVIDER=http requires SMS_API_URL and SMS_API_KEY")
        if self.sms_provider == "mock" and not self.test_mode:
            logger.warning(
                "sms_provider_mock_outside_test_mode",
                detail="set SMS_PROVIDER=http to deliver verification codes",
            )
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_expires_in)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_refresh_expires_in)

    @property
    def verification_code_ttl(self) -> timedelta:
        return timedelta(minutes=self.verification_code_ttl_minutes)

    @property
    def refresh_token_retention(self) -> timedelta:
        return timedelta(days=self.refresh_token_retention_days)

    @property
    def password_memory_cost_kib(self) -> int:
        """Argon2 memory cost derived from the bcrypt-style round count.

        Each extra round doubles the cost, 12 rounds map to 64 MiB.
        """

        return 2 ** (self.bcrypt_salt_rounds + 4)

    @property
    def cors_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allow_origins.split(",")
            if origin.strip()
        ]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            memory_store=_settings_cache.use_memory_store,
            sms_provider=_settings_cache.sms_provider,
            registration_requires_verification=_settings_cache.registration_requires_verification,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
