from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenguard.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the MAC
MIN_SECRET_LENGTH = 32


class DegradedVerificationPolicy(str, Enum):
    """What verify_token does when the blacklist cannot be consulted.

    - FAIL_OPEN: accept a token whose signature and expiry are valid. A
      blacklisted but unexpired token may be accepted during an outage.
    - FAIL_CLOSED: reject every token until the cache is reachable again.
    """

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle subsystem."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    cache_namespace: str = env_field(
        "tokenguard", "CACHE_NAMESPACE", description="Prefix applied to every cache key"
    )

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("tokenguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenguard-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of access tokens",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of refresh tokens and of their family records",
    )
    clock_skew_leeway_seconds: int = env_field(
        30,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Allowance for clock drift between nodes when checking exp",
    )

    cache_operation_timeout_ms: int = env_field(
        250,
        "CACHE_OPERATION_TIMEOUT_MS",
        description="Upper bound for a single cache call; a timeout counts as a failure",
    )
    circuit_failure_threshold: int = env_field(5, "CIRCUIT_FAILURE_THRESHOLD")
    circuit_window_seconds: float = env_field(60.0, "CIRCUIT_WINDOW_SECONDS")
    circuit_cooldown_seconds: float = env_field(30.0, "CIRCUIT_COOLDOWN_SECONDS")
    degraded_verification: DegradedVerificationPolicy = env_field(
        DegradedVerificationPolicy.FAIL_OPEN,
        "DEGRADED_VERIFICATION",
        description="fail_open keeps serving signature-only verification during cache outages",
    )

    session_ttl_seconds: int = env_field(24 * 60 * 60, "SESSION_TTL_SECONDS")
    security_event_max_entries: int = env_field(50, "SECURITY_EVENT_MAX_ENTRIES")
    security_event_ttl_seconds: int = env_field(
        90 * 24 * 60 * 60, "SECURITY_EVENT_TTL_SECONDS"
    )
    user_activity_max_entries: int = env_field(100, "USER_ACTIVITY_MAX_ENTRIES")
    user_activity_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "USER_ACTIVITY_TTL_SECONDS"
    )

    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables generated secrets and in-memory cache fallback for tests",
    )

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

    @field_validator("degraded_verification")
    @classmethod
    def _validate_degraded_policy(
        cls, value: DegradedVerificationPolicy
    ) -> DegradedVerificationPolicy:
        return DegradedVerificationPolicy(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "cache_operation_timeout_ms",
        "circuit_failure_threshold",
        "session_ttl_seconds",
        "security_event_max_entries",
        "security_event_ttl_seconds",
        "user_activity_max_entries",
        "user_activity_ttl_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("circuit_window_seconds", "circuit_cooldown_seconds")
    @classmethod
    def _ensure_positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be a positive duration")
        return value

    @field_validator("clock_skew_leeway_seconds")
    @classmethod
    def _ensure_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew leeway cannot be negative")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        # Access and refresh tokens are signed with distinct keys so a leaked
        # access token can never be replayed as a refresh token.
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                if not self.test_mode:
                    raise ValueError(
                        f"{name.upper()} must be set outside TEST_MODE"
                    )
                setattr(self, name, secrets.token_urlsafe(48))
                logger.warning("jwt_secret_generated", field=name)
            elif len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("refresh token TTL must exceed access token TTL")
        return self

    @property
    def cache_operation_timeout(self) -> float:
        return self.cache_operation_timeout_ms / 1000.0


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
