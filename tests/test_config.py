"""Tests for settings validation and environment loading."""

import pytest
from pydantic import ValidationError

from tokenguard.config import (
    DegradedVerificationPolicy,
    Settings,
    get_settings,
    reset_settings_cache,
)

ACCESS = "a" * 32
REFRESH = "r" * 32


class TestSettingsValidation:
    def test_defaults(self):
        settings = Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)

        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
        assert settings.degraded_verification is DegradedVerificationPolicy.FAIL_OPEN
        assert settings.cache_operation_timeout == pytest.approx(0.25)

    def test_secrets_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False)

    def test_secrets_generated_in_test_mode(self):
        settings = Settings(test_mode=True)

        assert len(settings.jwt_access_secret) >= 32
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret="short", jwt_refresh_secret=REFRESH)

    def test_shared_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=ACCESS)

    def test_refresh_ttl_must_exceed_access_ttl(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_access_secret=ACCESS,
                jwt_refresh_secret=REFRESH,
                access_token_ttl_seconds=600,
                refresh_token_ttl_seconds=600,
            )

    @pytest.mark.parametrize(
        "field",
        [
            "access_token_ttl_seconds",
            "circuit_failure_threshold",
            "circuit_cooldown_seconds",
            "user_activity_max_entries",
        ],
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH, **{field: 0})

    def test_negative_leeway_rejected(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_access_secret=ACCESS,
                jwt_refresh_secret=REFRESH,
                clock_skew_leeway_seconds=-1,
            )

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_access_secret=ACCESS,
                jwt_refresh_secret=REFRESH,
                degraded_verification="sometimes",
            )


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_ACCESS_SECRET", ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
        monkeypatch.setenv("DEGRADED_VERIFICATION", "fail_closed")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "300")
        monkeypatch.setenv("CACHE_NAMESPACE", "auth")

        settings = Settings.from_env()

        assert settings.degraded_verification is DegradedVerificationPolicy.FAIL_CLOSED
        assert settings.access_token_ttl_seconds == 300
        assert settings.cache_namespace == "auth"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("CACHE_NAMESPACE", "changed")
        reset_settings_cache()

        assert get_settings().cache_namespace == "changed"
        reset_settings_cache()
