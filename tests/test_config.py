"""Tests for settings validation and environment loading."""

import pytest
from pydantic import ValidationError

from sessionward.config import (
    SecurityHeadersMode,
    Settings,
    SigningAlgorithm,
    get_settings,
    reset_settings_cache,
)


class TestDefaults:
    def test_defaults_match_documented_lifetimes(self, settings):
        assert settings.session_algorithm == SigningAlgorithm.HS256
        assert settings.session_expiration_seconds == 180
        assert settings.session_refresh_token_expires_in_seconds == 604800
        assert settings.rate_limit_window_seconds == 60
        assert settings.rate_limit_response_status == 429
        assert settings.reset_password_token_expires_in_seconds == 7200
        assert settings.security_headers == SecurityHeadersMode.STRICT

    def test_secret_is_required(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings()
        assert "session_secret" in str(exc_info.value)

    def test_blank_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(session_secret="   ")


class TestAlgorithm:
    @pytest.mark.parametrize("raw", ["hs256", "HS384", " hs512 "])
    def test_accepts_any_case(self, raw):
        settings = Settings(session_secret="s", session_algorithm=raw)
        assert settings.session_algorithm.value == raw.strip().lower()

    @pytest.mark.parametrize("raw", ["rs256", "none", "", "hs1024"])
    def test_rejects_unknown_algorithm(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            Settings(session_secret="s", session_algorithm=raw)
        assert "session_algorithm must be one of" in str(exc_info.value)


class TestSecurityHeaders:
    @pytest.mark.parametrize("raw", ["strict", " Default ", "NONE"])
    def test_accepts_known_modes(self, raw):
        settings = Settings(session_secret="s", security_headers=raw)
        assert settings.security_headers == SecurityHeadersMode(raw.strip().lower())

    def test_rejects_unknown_mode(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(session_secret="s", security_headers="paranoid")
        assert "security_headers must be one of: strict, default, none" in str(exc_info.value)


class TestNumericBounds:
    @pytest.mark.parametrize(
        "field",
        [
            "session_expiration_seconds",
            "session_refresh_token_expires_in_seconds",
            "rate_limit_requests_per_minute",
            "credential_rate_limit_per_minute",
            "rate_limit_window_seconds",
            "reset_password_token_expires_in_seconds",
        ],
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError) as exc_info:
            Settings(session_secret="s", **{field: 0})
        assert f"{field} must be greater than 0" in str(exc_info.value)

    @pytest.mark.parametrize("status", [200, 302, 600])
    def test_rate_limit_status_must_be_error_code(self, status):
        with pytest.raises(ValidationError):
            Settings(session_secret="s", rate_limit_response_status=status)

    def test_rate_limit_message_must_not_be_blank(self):
        with pytest.raises(ValidationError):
            Settings(session_secret="s", rate_limit_response_message=" ")


class TestRevalidation:
    def test_assignment_is_validated(self, settings):
        with pytest.raises(ValidationError):
            settings.session_algorithm = "rs256"
        assert settings.session_algorithm == SigningAlgorithm.HS256

    def test_apply_returns_validated_copy(self, settings):
        updated = settings.apply(session_algorithm="HS512", rate_limit_window_seconds=30)
        assert updated.session_algorithm == SigningAlgorithm.HS512
        assert updated.rate_limit_window_seconds == 30
        assert settings.session_algorithm == SigningAlgorithm.HS256

    def test_apply_rejects_invalid_change(self, settings):
        with pytest.raises(ValidationError):
            settings.apply(session_expiration_seconds=-5)


class TestEnvironment:
    def test_from_env_reads_variables(self, monkeypatch):
        monkeypatch.setenv("SESSION_SECRET", "from-env")
        monkeypatch.setenv("SESSION_ALGORITHM", "HS384")
        monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "15")
        settings = Settings.from_env()
        assert settings.session_secret == "from-env"
        assert settings.session_algorithm == SigningAlgorithm.HS384
        assert settings.rate_limit_window_seconds == 15

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("SESSION_EXPIRATION_SECONDS", "42")
        assert get_settings().session_expiration_seconds == first.session_expiration_seconds
        reset_settings_cache()
        assert get_settings().session_expiration_seconds == 42
        reset_settings_cache()
