"""Tests for settings loading and the auth error taxonomy."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from trafficlearn.config import Settings
from trafficlearn.storage.errors import ConstraintViolation, StorageError
from trafficlearn.service.errors import (
    AccessDenied,
    AuthFlowError,
    CsrfValidationFailed,
    InvalidCredentials,
    MalformedRememberMeCookie,
    ServiceError,
    SessionExpired,
)


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.session_lifetime_seconds == 86400
        assert settings.csrf_expiry_seconds == 3600
        assert settings.remember_me_days == 30
        assert settings.remember_cookie_name == "remember_me"
        assert settings.timezone == "Africa/Kigali"
        assert settings.available_languages == ["en", "rw"]

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("SESSION_LIFETIME", "600")
        monkeypatch.setenv("CSRF_TOKEN_EXPIRE", "120")
        monkeypatch.setenv("AVAILABLE_LANGUAGES", "en, rw, fr")

        settings = Settings.from_env()

        assert settings.session_lifetime_seconds == 600
        assert settings.csrf_expiry_seconds == 120
        assert settings.available_languages == ["en", "rw", "fr"]

    def test_languages_accept_json(self):
        assert Settings(available_languages='["rw", "en"]').available_languages == ["rw", "en"]

    def test_default_language_is_always_available(self):
        settings = Settings(default_language="fr", available_languages=["en", "rw"])

        assert settings.available_languages == ["fr", "en", "rw"]

    def test_low_entropy_tokens_are_refused(self):
        with pytest.raises(PydanticValidationError):
            Settings(token_bytes=16)

    def test_non_positive_lifetime_is_refused(self):
        with pytest.raises(PydanticValidationError):
            Settings(session_lifetime_seconds=0)

    def test_stored_sessions_outlive_the_idle_lifetime(self):
        settings = Settings(session_lifetime_seconds=600, session_store_grace_seconds=120)

        assert settings.session_store_ttl_seconds == 720
        with pytest.raises(PydanticValidationError):
            Settings(session_store_grace_seconds=-1)


class TestAuthErrors:
    @pytest.mark.parametrize(
        "error_cls",
        [InvalidCredentials, SessionExpired, CsrfValidationFailed, MalformedRememberMeCookie],
    )
    def test_auth_errors_redirect_to_login(self, error_cls):
        error = error_cls()

        assert isinstance(error, AuthFlowError)
        assert isinstance(error, ServiceError)
        assert error.status_code == 303
        assert error.redirect_to == "/auth/login"
        assert error.notice

    def test_notices_do_not_leak_account_state(self):
        notice = InvalidCredentials().notice.lower()

        assert "not found" not in notice
        assert "inactive" not in notice

    def test_csrf_failure_is_distinct_from_access_denied(self):
        csrf = CsrfValidationFailed()
        denied = AccessDenied("role", redirect_to="/learner/dashboard")

        assert not isinstance(csrf, AccessDenied)
        assert csrf.notice != denied.notice

    def test_access_denied_carries_reason(self):
        error = AccessDenied("login", redirect_to="/auth/login", notice="Please login")

        assert error.reason == "login"
        assert error.detail == {"reason": "login"}
        assert error.error_code == "unauthorized"
        assert AccessDenied("subscription", redirect_to="/school/subscription").error_code == "forbidden"

    def test_session_expired_is_a_warning(self):
        assert SessionExpired().notice_level == "warning"


class TestStorageErrors:
    def test_constraint_violation_names_the_field(self):
        exc = ConstraintViolation("email already exists", {"field": "email"})

        assert isinstance(exc, StorageError)
        assert exc.field == "email"
        assert ConstraintViolation("user does not exist").field is None
