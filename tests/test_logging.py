"""Tests for the structlog processors: request stamping and credential scrubbing."""

from trafficlearn.logging import (
    SERVICE_NAME,
    _scrub_credentials,
    _stamp_request,
    correlation_id_var,
    mask_email,
    set_correlation_id,
)


class TestScrubCredentials:
    def test_secrets_are_dropped(self):
        event = {
            "password": "Learner123!",
            "csrf_token": "a" * 64,
            "remember_cookie": "4:" + "b" * 64,
            "event": "login_failed",
        }

        scrubbed = _scrub_credentials(None, "info", event)

        assert scrubbed["password"] == "[redacted]"
        assert scrubbed["csrf_token"] == "[redacted]"
        assert scrubbed["remember_cookie"] == "[redacted]"
        assert scrubbed["event"] == "login_failed"

    def test_emails_keep_their_domain(self):
        scrubbed = _scrub_credentials(None, "info", {"email": "aline@example.com"})

        assert scrubbed["email"] == "a***@example.com"
        assert mask_email("not-an-email") == "[redacted]"

    def test_session_ids_are_shortened(self):
        scrubbed = _scrub_credentials(None, "info", {"session_id": "0123456789abcdef"})

        assert scrubbed["session_id"] == "01234567"


class TestStampRequest:
    def test_adds_service_and_correlation_id(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id("req-42")
            event = _stamp_request(None, "info", {"event": "session_created"})
        finally:
            correlation_id_var.reset(token)

        assert cid == "req-42"
        assert event["correlation_id"] == "req-42"
        assert event["service"] == SERVICE_NAME

    def test_generates_an_id_when_none_is_supplied(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
        finally:
            correlation_id_var.reset(token)

        assert len(cid) == 36
