"""Tests for log redaction and correlation ids."""

from authguard.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)


class TestRedaction:
    def test_sensitive_keys_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "password_reset_requested",
                "email": "alice@example.com",
                "reset_token": "abcdef123456",
                "Authorization": "Bearer xyz123",
                "principal_id": "p-1",
            },
        )

        assert event["event"] == "password_reset_requested"
        assert event["email"] == "al***om"
        assert event["reset_token"] == "ab***56"
        assert event["Authorization"] == "Be***23"
        assert event["principal_id"] == "p-1"

    def test_short_and_non_string_values_untouched(self):
        event = _redact_pii(None, "info", {"event": "x", "token": "abc", "secret_len": 64})
        assert event["token"] == "abc"
        assert event["secret_len"] == 64

    def test_descriptive_fields_left_readable(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "jwt_expired", "token_type": "access", "smtp_password": "hunter22"},
        )
        assert event["token_type"] == "access"
        assert event["smtp_password"] == "hu***22"

    def test_redact_email(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email(None) == "redacted"
        assert redact_email("not-an-address") == "redacted"


class TestCorrelationId:
    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
            assert len(cid) == 36
            assert get_correlation_id() == cid
        finally:
            correlation_id_var.reset(token)

    def test_added_to_events(self):
        token = correlation_id_var.set("req-9")
        try:
            assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-9"
        finally:
            correlation_id_var.reset(token)

    def test_absent_without_context(self):
        token = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)
