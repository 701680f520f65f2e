"""Log redaction and correlation ids."""

from warden.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_secrets_and_contacts_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "otp_generated",
                "password": "hunter2hunter2",
                "email": "alice@example.com",
                "refresh_token": "abcdefghijkl",
                "code": "123456",
                "pin": "42",
            },
        )
        assert event["event"] == "otp_generated"
        assert event["password"] == "hu***r2"
        assert "alice" not in event["email"]
        assert event["refresh_token"] == "ab***kl"
        assert event["code"] == "12***56"
        assert event["pin"] == "42"

    def test_error_code_stays_readable(self):
        event = _redact_pii(None, "warning", {"event": "service_error", "error_code": "forbidden"})
        assert event["error_code"] == "forbidden"

    def test_short_values_fully_masked(self):
        assert _redact_pii(None, "info", {"event": "x", "otp": "1234"})["otp"] == "***"


class TestSanitizeErrorMessage:
    def test_strips_sql_and_paths(self):
        text = sanitize_error_message(
            "SELECT * FROM app_user failed; see /var/lib/postgresql/data/log"
        )
        assert "app_user" not in text
        assert "/var/lib" not in text

    def test_strips_inline_credentials(self):
        assert "s3cr3t" not in sanitize_error_message("login failed password=s3cr3t")

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-42")
    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert set_correlation_id() != "req-42"
