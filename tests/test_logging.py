from tokenward.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    mask_email,
    set_correlation_id,
)


def test_redacts_credentials_and_emails():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2-hunter2",
            "refresh_token": "eyJhbGciOiJSUzI1NiJ9.payload.sig",
            "email": "someone@example.com",
            "to": "kept@example.com",
            "user_id": "u-1",
            "removed": 3,
        },
    )

    assert event["password"] == "hu***r2"
    assert event["refresh_token"].startswith("ey***")
    assert "payload" not in event["refresh_token"]
    assert event["email"] == "so***@example.com"
    assert event["user_id"] == "u-1"
    assert event["removed"] == 3
    assert event["event"] == "login_failed"


def test_short_secrets_fully_masked():
    assert _redact_pii(None, "info", {"secret": "abc"})["secret"] == "***"


def test_mask_email_without_at_sign():
    assert mask_email("not-an-email-address") == "no***ss"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-42")
    assert cid == get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"
    assert set_correlation_id()  # generates a fresh id
