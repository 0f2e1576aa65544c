from sentinel_auth.logging import (
    SERVICE_NAME,
    _add_correlation_id,
    _add_service,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)


def test_credential_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2-secret",
            "refresh_token": "abcdefghijkl",
            "user_id": "user-123",
        },
    )

    assert event["password"] == "hu***et"
    assert event["refresh_token"] == "ab***kl"
    assert event["user_id"] == "user-123"
    assert event["event"] == "login_failed"


def test_short_values_left_alone():
    event = _redact_pii(None, "info", {"event": "x", "token": "abc"})

    assert event["token"] == "abc"


def test_redact_email():
    assert redact_email("person@example.com") == "pe***@example.com"
    assert redact_email("no-at-sign") == "redacted"


def test_correlation_id_roundtrip():
    try:
        assert set_correlation_id("req-42") == "req-42"
        assert get_correlation_id() == "req-42"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"

        generated = set_correlation_id()
        assert generated and generated != "req-42"
    finally:
        correlation_id_var.set(None)


def test_service_name_is_added():
    assert _add_service(None, "info", {"event": "x"})["service"] == SERVICE_NAME
