"""Tests for EmailService transports and message content."""

import json
from datetime import datetime, timezone

import httpx

from sentinel_auth.service import email as email_module
from sentinel_auth.service.email import EmailService, MessageKind


def _service(**kwargs):
    kwargs.setdefault("app_base_url", "http://api.test/")
    kwargs.setdefault("frontend_url", "http://app.test/")
    return EmailService(**kwargs)


def _resend_service(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return _service(resend_api_key="re_test", http_client=client)


class TestTransportSelection:
    def test_defaults_to_log(self):
        service = _service()

        assert service.transport == "log"
        assert service.is_configured is False

    def test_resend_wins_over_smtp(self):
        service = _service(resend_api_key="re_test", smtp_host="smtp.test")

        assert service.transport == "resend"
        assert service.is_configured is True

    def test_smtp_when_only_host_set(self):
        assert _service(smtp_host="smtp.test").transport == "smtp"


class TestLinks:
    def test_verification_link_points_at_api(self):
        service = _service()

        assert service.verification_url("abc") == "http://api.test/v1/auth/verify-email?token=abc"

    def test_reset_link_points_at_frontend(self):
        service = _service()

        assert service.reset_url("abc") == "http://app.test/reset-password?token=abc"


class TestDelivery:
    def test_log_transport_reports_sent(self):
        receipt = _service().send_email_verification("dev@example.com", "tok")

        assert receipt
        assert receipt.kind is MessageKind.EMAIL_VERIFICATION
        assert receipt.to == "dev@example.com"

    def test_resend_payload(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg_1"})

        receipt = _resend_service(handler).send_password_reset("user@example.com", "tok-123")

        assert receipt.sent is True
        request = seen[0]
        assert str(request.url) == "https://api.resend.com/emails"
        assert request.headers["Authorization"] == "Bearer re_test"
        body = json.loads(request.content)
        assert body["to"] == ["user@example.com"]
        assert "Reset your" in body["subject"]
        assert "http://app.test/reset-password?token=tok-123" in body["text"]

    def test_resend_rejection_is_a_failed_receipt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"message": "invalid"})

        receipt = _resend_service(handler).send_password_changed("user@example.com")

        assert not receipt
        assert receipt.kind is MessageKind.PASSWORD_CHANGED
        assert "422" in receipt.error

    def test_network_error_is_a_failed_receipt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        receipt = _resend_service(handler).send_email_verification("user@example.com", "tok")

        assert receipt.sent is False
        assert "connection refused" in receipt.error

    def test_smtp_transport_sends_multipart(self, monkeypatch):
        sent = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host = host
                self.port = port

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context=None):
                sent.append(("starttls",))

            def login(self, user, password):
                sent.append(("login", user))

            def sendmail(self, sender, to, message):
                sent.append(("sendmail", sender, to, message))

        monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
        service = _service(
            smtp_host="smtp.test",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="Sentinel <no-reply@example.com>",
        )

        receipt = service.send_email_verification("user@example.com", "tok")

        assert receipt.sent is True
        assert sent[0] == ("starttls",)
        assert sent[1] == ("login", "mailer")
        _, sender, to, message = sent[2]
        assert sender == "no-reply@example.com"
        assert to == "user@example.com"
        assert "multipart/alternative" in message


class TestLoginAlert:
    def test_alert_includes_network_and_device(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "msg_2"})

        receipt = _resend_service(handler).send_login_alert(
            "user@example.com",
            ip_address="203.0.113.9",
            user_agent="<script>",
            login_at=datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc),
        )

        assert receipt.kind is MessageKind.LOGIN_ALERT
        body = captured[0]
        assert "203.0.113.9" in body["text"]
        assert "2024-03-01 12:30:00 UTC" in body["text"]
        assert "&lt;script&gt;" in body["html"]
        assert "<script>" not in body["html"]

    def test_alert_handles_unknown_fields(self):
        receipt = _service().send_login_alert(
            "user@example.com",
            ip_address=None,
            user_agent=None,
            login_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )

        assert receipt.sent is True
