"""Tests for the account email sender."""

import smtplib

from authcore.service.email import EmailService


def _service(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        from_email="noreply@example.com",
        base_url="https://app.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def _capture(service, monkeypatch):
    sent = []
    monkeypatch.setattr(service, "_deliver", lambda msg, to_email: sent.append((msg, to_email)))
    return sent


def _text_body(msg):
    return msg.get_payload()[0].get_payload(decode=True).decode()


class TestLinkLifetimes:
    def test_configured_lifetimes_are_advertised(self, monkeypatch):
        service = _service(verification_ttl_hours=48, password_reset_ttl_hours=2)
        sent = _capture(service, monkeypatch)

        service.send_verification_email("john@example.com", "a" * 64)
        service.send_password_reset_email("john@example.com", "b" * 64)
        service.send_email_change_verification_email("new@example.com", "c" * 64)

        bodies = [_text_body(msg) for msg, _ in sent]
        assert "expire in 48 hours" in bodies[0]
        assert "expire in 2 hours" in bodies[1]
        assert "expire in 48 hours" in bodies[2]

    def test_default_lifetimes(self, monkeypatch):
        service = _service()
        sent = _capture(service, monkeypatch)

        service.send_verification_email("john@example.com", "a" * 64)
        service.send_password_reset_email("john@example.com", "b" * 64)

        assert "expire in 24 hours" in _text_body(sent[0][0])
        assert "expire in 1 hour." in _text_body(sent[1][0])


class TestDelivery:
    def test_links_point_at_base_url(self, monkeypatch):
        service = _service()
        sent = _capture(service, monkeypatch)

        service.send_email_change_verification_email("new@example.com", "c" * 64)

        msg, to_email = sent[0]
        assert to_email == "new@example.com"
        assert f"https://app.example.com/api/v1/auth/verify-email-change?token={'c' * 64}" in _text_body(msg)

    def test_smtp_failure_returns_false(self, monkeypatch):
        service = _service()

        def refuse(msg, to_email):
            raise smtplib.SMTPServerDisconnected("gone")

        monkeypatch.setattr(service, "_deliver", refuse)
        assert service.send_verification_email("john@example.com", "a" * 64) is False

    def test_unconfigured_sender_logs_instead(self):
        assert EmailService().send_password_reset_email("john@example.com", "b" * 64) is True
