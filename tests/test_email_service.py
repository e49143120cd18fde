import json
import unittest
from unittest.mock import patch

import httpx

from app.core.config import settings
from app.services.email_service import (
    EmailAuthError,
    EmailNotConfigured,
    EmailRateLimited,
    EmailTimeout,
    EmailTransportError,
    MockEmailSender,
    ResendEmailSender,
    build_email_sender,
    build_otp_html,
    build_otp_subject,
    email_provider_health,
)

MESSAGE = {
    "from": "jobs@example.com",
    "to": ["talent@example.com"],
    "subject": "Verify Your Email - Sign Up",
    "html": "<p>123456</p>",
}


def sender_with(handler) -> ResendEmailSender:
    return ResendEmailSender(
        api_key="re_test_key",
        api_url="https://api.resend.test/",
        transport=httpx.MockTransport(handler),
    )


class ResendEmailSenderTests(unittest.TestCase):
    def test_send_posts_message_with_bearer_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email_42"})

        result = sender_with(handler).send(MESSAGE, timeout=5)

        self.assertEqual(seen["method"], "POST")
        self.assertEqual(seen["url"], "https://api.resend.test/emails")
        self.assertEqual(seen["auth"], "Bearer re_test_key")
        self.assertEqual(seen["body"], MESSAGE)
        self.assertEqual(result.get("id"), "email_42")
        self.assertTrue(bool(result.get("sent")))

    def test_probe_lists_domains(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"data": []})

        sender_with(handler).probe(timeout=8)
        self.assertEqual(seen, {"method": "GET", "path": "/domains"})

    def test_timeout_applies_to_each_transport_phase(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["timeout"] = request.extensions.get("timeout")
            return httpx.Response(200, json={"id": "email_43"})

        sender_with(handler).send(MESSAGE, timeout=12)
        self.assertEqual(seen["timeout"], {"connect": 12.0, "read": 12.0, "write": 12.0, "pool": 12.0})

    def test_unauthorized_maps_to_auth_error(self):
        sender = sender_with(lambda request: httpx.Response(401, json={"message": "API key is invalid"}))
        with self.assertRaises(EmailAuthError) as ctx:
            sender.send(MESSAGE, timeout=5)
        self.assertIn("API key is invalid", str(ctx.exception))
        self.assertEqual(ctx.exception.status, "auth_failed")

    def test_too_many_requests_maps_to_rate_limited(self):
        sender = sender_with(lambda request: httpx.Response(429, json={"message": "Too many requests"}))
        with self.assertRaises(EmailRateLimited):
            sender.send(MESSAGE, timeout=5)

    def test_server_error_maps_to_transport_error(self):
        sender = sender_with(lambda request: httpx.Response(502, text="bad gateway"))
        with self.assertRaises(EmailTransportError) as ctx:
            sender.probe(timeout=5)
        self.assertIn("502", str(ctx.exception))

    def test_timeout_maps_to_email_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with self.assertRaises(EmailTimeout):
            sender_with(handler).send(MESSAGE, timeout=0.5)

    def test_connection_error_maps_to_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(EmailTransportError):
            sender_with(handler).send(MESSAGE, timeout=5)

    def test_missing_api_key_is_not_configured(self):
        sender = ResendEmailSender(api_key="  ")
        self.assertFalse(sender.configured)
        with self.assertRaises(EmailNotConfigured):
            sender.probe(timeout=1)


class OtpEmailContentTests(unittest.TestCase):
    def test_subject_per_purpose(self):
        self.assertEqual(build_otp_subject("signup"), "Verify Your Email - Sign Up")
        self.assertEqual(build_otp_subject("signin"), "Verify Your Email - Sign In")
        self.assertEqual(build_otp_subject("reset"), "Reset Your Password")

    def test_html_contains_code_and_expiry(self):
        html = build_otp_html(code="908172", purpose="signin", ttl_minutes=10)
        self.assertIn("908172", html)
        self.assertIn("Verify Your Email - Sign In", html)
        self.assertIn("expire in 10 minutes", html)


class EmailProviderSettingsTests(unittest.TestCase):
    def setUp(self):
        self._backup = {
            "EMAIL_PROVIDER": settings.EMAIL_PROVIDER,
            "RESEND_API_KEY": settings.RESEND_API_KEY,
            "EMAIL_FROM": settings.EMAIL_FROM,
            "OTP_DEV_MODE": settings.OTP_DEV_MODE,
        }

    def tearDown(self):
        for key, value in self._backup.items():
            setattr(settings, key, value)

    def test_dev_mode_forces_mock_sender(self):
        settings.EMAIL_PROVIDER = "resend"
        settings.OTP_DEV_MODE = True
        self.assertIsInstance(build_email_sender(), MockEmailSender)
        health = email_provider_health()
        self.assertEqual(health.get("effective_provider"), "mock_email")
        self.assertTrue(bool(health.get("dev_mode")))
        self.assertTrue(bool(health.get("issues")))

    def test_resend_provider_builds_resend_sender(self):
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "resend"
        settings.RESEND_API_KEY = "re_live"
        sender = build_email_sender()
        self.assertIsInstance(sender, ResendEmailSender)
        self.assertTrue(sender.configured)

    def test_unknown_provider_is_rejected(self):
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "carrier-pigeon"
        with self.assertRaises(ValueError):
            build_email_sender()
        health = email_provider_health()
        self.assertEqual(health.get("status"), "error")
        self.assertFalse(bool(health.get("can_send")))

    def test_resend_health_degraded_without_credentials(self):
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "resend"
        settings.RESEND_API_KEY = ""
        settings.EMAIL_FROM = ""
        health = email_provider_health()
        self.assertEqual(health.get("status"), "degraded")
        self.assertFalse(bool(health.get("can_send")))
        self.assertIn("RESEND_API_KEY is not set", health.get("issues"))
        self.assertIn("EMAIL_FROM is not set", health.get("issues"))

    def test_resend_health_reports_unreachable_api(self):
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "resend"
        settings.RESEND_API_KEY = "re_live"
        settings.EMAIL_FROM = "jobs@example.com"
        with patch.object(ResendEmailSender, "probe", side_effect=EmailTimeout("probe timed out")):
            health = email_provider_health()
        self.assertEqual(health.get("status"), "degraded")
        self.assertFalse(bool(health.get("can_send")))

    def test_resend_health_ok_when_probe_passes(self):
        settings.OTP_DEV_MODE = False
        settings.EMAIL_PROVIDER = "resend"
        settings.RESEND_API_KEY = "re_live"
        settings.EMAIL_FROM = "jobs@example.com"
        with patch.object(ResendEmailSender, "probe", return_value=None):
            health = email_provider_health()
        self.assertEqual(health.get("status"), "ok")
        self.assertTrue(bool(health.get("can_send")))
