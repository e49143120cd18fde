from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from app.core.config import settings


class EmailDeliveryError(Exception):
    status = "transport_error"


class EmailNotConfigured(EmailDeliveryError):
    status = "unconfigured"


class EmailTimeout(EmailDeliveryError):
    status = "timeout"


class EmailAuthError(EmailDeliveryError):
    status = "auth_failed"


class EmailRateLimited(EmailDeliveryError):
    status = "rate_limited"


class EmailTransportError(EmailDeliveryError):
    status = "transport_error"


logger = logging.getLogger("app.email")

PURPOSE_SUBJECTS = {
    "signup": "Verify Your Email - Sign Up",
    "signin": "Verify Your Email - Sign In",
    "reset": "Reset Your Password",
}

MOCK_PROVIDERS = {"", "dummy", "mock", "console"}


class EmailSender(Protocol):
    provider: str

    @property
    def configured(self) -> bool:
        ...

    def probe(self, *, timeout: float) -> None:
        ...

    def send(self, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        ...


def normalize_email(value: str | None) -> str:
    return str(value or "").strip().lower()


def build_otp_subject(purpose: str) -> str:
    return PURPOSE_SUBJECTS.get(str(purpose or "").strip().lower(), PURPOSE_SUBJECTS["signup"])


def build_otp_html(*, code: str, purpose: str, ttl_minutes: int) -> str:
    subject = build_otp_subject(purpose)
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>{subject}</h2>"
        "<p>Your verification code is:</p>"
        '<div style="background: #f0f0f0; padding: 20px; text-align: center; margin: 20px 0;">'
        f'<h1 style="color: #007bff; font-size: 32px; margin: 0;">{code}</h1>'
        "</div>"
        f"<p>This code will expire in {int(ttl_minutes)} minutes.</p>"
        "<p>If you didn't request this, please ignore this email.</p>"
        "</div>"
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {}
    if isinstance(payload, dict):
        detail = payload.get("message") or payload.get("error") or payload.get("name")
        if detail:
            return str(detail)
    return str(response.text or response.status_code)


def _raise_for_status(response: httpx.Response, *, action: str) -> None:
    if response.status_code < 400:
        return
    detail = _error_detail(response)
    if response.status_code in {401, 403}:
        raise EmailAuthError(f"Resend {action}: HTTP {response.status_code}: {detail}")
    if response.status_code == 429:
        raise EmailRateLimited(f"Resend {action}: rate limit exceeded: {detail}")
    raise EmailTransportError(f"Resend {action}: HTTP {response.status_code}: {detail}")


class ResendEmailSender:
    provider = "resend"

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str = "https://api.resend.com",
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = str(api_key or "").strip()
        self.api_url = str(api_url or "").strip().rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key) and bool(self.api_url)

    def _request(self, method: str, path: str, *, timeout: float, json: dict[str, Any] | None = None) -> httpx.Response:
        """Issue one Resend API call.

        ``timeout`` bounds each transport phase (connect, write, read, pool)
        on its own, so one call can take up to a few multiples of it on a slow
        link. Callers enforce their overall budget between calls.
        """
        if not self.configured:
            raise EmailNotConfigured("RESEND_API_KEY is not set")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=max(float(timeout), 0.001), transport=self._transport) as client:
                return client.request(method, f"{self.api_url}{path}", headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise EmailTimeout(f"Resend request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise EmailTransportError(f"Resend request failed: {exc}") from exc

    def probe(self, *, timeout: float) -> None:
        response = self._request("GET", "/domains", timeout=timeout)
        _raise_for_status(response, action="connectivity check")

    def send(self, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        response = self._request("POST", "/emails", timeout=timeout, json=message)
        _raise_for_status(response, action="send")
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}
        return {
            "provider": self.provider,
            "status": "accepted",
            "sent": True,
            "id": payload.get("id") if isinstance(payload, dict) else None,
        }


class MockEmailSender:
    provider = "mock_email"

    def __init__(self):
        self.outbox: list[dict[str, Any]] = []

    @property
    def configured(self) -> bool:
        return True

    def probe(self, *, timeout: float) -> None:
        _ = timeout

    def send(self, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        _ = timeout
        self.outbox.append(dict(message))
        logger.warning("[OTP EMAIL MOCK] to=%s subject=%s", message.get("to"), message.get("subject"))
        return {"provider": self.provider, "status": "accepted", "sent": False, "mocked": True}


def _effective_provider() -> str:
    if bool(getattr(settings, "OTP_DEV_MODE", False)):
        return "mock_email"
    provider = str(settings.EMAIL_PROVIDER or "dummy").strip().lower()
    if provider in MOCK_PROVIDERS:
        return "mock_email"
    return provider


def build_email_sender() -> EmailSender:
    provider = _effective_provider()
    if provider == "mock_email":
        return MockEmailSender()
    if provider == "resend":
        return ResendEmailSender(api_key=settings.RESEND_API_KEY, api_url=settings.RESEND_API_URL)
    raise ValueError(f"Unknown EMAIL_PROVIDER: {provider}")


def email_provider_health(*, probe: bool = True) -> dict[str, Any]:
    provider = str(settings.EMAIL_PROVIDER or "dummy").strip().lower()
    effective = _effective_provider()
    if effective == "mock_email":
        dev_mode = bool(getattr(settings, "OTP_DEV_MODE", False))
        return {
            "provider": provider or "dummy",
            "effective_provider": "mock_email",
            "status": "ok",
            "mode": "mock",
            "dev_mode": dev_mode,
            "can_send": True,
            "checks": {"otp_dev_mode": dev_mode, "mock_mode": True},
            "issues": ["OTP_DEV_MODE is on: real email delivery is disabled"] if dev_mode else [],
        }

    if effective == "resend":
        api_key = str(settings.RESEND_API_KEY or "").strip()
        sender = str(settings.EMAIL_FROM or "").strip()
        checks = {"resend_api_key_configured": bool(api_key), "email_from_configured": bool(sender)}
        issues: list[str] = []
        if not checks["resend_api_key_configured"]:
            issues.append("RESEND_API_KEY is not set")
        if not checks["email_from_configured"]:
            issues.append("EMAIL_FROM is not set")
        can_send = all(checks.values())
        if can_send and probe:
            try:
                ResendEmailSender(api_key=api_key, api_url=settings.RESEND_API_URL).probe(
                    timeout=float(settings.OTP_PROBE_TIMEOUT_SECONDS)
                )
            except EmailDeliveryError as exc:
                can_send = False
                issues.append(f"Resend API unavailable: {exc}")
        return {
            "provider": "resend",
            "status": "ok" if can_send else "degraded",
            "mode": "real",
            "dev_mode": False,
            "can_send": can_send,
            "checks": checks,
            "issues": issues,
        }

    return {
        "provider": provider,
        "status": "error",
        "mode": "unknown",
        "dev_mode": False,
        "can_send": False,
        "checks": {"provider_supported": False},
        "issues": [f"Unknown EMAIL_PROVIDER: {provider}"],
    }
