from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from app.core.config import settings
from app.core.deps import get_otp_service
from app.schemas.otp import OtpResend, OtpSend, OtpSent, OtpVerified, OtpVerify
from app.services.email_service import normalize_email
from app.services.otp_service import (
    OtpError,
    OtpExpired,
    OtpInvalidCode,
    OtpNotFound,
    OtpService,
    OtpTooManyAttempts,
)
from app.services.rate_limit import first_denied, get_rate_limiter, otp_rate_limit_keys

router = APIRouter()

OTP_ERROR_STATUS = {
    OtpNotFound: 400,
    OtpExpired: 400,
    OtpTooManyAttempts: 429,
    OtpInvalidCode: 401,
}


def _client_ip(request: Request) -> str:
    xff = str(request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    client = request.client
    return str(client.host if client else "unknown")


def _rate_limit_or_429(action: str, *, purpose: str, request: Request, email: str) -> None:
    window = int(max(settings.OTP_RATE_LIMIT_WINDOW_SECONDS, 1))
    limit = int(max(settings.OTP_SEND_RATE_LIMIT if action == "send" else settings.OTP_VERIFY_RATE_LIMIT, 1))
    keys = otp_rate_limit_keys(action, purpose=purpose, client_ip=_client_ip(request), email=email)
    denied = first_denied(get_rate_limiter(), keys, limit=limit, window_seconds=window)
    if denied is not None:
        raise HTTPException(
            status_code=429,
            detail=f"Too many OTP requests. Retry in {max(denied.retry_after_seconds, 1)} s.",
        )


def _require_email(raw: str) -> str:
    email = normalize_email(raw)
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email address")
    return email


def _issue(service: OtpService, *, email: str, purpose: str) -> OtpSent:
    service.issue_and_send(email, purpose)
    return OtpSent(purpose=purpose, ttl_seconds=int(settings.OTP_TTL_MINUTES) * 60)


@router.get("/config")
def get_otp_config(service: OtpService = Depends(get_otp_service)):
    return {
        "purposes": ["signup", "signin", "reset"],
        "code_length": 6,
        "ttl_seconds": int(settings.OTP_TTL_MINUTES) * 60,
        "max_attempts": service.max_attempts,
        "email_provider": service.sender.provider,
    }


@router.post("/send", response_model=OtpSent)
def send_otp(payload: OtpSend, request: Request, service: OtpService = Depends(get_otp_service)):
    email = _require_email(payload.email)
    _rate_limit_or_429("send", purpose=payload.purpose, request=request, email=email)
    return _issue(service, email=email, purpose=payload.purpose)


@router.post("/resend", response_model=OtpSent)
def resend_otp(payload: OtpResend, request: Request, service: OtpService = Depends(get_otp_service)):
    email = _require_email(payload.email)
    _rate_limit_or_429("send", purpose=payload.purpose, request=request, email=email)
    return _issue(service, email=email, purpose=payload.purpose)


@router.post("/verify", response_model=OtpVerified)
def verify_otp(payload: OtpVerify, request: Request, service: OtpService = Depends(get_otp_service)):
    email = _require_email(payload.email)
    _rate_limit_or_429("verify", purpose="any", request=request, email=email)
    try:
        service.verify(email, payload.code)
    except OtpError as exc:
        raise HTTPException(status_code=OTP_ERROR_STATUS.get(type(exc), 400), detail=exc.reason) from exc
    return OtpVerified(email=email)
