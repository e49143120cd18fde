from fastapi import Header, HTTPException, Request
from app.core.config import settings
from app.services.otp_service import OtpService

def get_otp_service(request: Request) -> OtpService:
    service = getattr(request.app.state, "otp_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="OTP service is not initialized")
    return service

def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    expected = str(settings.INTERNAL_SERVICE_TOKEN or "").strip()
    if not expected:
        raise HTTPException(status_code=500, detail="INTERNAL_SERVICE_TOKEN is not configured")
    if str(x_internal_token or "").strip() != expected:
        raise HTTPException(status_code=401, detail="Invalid internal token")
