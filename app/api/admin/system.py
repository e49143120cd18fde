from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.deps import get_otp_service, require_internal_token
from app.services.email_service import email_provider_health
from app.services.otp_service import OtpService

router = APIRouter(dependencies=[Depends(require_internal_token)])


@router.get("/email-provider-health")
def get_email_provider_health():
    return email_provider_health()


@router.get("/otp-stats")
def get_otp_stats(service: OtpService = Depends(get_otp_service)):
    return service.stats()


@router.post("/otp-sweep")
def run_otp_sweep(service: OtpService = Depends(get_otp_service)):
    return {"deleted": service.purge_expired(), **service.stats()}
