from fastapi import APIRouter
from app.api.public import otp

router = APIRouter()
router.include_router(otp.router, prefix="/otp", tags=["PublicOtp"])
