from pydantic import BaseModel, Field
from typing import Literal

OtpPurpose = Literal["signup", "signin", "reset"]

class OtpSend(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    purpose: OtpPurpose = "signup"

class OtpResend(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    purpose: Literal["signup", "signin"] = "signup"

class OtpVerify(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    code: str = Field(min_length=1, max_length=16)

class OtpSent(BaseModel):
    status: str = "sent"
    purpose: OtpPurpose
    ttl_seconds: int
    message: str = "If the address is reachable, a verification code has been sent."

class OtpVerified(BaseModel):
    status: str = "verified"
    email: str
