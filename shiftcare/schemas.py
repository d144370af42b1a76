from pydantic import BaseModel, Field
from typing import Optional


class RequestOtpIn(BaseModel):
    # Optional so a missing phone is reported as missing_input (400), not a 422
    phone: Optional[str] = None


class VerifyOtpIn(BaseModel):
    phone: Optional[str] = None
    otp: Optional[str] = None


class OtpSentOut(BaseModel):
    success: bool = True
    message: str = "OTP sent successfully"
    expires_in: int = Field(..., description="Seconds until the code expires")
    otp: Optional[str] = Field(None, description="Diagnostic echo of the code; dev builds only")


class PhoneUserOut(BaseModel):
    phone: str


class SessionOut(BaseModel):
    success: bool = True
    message: str = "OTP verified successfully"
    token: str
    token_type: str = "bearer"
    expires_in: int
    subject: str
    user: PhoneUserOut


class ProfessionalOut(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    phone: str
    is_verified: bool
    phone_verified: bool


class ProfessionalSessionOut(SessionOut):
    professional: ProfessionalOut


class SessionClaimsOut(BaseModel):
    subject: str
    flow: str
    phone: Optional[str] = None
    issued_at: int
    expires_at: int


class LogoutOut(BaseModel):
    success: bool = True
    message: str = "Logged out successfully"
