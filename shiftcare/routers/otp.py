from fastapi import APIRouter, Depends, Request

from ..auth import create_access_token
from ..config import settings
from ..errors import MissingInput
from ..identity import OpenBinder
from ..schemas import OtpSentOut, PhoneUserOut, RequestOtpIn, SessionOut, VerifyOtpIn
from ..utils.otp import OTPFlow, client_address, normalize_phone, open_flow


router = APIRouter(prefix="/otp", tags=["otp"])


@router.post("/send", response_model=OtpSentOut, response_model_exclude_none=True)
def send_otp(payload: RequestOtpIn, request: Request, flow: OTPFlow = Depends(open_flow)):
    phone = normalize_phone(payload.phone)
    result = flow.send(phone, client_id=client_address(request))
    return OtpSentOut(
        expires_in=result.ttl_secs,
        otp=result.code if settings.expose_otp_code else None,
    )


@router.post("/verify", response_model=SessionOut)
def verify_otp(payload: VerifyOtpIn, flow: OTPFlow = Depends(open_flow)):
    if not (payload.phone or "").strip() or not (payload.otp or "").strip():
        raise MissingInput("Phone and OTP are required")
    phone = normalize_phone(payload.phone)
    binder = OpenBinder()
    identity = binder.bind(phone)
    flow.verify(phone, payload.otp.strip())
    binder.mark_verified(identity)
    token = create_access_token(identity.subject, flow=flow.name, phone=phone)
    return SessionOut(
        token=token,
        expires_in=int(settings.session_expires_delta.total_seconds()),
        subject=identity.subject,
        user=PhoneUserOut(phone=phone),
    )
