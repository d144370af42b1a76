from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth import create_access_token
from ..config import settings
from ..database import get_db
from ..errors import MissingInput
from ..identity import ProfessionalBinder
from ..models import Professional
from ..schemas import (
    OtpSentOut,
    PhoneUserOut,
    ProfessionalOut,
    ProfessionalSessionOut,
    RequestOtpIn,
    VerifyOtpIn,
)
from ..utils.otp import OTPFlow, client_address, healthcare_flow, normalize_phone


router = APIRouter(prefix="/healthcare/otp", tags=["healthcare"])


def _professional_out(pro: Professional) -> ProfessionalOut:
    return ProfessionalOut(
        id=str(pro.id),
        first_name=pro.first_name,
        last_name=pro.last_name,
        email=pro.email,
        phone=pro.phone,
        is_verified=bool(pro.is_verified),
        phone_verified=bool(pro.phone_verified),
    )


@router.post("/send", response_model=OtpSentOut, response_model_exclude_none=True)
def send_otp(
    payload: RequestOtpIn,
    request: Request,
    db: Session = Depends(get_db),
    flow: OTPFlow = Depends(healthcare_flow),
):
    phone = normalize_phone(payload.phone)
    # Unknown phones never get a challenge
    ProfessionalBinder(db).bind(phone)
    result = flow.send(phone, client_id=client_address(request))
    return OtpSentOut(
        expires_in=result.ttl_secs,
        otp=result.code if settings.expose_otp_code else None,
    )


@router.post("/verify", response_model=ProfessionalSessionOut)
def verify_otp(
    payload: VerifyOtpIn,
    db: Session = Depends(get_db),
    flow: OTPFlow = Depends(healthcare_flow),
):
    if not (payload.phone or "").strip() or not (payload.otp or "").strip():
        raise MissingInput("Phone number and OTP are required")
    phone = normalize_phone(payload.phone)
    binder = ProfessionalBinder(db)
    identity = binder.bind(phone)
    flow.verify(phone, payload.otp.strip())
    binder.mark_verified(identity)
    # Persist before minting: a failed write must not hand out a session
    db.commit()
    token = create_access_token(identity.subject, flow=flow.name, phone=phone)
    return ProfessionalSessionOut(
        token=token,
        expires_in=int(settings.session_expires_delta.total_seconds()),
        subject=identity.subject,
        user=PhoneUserOut(phone=phone),
        professional=_professional_out(identity.account),
    )
