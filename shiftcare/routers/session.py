from fastapi import APIRouter, Depends

from ..auth import get_current_session
from ..schemas import LogoutOut, SessionClaimsOut


router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/session", response_model=SessionClaimsOut)
def current_session(claims: dict = Depends(get_current_session)):
    return SessionClaimsOut(
        subject=str(claims["sub"]),
        flow=str(claims.get("flow", "")),
        phone=claims.get("phone"),
        issued_at=int(claims["iat"]),
        expires_at=int(claims["exp"]),
    )


@router.post("/logout", response_model=LogoutOut)
def logout(claims: dict = Depends(get_current_session)):
    # Sessions are stateless; the client drops the token and it lapses at exp
    return LogoutOut()
