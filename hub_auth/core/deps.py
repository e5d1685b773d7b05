import hmac

from fastapi import Cookie, Header, HTTPException
from jose import JWTError
from hub_auth.core.config import settings
from hub_auth.core.security import decode_session_token
from hub_auth.services.otp_service import OtpService, build_otp_service

def get_otp_service() -> OtpService:
    return build_otp_service()

def get_hub_session(hub_session: str | None = Cookie(default=None, alias=settings.HUB_COOKIE_NAME)) -> dict:
    if not hub_session:
        raise HTTPException(status_code=401, detail="Missing hub session")
    try:
        return decode_session_token(hub_session)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid hub session")

def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    expected = str(settings.INTERNAL_SERVICE_TOKEN or "")
    if not x_internal_token or not expected or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=403, detail="Internal token required")
