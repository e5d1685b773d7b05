from datetime import datetime, timedelta, timezone
from jose import jwt
from hub_auth.core.config import settings

SESSION_AUTH_CHANNEL = "whatsapp_otp"

def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm="HS256")

def decode_jwt(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=["HS256"])

def create_session_token(*, identity: str, app_id: str) -> str:
    return create_jwt(
        {"sub": identity, "app_id": app_id, "auth_channel": SESSION_AUTH_CHANNEL},
        settings.HUB_JWT_SECRET,
        timedelta(days=settings.HUB_JWT_TTL_DAYS),
    )

def decode_session_token(token: str) -> dict:
    return decode_jwt(token, settings.HUB_JWT_SECRET)
