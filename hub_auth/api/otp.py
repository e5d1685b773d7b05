from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from hub_auth.core.config import settings
from hub_auth.core.deps import get_otp_service
from hub_auth.core.errors import RateLimitError
from hub_auth.core.security import create_session_token
from hub_auth.schemas.otp import OtpIssue, OtpIssued, OtpPolicy, OtpVerified, OtpVerify
from hub_auth.services.otp_service import OtpService, VerifyStatus
from hub_auth.services.phone import normalize_mobile
from hub_auth.services.rate_limit import get_rate_limiter, hash_key_part

router = APIRouter()

VERIFY_FAILURE_STATUS = {
    VerifyStatus.EXPIRED: 400,
    VerifyStatus.INVALID: 400,
    VerifyStatus.LOCKED: 429,
}


def _client_ip(request: Request) -> str:
    xff = str(request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    client = request.client
    return str(client.host if client else "unknown")


def _throttle(action: str, *, client_ip: str, identity: str | None) -> None:
    limiter = get_rate_limiter()
    window = int(max(settings.OTP_RATE_LIMIT_WINDOW_SECONDS, 1))
    limit = int(max(settings.OTP_ISSUE_RATE_LIMIT if action == "issue" else settings.OTP_VERIFY_RATE_LIMIT, 1))
    keys = [f"otp:{action}:ip:{hash_key_part(client_ip)}"]
    if identity:
        keys.append(f"otp:{action}:identity:{hash_key_part(identity)}")
    for key in keys:
        result = limiter.hit(key, limit=limit, window_seconds=window)
        if not result.allowed:
            raise RateLimitError(
                f"Too many OTP requests. Retry in {max(result.retry_after_seconds, 1)} sec.",
                retry_after_seconds=result.retry_after_seconds,
            )


def _set_session_cookie(response: Response, *, identity: str, app_id: str) -> None:
    response.set_cookie(
        key=settings.HUB_COOKIE_NAME,
        value=create_session_token(identity=identity, app_id=app_id),
        httponly=True,
        secure=bool(settings.HUB_COOKIE_SECURE),
        samesite="lax",
        max_age=settings.HUB_JWT_TTL_DAYS * 24 * 3600,
    )


@router.get("/config", response_model=OtpPolicy)
def get_otp_config():
    return OtpPolicy(
        appId=settings.HUB_APP_ID,
        codeLength=settings.OTP_LENGTH,
        ttlSeconds=settings.OTP_TTL_SECONDS,
        cooldownSeconds=settings.OTP_COOLDOWN_SECONDS,
        maxAttempts=settings.OTP_MAX_ATTEMPTS,
        channel="whatsapp",
    )


@router.post("/issue", response_model=OtpIssued)
@router.post("/request", response_model=OtpIssued, include_in_schema=False)
def issue_otp(payload: OtpIssue, request: Request, service: OtpService = Depends(get_otp_service)):
    identity = normalize_mobile(payload.identity)
    _throttle("issue", client_ip=_client_ip(request), identity=identity)
    result = service.issue(
        payload.app_id,
        identity,
        meta={"ip": _client_ip(request), "ua": str(request.headers.get("user-agent") or "")},
    )
    return OtpIssued(cooldownSeconds=result.cooldown_seconds, expiresInSeconds=result.ttl_seconds)


@router.post("/verify", response_model=OtpVerified)
def verify_otp(
    payload: OtpVerify,
    request: Request,
    response: Response,
    service: OtpService = Depends(get_otp_service),
):
    identity = normalize_mobile(payload.identity)
    _throttle("verify", client_ip=_client_ip(request), identity=identity)
    result = service.verify(payload.app_id, identity, payload.code)

    if not result.verified:
        body: dict = {"success": False, "error": result.status.value}
        if result.attempts_remaining is not None:
            body["attemptsRemaining"] = result.attempts_remaining
        return JSONResponse(status_code=VERIFY_FAILURE_STATUS[result.status], content=body)

    _set_session_cookie(response, identity=result.identity, app_id=result.app_id)
    return OtpVerified(
        appId=result.app_id,
        identity=result.identity,
        session=result.backend.get("session") if result.backend else None,
    )
