from fastapi import APIRouter
from hub_auth.api import otp, session, system

router = APIRouter()
router.include_router(otp.router, prefix="/otp", tags=["OTP"])
router.include_router(session.router, prefix="/session", tags=["Session"])
router.include_router(system.router, prefix="/system", tags=["System"])
