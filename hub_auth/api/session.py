from fastapi import APIRouter, Depends, Response

from hub_auth.core.config import settings
from hub_auth.core.deps import get_hub_session

router = APIRouter()


@router.get("")
def read_session(session: dict = Depends(get_hub_session)):
    return {
        "success": True,
        "identity": session.get("sub"),
        "appId": session.get("app_id"),
        "authChannel": session.get("auth_channel"),
        "expiresAt": session.get("exp"),
    }


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(key=settings.HUB_COOKIE_NAME, httponly=True, samesite="lax")
    return {"success": True}
