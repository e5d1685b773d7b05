from fastapi import APIRouter, Depends

from hub_auth.core.deps import require_internal_token
from hub_auth.services.whatsapp_service import delivery_provider_health

router = APIRouter()


@router.get("/delivery-health", dependencies=[Depends(require_internal_token)])
def get_delivery_health():
    return delivery_provider_health()
