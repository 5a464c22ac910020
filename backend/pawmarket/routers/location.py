from fastapi import APIRouter, Depends

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import MarketplaceError
from pawmarket.models import LocationUpdateRequest
from pawmarket.routers.common import raise_http_error, success

router = APIRouter(prefix="/location", tags=["location"])


@router.post("/update")
def update_location(
    payload: LocationUpdateRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        data = services.locations.update(actor, payload.lat, payload.lng)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(data)
