from fastapi import APIRouter, Depends, HTTPException, Query

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.models import DeviceTokenRegisterRequest
from pawmarket.routers.common import success

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread_only: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    return success(services.notifications.list_for_user(user_id=actor.user_id, unread_only=unread_only))


@router.post("/register-device")
def register_device(
    payload: DeviceTokenRegisterRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    services.notifications.register_device_token(
        user_id=actor.user_id,
        device_token=payload.device_token,
        platform=payload.platform,
    )
    return success({"status": "ok"})


@router.post("/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    updated = services.notifications.mark_read(user_id=actor.user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return success(updated)
