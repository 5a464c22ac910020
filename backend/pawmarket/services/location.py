import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from pawmarket.auth import Actor
from pawmarket.errors import ForbiddenError, NotFoundError, ValidationError
from pawmarket.models import StaffLiveLocation
from pawmarket.services.record_store import RecordStore, utc_now

logger = logging.getLogger(__name__)

LOCATION_TTL = timedelta(seconds=60)
# Roles whose live position the pet owner may see.
OWNER_VISIBLE_ROLES = {"rider"}


def location_visible(staff_role: str, staff_id: str, viewer: Actor) -> bool:
    if viewer.is_admin or viewer.is_staff or viewer.user_id == staff_id:
        return True
    return staff_role in OWNER_VISIBLE_ROLES


class LocationService:
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def update(self, actor: Actor, lat: float, lng: float) -> Dict[str, Any]:
        if not actor.can_update_location():
            raise ForbiddenError("Only staff and providers share live location")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Coordinates are out of range")
        with self.store.transaction() as conn:
            self.store.purge_staff_locations(conn, (self.clock() - LOCATION_TTL).isoformat())
            recorded_at = self.store.insert_staff_location(conn, actor.user_id, actor.role, lat, lng)
            self.store.set_live_location(conn, actor.user_id, lat, lng, recorded_at)
        logger.debug("Location update from %s", actor.user_id)
        return {"coordinates": {"lat": lat, "lng": lng}, "updatedAt": recorded_at}

    def live(self, actor: Actor, request_id: str) -> StaffLiveLocation:
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            if not actor.can_view(request):
                raise ForbiddenError("You do not have access to this request")
            if not request.assigned_staff:
                raise NotFoundError("No staff member is assigned to this request")
            staff = self.store.get_user(conn, request.assigned_staff)
            row = self.store.latest_staff_location(
                conn, staff.id, (self.clock() - LOCATION_TTL).isoformat()
            )
        if not location_visible(staff.role, staff.id, actor):
            return StaffLiveLocation(staff_id=staff.id, role=staff.role, visible=False)
        if row is None:
            return StaffLiveLocation(staff_id=staff.id, role=staff.role, visible=True)
        return StaffLiveLocation(
            staff_id=staff.id,
            role=staff.role,
            visible=True,
            coordinates={"lat": row["lat"], "lng": row["lng"]},
            updated_at=row["created_at"],
        )
