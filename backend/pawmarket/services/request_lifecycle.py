import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pawmarket.auth import Actor
from pawmarket.errors import ConflictError, ForbiddenError, MarketplaceError, NotFoundError, ValidationError
from pawmarket.models import Location, Pet, ServiceRequest, ServiceRequestCreate
from pawmarket.services.broadcaster import EventFanout
from pawmarket.services.record_store import RecordStore, new_id, utc_now

logger = logging.getLogger(__name__)

SERVICE_TYPES = ("Appointment", "Health Checkup", "Vaccination")
TIME_WINDOWS = ("Morning (9am-12pm)", "Afternoon (12pm-4pm)", "Evening (4pm-8pm)")

# Kathmandu Valley service area.
GEOFENCE = {"min_lat": 27.55, "max_lat": 27.82, "min_lng": 85.18, "max_lng": 85.55}

TERMINAL_STATUSES = {"completed", "cancelled"}
ASSIGNED_STATUSES = {"assigned", "in_progress", "completed"}
LEGAL_TRANSITIONS: Dict[str, set[str]] = {
    "pending": {"assigned", "cancelled"},
    "assigned": {"assigned", "in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def check_transition(current: str, target: str) -> None:
    if target not in LEGAL_TRANSITIONS.get(current, set()):
        if current in TERMINAL_STATUSES:
            raise ConflictError(f"Request is already {current}")
        raise ConflictError(f"Cannot move request from {current} to {target}")


def within_geofence(lat: float, lng: float) -> bool:
    return GEOFENCE["min_lat"] <= lat <= GEOFENCE["max_lat"] and GEOFENCE["min_lng"] <= lng <= GEOFENCE["max_lng"]


def parse_preferred_date(value: str) -> Optional[date]:
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


@dataclass
class RequestValidation:
    """Outcome of checking a new service request before anything is written."""

    errors: List[str] = field(default_factory=list)
    error_type: type[MarketplaceError] = ValidationError
    preferred_date: Optional[date] = None
    location: Optional[Location] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def fail(self, message: str, error_type: type[MarketplaceError] = ValidationError) -> "RequestValidation":
        self.errors.append(message)
        self.error_type = error_type
        return self

    def raise_for_errors(self) -> None:
        if self.errors:
            raise self.error_type("; ".join(self.errors))

    def accepted(self) -> Tuple[date, Location]:
        self.raise_for_errors()
        if self.preferred_date is None or self.location is None:
            raise ValidationError("preferredDate and location are required")
        return self.preferred_date, self.location


def validate_new_request(
    payload: ServiceRequestCreate,
    *,
    owner_id: str,
    pet: Optional[Pet],
    has_pending_duplicate: Callable[[str, str], bool],
    today: date,
) -> RequestValidation:
    result = RequestValidation()
    missing = [
        name
        for name, value in (
            ("petId", payload.pet_id),
            ("serviceType", payload.service_type),
            ("preferredDate", payload.preferred_date),
            ("timeWindow", payload.time_window),
            ("location", payload.location),
        )
        if value in (None, "")
    ]
    if missing:
        return result.fail(f"Missing required fields: {', '.join(missing)}")
    if payload.service_type not in SERVICE_TYPES:
        return result.fail(f"serviceType must be one of: {', '.join(SERVICE_TYPES)}")
    if payload.time_window not in TIME_WINDOWS:
        return result.fail(f"timeWindow must be one of: {', '.join(TIME_WINDOWS)}")
    preferred = parse_preferred_date(str(payload.preferred_date))
    if preferred is None:
        return result.fail("preferredDate is not a valid date")
    if preferred < today:
        return result.fail("preferredDate cannot be in the past")
    result.preferred_date = preferred
    if not (payload.location and payload.location.address.strip()):
        return result.fail("location.address is required")
    coordinates = payload.location.coordinates
    if not within_geofence(coordinates.lat, coordinates.lng):
        return result.fail("Location is outside the Kathmandu Valley service area")
    result.location = payload.location
    if pet is None:
        return result.fail("Pet not found", NotFoundError)
    if pet.owner_id != owner_id:
        return result.fail("You can only request services for your own pets", ForbiddenError)
    if has_pending_duplicate(pet.id, preferred.isoformat()):
        return result.fail("A pending request already exists for this pet on that date", ConflictError)
    return result


class RequestLifecycle:
    def __init__(
        self,
        store: RecordStore,
        fanout: EventFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.fanout = fanout
        self.clock = clock

    def _load_visible(self, conn: Any, actor: Actor, request_id: str) -> ServiceRequest:
        request = self.store.get_service_request(conn, request_id)
        if not actor.can_view(request):
            raise ForbiddenError("You do not have access to this request")
        return request

    def _transition(
        self,
        conn: Any,
        actor: Actor,
        request: ServiceRequest,
        target: str,
        note: str = "",
        **fields: Any,
    ) -> ServiceRequest:
        check_transition(request.status, target)
        if not actor.can_transition(request, target):
            raise ForbiddenError(f"You are not allowed to move this request to {target}")
        updated = self.store.update_service_request(conn, request.id, status=target, **fields)
        self.store.record_status_change(
            conn,
            request_id=request.id,
            actor_user_id=actor.user_id,
            from_status=request.status,
            to_status=target,
            note=note,
        )
        return updated

    def create(self, actor: Actor, payload: ServiceRequestCreate) -> ServiceRequest:
        now = self.clock()
        with self.store.transaction() as conn:
            pet = self.store.find_pet(conn, payload.pet_id) if payload.pet_id else None

            def has_pending_duplicate(pet_id: str, preferred_date: str) -> bool:
                return bool(
                    self.store.query_service_requests(
                        conn, pet_id=pet_id, preferred_date=preferred_date, statuses=["pending"]
                    )
                )

            validation = validate_new_request(
                payload,
                owner_id=actor.user_id,
                pet=pet,
                has_pending_duplicate=has_pending_duplicate,
                today=now.date(),
            )
            preferred_date, location = validation.accepted()
            request = ServiceRequest(
                id=new_id("sr"),
                user_id=actor.user_id,
                pet_id=str(payload.pet_id),
                service_type=str(payload.service_type),
                preferred_date=preferred_date.isoformat(),
                time_window=str(payload.time_window),
                location=location,
                notes=(payload.notes or "").strip() or None,
                payment_method=payload.payment_method,
                created_at=now.isoformat(),
                updated_at=now.isoformat(),
            )
            self.store.insert_service_request(conn, request)
        logger.info("Service request %s created for pet %s", request.id, request.pet_id)
        self.fanout.notify(
            actor.user_id,
            "Request received",
            f"Your {request.service_type} request for {request.preferred_date} is pending assignment.",
            type="service_request",
            reference=request.id,
        )
        return request

    def get(self, actor: Actor, request_id: str) -> ServiceRequest:
        with self.store.transaction() as conn:
            return self._load_visible(conn, actor, request_id)

    def list_all(
        self,
        actor: Actor,
        status: Optional[str] = None,
        service_type: Optional[str] = None,
        preferred_date: Optional[str] = None,
    ) -> List[ServiceRequest]:
        if not actor.is_admin:
            raise ForbiddenError("Admin access required")
        with self.store.transaction() as conn:
            return self.store.query_service_requests(
                conn,
                statuses=[status] if status else None,
                service_type=service_type,
                preferred_date=preferred_date,
            )

    def list_mine(self, actor: Actor, status: Optional[str] = None) -> List[ServiceRequest]:
        with self.store.transaction() as conn:
            return self.store.query_service_requests(
                conn, user_id=actor.user_id, statuses=[status] if status else None
            )

    def list_assignments(self, actor: Actor) -> List[ServiceRequest]:
        if not actor.is_staff:
            raise ForbiddenError("Only staff members have assignments")
        with self.store.transaction() as conn:
            return self.store.query_service_requests(
                conn,
                assigned_staff=actor.user_id,
                statuses=["assigned", "in_progress"],
                order_by="preferred_date ASC, scheduled_time ASC",
            )

    def stats(self, actor: Actor) -> Dict[str, Any]:
        if not actor.is_admin:
            raise ForbiddenError("Admin access required")
        with self.store.transaction() as conn:
            by_status = self.store.count_service_requests(conn, "status")
            by_type = self.store.count_service_requests(conn, "service_type")
        return {
            "total": sum(by_status.values()),
            "byStatus": {status: by_status.get(status, 0) for status in LEGAL_TRANSITIONS},
            "byServiceType": by_type,
        }

    def history(self, actor: Actor, request_id: str) -> List[Dict[str, Any]]:
        with self.store.transaction() as conn:
            self._load_visible(conn, actor, request_id)
            return self.store.status_history(conn, request_id)

    def start(self, actor: Actor, request_id: str) -> ServiceRequest:
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            updated = self._transition(conn, actor, request, "in_progress", note="Visit started")
        self.fanout.notify(
            updated.user_id,
            "Visit started",
            f"Your {updated.service_type} visit is now in progress.",
            type="service_request",
            reference=updated.id,
        )
        self.fanout.status_change(updated.id, updated.user_id, updated.status, request.status)
        return updated

    def complete(self, actor: Actor, request_id: str, notes: Optional[str] = None) -> ServiceRequest:
        visit_notes = (notes or "").strip() or None
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            updated = self._transition(
                conn,
                actor,
                request,
                "completed",
                note="Visit completed",
                completed_at=self.clock().isoformat(),
                visit_notes=visit_notes,
            )
            if visit_notes:
                self.store.append_medical_history(conn, request.pet_id, visit_notes)
        self.fanout.notify(
            updated.user_id,
            "Visit completed",
            f"Your {updated.service_type} visit has been completed.",
            type="service_request",
            reference=updated.id,
        )
        self.fanout.status_change(updated.id, updated.user_id, updated.status, request.status)
        return updated

    def cancel(self, actor: Actor, request_id: str, reason: Optional[str] = None) -> ServiceRequest:
        reason_text = (reason or "").strip() or None
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            updated = self._transition(
                conn,
                actor,
                request,
                "cancelled",
                note=reason_text or "",
                cancelled_at=self.clock().isoformat(),
                cancellation_reason=reason_text,
                assigned_staff=None,
            )
        previous_staff = request.assigned_staff
        if previous_staff:
            self.fanout.notify(
                previous_staff,
                "Assignment cancelled",
                f"The {request.service_type} visit on {request.preferred_date} was cancelled.",
                type="service_request",
                reference=request.id,
            )
        if actor.user_id != updated.user_id:
            self.fanout.notify(
                updated.user_id,
                "Request cancelled",
                f"Your {updated.service_type} request was cancelled.",
                type="service_request",
                reference=updated.id,
            )
        self.fanout.status_change(updated.id, updated.user_id, updated.status, request.status, [previous_staff])
        return updated

    def review(self, actor: Actor, request_id: str, rating: int, comment: str = "") -> ServiceRequest:
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            if request.user_id != actor.user_id:
                raise ForbiddenError("Only the requester can review this visit")
            if request.status != "completed":
                raise ConflictError("Only completed requests can be reviewed")
            if request.review is not None:
                raise ConflictError("This request has already been reviewed")
            updated = self.store.update_service_request(
                conn,
                request_id,
                review={"rating": rating, "comment": comment.strip(), "submittedAt": self.clock().isoformat()},
            )
        if updated.assigned_staff:
            self.fanout.notify(
                updated.assigned_staff,
                "New review",
                f"You received a {rating}-star review.",
                type="service_request",
                reference=updated.id,
            )
        return updated

    def attach_prescription(self, actor: Actor, request_id: str, prescription_ref: str) -> ServiceRequest:
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            if request.assigned_staff != actor.user_id:
                raise ForbiddenError("Only the assigned staff member can attach a prescription")
            if request.status != "completed":
                raise ConflictError("Prescriptions can only be attached to completed requests")
            updated = self.store.update_service_request(conn, request_id, prescription_ref=prescription_ref.strip())
        self.fanout.notify(
            updated.user_id,
            "Prescription available",
            "A prescription was attached to your completed visit.",
            type="service_request",
            reference=updated.id,
        )
        return updated
