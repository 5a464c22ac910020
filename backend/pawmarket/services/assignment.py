import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pawmarket.auth import Actor
from pawmarket.errors import ConflictError, ForbiddenError, NotFoundError, PaymentRequiredError, ValidationError
from pawmarket.models import ServiceRequest
from pawmarket.services.broadcaster import EventFanout
from pawmarket.services.record_store import RecordStore, utc_now
from pawmarket.services.request_lifecycle import check_transition

logger = logging.getLogger(__name__)

CONFLICT_WINDOW = timedelta(hours=1)
ASSIGNABLE_ROLE = "veterinarian"


def parse_instant(value: str) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def payment_gate_reason(request: ServiceRequest) -> Optional[str]:
    """Return why assignment is blocked by payment, or None when it may proceed."""
    if request.payment_method == "cash_on_delivery":
        return None
    if request.payment_status == "paid":
        return None
    return f"Payment required before assignment (paymentStatus is {request.payment_status})"


class AssignmentEngine:
    def __init__(
        self,
        store: RecordStore,
        fanout: EventFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.fanout = fanout
        self.clock = clock

    def _find_conflict(self, conn, staff_id: str, request_id: str, slot: datetime) -> Optional[ServiceRequest]:
        held = self.store.query_service_requests(
            conn, assigned_staff=staff_id, statuses=["assigned", "in_progress"], order_by="scheduled_time ASC"
        )
        for existing in held:
            if existing.id == request_id or not existing.scheduled_time:
                continue
            existing_slot = parse_instant(existing.scheduled_time)
            if existing_slot and abs(existing_slot - slot) < CONFLICT_WINDOW:
                return existing
        return None

    def assign(self, request_id: str, staff_id: str, scheduled_time: str, actor: Actor) -> ServiceRequest:
        if not actor.can_assign():
            raise ForbiddenError("Admin access required to assign staff")
        slot = parse_instant(scheduled_time)
        if slot is None:
            raise ValidationError("scheduledTime must be a valid ISO-8601 timestamp")
        with self.store.transaction() as conn:
            request = self.store.get_service_request(conn, request_id)
            check_transition(request.status, "assigned")
            staff = self.store.find_user(conn, staff_id)
            if staff is None:
                raise NotFoundError("Staff member not found")
            if staff.role != ASSIGNABLE_ROLE:
                raise ValidationError(f"Staff member must have the {ASSIGNABLE_ROLE} role")
            blocked = payment_gate_reason(request)
            if blocked:
                raise PaymentRequiredError(blocked)
            clash = self._find_conflict(conn, staff_id, request_id, slot)
            if clash is not None:
                raise ConflictError(
                    f"Staff member already has a visit scheduled at {clash.scheduled_time} (request {clash.id})"
                )
            previous_staff = request.assigned_staff
            updated = self.store.update_service_request(
                conn,
                request_id,
                status="assigned",
                assigned_staff=staff_id,
                assigned_at=self.clock().isoformat(),
                scheduled_time=slot.isoformat(),
            )
            self.store.record_status_change(
                conn,
                request_id=request_id,
                actor_user_id=actor.user_id,
                from_status=request.status,
                to_status="assigned",
                note=f"Assigned to {staff_id}",
            )
            self.store.ensure_chat(conn, request_id, request.user_id, staff_id)
        logger.info("Request %s assigned to %s at %s", request_id, staff_id, updated.scheduled_time)

        self.fanout.notify(
            updated.user_id,
            "Staff assigned",
            f"{staff.name} will handle your {updated.service_type} visit at {updated.scheduled_time}.",
            type="service_request",
            reference=updated.id,
        )
        self.fanout.notify(
            staff_id,
            "New assignment",
            f"You have been assigned a {updated.service_type} visit at {updated.scheduled_time}.",
            type="service_request",
            reference=updated.id,
        )
        if previous_staff and previous_staff != staff_id:
            self.fanout.notify(
                previous_staff,
                "Assignment moved",
                f"The {updated.service_type} visit on {updated.preferred_date} was reassigned.",
                type="service_request",
                reference=updated.id,
            )
        self.fanout.status_change(
            updated.id, updated.user_id, updated.status, request.status, [staff_id, previous_staff]
        )
        return updated
