import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List

from pawmarket.auth import Actor
from pawmarket.errors import ConflictError, ForbiddenError, ValidationError
from pawmarket.models import (
    CareBooking,
    CareBookingCreate,
    CareRequest,
    CareRequestCreate,
    Order,
    OrderCreate,
)
from pawmarket.services.assignment import parse_instant
from pawmarket.services.broadcaster import EventFanout
from pawmarket.services.record_store import RecordStore, new_id, utc_now
from pawmarket.services.request_lifecycle import parse_preferred_date
from pawmarket.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

SESSION_BASED_TYPES = {"Grooming", "Training", "Wash", "Spa"}
HOSTEL_CLEANING_FEE = 200.0
SESSION_CLEANING_FEE = 50.0
SERVICE_FEE = 250.0
TAX_RATE = 0.13
RESPONDABLE_STATUSES = {"pending", "paid"}


def price_booking(service_type: str, unit_price: float, nights: int, platform_fee_percent: float) -> Dict[str, float]:
    units = max(1, nights) if service_type in SESSION_BASED_TYPES else nights
    subtotal = round(units * unit_price, 2)
    cleaning_fee = HOSTEL_CLEANING_FEE if service_type == "Hostel" else SESSION_CLEANING_FEE
    platform_fee = round(subtotal * platform_fee_percent / 100, 2)
    tax = round((subtotal + cleaning_fee + SERVICE_FEE + platform_fee) * TAX_RATE, 2)
    total = round(subtotal + cleaning_fee + SERVICE_FEE + platform_fee + tax, 2)
    return {
        "subtotal": subtotal,
        "cleaning_fee": cleaning_fee,
        "service_fee": SERVICE_FEE,
        "platform_fee": platform_fee,
        "tax": tax,
        "total_amount": total,
    }


class BookingService:
    """Care requests, care bookings and shop orders."""

    def __init__(
        self,
        store: RecordStore,
        fanout: EventFanout,
        subscriptions: SubscriptionService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.fanout = fanout
        self.subscriptions = subscriptions
        self.clock = clock

    def _owned_pet(self, conn: Any, actor: Actor, pet_id: str) -> None:
        pet = self.store.get_pet(conn, pet_id)
        if pet.owner_id != actor.user_id:
            raise ForbiddenError("You can only book for your own pets")

    # Care requests

    def create_care_request(self, actor: Actor, payload: CareRequestCreate) -> CareRequest:
        preferred = parse_preferred_date(payload.preferred_date)
        if preferred is None:
            raise ValidationError("preferredDate is not a valid date")
        if not payload.location.address.strip():
            raise ValidationError("location.address is required")
        with self.store.transaction() as conn:
            self._owned_pet(conn, actor, payload.pet_id)
            care = CareRequest(
                id=new_id("care"),
                user_id=actor.user_id,
                pet_id=payload.pet_id,
                service_type=payload.service_type,
                preferred_date=preferred.isoformat(),
                location=payload.location,
                notes=(payload.notes or "").strip() or None,
                created_at=self.clock().isoformat(),
            )
            return self.store.insert_care_request(conn, care)

    def my_care_requests(self, actor: Actor) -> List[CareRequest]:
        with self.store.transaction() as conn:
            return self.store.list_care_requests(conn, actor.user_id)

    # Care bookings

    def create_care_booking(self, actor: Actor, payload: CareBookingCreate) -> CareBooking:
        check_in = parse_instant(payload.check_in)
        check_out = parse_instant(payload.check_out)
        if check_in is None or check_out is None:
            raise ValidationError("Invalid check-in or check-out date")
        if check_out <= check_in:
            raise ValidationError("Check-out must be after check-in")
        nights = math.ceil((check_out - check_in).total_seconds() / 86400)
        with self.store.transaction() as conn:
            listing = self.store.get_listing(conn, payload.listing_id)
            if not listing.is_active:
                raise ConflictError("This listing is not currently accepting bookings")
            self._owned_pet(conn, actor, payload.pet_id)
            fee_percent = self.subscriptions.platform_fee_percent(conn, listing.provider_id)
            pricing = price_booking(listing.service_type, listing.price, nights, fee_percent)
            booking = CareBooking(
                id=new_id("bk"),
                listing_id=listing.id,
                pet_id=payload.pet_id,
                user_id=actor.user_id,
                check_in=check_in.isoformat(),
                check_out=check_out.isoformat(),
                nights=nights,
                service_type=listing.service_type,
                payment_method=payload.payment_method,
                owner_notes=(payload.owner_notes or "").strip() or None,
                created_at=self.clock().isoformat(),
                **pricing,
            )
            self.store.insert_care_booking(conn, booking)
        self.fanout.notify(
            listing.provider_id,
            "New booking",
            f"New {listing.service_type} booking for {listing.name}: {nights} night(s) from {booking.check_in[:10]}.",
            type="care_booking",
            reference=booking.id,
        )
        return booking

    def my_care_bookings(self, actor: Actor) -> List[CareBooking]:
        with self.store.transaction() as conn:
            return self.store.list_care_bookings(conn, user_id=actor.user_id)

    def incoming_care_bookings(self, actor: Actor) -> List[CareBooking]:
        if not actor.can_manage_listings():
            raise ForbiddenError("Only providers receive bookings")
        with self.store.transaction() as conn:
            listing_ids = [item.id for item in self.store.list_listings(conn, provider_id=actor.user_id)]
            return self.store.list_care_bookings(conn, listing_ids=listing_ids)

    def respond(self, actor: Actor, booking_id: str, accept: bool) -> CareBooking:
        with self.store.transaction() as conn:
            booking = self.store.get_care_booking(conn, booking_id)
            listing = self.store.get_listing(conn, booking.listing_id)
            if listing.provider_id != actor.user_id and not actor.is_admin:
                raise ForbiddenError("Not authorized to respond to this booking")
            if booking.status not in RESPONDABLE_STATUSES:
                raise ConflictError("Booking is already accepted or rejected")
            updated = self.store.update_care_booking(conn, booking_id, status="accepted" if accept else "rejected")
        self.fanout.notify(
            updated.user_id,
            "Booking accepted" if accept else "Booking rejected",
            f"Your booking at {listing.name} has been accepted."
            if accept
            else f"Your booking at {listing.name} was declined.",
            type="care_booking",
            reference=updated.id,
        )
        return updated

    # Orders

    def create_order(self, actor: Actor, payload: OrderCreate) -> Order:
        total = round(sum(item.quantity * item.unit_price for item in payload.items), 2)
        if total <= 0:
            raise ValidationError("Order total must be greater than zero")
        order = Order(
            id=new_id("ord"),
            user_id=actor.user_id,
            items=payload.items,
            total_amount=total,
            delivery_address=payload.delivery_address.strip(),
            payment_method=payload.payment_method,
            created_at=self.clock().isoformat(),
        )
        with self.store.transaction() as conn:
            self.store.insert_order(conn, order)
        return order

    def my_orders(self, actor: Actor) -> List[Order]:
        with self.store.transaction() as conn:
            return self.store.list_orders(conn, actor.user_id)
