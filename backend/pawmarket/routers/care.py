from fastapi import APIRouter, Depends

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import MarketplaceError
from pawmarket.models import CareBookingCreate, CareBookingRespondRequest, CareRequestCreate, OrderCreate
from pawmarket.routers.common import raise_http_error, success

care_router = APIRouter(prefix="/care", tags=["care"])
bookings_router = APIRouter(prefix="/care-bookings", tags=["care-bookings"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@care_router.post("/requests", status_code=201)
def create_care_request(
    payload: CareRequestCreate,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        care = services.bookings.create_care_request(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(care, "Care request created")


@care_router.get("/requests/my")
def my_care_requests(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    return success(services.bookings.my_care_requests(actor))


@bookings_router.post("", status_code=201)
def create_care_booking(
    payload: CareBookingCreate,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        booking = services.bookings.create_care_booking(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(booking, "Booking created")


@bookings_router.get("/my")
def my_care_bookings(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    return success(services.bookings.my_care_bookings(actor))


@bookings_router.get("/incoming")
def incoming_care_bookings(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        rows = services.bookings.incoming_care_bookings(actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(rows)


@bookings_router.patch("/{booking_id}/respond")
def respond_to_booking(
    booking_id: str,
    payload: CareBookingRespondRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        booking = services.bookings.respond(actor, booking_id, payload.accept)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(booking, "Booking accepted" if payload.accept else "Booking rejected")


@orders_router.post("", status_code=201)
def create_order(
    payload: OrderCreate,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        order = services.bookings.create_order(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(order, "Order placed")


@orders_router.get("/my")
def my_orders(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    return success(services.bookings.my_orders(actor))
