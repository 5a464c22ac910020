from typing import Optional

from fastapi import APIRouter, Depends, Query

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import MarketplaceError
from pawmarket.models import (
    AssignRequest,
    CancelRequest,
    CompleteRequest,
    PrescriptionRequest,
    ReviewRequest,
    ServiceRequestCreate,
)
from pawmarket.routers.common import raise_http_error, success

router = APIRouter(prefix="/service-requests", tags=["service-requests"])


@router.post("", status_code=201)
def create_request(
    payload: ServiceRequestCreate,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        created = services.lifecycle.create(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(created, "Service request created")


@router.get("")
def list_requests(
    status: Optional[str] = Query(default=None),
    service_type: Optional[str] = Query(default=None, alias="serviceType"),
    date: Optional[str] = Query(default=None),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        rows = services.lifecycle.list_all(actor, status=status, service_type=service_type, preferred_date=date)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(rows)


@router.get("/my/requests")
def my_requests(
    status: Optional[str] = Query(default=None),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    return success(services.lifecycle.list_mine(actor, status=status))


@router.get("/my/assignments")
def my_assignments(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        rows = services.lifecycle.list_assignments(actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(rows)


@router.get("/stats")
def request_stats(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        stats = services.lifecycle.stats(actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(stats)


@router.get("/{request_id}")
def get_request(request_id: str, actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        request = services.lifecycle.get(actor, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(request)


@router.get("/{request_id}/history")
def request_history(
    request_id: str,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        rows = services.lifecycle.history(actor, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(rows)


@router.patch("/{request_id}/assign")
def assign_request(
    request_id: str,
    payload: AssignRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        updated = services.assignments.assign(request_id, payload.staff_id, payload.scheduled_time, actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated, "Staff assigned")


@router.patch("/{request_id}/start")
def start_request(request_id: str, actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        updated = services.lifecycle.start(actor, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated, "Visit started")


@router.patch("/{request_id}/complete")
def complete_request(
    request_id: str,
    payload: Optional[CompleteRequest] = None,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        updated = services.lifecycle.complete(actor, request_id, notes=payload.notes if payload else None)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated, "Visit completed")


@router.patch("/{request_id}/cancel")
def cancel_request(
    request_id: str,
    payload: Optional[CancelRequest] = None,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        updated = services.lifecycle.cancel(actor, request_id, reason=payload.reason if payload else None)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated, "Request cancelled")


@router.post("/{request_id}/review", status_code=201)
def review_request(
    request_id: str,
    payload: ReviewRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        updated = services.lifecycle.review(actor, request_id, payload.rating, payload.comment)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated, "Review submitted")


@router.patch("/{request_id}/prescription")
def attach_prescription(
    request_id: str,
    payload: PrescriptionRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        updated = services.lifecycle.attach_prescription(actor, request_id, payload.prescription_ref)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(updated)


@router.get("/{request_id}/live")
def live_location(request_id: str, actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        live = services.locations.live(actor, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(live)


@router.get("/{request_id}/messages")
def chat_history(request_id: str, actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        messages = services.chat.history(actor, request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(messages)
