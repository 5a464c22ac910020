from fastapi import APIRouter, Depends

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import MarketplaceError
from pawmarket.models import ListingCreateRequest, SubscriptionInitiateRequest
from pawmarket.routers.common import raise_http_error, success

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
listings_router = APIRouter(prefix="/listings", tags=["listings"])


@router.get("/plans")
def list_plans(services: Services = Depends(get_services)):
    return success(services.subscriptions.plans())


@router.get("/my")
def my_subscription(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        data = services.subscriptions.my_subscription(actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(data)


@router.post("/initiate")
def initiate_subscription(
    payload: SubscriptionInitiateRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        data = services.payments.initiate_subscription(actor, payload.plan, payload.billing_cycle)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(data, "Subscription payment initiated")


@listings_router.post("", status_code=201)
def create_listing(
    payload: ListingCreateRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        listing = services.subscriptions.create_listing(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    message = "Listing created" if listing.is_active else "Listing saved; subscribe to make it visible"
    return success(listing, message)


@listings_router.get("")
def public_listings(services: Services = Depends(get_services)):
    return success(services.subscriptions.public_listings())


@listings_router.get("/my")
def my_listings(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        rows = services.subscriptions.my_listings(actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(rows)
