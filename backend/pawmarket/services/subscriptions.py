import calendar
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pawmarket.auth import Actor
from pawmarket.errors import ForbiddenError, ValidationError
from pawmarket.models import Listing, ListingCreateRequest, Subscription
from pawmarket.services.record_store import RecordStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_FEE_PERCENT = 15
UNLIMITED = -1

PLANS: Dict[str, Dict[str, Any]] = {
    "basic": {
        "id": "basic",
        "name": "Basic",
        "maxListings": 5,
        "maxPhotos": 3,
        "isFeatured": False,
        "platformFeePercent": 15,
        "monthlyPrice": 500,
        "yearlyPrice": 5000,
    },
    "premium": {
        "id": "premium",
        "name": "Premium",
        "maxListings": UNLIMITED,
        "maxPhotos": UNLIMITED,
        "isFeatured": True,
        "platformFeePercent": 5,
        "monthlyPrice": 1500,
        "yearlyPrice": 15000,
    },
}


def plan_config(plan: str) -> Dict[str, Any]:
    try:
        return PLANS[plan]
    except KeyError:
        raise ValidationError(f"Unknown plan: {plan}") from None


def plan_price(plan: str, billing_cycle: str) -> float:
    config = plan_config(plan)
    return float(config["yearlyPrice"] if billing_cycle == "yearly" else config["monthlyPrice"])


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def validity_end(start: datetime, billing_cycle: str) -> datetime:
    return add_months(start, 12 if billing_cycle == "yearly" else 1)


class SubscriptionService:
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def plans(self) -> List[Dict[str, Any]]:
        return list(PLANS.values())

    def live_subscription(self, conn: Any, provider_id: str) -> Optional[Subscription]:
        return self.store.live_subscription(conn, provider_id, self.clock().isoformat())

    def platform_fee_percent(self, conn: Any, provider_id: str) -> int:
        subscription = self.live_subscription(conn, provider_id)
        if subscription is None:
            return DEFAULT_PLATFORM_FEE_PERCENT
        return int(plan_config(subscription.plan)["platformFeePercent"])

    def my_subscription(self, actor: Actor) -> Dict[str, Any]:
        if not actor.can_manage_listings():
            raise ForbiddenError("Only providers can access subscriptions")
        with self.store.transaction() as conn:
            latest = self.store.latest_subscription(conn, actor.user_id)
            live = self.live_subscription(conn, actor.user_id)
        return {
            "subscription": latest.model_dump(by_alias=True) if latest else None,
            "isActive": live is not None,
            "planConfig": plan_config(latest.plan) if latest else None,
            "canList": live is not None,
        }

    def activate(
        self,
        conn: Any,
        *,
        provider_id: str,
        plan: str,
        billing_cycle: str,
        amount_paid: float,
        transaction_ref: str,
    ) -> Subscription:
        """Create the paid subscription and switch on listings up to the plan limit.

        Runs inside the caller's payment transaction. A transaction reference
        that already produced a subscription returns that subscription.
        """
        existing = self.store.find_subscription_by_transaction(conn, transaction_ref)
        if existing is not None:
            return existing
        start = self.clock()
        subscription = self.store.insert_subscription(
            conn,
            provider_id=provider_id,
            plan=plan,
            billing_cycle=billing_cycle,
            status="active",
            valid_from=start.isoformat(),
            valid_until=validity_end(start, billing_cycle).isoformat(),
            amount_paid=amount_paid,
            gateway_transaction_id=transaction_ref,
        )
        self.activate_listings(conn, provider_id, plan)
        logger.info("Subscription %s (%s/%s) active for %s", subscription.id, plan, billing_cycle, provider_id)
        return subscription

    def activate_listings(self, conn: Any, provider_id: str, plan: str) -> int:
        limit = int(plan_config(plan)["maxListings"])
        listings = sorted(self.store.list_listings(conn, provider_id=provider_id), key=lambda item: item.created_at)
        activated = 0
        for listing in listings:
            if limit != UNLIMITED and activated >= limit:
                if listing.is_active:
                    self.store.set_listing_active(conn, listing.id, False)
                continue
            if not listing.is_active:
                self.store.set_listing_active(conn, listing.id, True)
            activated += 1
        return activated

    def create_listing(self, actor: Actor, payload: ListingCreateRequest) -> Listing:
        if not actor.can_manage_listings():
            raise ForbiddenError("Only providers can create listings")
        with self.store.transaction() as conn:
            live = self.live_subscription(conn, actor.user_id)
            has_room = False
            if live is not None:
                limit = int(plan_config(live.plan)["maxListings"])
                active = [item for item in self.store.list_listings(conn, provider_id=actor.user_id) if item.is_active]
                has_room = limit == UNLIMITED or len(active) < limit
            return self.store.insert_listing(
                conn,
                provider_id=actor.user_id,
                name=payload.name.strip(),
                service_type=payload.service_type,
                price=payload.price,
                is_active=has_room,
            )

    def public_listings(self) -> List[Listing]:
        with self.store.transaction() as conn:
            return self.store.list_listings(conn, active_only=True)

    def my_listings(self, actor: Actor) -> List[Listing]:
        if not actor.can_manage_listings():
            raise ForbiddenError("Only providers have listings")
        with self.store.transaction() as conn:
            return self.store.list_listings(conn, provider_id=actor.user_id)
