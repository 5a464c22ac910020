from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.requests import HTTPConnection

from pawmarket.auth import Actor, TokenSigner, parse_bearer_token
from pawmarket.config import Settings
from pawmarket.services.assignment import AssignmentEngine
from pawmarket.services.bookings import BookingService
from pawmarket.services.broadcaster import Broadcaster, ConnectionHub, EventFanout
from pawmarket.services.chat import ChatService
from pawmarket.services.gateway import EsewaSigner, KhaltiClient
from pawmarket.services.location import LocationService
from pawmarket.services.notification_store import NotificationStore
from pawmarket.services.payments import PaymentReconciler
from pawmarket.services.push_sender import PushSender
from pawmarket.services.record_store import RecordStore
from pawmarket.services.request_lifecycle import RequestLifecycle
from pawmarket.services.subscriptions import SubscriptionService


@dataclass
class Services:
    settings: Settings
    store: RecordStore
    notifications: NotificationStore
    broadcaster: Broadcaster
    tokens: TokenSigner
    gateway: KhaltiClient
    esewa: EsewaSigner
    fanout: EventFanout
    lifecycle: RequestLifecycle
    assignments: AssignmentEngine
    payments: PaymentReconciler
    subscriptions: SubscriptionService
    bookings: BookingService
    chat: ChatService
    locations: LocationService


def build_services(
    settings: Settings,
    *,
    gateway: Optional[KhaltiClient] = None,
    broadcaster: Optional[Broadcaster] = None,
    push_sender: Optional[PushSender] = None,
) -> Services:
    store = RecordStore(settings.marketplace_db_path)
    notifications = NotificationStore(
        settings.notifications_db_path,
        push_sender=push_sender or PushSender(settings.firebase_credentials_path),
    )
    broadcaster = broadcaster or ConnectionHub()
    gateway = gateway or KhaltiClient(
        base_url=settings.khalti_base_url,
        secret_key=settings.khalti_secret_key,
        return_url=settings.khalti_return_url,
        website_url=settings.khalti_website_url,
        timeout=settings.gateway_timeout_seconds,
    )
    esewa = EsewaSigner(settings.esewa_secret_key, settings.esewa_product_code, settings.esewa_init_url)
    fanout = EventFanout(notifications, broadcaster)
    subscriptions = SubscriptionService(store)
    return Services(
        settings=settings,
        store=store,
        notifications=notifications,
        broadcaster=broadcaster,
        tokens=TokenSigner(settings.auth_secret, settings.auth_token_ttl_hours),
        gateway=gateway,
        esewa=esewa,
        fanout=fanout,
        lifecycle=RequestLifecycle(store, fanout),
        assignments=AssignmentEngine(store, fanout),
        payments=PaymentReconciler(store, gateway, esewa, subscriptions, fanout),
        subscriptions=subscriptions,
        bookings=BookingService(store, fanout, subscriptions),
        chat=ChatService(store, fanout),
        locations=LocationService(store),
    )


def get_services(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def resolve_actor(services: Services, token: Optional[str]) -> Optional[Actor]:
    if not token:
        return None
    user_id = services.tokens.verify_access_token(token)
    if not user_id:
        return None
    with services.store.transaction() as conn:
        user = services.store.find_user(conn, user_id)
    return Actor(user=user) if user else None


def require_actor(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Actor:
    actor = resolve_actor(services, parse_bearer_token(authorization))
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return actor
