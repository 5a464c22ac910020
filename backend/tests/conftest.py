import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

_IMPORT_DATA_DIR = tempfile.mkdtemp(prefix="pawmarket-tests-")
os.environ.setdefault("MARKETPLACE_DB_PATH", os.path.join(_IMPORT_DATA_DIR, "marketplace.sqlite3"))
os.environ.setdefault("NOTIFICATIONS_DB_PATH", os.path.join(_IMPORT_DATA_DIR, "notifications.sqlite3"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from pawmarket.auth import Actor, hash_password  # noqa: E402
from pawmarket.config import Settings  # noqa: E402
from pawmarket.deps import Services, build_services, get_services  # noqa: E402
from pawmarket.errors import UpstreamError  # noqa: E402
from pawmarket.main import create_app  # noqa: E402
from pawmarket.models import ServiceRequestCreate  # noqa: E402
from pawmarket.services.broadcaster import ConnectionHub  # noqa: E402
from pawmarket.services.gateway import npr_to_paisa  # noqa: E402

KATHMANDU = {"address": "Thamel, Kathmandu", "coordinates": {"lat": 27.7172, "lng": 85.3240}}


class FakeGateway:
    """Scripted replacement for KhaltiClient."""

    configured = True

    def __init__(self) -> None:
        self.initiated: List[Dict[str, Any]] = []
        self.lookups: List[str] = []
        self.statuses: Dict[str, str] = {}
        self.amounts: Dict[str, Any] = {}
        self.fail_initiate = False
        self.fail_lookup = False
        self.closed = False

    def initiate(self, *, amount_npr: float, purchase_order_id: str, purchase_order_name: str) -> Dict[str, Any]:
        if self.fail_initiate:
            raise UpstreamError("Payment gateway is unreachable")
        pidx = f"pidx_{len(self.initiated) + 1}"
        self.initiated.append(
            {
                "pidx": pidx,
                "amount": npr_to_paisa(amount_npr),
                "purchase_order_id": purchase_order_id,
                "purchase_order_name": purchase_order_name,
            }
        )
        self.amounts[pidx] = npr_to_paisa(amount_npr)
        return {"pidx": pidx, "payment_url": f"https://pay.khalti.test/{pidx}", "expires_in": 1800}

    def lookup(self, pidx: str) -> Dict[str, Any]:
        self.lookups.append(pidx)
        if self.fail_lookup:
            raise UpstreamError("Payment gateway is unreachable")
        body = {
            "pidx": pidx,
            "status": self.statuses.get(pidx, "Completed"),
            "total_amount": self.amounts.get(pidx, 0),
            "transaction_id": f"txn_{pidx}",
        }
        if body["total_amount"] is None:
            del body["total_amount"]
        return body

    def close(self) -> None:
        self.closed = True


class RecordingHub(ConnectionHub):
    def __init__(self) -> None:
        super().__init__()
        self.published: List[Dict[str, Any]] = []

    def publish(self, topic, event, data, exclude_user=None):
        self.published.append({"topic": topic, "event": event, "data": data, "exclude_user": exclude_user})
        super().publish(topic, event, data, exclude_user=exclude_user)

    def events(self, event: str) -> List[Dict[str, Any]]:
        return [item for item in self.published if item["event"] == event]


class FailingBroadcaster:
    def __init__(self) -> None:
        self.attempts = 0

    def publish(self, topic, event, data, exclude_user=None):
        self.attempts += 1
        raise RuntimeError("realtime transport is down")


@dataclass
class MarketUser:
    actor: Actor
    token: str

    @property
    def id(self) -> str:
        return self.actor.user_id

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def make_user(services: Services, role: str, name: str, email: Optional[str] = None) -> MarketUser:
    with services.store.transaction() as conn:
        user = services.store.insert_user(
            conn,
            name=name,
            email=email or f"{name.lower().replace(' ', '.')}@pawmarket.test",
            password_hash=hash_password("correct-horse"),
            role=role,
        )
    token, _ = services.tokens.create_access_token(user.id)
    return MarketUser(actor=Actor(user=user), token=token)


def make_pet(services: Services, owner: MarketUser, name: str = "Bhote"):
    with services.store.transaction() as conn:
        return services.store.insert_pet(conn, owner_id=owner.id, name=name, species="Dog", breed="Tibetan Mastiff", age=3)


def future_date(days: int = 3) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


def request_payload(pet_id: str, preferred_date: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "petId": pet_id,
        "serviceType": "Vaccination",
        "preferredDate": preferred_date or future_date(),
        "timeWindow": "Morning (9am-12pm)",
        "location": KATHMANDU,
        "notes": "Annual shots",
    }
    payload.update(overrides)
    return payload


def create_request(services: Services, owner: MarketUser, pet_id: str, **overrides: Any):
    body = ServiceRequestCreate.model_validate(request_payload(pet_id, **overrides))
    return services.lifecycle.create(owner.actor, body)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="development",
        marketplace_db_path=str(tmp_path / "marketplace.sqlite3"),
        notifications_db_path=str(tmp_path / "notifications.sqlite3"),
        auth_secret="test-secret",
        khalti_secret_key="test_khalti_key",
        esewa_secret_key="8gBm/:&EnhH.1/q",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def services(settings, gateway, hub) -> Services:
    return build_services(settings, gateway=gateway, broadcaster=hub)


@pytest.fixture
def app(settings, services):
    application = create_app(settings)
    application.dependency_overrides[get_services] = lambda: services
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@dataclass
class Cast:
    owner: MarketUser
    other_owner: MarketUser
    vet: MarketUser
    vet2: MarketUser
    rider: MarketUser
    admin: MarketUser
    provider: MarketUser


@pytest.fixture
def users(services) -> Cast:
    return Cast(
        owner=make_user(services, "pet_owner", "Sita Owner"),
        other_owner=make_user(services, "pet_owner", "Ram Owner"),
        vet=make_user(services, "veterinarian", "Dr Maya"),
        vet2=make_user(services, "veterinarian", "Dr Bikash"),
        rider=make_user(services, "rider", "Hari Rider"),
        admin=make_user(services, "admin", "Admin One"),
        provider=make_user(services, "hostel_owner", "Hostel Host"),
    )


@pytest.fixture
def pet(services, users):
    return make_pet(services, users.owner)
