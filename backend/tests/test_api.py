from dataclasses import replace

from fastapi.testclient import TestClient

from conftest import KATHMANDU, create_request, future_date, request_payload
from pawmarket.main import create_app
from pawmarket.services.notification_store import NotificationStore
from pawmarket.services.push_sender import PushSender


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"

    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["khalti_mode"] == "sandbox"


def test_shutdown_closes_gateway_client(settings, services, gateway):
    application = create_app(settings, services=services)
    with TestClient(application) as scoped:
        assert scoped.get("/health").status_code == 200
        assert gateway.closed is False
    assert gateway.closed is True


def test_register_login_and_me(client):
    register = client.post(
        "/auth/register",
        json={"name": "Anita Gurung", "email": "Anita@Example.com", "password": "s3cure-pass", "role": "pet_owner"},
    )
    assert register.status_code == 201
    body = register.json()
    assert body["success"] is True
    assert body["data"]["user"]["email"] == "anita@example.com"
    assert body["data"]["accessToken"]

    duplicate = client.post(
        "/auth/register",
        json={"name": "Anita Again", "email": "anita@example.com", "password": "s3cure-pass"},
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["success"] is False

    login = client.post("/auth/login", json={"email": "anita@example.com", "password": "s3cure-pass"})
    assert login.status_code == 200
    token = login.json()["data"]["accessToken"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["role"] == "pet_owner"


def test_login_with_wrong_password_is_unauthorized(client, users):
    response = client.post("/auth/login", json={"email": "sita.owner@pawmarket.test", "password": "wrong-horse"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid credentials"}


def test_missing_token_uses_error_envelope(client):
    response = client.get("/pets/my")
    assert response.status_code == 401
    assert response.json()["success"] is False

    garbage = client.get("/pets/my", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401


def test_self_registration_cannot_claim_admin(client):
    response = client.post(
        "/auth/register",
        json={"name": "Sneaky", "email": "sneaky@example.com", "password": "s3cure-pass", "role": "admin"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "role" in response.json()["message"]


def test_create_pet_and_request_with_camel_case_body(client, users):
    pet = client.post(
        "/pets",
        json={"name": "Bhote", "species": "Dog", "breed": "Tibetan Mastiff", "age": 3},
        headers=users.owner.headers,
    )
    assert pet.status_code == 201
    pet_id = pet.json()["data"]["id"]
    assert pet.json()["data"]["ownerId"] == users.owner.id

    created = client.post("/service-requests", json=request_payload(pet_id), headers=users.owner.headers)
    assert created.status_code == 201
    data = created.json()["data"]
    assert data["status"] == "pending"
    assert data["paymentStatus"] == "unpaid"
    assert data["assignedStaff"] is None
    assert data["location"] == KATHMANDU

    duplicate = client.post("/service-requests", json=request_payload(pet_id), headers=users.owner.headers)
    assert duplicate.status_code == 400
    assert duplicate.json()["success"] is False

    mine = client.get("/service-requests/my/requests", headers=users.owner.headers)
    assert [row["id"] for row in mine.json()["data"]] == [data["id"]]


def test_request_with_missing_fields_is_rejected(client, users, pet):
    response = client.post("/service-requests", json={"petId": pet.id}, headers=users.owner.headers)
    assert response.status_code == 400
    assert "Missing required fields" in response.json()["message"]


def test_request_with_unknown_payment_method_is_rejected(client, users, pet):
    response = client.post(
        "/service-requests", json=request_payload(pet.id, paymentMethod="bitcoin"), headers=users.owner.headers
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "paymentMethod" in response.json()["message"]


def test_request_for_unknown_pet_is_not_found(client, users):
    response = client.post("/service-requests", json=request_payload("pet_missing"), headers=users.owner.headers)
    assert response.status_code == 404


def test_assign_over_http_requires_payment(client, services, users, pet):
    request = create_request(services, users.owner, pet.id)
    response = client.patch(
        f"/service-requests/{request.id}/assign",
        json={"staffId": users.vet.id, "scheduledTime": "2025-06-01T10:00:00Z"},
        headers=users.admin.headers,
    )
    assert response.status_code == 400
    assert "Payment required" in response.json()["message"]

    forbidden = client.patch(
        f"/service-requests/{request.id}/assign",
        json={"staffId": users.vet.id, "scheduledTime": "2025-06-01T10:00:00Z"},
        headers=users.owner.headers,
    )
    assert forbidden.status_code == 403


def test_visit_lifecycle_over_http(client, services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    assigned = client.patch(
        f"/service-requests/{request.id}/assign",
        json={"staffId": users.vet.id, "scheduledTime": "2025-06-01T10:00:00Z"},
        headers=users.admin.headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["data"]["assignedStaff"] == users.vet.id

    assignments = client.get("/service-requests/my/assignments", headers=users.vet.headers)
    assert [row["id"] for row in assignments.json()["data"]] == [request.id]

    assert client.patch(f"/service-requests/{request.id}/start", headers=users.vet.headers).status_code == 200
    completed = client.patch(
        f"/service-requests/{request.id}/complete", json={"notes": "Rabies booster given"}, headers=users.vet.headers
    )
    assert completed.status_code == 200
    assert completed.json()["data"]["status"] == "completed"

    pet_view = client.get(f"/pets/{pet.id}", headers=users.vet.headers)
    assert pet_view.status_code == 200
    assert pet_view.json()["data"]["medicalHistory"] == ["Rabies booster given"]
    assert client.get(f"/pets/{pet.id}", headers=users.vet2.headers).status_code == 403

    again = client.patch(f"/service-requests/{request.id}/cancel", headers=users.owner.headers)
    assert again.status_code == 400

    review = client.post(
        f"/service-requests/{request.id}/review", json={"rating": 5, "comment": "Great"}, headers=users.owner.headers
    )
    assert review.status_code == 201
    assert review.json()["data"]["review"]["rating"] == 5

    history = client.get(f"/service-requests/{request.id}/history", headers=users.owner.headers)
    assert [row["to_status"] for row in history.json()["data"]] == ["assigned", "in_progress", "completed"]


def test_admin_listing_and_stats(client, services, users, pet):
    create_request(services, users.owner, pet.id)
    create_request(services, users.owner, pet.id, preferred_date=future_date(9), serviceType="Health Checkup")

    listed = client.get("/service-requests", params={"serviceType": "Health Checkup"}, headers=users.admin.headers)
    assert listed.status_code == 200
    assert len(listed.json()["data"]) == 1

    assert client.get("/service-requests", headers=users.owner.headers).status_code == 403

    stats = client.get("/service-requests/stats", headers=users.admin.headers)
    assert stats.json()["data"]["total"] == 2
    assert stats.json()["data"]["byStatus"]["pending"] == 2


def test_live_location_privacy(client, services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    services.assignments.assign(request.id, users.vet.id, "2025-06-01T10:00:00Z", users.admin.actor)

    update = client.post("/location/update", json={"lat": 27.71, "lng": 85.31}, headers=users.vet.headers)
    assert update.status_code == 200
    assert client.post("/location/update", json={"lat": 27.71, "lng": 85.31}, headers=users.owner.headers).status_code == 403

    owner_view = client.get(f"/service-requests/{request.id}/live", headers=users.owner.headers)
    assert owner_view.status_code == 200
    assert owner_view.json()["data"]["visible"] is False
    assert owner_view.json()["data"]["coordinates"] is None

    admin_view = client.get(f"/service-requests/{request.id}/live", headers=users.admin.headers)
    assert admin_view.json()["data"]["visible"] is True
    assert admin_view.json()["data"]["coordinates"] == {"lat": 27.71, "lng": 85.31}

    stranger = client.get(f"/service-requests/{request.id}/live", headers=users.other_owner.headers)
    assert stranger.status_code == 403


def test_khalti_callback_redirects_to_result_pages(client, services, users, pet, gateway):
    request = create_request(services, users.owner, pet.id)
    started = client.post(
        "/payments/initiate-payment",
        json={"type": "service", "serviceRequestId": request.id, "amount": 1500},
        headers=users.owner.headers,
    )
    assert started.status_code == 200
    pidx = started.json()["data"]["pidx"]
    assert started.json()["data"]["paymentUrl"].endswith(pidx)

    success_page = client.get("/payments/khalti/callback", params={"pidx": pidx})
    assert success_page.status_code == 200
    assert "text/html" in success_page.headers["content-type"]
    assert f"/payments/payment-success?pidx={pidx}" in success_page.text

    failed_page = client.get("/payments/khalti/callback", params={"status": "User canceled"})
    assert "/payments/payment-failed?reason=" in failed_page.text

    unknown = client.get("/payments/khalti/callback", params={"pidx": "pidx_unknown"})
    assert unknown.status_code == 200
    assert "payment-failed" in unknown.text

    assert "Reference: abc" in client.get("/payments/payment-success", params={"pidx": "abc"}).text


def test_verify_payment_envelope(client, services, users, pet, gateway):
    request = create_request(services, users.owner, pet.id)
    client.post(
        "/payments/initiate-payment",
        json={"type": "service", "serviceRequestId": request.id, "amount": 1500},
        headers=users.owner.headers,
    )
    gateway.statuses["pidx_1"] = "Expired"

    failed = client.post("/payments/verify-payment", json={"pidx": "pidx_1"}, headers=users.owner.headers)
    assert failed.status_code == 400
    assert failed.json()["success"] is False
    assert failed.json()["message"] == "Payment link expired. Please initiate a new payment."
    assert failed.json()["data"]["status"] == "failed"

    missing = client.post("/payments/verify-payment", json={"pidx": "pidx_nope"}, headers=users.owner.headers)
    assert missing.status_code == 404

    gateway.fail_lookup = True
    client.post(
        "/payments/initiate-payment",
        json={"type": "service", "serviceRequestId": request.id, "amount": 1500},
        headers=users.owner.headers,
    )
    outage = client.post("/payments/verify-payment", json={"pidx": "pidx_2"}, headers=users.owner.headers)
    assert outage.status_code == 502


def test_cash_on_delivery_cannot_start_online_payment(client, services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    response = client.post(
        "/payments/initiate-payment",
        json={"type": "service", "serviceRequestId": request.id, "amount": 1500},
        headers=users.owner.headers,
    )
    assert response.status_code == 400


def test_notifications_flow(client, services, users, pet):
    create_request(services, users.owner, pet.id)

    listed = client.get("/notifications", headers=users.owner.headers)
    assert listed.status_code == 200
    notifications = listed.json()["data"]
    assert notifications[0]["title"] == "Request received"
    assert notifications[0]["read"] is False

    marked = client.post(f"/notifications/{notifications[0]['id']}/read", headers=users.owner.headers)
    assert marked.status_code == 200
    assert marked.json()["data"]["read"] is True

    unread = client.get("/notifications", params={"unread_only": True}, headers=users.owner.headers)
    assert unread.json()["data"] == []

    assert client.post(f"/notifications/{notifications[0]['id']}/read", headers=users.vet.headers).status_code == 404

    device = client.post(
        "/notifications/register-device",
        json={"deviceToken": "fcm-token-1", "platform": "android"},
        headers=users.owner.headers,
    )
    assert device.status_code == 200
    assert services.notifications.device_tokens(users.owner.id) == ["fcm-token-1"]


def test_plans_listings_and_bookings(client, services, users, pet):
    plans = client.get("/subscriptions/plans")
    assert [plan["id"] for plan in plans.json()["data"]] == ["basic", "premium"]

    draft = client.post("/listings", json={"name": "Thamel Pet Hostel", "price": 1000}, headers=users.provider.headers)
    assert draft.status_code == 201
    assert draft.json()["data"]["isActive"] is False
    assert client.get("/listings").json()["data"] == []
    assert client.post("/listings", json={"name": "Nope", "price": 10}, headers=users.owner.headers).status_code == 403

    started = client.post(
        "/subscriptions/initiate", json={"plan": "basic", "billingCycle": "monthly"}, headers=users.provider.headers
    )
    assert started.status_code == 200
    verified = client.post(
        "/payments/verify-payment", json={"pidx": started.json()["data"]["pidx"]}, headers=users.provider.headers
    )
    assert verified.status_code == 200

    public = client.get("/listings").json()["data"]
    assert [row["id"] for row in public] == [draft.json()["data"]["id"]]

    booking = client.post(
        "/care-bookings",
        json={
            "listingId": public[0]["id"],
            "petId": pet.id,
            "checkIn": "2099-05-01T12:00:00Z",
            "checkOut": "2099-05-03T12:00:00Z",
        },
        headers=users.owner.headers,
    )
    assert booking.status_code == 201
    assert booking.json()["data"]["totalAmount"] == 3107.5

    incoming = client.get("/care-bookings/incoming", headers=users.provider.headers)
    assert [row["id"] for row in incoming.json()["data"]] == [booking.json()["data"]["id"]]

    stranger = client.patch(
        f"/care-bookings/{booking.json()['data']['id']}/respond", json={"accept": True}, headers=users.other_owner.headers
    )
    assert stranger.status_code == 403
    rejected = client.patch(
        f"/care-bookings/{booking.json()['data']['id']}/respond", json={"accept": False}, headers=users.provider.headers
    )
    assert rejected.json()["data"]["status"] == "rejected"


def test_orders_and_care_requests(client, users, pet):
    order = client.post(
        "/orders",
        json={"items": [{"name": "Chew toy", "quantity": 3, "unitPrice": 150}], "deliveryAddress": "Patan"},
        headers=users.owner.headers,
    )
    assert order.status_code == 201
    assert order.json()["data"]["totalAmount"] == 450
    assert len(client.get("/orders/my", headers=users.owner.headers).json()["data"]) == 1

    empty = client.post("/orders", json={"items": [], "deliveryAddress": "Patan"}, headers=users.owner.headers)
    assert empty.status_code == 400

    care = client.post(
        "/care/requests",
        json={"petId": pet.id, "serviceType": "Bathing", "preferredDate": "2099-02-02", "location": KATHMANDU},
        headers=users.owner.headers,
    )
    assert care.status_code == 201
    assert care.json()["data"]["status"] == "draft"


def test_unexpected_errors_are_hidden_in_production(settings, services):
    app = create_app(replace(settings, app_env="production"), services=services)

    @app.get("/boom")
    def boom():
        raise RuntimeError("database password is hunter2")

    client = TestClient(app, raise_server_exceptions=False)
    response = client.get("/boom")
    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error"}


def test_unexpected_errors_carry_context_outside_production(settings, services):
    app = create_app(settings, services=services)

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaboom")

    response = TestClient(app, raise_server_exceptions=False).get("/boom")
    assert response.status_code == 500
    assert response.json()["message"] == "kaboom"
    assert response.json()["path"] == "/boom"
    assert response.json()["method"] == "GET"


class RecordingPushSender:
    def __init__(self, stale=()):
        self.sent = []
        self.stale = list(stale)

    def send_notification(self, tokens, title, body, data):
        self.sent.append({"tokens": list(tokens), "title": title, "data": data})
        return [token for token in tokens if token in self.stale]


def test_notifications_push_and_prune_stale_devices(tmp_path):
    push = RecordingPushSender(stale=["dead-token"])
    store = NotificationStore(str(tmp_path / "notifications.sqlite3"), push_sender=push)
    store.register_device_token("usr_1", "live-token", "android")
    store.register_device_token("usr_1", "dead-token", "ios")

    record = store.create("usr_1", "Staff assigned", "Dr Maya will visit at 10:00.", type="service_request", reference="sr_1")

    assert sorted(push.sent[0]["tokens"]) == ["dead-token", "live-token"]
    assert push.sent[0]["data"] == {"notification_id": record.id, "type": "service_request", "reference": "sr_1"}
    assert store.device_tokens("usr_1") == ["live-token"]
    assert store.list_for_user("usr_1")[0].reference == "sr_1"


def test_push_sender_without_credentials_is_a_no_op():
    sender = PushSender("")
    assert sender.enabled is False
    assert sender.send_notification(["token"], "Hello", "World", {}) == []
