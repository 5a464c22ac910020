from datetime import date, timedelta

import pytest

from conftest import create_request, future_date, make_pet, request_payload
from pawmarket.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from pawmarket.models import ServiceRequestCreate
from pawmarket.services.request_lifecycle import ASSIGNED_STATUSES, RequestValidation, validate_new_request


def _never_duplicate(pet_id, preferred_date):
    return False


def _assign(services, users, request_id, when="2030-01-15T10:00:00+00:00", staff=None):
    return services.assignments.assign(request_id, (staff or users.vet).id, when, users.admin.actor)


def _assert_staff_invariant(services):
    with services.store.transaction() as conn:
        rows = services.store.query_service_requests(conn)
    for row in rows:
        assert (row.assigned_staff is not None) == (row.status in ASSIGNED_STATUSES), row


def test_validate_reports_missing_fields(pet):
    result = validate_new_request(
        ServiceRequestCreate(pet_id=pet.id),
        owner_id=pet.owner_id,
        pet=pet,
        has_pending_duplicate=_never_duplicate,
        today=date.today(),
    )
    assert not result.ok
    assert "serviceType" in result.errors[0]
    assert "timeWindow" in result.errors[0]
    with pytest.raises(ValidationError):
        result.raise_for_errors()


def test_validate_rejects_location_outside_kathmandu(pet):
    payload = ServiceRequestCreate.model_validate(
        request_payload(pet.id, location={"address": "Pokhara", "coordinates": {"lat": 28.2096, "lng": 83.9856}})
    )
    result = validate_new_request(
        payload, owner_id=pet.owner_id, pet=pet, has_pending_duplicate=_never_duplicate, today=date.today()
    )
    assert not result.ok
    assert "service area" in result.errors[0]


def test_validate_rejects_past_date_and_unknown_service(pet):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    past = validate_new_request(
        ServiceRequestCreate.model_validate(request_payload(pet.id, preferred_date=yesterday)),
        owner_id=pet.owner_id,
        pet=pet,
        has_pending_duplicate=_never_duplicate,
        today=date.today(),
    )
    assert "past" in past.errors[0]

    unknown = validate_new_request(
        ServiceRequestCreate.model_validate(request_payload(pet.id, serviceType="Grooming")),
        owner_id=pet.owner_id,
        pet=pet,
        has_pending_duplicate=_never_duplicate,
        today=date.today(),
    )
    assert "serviceType" in unknown.errors[0]


def test_validate_typed_errors_for_pet_access(pet):
    payload = ServiceRequestCreate.model_validate(request_payload(pet.id))
    missing = validate_new_request(
        payload, owner_id=pet.owner_id, pet=None, has_pending_duplicate=_never_duplicate, today=date.today()
    )
    assert missing.error_type is NotFoundError

    foreign = validate_new_request(
        payload, owner_id="usr_someone_else", pet=pet, has_pending_duplicate=_never_duplicate, today=date.today()
    )
    assert foreign.error_type is ForbiddenError


def test_accepted_validation_yields_date_and_location(pet):
    payload = ServiceRequestCreate.model_validate(request_payload(pet.id, preferred_date="2099-03-04"))
    result = validate_new_request(
        payload, owner_id=pet.owner_id, pet=pet, has_pending_duplicate=_never_duplicate, today=date.today()
    )
    preferred, location = result.accepted()
    assert preferred == date(2099, 3, 4)
    assert location.address == payload.location.address

    with pytest.raises(ValidationError):
        RequestValidation().accepted()


def test_duplicate_pending_request_same_pet_same_day(services, users, pet):
    day = future_date(5)
    first = create_request(services, users.owner, pet.id, preferred_date=day)
    assert first.status == "pending"
    assert first.assigned_staff is None

    with pytest.raises(ConflictError):
        create_request(services, users.owner, pet.id, preferred_date=day)

    other_day = create_request(services, users.owner, pet.id, preferred_date=future_date(6))
    assert other_day.status == "pending"


def test_cancelled_request_frees_the_day(services, users, pet):
    day = future_date(5)
    first = create_request(services, users.owner, pet.id, preferred_date=day)
    services.lifecycle.cancel(users.owner.actor, first.id, "Changed plans")

    again = create_request(services, users.owner, pet.id, preferred_date=day)
    assert again.status == "pending"


def test_cannot_request_for_someone_elses_pet(services, users, pet):
    with pytest.raises(ForbiddenError):
        create_request(services, users.other_owner, pet.id)


def test_start_on_pending_request_fails(services, users, pet):
    request = create_request(services, users.owner, pet.id)
    with pytest.raises(ConflictError):
        services.lifecycle.start(users.vet.actor, request.id)

    with services.store.transaction() as conn:
        assert services.store.get_service_request(conn, request.id).status == "pending"


def test_complete_on_cancelled_request_fails(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.cancel(users.owner.actor, request.id)

    with pytest.raises(ConflictError):
        services.lifecycle.complete(users.vet.actor, request.id, "Too late")


def test_cancel_on_completed_request_fails(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)
    services.lifecycle.complete(users.vet.actor, request.id)

    with pytest.raises(ConflictError):
        services.lifecycle.cancel(users.owner.actor, request.id)


def test_complete_requires_in_progress(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)

    with pytest.raises(ConflictError):
        services.lifecycle.complete(users.vet.actor, request.id)


def test_only_assigned_staff_can_start(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)

    with pytest.raises(ForbiddenError):
        services.lifecycle.start(users.vet2.actor, request.id)
    with pytest.raises(ForbiddenError):
        services.lifecycle.cancel(users.other_owner.actor, request.id)


def test_completion_notes_append_to_medical_history(services, users, pet):
    with services.store.transaction() as conn:
        services.store.append_medical_history(conn, pet.id, "Dewormed 2024")

    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)
    completed = services.lifecycle.complete(users.vet.actor, request.id, "Vaccinated")

    assert completed.status == "completed"
    assert completed.completed_at is not None
    assert completed.visit_notes == "Vaccinated"
    with services.store.transaction() as conn:
        refreshed = services.store.get_pet(conn, pet.id)
    assert refreshed.medical_history == ["Dewormed 2024", "Vaccinated"]


def test_completion_without_notes_leaves_history_alone(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)
    services.lifecycle.complete(users.vet.actor, request.id, "   ")

    with services.store.transaction() as conn:
        assert services.store.get_pet(conn, pet.id).medical_history == []


def test_cancel_clears_assigned_staff_and_notifies_them(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)

    cancelled = services.lifecycle.cancel(users.admin.actor, request.id, "Owner unreachable")

    assert cancelled.status == "cancelled"
    assert cancelled.assigned_staff is None
    assert cancelled.cancellation_reason == "Owner unreachable"
    assert cancelled.cancelled_at is not None
    titles = [n.title for n in services.notifications.list_for_user(users.vet.id)]
    assert "Assignment cancelled" in titles
    _assert_staff_invariant(services)


def test_status_changes_are_broadcast_and_audited(services, users, pet, hub):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)

    started = [
        item for item in hub.events("status_change") if item["data"]["newStatus"] == "in_progress"
    ]
    topics = {item["topic"] for item in started}
    assert {f"request:{request.id}", f"user:{users.owner.id}"} <= topics
    assert started[0]["data"] == {"requestId": request.id, "newStatus": "in_progress", "previousStatus": "assigned"}

    history = services.lifecycle.history(users.owner.actor, request.id)
    assert [(row["from_status"], row["to_status"]) for row in history] == [
        ("pending", "assigned"),
        ("assigned", "in_progress"),
    ]


def test_review_only_once_after_completion(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    with pytest.raises(ConflictError):
        services.lifecycle.review(users.owner.actor, request.id, 5)

    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)
    services.lifecycle.complete(users.vet.actor, request.id)

    with pytest.raises(ForbiddenError):
        services.lifecycle.review(users.other_owner.actor, request.id, 4)

    reviewed = services.lifecycle.review(users.owner.actor, request.id, 5, "Very gentle")
    assert reviewed.review.rating == 5
    assert reviewed.review.comment == "Very gentle"

    with pytest.raises(ConflictError):
        services.lifecycle.review(users.owner.actor, request.id, 1)


def test_prescription_by_assigned_staff_after_completion(services, users, pet):
    request = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    _assign(services, users, request.id)
    services.lifecycle.start(users.vet.actor, request.id)
    with pytest.raises(ConflictError):
        services.lifecycle.attach_prescription(users.vet.actor, request.id, "rx-001")
    services.lifecycle.complete(users.vet.actor, request.id)

    with pytest.raises(ForbiddenError):
        services.lifecycle.attach_prescription(users.vet2.actor, request.id, "rx-001")
    updated = services.lifecycle.attach_prescription(users.vet.actor, request.id, "rx-001")
    assert updated.prescription_ref == "rx-001"


def test_listing_views_are_scoped(services, users, pet):
    mine = create_request(services, users.owner, pet.id, paymentMethod="cash_on_delivery")
    other_pet = make_pet(services, users.other_owner, "Kali")
    create_request(services, users.other_owner, other_pet.id)
    _assign(services, users, mine.id)

    assert [r.id for r in services.lifecycle.list_mine(users.owner.actor)] == [mine.id]
    assert [r.id for r in services.lifecycle.list_assignments(users.vet.actor)] == [mine.id]
    assert len(services.lifecycle.list_all(users.admin.actor)) == 2
    with pytest.raises(ForbiddenError):
        services.lifecycle.list_all(users.owner.actor)
    with pytest.raises(ForbiddenError):
        services.lifecycle.get(users.other_owner.actor, mine.id)

    stats = services.lifecycle.stats(users.admin.actor)
    assert stats["total"] == 2
    assert stats["byStatus"]["assigned"] == 1
    assert stats["byStatus"]["pending"] == 1
    assert stats["byServiceType"] == {"Vaccination": 2}
