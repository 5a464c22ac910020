from fastapi import APIRouter, Depends

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import ForbiddenError, MarketplaceError
from pawmarket.models import PetCreateRequest
from pawmarket.routers.common import raise_http_error, success

router = APIRouter(prefix="/pets", tags=["pets"])


@router.post("", status_code=201)
def create_pet(
    payload: PetCreateRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    with services.store.transaction() as conn:
        pet = services.store.insert_pet(
            conn,
            owner_id=actor.user_id,
            name=payload.name.strip(),
            species=payload.species,
            breed=payload.breed,
            age=payload.age,
        )
    return success(pet, "Pet added")


@router.get("/my")
def my_pets(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    with services.store.transaction() as conn:
        return success(services.store.list_pets(conn, actor.user_id))


@router.get("/{pet_id}")
def get_pet(pet_id: str, actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    try:
        with services.store.transaction() as conn:
            pet = services.store.get_pet(conn, pet_id)
            allowed = actor.is_admin or pet.owner_id == actor.user_id
            if not allowed:
                allowed = bool(
                    services.store.query_service_requests(conn, pet_id=pet_id, assigned_staff=actor.user_id)
                )
            if not allowed:
                raise ForbiddenError("You do not have access to this pet")
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(pet)
