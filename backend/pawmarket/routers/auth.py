import sqlite3

from fastapi import APIRouter, Depends

from pawmarket.auth import Actor, hash_password, verify_password
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import AuthError, ConflictError, MarketplaceError, ValidationError
from pawmarket.models import LoginRequest, RegisterRequest
from pawmarket.routers.common import raise_http_error, success

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, services: Services = Depends(get_services)):
    email = payload.email.strip().lower()
    try:
        if "@" not in email:
            raise ValidationError("A valid email is required")
        with services.store.transaction() as conn:
            if services.store.find_credentials(conn, email):
                raise ConflictError("An account with this email already exists")
            user = services.store.insert_user(
                conn,
                name=payload.name.strip(),
                email=email,
                password_hash=hash_password(payload.password),
                role=payload.role,
                phone=payload.phone,
            )
    except sqlite3.IntegrityError:
        raise_http_error(ConflictError("An account with this email already exists"))
    except MarketplaceError as exc:
        raise_http_error(exc)
    token, expires_at = services.tokens.create_access_token(user.id)
    return success({"user": user, "accessToken": token, "expiresAt": expires_at}, "Account created")


@router.post("/login")
def login(payload: LoginRequest, services: Services = Depends(get_services)):
    with services.store.transaction() as conn:
        row = services.store.find_credentials(conn, payload.email)
        user = services.store.find_user(conn, row["id"]) if row else None
    if not row or not user or not verify_password(payload.password, row["password_hash"]):
        raise_http_error(AuthError("Invalid credentials"))
    token, expires_at = services.tokens.create_access_token(user.id)
    return success({"user": user, "accessToken": token, "expiresAt": expires_at})


@router.get("/me")
def me(actor: Actor = Depends(require_actor)):
    return success(actor.user)
