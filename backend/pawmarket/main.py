import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from pawmarket.config import Settings, load_settings
from pawmarket.deps import Services, build_services, get_services
from pawmarket.routers import auth, care, location, notifications, payments, pets, realtime, service_requests, subscriptions

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def _install_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "message": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if settings.is_production:
            return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": str(exc) or exc.__class__.__name__,
                "path": request.url.path,
                "method": request.method,
            },
        )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    app.state.services.gateway.close()
    logger.info("Payment gateway client closed")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="PawMarket API", version="0.1.0", lifespan=_lifespan)
    app.state.services = services or build_services(settings)

    allow_any_origin = len(settings.cors_origins) == 1 and settings.cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if not (len(settings.trusted_hosts) == 1 and settings.trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    _install_error_handlers(app, settings)

    app.include_router(auth.router)
    app.include_router(pets.router)
    app.include_router(service_requests.router)
    app.include_router(payments.router)
    app.include_router(subscriptions.router)
    app.include_router(subscriptions.listings_router)
    app.include_router(care.care_router)
    app.include_router(care.bookings_router)
    app.include_router(care.orders_router)
    app.include_router(notifications.router)
    app.include_router(location.router)
    app.include_router(realtime.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready(services: Services = Depends(get_services)):
        return {
            "status": "ready",
            "environment": settings.app_env,
            "khalti_mode": settings.khalti_mode,
            "esewa_configured": bool(settings.esewa_secret_key),
            "push_enabled": services.notifications.push_sender.enabled,
        }

    return app


app = create_app()
