import html
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse

from pawmarket.auth import Actor
from pawmarket.deps import Services, get_services, require_actor
from pawmarket.errors import MarketplaceError
from pawmarket.models import EsewaInitiateRequest, InitiatePaymentRequest, VerifyPaymentRequest
from pawmarket.routers.common import raise_http_error, success
from pawmarket.services.payments import failure_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
{refresh}<title>{title}</title>
</head>
<body style="font-family: sans-serif; text-align: center; padding: 48px;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


def _page(title: str, message: str, redirect_to: Optional[str] = None) -> str:
    refresh = f'<meta http-equiv="refresh" content="0; url={html.escape(redirect_to)}">\n' if redirect_to else ""
    return _PAGE.format(refresh=refresh, title=html.escape(title), message=html.escape(message))


@router.post("/initiate-payment")
def initiate_payment(
    payload: InitiatePaymentRequest = Body(...),
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        data = services.payments.initiate(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(data, "Payment initiated")


@router.post("/verify-payment")
def verify_payment(
    payload: VerifyPaymentRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        result = services.payments.verify(payload.pidx.strip(), actor=actor)
    except MarketplaceError as exc:
        raise_http_error(exc)
    if not result.completed:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": result.message, "data": result.as_data()},
        )
    return success(result.as_data(), result.message)


@router.get("/khalti/callback", response_class=HTMLResponse)
def khalti_callback(
    pidx: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    base = services.settings.public_base_url
    if not pidx:
        target = f"{base}/payments/payment-failed?{urlencode({'reason': failure_message(status)})}"
        return HTMLResponse(_page("Payment not completed", failure_message(status), target))
    try:
        result = services.payments.verify(pidx)
    except MarketplaceError as exc:
        logger.warning("Khalti callback for %s could not be verified: %s", pidx, exc)
        reason = failure_message(str(exc))
        target = f"{base}/payments/payment-failed?{urlencode({'reason': reason})}"
        return HTMLResponse(_page("Payment not completed", reason, target))
    if result.completed:
        target = f"{base}/payments/payment-success?{urlencode({'pidx': pidx})}"
        return HTMLResponse(_page("Payment successful", "Redirecting...", target))
    target = f"{base}/payments/payment-failed?{urlencode({'reason': result.message})}"
    return HTMLResponse(_page("Payment not completed", result.message, target))


@router.get("/payment-success", response_class=HTMLResponse)
def payment_success(pidx: Optional[str] = Query(default=None)):
    message = "Your payment was received. You can return to the app."
    if pidx:
        message = f"{message} Reference: {pidx}"
    return HTMLResponse(_page("Payment successful", message))


@router.get("/payment-failed", response_class=HTMLResponse)
def payment_failed(reason: Optional[str] = Query(default=None)):
    return HTMLResponse(_page("Payment not completed", reason or failure_message(None)))


@router.post("/esewa/initiate")
def esewa_initiate(
    payload: EsewaInitiateRequest,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
):
    try:
        data = services.payments.esewa_initiate(actor, payload)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return success(data)


@router.get("/esewa/verify")
def esewa_verify(
    data: str = Query(...),
    signature: str = Query(...),
    services: Services = Depends(get_services),
):
    try:
        result = services.payments.esewa_verify(data, signature)
    except MarketplaceError as exc:
        raise_http_error(exc)
    if not result.completed:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": result.message, "data": result.as_data()},
        )
    return success(result.as_data(), result.message)


@router.get("/my")
def my_payments(actor: Actor = Depends(require_actor), services: Services = Depends(get_services)):
    return success(services.payments.my_payments(actor))
