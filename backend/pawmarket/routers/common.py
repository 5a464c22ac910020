from typing import Any, NoReturn, Optional

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder

from pawmarket.errors import MarketplaceError


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def success(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = jsonable_encoder(data, by_alias=True)
    return body
