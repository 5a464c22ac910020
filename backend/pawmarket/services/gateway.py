import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

import httpx

from pawmarket.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

KHALTI_SUCCESS_STATUS = "Completed"
ESEWA_SUCCESS_STATUS = "COMPLETE"


def npr_to_paisa(amount_npr: float) -> int:
    return int(round(float(amount_npr) * 100))


def parse_paisa(value: Any) -> Optional[int]:
    """Read a gateway-reported paisa amount; None when it is absent or not a whole number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(str(value).strip())
    except ValueError:
        return None
    if amount != amount or not amount.is_integer():
        return None
    return int(amount)


class KhaltiClient:
    """Thin client for the Khalti ePayment initiate and lookup endpoints."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        return_url: str,
        website_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.return_url = return_url
        self.website_url = website_url
        self._secret_key = secret_key.strip()
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Key {self._secret_key}", "Content-Type": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise UpstreamError("Khalti is not configured")
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Khalti %s request failed: %s", path, exc)
            raise UpstreamError("Payment gateway is unreachable") from exc
        if response.status_code >= 400:
            logger.error("Khalti %s returned %s: %s", path, response.status_code, response.text[:500])
            raise UpstreamError(f"Payment gateway rejected the request ({response.status_code})")
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError("Payment gateway returned an unreadable response") from exc
        if not isinstance(body, dict):
            raise UpstreamError("Payment gateway returned an unexpected response")
        return body

    def initiate(self, *, amount_npr: float, purchase_order_id: str, purchase_order_name: str) -> Dict[str, Any]:
        body = self._post(
            "/epayment/initiate/",
            {
                "return_url": self.return_url,
                "website_url": self.website_url,
                "amount": npr_to_paisa(amount_npr),
                "purchase_order_id": purchase_order_id,
                "purchase_order_name": purchase_order_name,
            },
        )
        if not body.get("pidx") or not body.get("payment_url"):
            raise UpstreamError("Payment gateway response is missing pidx or payment_url")
        return body

    def lookup(self, pidx: str) -> Dict[str, Any]:
        body = self._post("/epayment/lookup/", {"pidx": pidx})
        if "status" not in body:
            raise UpstreamError("Payment gateway lookup response has no status")
        return body

    def close(self) -> None:
        self._client.close()


class EsewaSigner:
    """Signs eSewa ePay v2 form payloads and checks their callbacks."""

    def __init__(self, secret_key: str, product_code: str, init_url: str) -> None:
        self._secret = secret_key.encode("utf-8")
        self.product_code = product_code
        self.init_url = init_url

    def sign(self, total_amount: str, transaction_uuid: str, product_code: Optional[str] = None) -> str:
        message = (
            f"total_amount={total_amount},transaction_uuid={transaction_uuid},"
            f"product_code={product_code or self.product_code}"
        )
        digest = hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("utf-8")

    def form_payload(self, amount_npr: float, transaction_uuid: str) -> Dict[str, Any]:
        total_amount = f"{float(amount_npr):.2f}"
        return {
            "transaction_uuid": transaction_uuid,
            "total_amount": total_amount,
            "product_code": self.product_code,
            "signed_field_names": "total_amount,transaction_uuid,product_code",
            "signature": self.sign(total_amount, transaction_uuid),
            "redirect_url": self.init_url,
        }

    def decode_callback(self, data: str, signature: str) -> Dict[str, Any]:
        """Decode the base64 JSON callback and verify its signature."""
        try:
            decoded = json.loads(base64.b64decode(data.encode("utf-8")).decode("utf-8"))
        except ValueError as exc:
            raise ValidationError("Invalid eSewa data payload") from exc
        if not isinstance(decoded, dict):
            raise ValidationError("Invalid eSewa data payload")
        expected = self.sign(
            str(decoded.get("total_amount", "")),
            str(decoded.get("transaction_uuid", "")),
            str(decoded.get("product_code", "")),
        )
        if not hmac.compare_digest(expected, signature or ""):
            raise ValidationError("Signature verification failed")
        return decoded
