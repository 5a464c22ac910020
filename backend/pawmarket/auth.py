import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pawmarket.models import ServiceRequest, UserProfile

PASSWORD_ITERATIONS = 120_000
STAFF_ROLES = {"veterinarian", "rider"}
PROVIDER_ROLES = {"service_provider", "hostel_owner"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


class TokenSigner:
    def __init__(self, secret: str, ttl_hours: int = 24) -> None:
        self._secret = secret.encode("utf-8")
        self._ttl_hours = ttl_hours

    def create_access_token(self, user_id: str) -> tuple[str, str]:
        expiry = datetime.now(timezone.utc) + timedelta(hours=self._ttl_hours)
        payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
        sig = hmac.new(self._secret, payload, hashlib.sha256).digest()
        token = f"{_b64url(payload)}.{_b64url(sig)}"
        return token, expiry.isoformat()

    def verify_access_token(self, token: str) -> Optional[str]:
        try:
            payload_part, sig_part = token.split(".", 1)
            payload = _b64urldecode(payload_part)
            sent_sig = _b64urldecode(sig_part)
        except ValueError:
            return None
        expected_sig = hmac.new(self._secret, payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        try:
            user_id, expiry_ts = payload.decode("utf-8").split("|", 1)
            expires = int(expiry_ts)
        except ValueError:
            return None
        if datetime.now(timezone.utc).timestamp() > expires:
            return None
        return user_id


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt_hex, digest_hex = encoded.split("$", 3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    return hmac.compare_digest(digest.hex(), digest_hex)


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, resolved once per request."""

    user: UserProfile

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def is_admin(self) -> bool:
        return self.user.role == "admin"

    @property
    def is_staff(self) -> bool:
        return self.user.role in STAFF_ROLES

    def can_assign(self) -> bool:
        return self.is_admin

    def can_view(self, request: ServiceRequest) -> bool:
        return self.is_admin or self.user_id in {request.user_id, request.assigned_staff}

    def can_transition(self, request: ServiceRequest, target: str) -> bool:
        if target in {"in_progress", "completed"}:
            return request.assigned_staff is not None and request.assigned_staff == self.user_id
        if target == "cancelled":
            return self.is_admin or request.user_id == self.user_id
        if target == "assigned":
            return self.can_assign()
        return False

    def can_update_location(self) -> bool:
        return self.user.role != "pet_owner"

    def can_manage_listings(self) -> bool:
        return self.is_admin or self.user.role in PROVIDER_ROLES
