import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from pawmarket.errors import NotFoundError
from pawmarket.models import (
    CareBooking,
    CareRequest,
    ChatMessage,
    Listing,
    Order,
    Payment,
    Pet,
    ServiceRequest,
    Subscription,
    UserProfile,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def _safe_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return default
    return value if isinstance(value, type(default)) else default


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        phone TEXT,
        live_lat REAL,
        live_lng REAL,
        live_updated_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pets (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        species TEXT NOT NULL,
        breed TEXT,
        age INTEGER,
        medical_history_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        pet_id TEXT NOT NULL,
        service_type TEXT NOT NULL,
        preferred_date TEXT NOT NULL,
        time_window TEXT NOT NULL,
        address TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        payment_method TEXT NOT NULL DEFAULT 'online',
        payment_gateway TEXT,
        assigned_staff TEXT,
        assigned_at TEXT,
        scheduled_time TEXT,
        completed_at TEXT,
        cancelled_at TEXT,
        cancellation_reason TEXT,
        visit_notes TEXT,
        review_json TEXT,
        prescription_ref TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sr_pet_date ON service_requests (pet_id, preferred_date, status)",
    "CREATE INDEX IF NOT EXISTS idx_sr_staff ON service_requests (assigned_staff, status)",
    """
    CREATE TABLE IF NOT EXISTS request_status_history (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        actor_user_id TEXT NOT NULL,
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        note TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT,
        amount REAL NOT NULL,
        currency TEXT NOT NULL DEFAULT 'NPR',
        gateway TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'initiated',
        gateway_transaction_id TEXT,
        raw_gateway_payload_json TEXT NOT NULL DEFAULT '{}',
        target_meta_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_txn ON payments (gateway_transaction_id)",
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL,
        plan TEXT NOT NULL,
        billing_cycle TEXT NOT NULL,
        status TEXT NOT NULL,
        valid_from TEXT,
        valid_until TEXT,
        amount_paid REAL NOT NULL DEFAULT 0,
        gateway_transaction_id TEXT UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS listings (
        id TEXT PRIMARY KEY,
        provider_id TEXT NOT NULL,
        name TEXT NOT NULL,
        service_type TEXT NOT NULL,
        price REAL NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS care_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        pet_id TEXT NOT NULL,
        service_type TEXT NOT NULL,
        preferred_date TEXT NOT NULL,
        address TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS care_bookings (
        id TEXT PRIMARY KEY,
        listing_id TEXT NOT NULL,
        pet_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        check_in TEXT NOT NULL,
        check_out TEXT NOT NULL,
        nights INTEGER NOT NULL,
        subtotal REAL NOT NULL,
        cleaning_fee REAL NOT NULL,
        service_fee REAL NOT NULL,
        platform_fee REAL NOT NULL,
        tax REAL NOT NULL,
        total_amount REAL NOT NULL,
        service_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        payment_method TEXT NOT NULL DEFAULT 'online',
        owner_notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        items_json TEXT NOT NULL,
        total_amount REAL NOT NULL,
        delivery_address TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'unpaid',
        payment_method TEXT NOT NULL DEFAULT 'online',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        requester_id TEXT NOT NULL,
        staff_id TEXT NOT NULL,
        is_read_only INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        UNIQUE (request_id, requester_id, staff_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_locations (
        id TEXT PRIMARY KEY,
        staff_id TEXT NOT NULL,
        role TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_staff_locations ON staff_locations (staff_id, created_at)",
)


class RecordStore:
    """SQLite-backed store for every marketplace record.

    Callers open ``transaction()`` and pass the connection to the row
    helpers, so multi-record updates commit or roll back together.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    # Users

    def _row_to_user(self, row: sqlite3.Row) -> UserProfile:
        live_location = None
        if row["live_lat"] is not None and row["live_lng"] is not None:
            live_location = {
                "coordinates": {"lat": row["live_lat"], "lng": row["live_lng"]},
                "updatedAt": row["live_updated_at"],
            }
        return UserProfile(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            phone=row["phone"],
            live_location=live_location,
        )

    def insert_user(
        self,
        conn: sqlite3.Connection,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: str,
        phone: Optional[str] = None,
    ) -> UserProfile:
        user_id = new_id("usr")
        conn.execute(
            """
            INSERT INTO users (id, name, email, password_hash, role, phone, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, name, email, password_hash, role, phone, utc_now().isoformat()),
        )
        return self.get_user(conn, user_id)

    def find_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[UserProfile]:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, conn: sqlite3.Connection, user_id: str) -> UserProfile:
        user = self.find_user(conn, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def find_credentials(self, conn: sqlite3.Connection, email: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT id, password_hash FROM users WHERE email = ?",
            (email.strip().lower(),),
        ).fetchone()

    def set_live_location(self, conn: sqlite3.Connection, user_id: str, lat: float, lng: float, at: str) -> None:
        conn.execute(
            "UPDATE users SET live_lat = ?, live_lng = ?, live_updated_at = ? WHERE id = ?",
            (lat, lng, at, user_id),
        )

    # Pets

    def _row_to_pet(self, row: sqlite3.Row) -> Pet:
        return Pet(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            species=row["species"],
            breed=row["breed"],
            age=row["age"],
            medical_history=_safe_json(row["medical_history_json"], []),
            created_at=row["created_at"],
        )

    def insert_pet(
        self,
        conn: sqlite3.Connection,
        *,
        owner_id: str,
        name: str,
        species: str,
        breed: Optional[str] = None,
        age: Optional[int] = None,
    ) -> Pet:
        pet_id = new_id("pet")
        conn.execute(
            """
            INSERT INTO pets (id, owner_id, name, species, breed, age, medical_history_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, '[]', ?)
            """,
            (pet_id, owner_id, name, species, breed, age, utc_now().isoformat()),
        )
        return self.get_pet(conn, pet_id)

    def find_pet(self, conn: sqlite3.Connection, pet_id: str) -> Optional[Pet]:
        row = conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        return self._row_to_pet(row) if row else None

    def get_pet(self, conn: sqlite3.Connection, pet_id: str) -> Pet:
        pet = self.find_pet(conn, pet_id)
        if not pet:
            raise NotFoundError("Pet not found")
        return pet

    def list_pets(self, conn: sqlite3.Connection, owner_id: str) -> List[Pet]:
        rows = conn.execute(
            "SELECT * FROM pets WHERE owner_id = ? ORDER BY created_at DESC",
            (owner_id,),
        ).fetchall()
        return [self._row_to_pet(row) for row in rows]

    def append_medical_history(self, conn: sqlite3.Connection, pet_id: str, entry: str) -> Pet:
        pet = self.get_pet(conn, pet_id)
        history = [*pet.medical_history, entry]
        conn.execute(
            "UPDATE pets SET medical_history_json = ? WHERE id = ?",
            (json.dumps(history), pet_id),
        )
        return pet.model_copy(update={"medical_history": history})

    # Service requests

    def _row_to_service_request(self, row: sqlite3.Row) -> ServiceRequest:
        review = _safe_json(row["review_json"], {}) or None
        return ServiceRequest(
            id=row["id"],
            user_id=row["user_id"],
            pet_id=row["pet_id"],
            service_type=row["service_type"],
            preferred_date=row["preferred_date"],
            time_window=row["time_window"],
            location={
                "address": row["address"],
                "coordinates": {"lat": row["lat"], "lng": row["lng"]},
            },
            notes=row["notes"],
            status=row["status"],
            payment_status=row["payment_status"],
            payment_method=row["payment_method"],
            payment_gateway=row["payment_gateway"],
            assigned_staff=row["assigned_staff"],
            assigned_at=row["assigned_at"],
            scheduled_time=row["scheduled_time"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            cancellation_reason=row["cancellation_reason"],
            visit_notes=row["visit_notes"],
            review=review,
            prescription_ref=row["prescription_ref"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_service_request(self, conn: sqlite3.Connection, request: ServiceRequest) -> ServiceRequest:
        conn.execute(
            """
            INSERT INTO service_requests (
                id, user_id, pet_id, service_type, preferred_date, time_window, address, lat, lng,
                notes, status, payment_status, payment_method, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.user_id,
                request.pet_id,
                request.service_type,
                request.preferred_date,
                request.time_window,
                request.location.address,
                request.location.coordinates.lat,
                request.location.coordinates.lng,
                request.notes,
                request.status,
                request.payment_status,
                request.payment_method,
                request.created_at,
                request.updated_at,
            ),
        )
        return request

    def find_service_request(self, conn: sqlite3.Connection, request_id: str) -> Optional[ServiceRequest]:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        return self._row_to_service_request(row) if row else None

    def get_service_request(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        request = self.find_service_request(conn, request_id)
        if not request:
            raise NotFoundError("Service request not found")
        return request

    def update_service_request(self, conn: sqlite3.Connection, request_id: str, **fields: Any) -> ServiceRequest:
        if "review" in fields:
            review = fields.pop("review")
            fields["review_json"] = json.dumps(review) if review is not None else None
        fields["updated_at"] = utc_now().isoformat()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(
            f"UPDATE service_requests SET {assignments} WHERE id = ?",
            (*fields.values(), request_id),
        )
        return self.get_service_request(conn, request_id)

    def query_service_requests(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: Optional[str] = None,
        assigned_staff: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        service_type: Optional[str] = None,
        preferred_date: Optional[str] = None,
        pet_id: Optional[str] = None,
        order_by: str = "created_at DESC",
    ) -> List[ServiceRequest]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("user_id", user_id),
            ("assigned_staff", assigned_staff),
            ("service_type", service_type),
            ("preferred_date", preferred_date),
            ("pet_id", pet_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        query = "SELECT * FROM service_requests"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY {order_by}"
        rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_service_request(row) for row in rows]

    def count_service_requests(self, conn: sqlite3.Connection, column: str) -> Dict[str, int]:
        rows = conn.execute(
            f"SELECT {column} AS key, COUNT(*) AS total FROM service_requests GROUP BY {column}"
        ).fetchall()
        return {str(row["key"]): int(row["total"]) for row in rows}

    def record_status_change(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str = "",
    ) -> None:
        conn.execute(
            """
            INSERT INTO request_status_history (id, request_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id("rsh"), request_id, actor_user_id, from_status, to_status, note, utc_now().isoformat()),
        )

    def status_history(self, conn: sqlite3.Connection, request_id: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            "SELECT * FROM request_status_history WHERE request_id = ? ORDER BY created_at ASC",
            (request_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    # Payments

    def _row_to_payment(self, row: sqlite3.Row) -> Payment:
        return Payment(
            id=row["id"],
            user_id=row["user_id"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            amount=row["amount"],
            currency=row["currency"],
            gateway=row["gateway"],
            status=row["status"],
            gateway_transaction_id=row["gateway_transaction_id"],
            raw_gateway_payload=_safe_json(row["raw_gateway_payload_json"], {}),
            target_meta=_safe_json(row["target_meta_json"], {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def insert_payment(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        target_type: str,
        target_id: Optional[str],
        amount: float,
        gateway: str,
        status: str = "initiated",
        gateway_transaction_id: Optional[str] = None,
        target_meta: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        payment_id = new_id("pay")
        now = utc_now().isoformat()
        conn.execute(
            """
            INSERT INTO payments (
                id, user_id, target_type, target_id, amount, currency, gateway, status,
                gateway_transaction_id, raw_gateway_payload_json, target_meta_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 'NPR', ?, ?, ?, '{}', ?, ?, ?)
            """,
            (
                payment_id,
                user_id,
                target_type,
                target_id,
                amount,
                gateway,
                status,
                gateway_transaction_id,
                json.dumps(target_meta or {}),
                now,
                now,
            ),
        )
        return self.get_payment(conn, payment_id)

    def get_payment(self, conn: sqlite3.Connection, payment_id: str) -> Payment:
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if not row:
            raise NotFoundError("Payment not found")
        return self._row_to_payment(row)

    def find_payment_by_transaction(self, conn: sqlite3.Connection, transaction_ref: str) -> Optional[Payment]:
        row = conn.execute(
            "SELECT * FROM payments WHERE gateway_transaction_id = ? ORDER BY created_at DESC LIMIT 1",
            (transaction_ref,),
        ).fetchone()
        return self._row_to_payment(row) if row else None

    def update_payment(
        self,
        conn: sqlite3.Connection,
        payment_id: str,
        *,
        status: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        raw_gateway_payload: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        fields: Dict[str, Any] = {"updated_at": utc_now().isoformat()}
        if status is not None:
            fields["status"] = status
        if gateway_transaction_id is not None:
            fields["gateway_transaction_id"] = gateway_transaction_id
        if raw_gateway_payload is not None:
            fields["raw_gateway_payload_json"] = json.dumps(raw_gateway_payload, default=str)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(f"UPDATE payments SET {assignments} WHERE id = ?", (*fields.values(), payment_id))
        return self.get_payment(conn, payment_id)

    def list_payments(self, conn: sqlite3.Connection, user_id: str) -> List[Payment]:
        rows = conn.execute(
            "SELECT * FROM payments WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [self._row_to_payment(row) for row in rows]

    # Subscriptions and listings

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            provider_id=row["provider_id"],
            plan=row["plan"],
            billing_cycle=row["billing_cycle"],
            status=row["status"],
            valid_from=row["valid_from"],
            valid_until=row["valid_until"],
            amount_paid=row["amount_paid"],
            gateway_transaction_id=row["gateway_transaction_id"],
            created_at=row["created_at"],
        )

    def insert_subscription(
        self,
        conn: sqlite3.Connection,
        *,
        provider_id: str,
        plan: str,
        billing_cycle: str,
        status: str,
        valid_from: Optional[str],
        valid_until: Optional[str],
        amount_paid: float,
        gateway_transaction_id: Optional[str],
    ) -> Subscription:
        subscription_id = new_id("sub")
        conn.execute(
            """
            INSERT INTO subscriptions (
                id, provider_id, plan, billing_cycle, status, valid_from, valid_until,
                amount_paid, gateway_transaction_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription_id,
                provider_id,
                plan,
                billing_cycle,
                status,
                valid_from,
                valid_until,
                amount_paid,
                gateway_transaction_id,
                utc_now().isoformat(),
            ),
        )
        row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return self._row_to_subscription(row)

    def find_subscription_by_transaction(self, conn: sqlite3.Connection, transaction_ref: str) -> Optional[Subscription]:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE gateway_transaction_id = ?",
            (transaction_ref,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    def latest_subscription(self, conn: sqlite3.Connection, provider_id: str) -> Optional[Subscription]:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE provider_id = ? ORDER BY created_at DESC LIMIT 1",
            (provider_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    def live_subscription(self, conn: sqlite3.Connection, provider_id: str, now: str) -> Optional[Subscription]:
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE provider_id = ? AND status = 'active' AND valid_until > ?
            ORDER BY valid_until DESC LIMIT 1
            """,
            (provider_id, now),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    def count_subscriptions(self, conn: sqlite3.Connection, provider_id: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS total FROM subscriptions WHERE provider_id = ?", (provider_id,)).fetchone()
        return int(row["total"])

    def _row_to_listing(self, row: sqlite3.Row) -> Listing:
        return Listing(
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            service_type=row["service_type"],
            price=row["price"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def insert_listing(
        self,
        conn: sqlite3.Connection,
        *,
        provider_id: str,
        name: str,
        service_type: str,
        price: float,
        is_active: bool,
    ) -> Listing:
        listing_id = new_id("lst")
        conn.execute(
            """
            INSERT INTO listings (id, provider_id, name, service_type, price, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (listing_id, provider_id, name, service_type, price, int(is_active), utc_now().isoformat()),
        )
        return self.get_listing(conn, listing_id)

    def get_listing(self, conn: sqlite3.Connection, listing_id: str) -> Listing:
        row = conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,)).fetchone()
        if not row:
            raise NotFoundError("Listing not found")
        return self._row_to_listing(row)

    def list_listings(
        self,
        conn: sqlite3.Connection,
        *,
        provider_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Listing]:
        query = "SELECT * FROM listings"
        clauses: List[str] = []
        params: List[Any] = []
        if provider_id is not None:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if active_only:
            clauses.append("is_active = 1")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        return [self._row_to_listing(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def set_listing_active(self, conn: sqlite3.Connection, listing_id: str, is_active: bool) -> None:
        conn.execute("UPDATE listings SET is_active = ? WHERE id = ?", (int(is_active), listing_id))

    # Care requests, care bookings, orders

    def _row_to_care_request(self, row: sqlite3.Row) -> CareRequest:
        return CareRequest(
            id=row["id"],
            user_id=row["user_id"],
            pet_id=row["pet_id"],
            service_type=row["service_type"],
            preferred_date=row["preferred_date"],
            location={
                "address": row["address"],
                "coordinates": {"lat": row["lat"], "lng": row["lng"]},
            },
            notes=row["notes"],
            status=row["status"],
            payment_status=row["payment_status"],
            created_at=row["created_at"],
        )

    def insert_care_request(self, conn: sqlite3.Connection, care: CareRequest) -> CareRequest:
        conn.execute(
            """
            INSERT INTO care_requests (
                id, user_id, pet_id, service_type, preferred_date, address, lat, lng,
                notes, status, payment_status, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                care.id,
                care.user_id,
                care.pet_id,
                care.service_type,
                care.preferred_date,
                care.location.address,
                care.location.coordinates.lat,
                care.location.coordinates.lng,
                care.notes,
                care.status,
                care.payment_status,
                care.created_at,
            ),
        )
        return care

    def get_care_request(self, conn: sqlite3.Connection, care_request_id: str) -> CareRequest:
        row = conn.execute("SELECT * FROM care_requests WHERE id = ?", (care_request_id,)).fetchone()
        if not row:
            raise NotFoundError("Care request not found")
        return self._row_to_care_request(row)

    def list_care_requests(self, conn: sqlite3.Connection, user_id: str) -> List[CareRequest]:
        rows = conn.execute(
            "SELECT * FROM care_requests WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [self._row_to_care_request(row) for row in rows]

    def update_care_request(self, conn: sqlite3.Connection, care_request_id: str, **fields: Any) -> CareRequest:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(f"UPDATE care_requests SET {assignments} WHERE id = ?", (*fields.values(), care_request_id))
        return self.get_care_request(conn, care_request_id)

    def _row_to_care_booking(self, row: sqlite3.Row) -> CareBooking:
        return CareBooking(**{key: row[key] for key in row.keys()})

    def insert_care_booking(self, conn: sqlite3.Connection, booking: CareBooking) -> CareBooking:
        data = booking.model_dump()
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        conn.execute(f"INSERT INTO care_bookings ({columns}) VALUES ({placeholders})", tuple(data.values()))
        return booking

    def get_care_booking(self, conn: sqlite3.Connection, booking_id: str) -> CareBooking:
        row = conn.execute("SELECT * FROM care_bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return self._row_to_care_booking(row)

    def list_care_bookings(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: Optional[str] = None,
        listing_ids: Optional[List[str]] = None,
    ) -> List[CareBooking]:
        if listing_ids is not None:
            if not listing_ids:
                return []
            rows = conn.execute(
                f"SELECT * FROM care_bookings WHERE listing_id IN ({', '.join('?' for _ in listing_ids)}) ORDER BY created_at DESC",
                tuple(listing_ids),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM care_bookings WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_care_booking(row) for row in rows]

    def update_care_booking(self, conn: sqlite3.Connection, booking_id: str, **fields: Any) -> CareBooking:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(f"UPDATE care_bookings SET {assignments} WHERE id = ?", (*fields.values(), booking_id))
        return self.get_care_booking(conn, booking_id)

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        return Order(
            id=row["id"],
            user_id=row["user_id"],
            items=_safe_json(row["items_json"], []),
            total_amount=row["total_amount"],
            delivery_address=row["delivery_address"],
            status=row["status"],
            payment_status=row["payment_status"],
            payment_method=row["payment_method"],
            created_at=row["created_at"],
        )

    def insert_order(self, conn: sqlite3.Connection, order: Order) -> Order:
        conn.execute(
            """
            INSERT INTO orders (id, user_id, items_json, total_amount, delivery_address, status, payment_status, payment_method, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.id,
                order.user_id,
                json.dumps([item.model_dump() for item in order.items]),
                order.total_amount,
                order.delivery_address,
                order.status,
                order.payment_status,
                order.payment_method,
                order.created_at,
            ),
        )
        return order

    def get_order(self, conn: sqlite3.Connection, order_id: str) -> Order:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            raise NotFoundError("Order not found")
        return self._row_to_order(row)

    def list_orders(self, conn: sqlite3.Connection, user_id: str) -> List[Order]:
        rows = conn.execute("SELECT * FROM orders WHERE user_id = ? ORDER BY created_at DESC", (user_id,)).fetchall()
        return [self._row_to_order(row) for row in rows]

    def update_order(self, conn: sqlite3.Connection, order_id: str, **fields: Any) -> Order:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(f"UPDATE orders SET {assignments} WHERE id = ?", (*fields.values(), order_id))
        return self.get_order(conn, order_id)

    # Chat

    def ensure_chat(self, conn: sqlite3.Connection, request_id: str, requester_id: str, staff_id: str) -> str:
        row = conn.execute(
            "SELECT id FROM chats WHERE request_id = ? AND requester_id = ? AND staff_id = ?",
            (request_id, requester_id, staff_id),
        ).fetchone()
        if row:
            return str(row["id"])
        chat_id = new_id("chat")
        conn.execute(
            """
            INSERT INTO chats (id, request_id, requester_id, staff_id, is_read_only, created_at)
            VALUES (?, ?, ?, ?, 0, ?)
            """,
            (chat_id, request_id, requester_id, staff_id, utc_now().isoformat()),
        )
        return chat_id

    def list_chats(self, conn: sqlite3.Connection, request_id: str) -> List[Dict[str, Any]]:
        rows = conn.execute("SELECT * FROM chats WHERE request_id = ?", (request_id,)).fetchall()
        return [dict(row) for row in rows]

    def set_chat_read_only(self, conn: sqlite3.Connection, request_id: str, read_only: bool) -> None:
        conn.execute("UPDATE chats SET is_read_only = ? WHERE request_id = ?", (int(read_only), request_id))

    def insert_message(self, conn: sqlite3.Connection, request_id: str, sender_id: str, content: str) -> ChatMessage:
        message = ChatMessage(
            id=new_id("msg"),
            request_id=request_id,
            sender_id=sender_id,
            text=content,
            created_at=utc_now().isoformat(),
        )
        conn.execute(
            "INSERT INTO chat_messages (id, request_id, sender_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
            (message.id, message.request_id, message.sender_id, message.text, message.created_at),
        )
        return message

    def list_messages(self, conn: sqlite3.Connection, request_id: str) -> List[ChatMessage]:
        rows = conn.execute(
            "SELECT * FROM chat_messages WHERE request_id = ? ORDER BY created_at ASC",
            (request_id,),
        ).fetchall()
        return [
            ChatMessage(
                id=row["id"],
                request_id=row["request_id"],
                sender_id=row["sender_id"],
                text=row["content"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Staff locations

    def insert_staff_location(self, conn: sqlite3.Connection, staff_id: str, role: str, lat: float, lng: float) -> str:
        created_at = utc_now().isoformat()
        conn.execute(
            "INSERT INTO staff_locations (id, staff_id, role, lat, lng, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (new_id("loc"), staff_id, role, lat, lng, created_at),
        )
        return created_at

    def latest_staff_location(self, conn: sqlite3.Connection, staff_id: str, since: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM staff_locations
            WHERE staff_id = ? AND created_at >= ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (staff_id, since),
        ).fetchone()

    def purge_staff_locations(self, conn: sqlite3.Connection, before: str) -> None:
        conn.execute("DELETE FROM staff_locations WHERE created_at < ?", (before,))
