from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Role = Literal["pet_owner", "veterinarian", "rider", "service_provider", "hostel_owner", "admin"]
RequestStatus = Literal["pending", "assigned", "in_progress", "completed", "cancelled"]
PaymentStatus = Literal["unpaid", "pending", "paid", "failed"]
PaymentMethod = Literal["online", "cash_on_delivery"]
PaymentTargetType = Literal["service", "care", "care_booking", "order", "subscription"]


class Coordinates(ApiModel):
    lat: float
    lng: float


class Location(ApiModel):
    address: str
    coordinates: Coordinates


class UserProfile(ApiModel):
    id: str
    name: str
    email: str
    role: Role
    phone: Optional[str] = None
    live_location: Optional[Dict[str, Any]] = None


class Pet(ApiModel):
    id: str
    owner_id: str
    name: str
    species: Literal["Dog", "Cat", "Bird", "Other"]
    breed: Optional[str] = None
    age: Optional[int] = None
    medical_history: list[str] = Field(default_factory=list)
    created_at: str


class RequestReview(ApiModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    submitted_at: str


class ServiceRequest(ApiModel):
    id: str
    user_id: str
    pet_id: str
    service_type: str
    preferred_date: str
    time_window: str
    location: Location
    notes: Optional[str] = None
    status: RequestStatus = "pending"
    payment_status: PaymentStatus = "unpaid"
    payment_method: PaymentMethod = "online"
    payment_gateway: Optional[Literal["khalti", "esewa"]] = None
    assigned_staff: Optional[str] = None
    assigned_at: Optional[str] = None
    scheduled_time: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    visit_notes: Optional[str] = None
    review: Optional[RequestReview] = None
    prescription_ref: Optional[str] = None
    created_at: str
    updated_at: str


class Payment(ApiModel):
    id: str
    user_id: str
    target_type: PaymentTargetType
    target_id: Optional[str] = None
    amount: float
    currency: str = "NPR"
    gateway: Literal["khalti", "esewa"]
    status: Literal["initiated", "pending", "completed", "failed"] = "initiated"
    gateway_transaction_id: Optional[str] = None
    raw_gateway_payload: Dict[str, Any] = Field(default_factory=dict)
    target_meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class Subscription(ApiModel):
    id: str
    provider_id: str
    plan: Literal["basic", "premium"]
    billing_cycle: Literal["monthly", "yearly"]
    status: Literal["pending_payment", "active", "expired", "cancelled"]
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    amount_paid: float = 0
    gateway_transaction_id: Optional[str] = None
    created_at: str


class Listing(ApiModel):
    id: str
    provider_id: str
    name: str
    service_type: Literal["Hostel", "Daycare", "Grooming", "Training", "Wash", "Spa"]
    price: float
    is_active: bool = False
    created_at: str


class CareRequest(ApiModel):
    id: str
    user_id: str
    pet_id: str
    service_type: Literal["Grooming", "Bathing", "Training"]
    preferred_date: str
    location: Location
    notes: Optional[str] = None
    status: Literal["draft", "pending_review", "assigned", "in_progress", "completed"] = "draft"
    payment_status: Literal["unpaid", "paid"] = "unpaid"
    created_at: str


class CareBooking(ApiModel):
    id: str
    listing_id: str
    pet_id: str
    user_id: str
    check_in: str
    check_out: str
    nights: int
    subtotal: float
    cleaning_fee: float
    service_fee: float
    platform_fee: float
    tax: float
    total_amount: float
    service_type: str
    status: Literal["pending", "paid", "accepted", "rejected", "cancelled"] = "pending"
    payment_status: Literal["unpaid", "paid", "refunded"] = "unpaid"
    payment_method: PaymentMethod = "online"
    owner_notes: Optional[str] = None
    created_at: str


class OrderItem(ApiModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)


class Order(ApiModel):
    id: str
    user_id: str
    items: list[OrderItem]
    total_amount: float
    delivery_address: str
    status: Literal["pending", "processing", "delivered", "cancelled"] = "pending"
    payment_status: Literal["unpaid", "paid"] = "unpaid"
    payment_method: PaymentMethod = "online"
    created_at: str


class ChatMessage(ApiModel):
    id: str
    request_id: str
    sender_id: str
    text: str
    created_at: str


NotificationType = Literal["service_request", "care_booking", "payment", "subscription", "system"]


class NotificationRecord(ApiModel):
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType = "system"
    reference: Optional[str] = None
    read: bool = False
    created_at: str


class StaffLiveLocation(ApiModel):
    staff_id: str
    role: Role
    visible: bool
    coordinates: Optional[Coordinates] = None
    updated_at: Optional[str] = None


# Request bodies


class RegisterRequest(ApiModel):
    name: str = Field(min_length=2, max_length=120)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8)
    role: Literal["pet_owner", "veterinarian", "rider", "service_provider", "hostel_owner"] = "pet_owner"
    phone: Optional[str] = None


class LoginRequest(ApiModel):
    email: str
    password: str


class PetCreateRequest(ApiModel):
    name: str = Field(min_length=1, max_length=120)
    species: Literal["Dog", "Cat", "Bird", "Other"]
    breed: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0)


class ServiceRequestCreate(ApiModel):
    pet_id: Optional[str] = None
    service_type: Optional[str] = None
    preferred_date: Optional[str] = None
    time_window: Optional[str] = None
    location: Optional[Location] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    payment_method: PaymentMethod = "online"


class AssignRequest(ApiModel):
    staff_id: str
    scheduled_time: str


class CompleteRequest(ApiModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class CancelRequest(ApiModel):
    reason: Optional[str] = None


class ReviewRequest(ApiModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""


class PrescriptionRequest(ApiModel):
    prescription_ref: str = Field(min_length=1)


class ServicePaymentInit(ApiModel):
    type: Literal["service"]
    service_request_id: str
    amount: float = Field(gt=0)


class CarePaymentInit(ApiModel):
    type: Literal["care"]
    care_request_id: str
    amount: float = Field(gt=0)


class CareBookingPaymentInit(ApiModel):
    type: Literal["care_booking"]
    care_booking_id: str


class OrderPaymentInit(ApiModel):
    type: Literal["order"]
    order_id: str


InitiatePaymentRequest = Annotated[
    Union[ServicePaymentInit, CarePaymentInit, CareBookingPaymentInit, OrderPaymentInit],
    Field(discriminator="type"),
]


class VerifyPaymentRequest(ApiModel):
    pidx: str = Field(min_length=1)


class EsewaInitiateRequest(ApiModel):
    service_request_id: str
    amount: float = Field(gt=0)


class SubscriptionInitiateRequest(ApiModel):
    plan: Literal["basic", "premium"]
    billing_cycle: Literal["monthly", "yearly"]


class ListingCreateRequest(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    service_type: Literal["Hostel", "Daycare", "Grooming", "Training", "Wash", "Spa"] = "Hostel"
    price: float = Field(ge=0)


class CareRequestCreate(ApiModel):
    pet_id: str
    service_type: Literal["Grooming", "Bathing", "Training"]
    preferred_date: str
    location: Location
    notes: Optional[str] = Field(default=None, max_length=1000)


class CareBookingCreate(ApiModel):
    listing_id: str
    pet_id: str
    check_in: str
    check_out: str
    payment_method: PaymentMethod = "online"
    owner_notes: Optional[str] = Field(default=None, max_length=500)


class CareBookingRespondRequest(ApiModel):
    accept: bool


class OrderCreate(ApiModel):
    items: list[OrderItem] = Field(min_length=1)
    delivery_address: str = Field(min_length=1)
    payment_method: PaymentMethod = "online"


class LocationUpdateRequest(ApiModel):
    lat: float
    lng: float


class DeviceTokenRegisterRequest(ApiModel):
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"
