"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from shared.models.models import (
    AppointmentPaymentStatus,
    AppointmentStatus,
    NotificationType,
    OtpChannel,
    OtpPurpose,
    PaymentProviderName,
    PaymentStatus,
    RefundStatus,
    UserRole,
    UserStatus,
)
from shared.utils.dates import as_utc, utcnow

# Aware UTC on the way in and out (SQLite hands back naive values)
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=120)
    email: EmailStr
    mobile: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")
    password: str = Field(..., min_length=8, max_length=72)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()


class LoginRequest(BaseSchema):
    identifier: str = Field(..., min_length=3, description="Email or mobile number")
    password: str = Field(..., min_length=1, max_length=72)


class RefreshRequest(BaseSchema):
    refresh_token: str


class LogoutRequest(BaseSchema):
    refresh_token: Optional[str] = None


class OtpRequest(BaseSchema):
    channel: OtpChannel
    target: str = Field(..., min_length=3, max_length=255)
    purpose: OtpPurpose


class OtpVerifyRequest(OtpRequest):
    code: str = Field(..., pattern=r"^\d{6}$")


class ForgotPasswordRequest(BaseSchema):
    identifier: str = Field(..., min_length=3)


class ResetPasswordRequest(BaseSchema):
    identifier: str = Field(..., min_length=3)
    code: str = Field(..., pattern=r"^\d{6}$")
    new_password: str = Field(..., min_length=8, max_length=72)


class ChangePasswordRequest(BaseSchema):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=72)


class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    mobile: Optional[str]
    role: UserRole
    status: UserStatus
    email_verified: bool
    mobile_verified: bool
    last_login_at: Optional[UTCDateTime]
    created_at: UTCDateTime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=120)
    mobile: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")


class TokenPairResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


class SessionResponse(BaseSchema):
    id: uuid.UUID
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: UTCDateTime
    last_used_at: Optional[UTCDateTime]
    expires_at: UTCDateTime
    current: bool = False


# ── Barber ────────────────────────────────────────────────────

class BarberCreateRequest(BaseSchema):
    shop_name: str = Field(..., min_length=2, max_length=160)
    bio: Optional[str] = Field(None, max_length=2000)
    address: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    media: Optional[List[str]] = None


class BarberUpdateRequest(BaseSchema):
    shop_name: Optional[str] = Field(None, min_length=2, max_length=160)
    bio: Optional[str] = Field(None, max_length=2000)
    address: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    media: Optional[List[str]] = None


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    barber_id: uuid.UUID
    name: str
    description: Optional[str]
    category: str
    price: Decimal
    duration_min: int
    active: bool
    created_at: UTCDateTime


class BarberResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    shop_name: str
    bio: Optional[str]
    address: Optional[str]
    city: Optional[str]
    pincode: Optional[str]
    lat: Optional[float]
    lng: Optional[float]
    media: Optional[List[str]]
    rating: Decimal
    rating_count: int
    is_verified: bool
    services: List[ServiceResponse] = []
    created_at: UTCDateTime


# ── Service Catalog ───────────────────────────────────────────

class ServiceCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)
    category: str = Field("haircut", max_length=50)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    duration_min: int = Field(..., ge=5, le=600)


class ServiceUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[str] = Field(None, max_length=50)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    duration_min: Optional[int] = Field(None, ge=5, le=600)
    active: Optional[bool] = None


# ── Availability ──────────────────────────────────────────────

class SlotInput(BaseSchema):
    start_at: UTCDateTime
    end_at: UTCDateTime

    @model_validator(mode="after")
    def check_bounds(self) -> "SlotInput":
        if self.end_at <= self.start_at:
            raise ValueError("Slot end must be after its start")
        return self


class AvailabilityPublishRequest(BaseSchema):
    date: date
    timezone: Optional[str] = Field(None, max_length=64)
    slots: List[SlotInput] = Field(default_factory=list, max_length=96)


class SlotAddRequest(SlotInput):
    date: date
    timezone: Optional[str] = Field(None, max_length=64)


class SlotRemoveRequest(SlotInput):
    date: date


class SlotResponse(BaseSchema):
    id: uuid.UUID
    start_at: UTCDateTime
    end_at: UTCDateTime
    is_booked: bool
    appointment_id: Optional[uuid.UUID] = None


class PublicSlotResponse(BaseSchema):
    start_at: UTCDateTime
    end_at: UTCDateTime


class AvailabilityResponse(BaseSchema):
    id: uuid.UUID
    barber_id: uuid.UUID
    date: date
    timezone: str
    slots: List[SlotResponse]


class WeeklyScheduleResponse(BaseSchema):
    barber_id: uuid.UUID
    week_start: date
    week_end: date
    days: List[AvailabilityResponse]


# ── Appointment ───────────────────────────────────────────────

class AppointmentCreateRequest(BaseSchema):
    barber_id: uuid.UUID
    service_id: uuid.UUID
    start_at: UTCDateTime
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("start_at")
    @classmethod
    def validate_start_at(cls, v: datetime) -> datetime:
        if v <= utcnow():
            raise ValueError("Appointment time must be in the future")
        return v


class AppointmentRescheduleRequest(BaseSchema):
    start_at: UTCDateTime

    @field_validator("start_at")
    @classmethod
    def validate_start_at(cls, v: datetime) -> datetime:
        if v <= utcnow():
            raise ValueError("Appointment time must be in the future")
        return v


class AppointmentCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AppointmentResponse(BaseSchema):
    id: uuid.UUID
    customer_id: uuid.UUID
    barber_id: uuid.UUID
    service_id: uuid.UUID
    start_at: UTCDateTime
    end_at: UTCDateTime
    price: Decimal
    status: AppointmentStatus
    payment_status: AppointmentPaymentStatus
    reschedule_count: int
    notes: Optional[str]
    canceled_by: Optional[str]
    confirmed_at: Optional[UTCDateTime]
    completed_at: Optional[UTCDateTime]
    canceled_at: Optional[UTCDateTime]
    created_at: UTCDateTime


# ── Payment ───────────────────────────────────────────────────

class PaymentCreateRequest(BaseSchema):
    appointment_id: uuid.UUID
    provider: PaymentProviderName = PaymentProviderName.RAZORPAY


class PaymentSessionResponse(BaseSchema):
    payment_id: uuid.UUID
    provider: PaymentProviderName
    provider_ref: str
    client_secret: Optional[str]
    amount: Decimal
    currency: str
    key_id: Optional[str] = None   # Razorpay checkout needs the public key


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    appointment_id: Optional[uuid.UUID]
    provider: PaymentProviderName
    provider_ref: Optional[str]
    amount: Decimal
    currency: str
    status: PaymentStatus
    paid_at: Optional[UTCDateTime]
    created_at: UTCDateTime


class RefundRequest(BaseSchema):
    amount: Optional[Decimal] = Field(None, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseSchema):
    id: uuid.UUID
    payment_id: uuid.UUID
    amount: Decimal
    reason: Optional[str]
    provider: PaymentProviderName
    provider_ref: Optional[str]
    status: RefundStatus
    created_at: UTCDateTime


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    barber_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewUpdateRequest(BaseSchema):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    barber_id: uuid.UUID
    user_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: UTCDateTime
    updated_at: UTCDateTime
    user_name: Optional[str] = None


class RatingStatsResponse(BaseSchema):
    barber_id: uuid.UUID
    rating: Decimal
    rating_count: int
    distribution: Dict[int, int]


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: NotificationType
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    appointment_id: Optional[uuid.UUID]
    read_at: Optional[UTCDateTime]
    created_at: UTCDateTime


class NotificationListResponse(BaseSchema):
    items: List[NotificationResponse]
    unread_count: int
    page: int
    has_more: bool


# ── Search ────────────────────────────────────────────────────

class RecommendationRequest(BaseSchema):
    city: str = Field(..., min_length=2, max_length=100)
    category: Optional[str] = Field(None, max_length=50)
    budget: Optional[Decimal] = Field(None, ge=0)


class RecommendationResponse(BaseSchema):
    barber: BarberResponse
    score: int
    reasons: List[str]


# ── Admin ─────────────────────────────────────────────────────

class AdminActionRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class DashboardResponse(BaseSchema):
    total_users: int
    total_barbers: int
    verified_barbers: int
    total_appointments: int
    pending_appointments: int
    completed_appointments: int
    appointments_last_7d: int
    total_revenue: Decimal
    top_barbers: List[BarberResponse]


class ReconcileResponse(BaseSchema):
    scanned: int
    released_orphaned: int
    released_terminal: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
