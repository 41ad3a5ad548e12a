"""
shared/models/models.py
All SQLAlchemy ORM models for the Barber Booking Platform.
Portable column types (Uuid, JSON) so the schema runs on PostgreSQL and SQLite.
"""

import uuid
from datetime import date as DateType, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.dates import utcnow


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    BARBER = "barber"
    ADMIN = "admin"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


class OtpChannel(str, PyEnum):
    EMAIL = "email"
    MOBILE = "mobile"


class OtpPurpose(str, PyEnum):
    VERIFY = "verify"
    LOGIN = "login"
    RESET = "reset"


class AppointmentStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    COMPLETED = "completed"


class AppointmentPaymentStatus(str, PyEnum):
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentProviderName(str, PyEnum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"


class PaymentStatus(str, PyEnum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, PyEnum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationType(str, PyEnum):
    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELED = "appointment_canceled"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_REMINDER = "appointment_reminder"
    PAYMENT_SUCCESS = "payment_success"
    REFUND_PROCESSED = "refund_processed"
    REVIEW_RECEIVED = "review_received"
    ACCOUNT_VERIFIED = "account_verified"
    SYSTEM = "system"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Identity ──────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Platform account. Customers, barbers and admins share this table."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mobile: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CUSTOMER
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus), nullable=False, default=UserStatus.ACTIVE
    )
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mobile_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    sessions: Mapped[List["Session"]] = relationship(back_populates="user")

    __table_args__ = (Index("ix_users_role", "role"),)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Session(Base):
    """One login session. Holds the hash of its current refresh token."""
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    refresh_token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="sessions")

    __table_args__ = (Index("ix_sessions_user_id", "user_id"),)


class Otp(Base):
    """One-time code sent over email or SMS. Only the hash is stored."""
    __tablename__ = "otps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    channel: Mapped[OtpChannel] = mapped_column(Enum(OtpChannel), nullable=False)
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[OtpPurpose] = mapped_column(Enum(OtpPurpose), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("ix_otps_target_purpose", "target", "purpose"),)


# ── Catalog ───────────────────────────────────────────────────

class Barber(TimestampMixin, Base):
    """
    Barber's shop profile, owned 1:1 by a User with role barber.
    rating / rating_count are written only by the review aggregator.
    """
    __tablename__ = "barbers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    shop_name: Mapped[str] = mapped_column(String(160), nullable=False)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    media: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.00"), nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    services: Mapped[List["Service"]] = relationship(
        back_populates="barber", lazy="selectin", order_by="Service.name"
    )

    __table_args__ = (
        Index("ix_barbers_city", "city"),
        Index("ix_barbers_rating", "rating"),
    )


class Service(TimestampMixin, Base):
    """A bookable service offered by one barber. Price is snapshotted at booking."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    barber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("barbers.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), default="haircut", nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    barber: Mapped["Barber"] = relationship(back_populates="services")

    __table_args__ = (
        UniqueConstraint("barber_id", "name", name="uq_service_barber_name"),
        CheckConstraint("duration_min >= 5 AND duration_min <= 600", name="ck_service_duration"),
        CheckConstraint("price >= 0", name="ck_service_price"),
    )


# ── Availability Ledger ───────────────────────────────────────

class Availability(TimestampMixin, Base):
    """Per-barber, per-date container of bookable slots."""
    __tablename__ = "availability"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    barber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("barbers.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[DateType] = mapped_column(Date, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Asia/Kolkata", nullable=False)

    slots: Mapped[List["Slot"]] = relationship(
        back_populates="availability",
        lazy="selectin",
        order_by="Slot.start_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("barber_id", "date", name="uq_availability_barber_date"),
    )


class Slot(Base):
    """
    A fixed bookable window. is_booked is flipped only through a conditional
    UPDATE so two reservations of one slot cannot both succeed.
    """
    __tablename__ = "slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    availability_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("availability.id", ondelete="CASCADE"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_booked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # No FK: the slot is reserved before the appointment row exists
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    availability: Mapped["Availability"] = relationship(back_populates="slots")

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_slot_bounds"),
        Index("ix_slots_appointment_id", "appointment_id"),
        Index("ix_slots_availability_start", "availability_id", "start_at"),
    )


# ── Appointments ──────────────────────────────────────────────

class Appointment(TimestampMixin, Base):
    """
    Central booking entity.
    Status: pending → confirmed → completed, pending|confirmed → canceled.
    Payment status: unpaid → paid → refunded.
    """
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    barber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("barbers.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), nullable=False, default=AppointmentStatus.PENDING
    )
    payment_status: Mapped[AppointmentPaymentStatus] = mapped_column(
        Enum(AppointmentPaymentStatus), nullable=False, default=AppointmentPaymentStatus.UNPAID
    )
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    canceled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_appointments_customer_id", "customer_id"),
        Index("ix_appointments_barber_start", "barber_id", "start_at"),
        Index("ix_appointments_status", "status"),
    )


class AppointmentAuditLog(Base):
    """Immutable log of all appointment status transitions."""
    __tablename__ = "appointment_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("ix_appointment_audit_appointment", "appointment_id"),)


# ── Payments ──────────────────────────────────────────────────

class Payment(TimestampMixin, Base):
    """One row per checkout attempt against an appointment."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("appointments.id"), nullable=True
    )
    provider: Mapped[PaymentProviderName] = mapped_column(
        Enum(PaymentProviderName), nullable=False
    )
    provider_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.CREATED
    )
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # NULLs are distinct, so unassigned refs do not collide
        UniqueConstraint("provider", "provider_ref", name="uq_payment_provider_ref"),
        Index("ix_payments_user_id", "user_id"),
        Index("ix_payments_appointment_id", "appointment_id"),
    )


class Refund(TimestampMixin, Base):
    """One row per refund attempt against a payment."""
    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=False
    )
    requested_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    provider: Mapped[PaymentProviderName] = mapped_column(
        Enum(PaymentProviderName), nullable=False
    )
    provider_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[RefundStatus] = mapped_column(
        Enum(RefundStatus), nullable=False, default=RefundStatus.INITIATED
    )
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_refunds_payment_id", "payment_id"),)


# ── Reviews ───────────────────────────────────────────────────

class Review(TimestampMixin, Base):
    """Customer review of a barber. One per (barber, user)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    barber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("barbers.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("barber_id", "user_id", name="uq_review_barber_user"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_barber_id", "barber_id"),
    )


# ── Notifications ─────────────────────────────────────────────

class Notification(TimestampMixin, Base):
    """In-app notification log. Email/SMS delivery is done by a beat task."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("appointments.id"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_delivered_at", "delivered_at"),
    )


# ── Admin ─────────────────────────────────────────────────────

class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
