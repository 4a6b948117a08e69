"""
shared/models/models.py
All SQLAlchemy ORM models for the ServiceHub marketplace.
UUID primary keys throughout; money columns are Numeric and handled as Decimal.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.models.types import JSONType, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "CUSTOMER"
    PROFESSIONAL = "PROFESSIONAL"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BookingEventType(str, PyEnum):
    CREATED = "CREATED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PricingModel(str, PyEnum):
    HOURLY = "HOURLY"
    FIXED = "FIXED"


class PayoutStatus(str, PyEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ── Users & Catalog ───────────────────────────────────────────

class User(TimestampMixin, Base):
    """Marketplace account. A user may hold several roles."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    roles: Mapped[List["UserRoleMembership"]] = relationship(
        back_populates="user", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def role_set(self) -> frozenset:
        return frozenset(m.role for m in self.roles)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class UserRoleMembership(Base):
    __tablename__ = "user_roles"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False)

    user: Mapped["User"] = relationship(back_populates="roles")

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_role"),
    )


class ServiceCategory(TimestampMixin, Base):
    """Catalog entry a booking is made under (plumbing, cleaning, ...)."""
    __tablename__ = "service_categories"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    A customer's request for a professional's service.

    commission_percent is frozen at creation and final_amount_bdt at completion.
    settled_by_payout_id is the settlement claim: once set, the booking's
    earnings belong to that payout and no other.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    professional_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("service_categories.id"), nullable=False
    )

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    address_text: Mapped[Optional[str]] = mapped_column(Text)
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)
    details: Mapped[Optional[str]] = mapped_column(Text)

    # Pricing (BDT)
    pricing_model: Mapped[PricingModel] = mapped_column(
        Enum(PricingModel), nullable=False, default=PricingModel.FIXED
    )
    quoted_price_bdt: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    commission_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    actual_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))
    final_amount_bdt: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    refunded_amount_bdt: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    check_in_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    check_out_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)

    settled_by_payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("payouts.id"), nullable=True
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    events: Mapped[List["BookingEvent"]] = relationship(
        back_populates="booking",
        lazy="selectin",
        order_by="BookingEvent.occurred_at",
        cascade="all",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint("quoted_price_bdt > 0", name="ck_booking_quoted_positive"),
        CheckConstraint(
            "commission_percent >= 0 AND commission_percent <= 100",
            name="ck_booking_commission_range",
        ),
        Index("ix_bookings_professional_status", "professional_id", "status"),
        Index("ix_bookings_customer", "customer_id"),
        Index("ix_bookings_settlement", "status", "check_out_at", "settled_by_payout_id"),
    )

    @property
    def event_types(self) -> set:
        return {e.type for e in self.events}

    def __repr__(self) -> str:
        return f"<Booking {self.id} [{self.status}]>"


class BookingEvent(Base):
    """Append-only lifecycle log. Rows are never updated or deleted."""
    __tablename__ = "booking_events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[BookingEventType] = mapped_column(Enum(BookingEventType), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="events")


# ── Commission & Payouts ──────────────────────────────────────

GLOBAL_COMMISSION_SCOPE = "GLOBAL"


class CommissionSetting(TimestampMixin, Base):
    """
    Platform commission percent for one category, or the global default
    when category_id is NULL. scope_key makes both cases unique.
    """
    __tablename__ = "commission_settings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("service_categories.id", ondelete="CASCADE"), nullable=True
    )
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("percent >= 0 AND percent <= 100", name="ck_commission_percent_range"),
    )

    @staticmethod
    def scope_for(category_id: Optional[uuid.UUID]) -> str:
        return str(category_id) if category_id else GLOBAL_COMMISSION_SCOPE


class Payout(TimestampMixin, Base):
    """Net amount owed to one professional for the bookings it claimed."""
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    professional_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    amount_bdt: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING
    )
    meta: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        Index("ix_payouts_period", "professional_id", "period_start", "period_end"),
        Index("ix_payouts_status_created", "status", "created_at"),
    )


# ── Payments ──────────────────────────────────────────────────

class Payment(TimestampMixin, Base):
    """A customer payment for a booking, as recorded from the gateway."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bookings.id"), nullable=False, index=True
    )
    amount_bdt: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    method: Mapped[Optional[str]] = mapped_column(String(50))
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    refunded_amount_bdt: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    # Held while a gateway refund is in flight
    refund_reserved_bdt: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    meta: Mapped[Optional[dict]] = mapped_column(JSONType)


# ── Notifications ─────────────────────────────────────────────

class Notification(TimestampMixin, Base):
    """In-app notification record written by the notification port."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL")
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
