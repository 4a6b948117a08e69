"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the API.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import (
    BookingEventType,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    PricingModel,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Bookings ──────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    professional_id: uuid.UUID
    category_id: uuid.UUID
    scheduled_at: datetime
    pricing_model: PricingModel = PricingModel.FIXED
    quoted_price_bdt: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    address_text: Optional[str] = Field(None, max_length=500)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    details: Optional[str] = Field(None, max_length=2000)

    @field_validator("scheduled_at")
    @classmethod
    def must_be_timezone_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class BookingAcceptRequest(BaseSchema):
    message: Optional[str] = Field(None, max_length=500)


class BookingRejectRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class BookingCheckInRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=1000)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class BookingCheckOutRequest(BookingCheckInRequest):
    actual_hours: Decimal = Field(..., gt=0, le=999)


class BookingCompleteRequest(BaseSchema):
    actual_hours: Optional[Decimal] = Field(None, gt=0, le=999)
    notes: Optional[str] = Field(None, max_length=1000)


class BookingEventResponse(BaseSchema):
    id: uuid.UUID
    type: BookingEventType
    event_metadata: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    occurred_at: datetime


class BookingResponse(BaseSchema):
    id: uuid.UUID
    customer_id: uuid.UUID
    professional_id: uuid.UUID
    category_id: uuid.UUID
    status: BookingStatus
    scheduled_at: datetime
    address_text: Optional[str]
    lat: Optional[float]
    lng: Optional[float]
    details: Optional[str]
    pricing_model: PricingModel
    quoted_price_bdt: Decimal
    commission_percent: Decimal
    check_in_at: Optional[datetime]
    check_out_at: Optional[datetime]
    actual_hours: Optional[Decimal]
    final_amount_bdt: Optional[Decimal]
    refunded_amount_bdt: Decimal
    cancel_reason: Optional[str]
    settled_by_payout_id: Optional[uuid.UUID]
    created_at: datetime
    updated_at: datetime
    events: List[BookingEventResponse] = []


class BookingListResponse(BaseSchema):
    items: List[BookingResponse]
    total: int
    page: int
    limit: int


class BookingStatsResponse(BaseSchema):
    total: int
    pending: int
    accepted: int
    in_progress: int
    completed: int
    cancelled: int
    total_revenue: Decimal
    total_commission: Decimal


# ── Commission ────────────────────────────────────────────────

class CommissionSettingCreate(BaseSchema):
    category_id: Optional[uuid.UUID] = None
    percent: Decimal = Field(..., ge=0, le=100)


class CommissionSettingUpdate(BaseSchema):
    percent: Decimal = Field(..., ge=0, le=100)


class CommissionSettingResponse(BaseSchema):
    id: uuid.UUID
    category_id: Optional[uuid.UUID]
    percent: Decimal
    created_at: datetime
    updated_at: datetime


class CommissionBreakdownResponse(BaseSchema):
    amount: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    category_id: Optional[uuid.UUID] = None
    category_name: Optional[str] = None


# ── Payouts ───────────────────────────────────────────────────

class PayoutGenerateRequest(BaseSchema):
    period_start: datetime
    period_end: datetime


class PayoutRunResponse(BaseSchema):
    generated: int
    total_amount: Decimal
    failed: int
    payout_ids: List[uuid.UUID] = []


class PayoutResponse(BaseSchema):
    id: uuid.UUID
    professional_id: uuid.UUID
    period_start: datetime
    period_end: datetime
    amount_bdt: Decimal
    status: PayoutStatus
    meta: Dict[str, Any]
    paid_at: Optional[datetime]
    created_at: datetime


class PayoutListResponse(BaseSchema):
    items: List[PayoutResponse]
    total: int
    page: int
    limit: int


class PayoutStatsResponse(BaseSchema):
    total: int
    pending: int
    paid: int
    failed: int
    total_amount: Decimal
    pending_amount: Decimal
    paid_amount: Decimal


class MarkPaidRequest(BaseSchema):
    payment_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)


# ── Settlements (admin) ───────────────────────────────────────

class DailySettlementResponse(BaseSchema):
    day: date
    status: str
    total_bookings: int
    total_amount: Decimal
    total_commission: Decimal
    total_net: Decimal
    settled_bookings: int
    unsettled_bookings: int
    refunded_bookings: int = 0
    payout_ids: List[uuid.UUID] = []


class DueSettlementResponse(BaseSchema):
    professional_id: uuid.UUID
    total_due: Decimal
    payout_count: int
    oldest_created_at: datetime
    payouts: List[PayoutResponse] = []


class ProfessionalEarningsResponse(BaseSchema):
    professional_id: uuid.UUID
    total_earnings: Decimal
    count: int
    payouts: List[PayoutResponse] = []


class TopEarnerResponse(BaseSchema):
    professional_id: uuid.UUID
    professional_name: str
    professional_email: str
    total_earnings: Decimal
    payout_count: int


class MonthTotalsResponse(BaseSchema):
    month_start: date
    days: int
    total_bookings: int
    total_amount: Decimal
    total_commission: Decimal
    total_net: Decimal


class SettlementOverviewResponse(BaseSchema):
    today: DailySettlementResponse
    this_month: MonthTotalsResponse
    pending_payouts: int
    pending_amount: Decimal
    top_earners: List[TopEarnerResponse] = []


class BackfillRequest(BaseSchema):
    until: Optional[date] = None


class BackfillResponse(BaseSchema):
    processed: int
    errors: int
    days: int
    total_amount: Decimal


class RefundRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)
    amount: Optional[Decimal] = Field(None, gt=0)


class RefundResponse(BaseSchema):
    booking_id: uuid.UUID
    payment_id: uuid.UUID
    refund_id: Optional[str]
    amount: Decimal
    payment_status: PaymentStatus
    booking_status: BookingStatus
    payout_adjustment: Optional[Decimal] = None
