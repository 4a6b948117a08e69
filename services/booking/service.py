"""
services/booking/service.py
Booking lifecycle: create → accept | reject → check-in → check-out → complete,
with cancel available until completion.

Every mutation runs in a single transaction: the booking row is loaded
FOR UPDATE together with its event log, the actor is authorized, the state
machine is consulted, fields are written and the matching BookingEvent is
appended. The version_id column turns a lost race into a ConflictError.
Notifications go out after commit and never fail the action.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from services.booking.state_machine import BookingStateMachine
from services.commission.engine import CommissionEngine
from services.notification.notifier import Notifier, notify_safely
from shared.actor import Actor
from shared.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from shared.models.models import (
    Booking,
    BookingEvent,
    BookingEventType,
    BookingStatus,
    PricingModel,
    ServiceCategory,
    User,
    UserRole,
    UserRoleMembership,
    utcnow,
)
from shared.utils.money import Number, quantize_bdt, split_commission, to_decimal

logger = logging.getLogger(__name__)


# ── Inputs / Outputs ──────────────────────────────────────────

@dataclass
class BookingCreate:
    professional_id: uuid.UUID
    category_id: uuid.UUID
    scheduled_at: datetime
    quoted_price_bdt: Number
    pricing_model: PricingModel = PricingModel.FIXED
    address_text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    details: Optional[str] = None


@dataclass
class BookingStats:
    total: int = 0
    pending: int = 0
    accepted: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    total_revenue: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")


@dataclass
class BookingPage:
    items: list = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


_STATUS_FIELDS = {
    BookingStatus.PENDING: "pending",
    BookingStatus.ACCEPTED: "accepted",
    BookingStatus.IN_PROGRESS: "in_progress",
    BookingStatus.COMPLETED: "completed",
    BookingStatus.CANCELLED: "cancelled",
}


class BookingLifecycleService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        commission: CommissionEngine,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[BookingStateMachine] = None,
        clock: Callable[[], datetime] = utcnow,
        log: Optional[logging.Logger] = None,
    ):
        self._sessions = sessions
        self._commission = commission
        self._notifier = notifier
        self._sm = state_machine or BookingStateMachine()
        self._clock = clock
        self._logger = log or logger

    # ── Helpers ───────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions.begin() as db:
                yield db
        except StaleDataError:
            raise ConflictError("Booking was modified concurrently, please retry") from None

    async def _get_booking_or_404(
        self, db: AsyncSession, booking_id: uuid.UUID, for_update: bool = False
    ) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        booking = (await db.execute(stmt)).scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def _append_event(
        self,
        booking: Booking,
        event_type: BookingEventType,
        metadata: Optional[dict] = None,
        at: Optional[datetime] = None,
    ) -> BookingEvent:
        event = BookingEvent(
            type=event_type,
            event_metadata={k: v for k, v in (metadata or {}).items() if v is not None},
            occurred_at=at or self._clock(),
        )
        booking.events.append(event)
        return event

    def _require_assigned_professional(self, booking: Booking, actor: Actor) -> None:
        if not actor.is_professional or booking.professional_id != actor.user_id:
            raise ForbiddenError("Only the assigned professional can perform this action")

    def _guard(self, booking: Booking, to_status: BookingStatus) -> BookingEventType:
        check = self._sm.can_transition_to(booking.status, to_status, booking.event_types)
        if not check.can_transition:
            raise BadRequestError(check.reason)
        return self._sm.get_required_event_type(booking.status, to_status)

    def _payload(self, booking: Booking, **extra) -> dict:
        return {
            "booking_id": booking.id,
            "customer_id": booking.customer_id,
            "professional_id": booking.professional_id,
            "status": booking.status.value,
            "scheduled_at": booking.scheduled_at,
            **extra,
        }

    async def _notify(self, event: str, payload: dict) -> None:
        await notify_safely(self._notifier, event, payload, self._logger)

    # ── Create ────────────────────────────────────────────────

    async def create(self, data: BookingCreate, actor: Actor) -> Booking:
        """Create a PENDING booking with the commission percent frozen on it."""
        quoted = quantize_bdt(data.quoted_price_bdt)
        if quoted <= 0:
            raise BadRequestError("Quoted price must be greater than zero")
        if data.scheduled_at.tzinfo is None:
            raise BadRequestError("Scheduled time must include a timezone")

        async with self._transaction() as db:
            professional = await db.get(User, data.professional_id)
            if not professional:
                raise NotFoundError("Professional not found")
            if not professional.is_active:
                raise BadRequestError("Professional is not active")

            is_professional = await db.scalar(
                select(UserRoleMembership.id).where(
                    UserRoleMembership.user_id == professional.id,
                    UserRoleMembership.role == UserRole.PROFESSIONAL,
                )
            )
            if not is_professional:
                raise BadRequestError("User is not a professional")

            if not await db.get(ServiceCategory, data.category_id):
                raise NotFoundError("Service category not found")

            if data.scheduled_at <= self._clock():
                raise BadRequestError("Scheduled time must be in the future")

            if actor.user_id == professional.id:
                raise BadRequestError("Professionals cannot book themselves")

            percent = await self._commission.percent_for(db, data.category_id)

            booking = Booking(
                customer_id=actor.user_id,
                professional_id=professional.id,
                category_id=data.category_id,
                status=BookingStatus.PENDING,
                scheduled_at=data.scheduled_at,
                address_text=data.address_text,
                lat=data.lat,
                lng=data.lng,
                details=data.details,
                pricing_model=PricingModel(data.pricing_model),
                quoted_price_bdt=quoted,
                commission_percent=percent,
                events=[],
            )
            self._append_event(booking, BookingEventType.CREATED, {
                "customerId": str(actor.user_id),
                "professionalId": str(professional.id),
                "categoryId": str(data.category_id),
                "scheduledAt": data.scheduled_at.isoformat(),
            })
            db.add(booking)

        self._logger.info(
            f"Booking {booking.id} created by {actor.label} for professional {booking.professional_id} "
            f"at {percent}% commission"
        )
        await self._notify("booking.created", self._payload(booking))
        return booking

    # ── Professional actions ──────────────────────────────────

    async def accept(
        self, booking_id: uuid.UUID, actor: Actor, message: Optional[str] = None
    ) -> Booking:
        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)
            self._require_assigned_professional(booking, actor)
            event_type = self._guard(booking, BookingStatus.ACCEPTED)

            booking.status = BookingStatus.ACCEPTED
            self._append_event(booking, event_type, {"message": message, "acceptedBy": actor.label})

        self._logger.info(f"Booking {booking_id} accepted by {actor.label}")
        await self._notify("booking.accepted", self._payload(booking, message=message))
        return booking

    async def reject(self, booking_id: uuid.UUID, actor: Actor, reason: str) -> Booking:
        """Decline a pending request. Recorded as CANCELLED with a REJECTED event."""
        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)
            self._require_assigned_professional(booking, actor)
            if booking.status != BookingStatus.PENDING:
                raise BadRequestError("Only pending bookings can be rejected")
            event_type = self._guard(booking, BookingStatus.CANCELLED)

            now = self._clock()
            booking.status = BookingStatus.CANCELLED
            booking.cancel_reason = reason
            self._append_event(booking, BookingEventType.REJECTED, {"reason": reason}, at=now)
            self._append_event(
                booking, event_type, {"reason": reason, "cancelledBy": actor.label}, at=now
            )

        self._logger.info(f"Booking {booking_id} rejected by {actor.label}: {reason}")
        await self._notify("booking.rejected", self._payload(booking, reason=reason))
        return booking

    async def check_in(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        notes: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> Booking:
        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)
            self._require_assigned_professional(booking, actor)
            event_type = self._guard(booking, BookingStatus.IN_PROGRESS)

            now = self._clock()
            booking.status = BookingStatus.IN_PROGRESS
            booking.check_in_at = now
            self._append_event(booking, event_type, {"notes": notes, "lat": lat, "lng": lng}, at=now)

        self._logger.info(f"Booking {booking_id} checked in")
        await self._notify("booking.checked_in", self._payload(booking))
        return booking

    async def check_out(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        actual_hours: Number,
        notes: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> Booking:
        """Record hours worked. The booking stays IN_PROGRESS until completed."""
        hours = to_decimal(actual_hours).quantize(Decimal("0.01"))
        if hours <= 0:
            raise BadRequestError("Actual hours must be greater than zero")

        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)
            self._require_assigned_professional(booking, actor)

            if not self._sm.requires_check_in_out(booking.status):
                raise BadRequestError("Booking must be in progress to check out")
            missing = self._sm.missing_required_events(booking.status, booking.event_types)
            if missing:
                raise BadRequestError(
                    "Missing required events for current status: "
                    + ", ".join(e.value for e in missing)
                )
            if BookingEventType.CHECKED_OUT in booking.event_types:
                raise BadRequestError("Booking has already been checked out")

            now = self._clock()
            booking.check_out_at = now
            booking.actual_hours = hours
            self._append_event(booking, BookingEventType.CHECKED_OUT, {
                "notes": notes,
                "lat": lat,
                "lng": lng,
                "actualHours": str(hours),
            }, at=now)

        self._logger.info(f"Booking {booking_id} checked out after {hours}h")
        await self._notify("booking.checked_out", self._payload(booking, actual_hours=hours))
        return booking

    async def complete(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        actual_hours: Optional[Number] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        IN_PROGRESS → COMPLETED. Freezes final_amount_bdt:
        HOURLY = quoted × hours, FIXED = quoted.
        A booking that was never checked out is checked out here.
        """
        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)
            self._require_assigned_professional(booking, actor)
            self._guard(booking, BookingStatus.COMPLETED)

            if booking.final_amount_bdt is not None:
                raise BadRequestError("Final amount has already been settled")

            hours = booking.actual_hours
            if actual_hours is not None:
                hours = to_decimal(actual_hours).quantize(Decimal("0.01"))
                if hours <= 0:
                    raise BadRequestError("Actual hours must be greater than zero")

            if booking.pricing_model == PricingModel.HOURLY:
                if hours is None:
                    raise BadRequestError("Actual hours are required for hourly bookings")
                final_amount = quantize_bdt(booking.quoted_price_bdt * hours)
            else:
                final_amount = quantize_bdt(booking.quoted_price_bdt)

            now = self._clock()
            if BookingEventType.CHECKED_OUT not in booking.event_types:
                booking.check_out_at = now
                self._append_event(booking, BookingEventType.CHECKED_OUT, {
                    "actualHours": str(hours) if hours is not None else None,
                    "implicit": True,
                }, at=now)

            booking.actual_hours = hours
            booking.final_amount_bdt = final_amount
            booking.status = BookingStatus.COMPLETED
            self._append_event(booking, BookingEventType.COMPLETED, {
                "notes": notes,
                "actualHours": str(hours) if hours is not None else None,
                "finalAmountBDT": str(final_amount),
            }, at=now)

        self._logger.info(f"Booking {booking_id} completed, final amount BDT {final_amount}")
        await self._notify(
            "booking.completed", self._payload(booking, final_amount_bdt=final_amount)
        )
        return booking

    # ── Cancel ────────────────────────────────────────────────

    async def cancel(self, booking_id: uuid.UUID, actor: Actor, reason: str) -> Booking:
        """Cancel until completion. Cancelling a cancelled booking is a no-op."""
        async with self._transaction() as db:
            booking = await self._get_booking_or_404(db, booking_id, for_update=True)

            if not (
                actor.user_id in (booking.customer_id, booking.professional_id) or actor.is_admin
            ):
                raise ForbiddenError("You cannot cancel this booking")
            if not self._sm.can_be_cancelled(booking.status):
                raise BadRequestError("Booking cannot be cancelled in current status")
            if booking.status == BookingStatus.CANCELLED:
                return booking

            event_type = self._guard(booking, BookingStatus.CANCELLED)
            booking.status = BookingStatus.CANCELLED
            booking.cancel_reason = reason
            self._append_event(booking, event_type, {"reason": reason, "cancelledBy": actor.label})

        self._logger.info(f"Booking {booking_id} cancelled by {actor.label}: {reason}")
        await self._notify("booking.cancelled", self._payload(booking, reason=reason))
        return booking

    # ── Queries ───────────────────────────────────────────────

    def _scope(self, stmt, actor: Actor):
        if actor.is_admin:
            return stmt
        if actor.is_professional:
            return stmt.where(
                or_(Booking.professional_id == actor.user_id, Booking.customer_id == actor.user_id)
            )
        return stmt.where(Booking.customer_id == actor.user_id)

    async def get_booking(self, booking_id: uuid.UUID, actor: Actor) -> Booking:
        async with self._sessions() as db:
            booking = await self._get_booking_or_404(db, booking_id)
        if not actor.is_admin and actor.user_id not in (booking.customer_id, booking.professional_id):
            raise ForbiddenError("Access denied to this booking")
        return booking

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> BookingPage:
        stmt = self._scope(select(Booking), actor)
        if status:
            stmt = stmt.where(Booking.status == status)
        if from_date:
            stmt = stmt.where(Booking.scheduled_at >= from_date)
        if to_date:
            stmt = stmt.where(Booking.scheduled_at <= to_date)

        async with self._sessions() as db:
            total = await db.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await db.execute(
                stmt.order_by(Booking.scheduled_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = list(result.scalars().all())

        return BookingPage(items=items, total=total or 0, page=page, limit=limit)

    async def get_booking_stats(self, actor: Actor) -> BookingStats:
        """
        Counts by status plus settled revenue and commission.
        Admins see every booking, professionals the ones assigned to them,
        customers their own.
        """
        if actor.is_admin:
            scope = None
        elif actor.is_professional:
            scope = Booking.professional_id == actor.user_id
        else:
            scope = Booking.customer_id == actor.user_id

        counts_stmt = select(Booking.status, func.count()).group_by(Booking.status)
        completed_stmt = select(Booking.final_amount_bdt, Booking.commission_percent).where(
            Booking.status == BookingStatus.COMPLETED,
            Booking.final_amount_bdt.is_not(None),
        )
        if scope is not None:
            counts_stmt = counts_stmt.where(scope)
            completed_stmt = completed_stmt.where(scope)

        stats = BookingStats()
        async with self._sessions() as db:
            for status, count in (await db.execute(counts_stmt)).all():
                setattr(stats, _STATUS_FIELDS[BookingStatus(status)], count)
                stats.total += count

            for final_amount, percent in (await db.execute(completed_stmt)).all():
                commission, _ = split_commission(final_amount, percent)
                stats.total_revenue += quantize_bdt(final_amount)
                stats.total_commission += commission

        return stats
