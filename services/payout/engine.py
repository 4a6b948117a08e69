"""
services/payout/engine.py
Batches completed bookings into per-professional payouts.

A booking is settled at most once: each payout claims its bookings by
setting bookings.settled_by_payout_id inside the same transaction that
inserts the payout, guarded by `settled_by_payout_id IS NULL`. A rerun over
the same period (or an overlapping one) finds nothing left to claim.

Commission is summed per booking from each booking's frozen
commission_percent, never re-resolved from current settings.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.notification.notifier import Notifier, notify_safely
from shared.actor import Actor
from shared.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from shared.models.models import (
    Booking,
    BookingStatus,
    Payout,
    PayoutStatus,
    utcnow,
)
from shared.utils.money import money_str, quantize_bdt, split_commission

logger = logging.getLogger(__name__)

COMMISSION_MODE = "per_booking"


@dataclass
class PayoutRunResult:
    generated: int = 0
    total_amount: Decimal = Decimal("0.00")
    failed: int = 0
    payout_ids: list = field(default_factory=list)


@dataclass
class PayoutPage:
    items: list = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


@dataclass
class PayoutStats:
    total: int = 0
    pending: int = 0
    paid: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0.00")
    pending_amount: Decimal = Decimal("0.00")
    paid_amount: Decimal = Decimal("0.00")


def has_earnings_left():
    """Fully refunded bookings owe the professional nothing and are never settled."""
    return Booking.final_amount_bdt > Booking.refunded_amount_bdt


def booking_earnings(booking: Booking) -> Decimal:
    return max(Decimal("0.00"), quantize_bdt(booking.final_amount_bdt - booking.refunded_amount_bdt))


def _unsettled_completed():
    return select(Booking).where(
        Booking.status == BookingStatus.COMPLETED,
        Booking.final_amount_bdt.is_not(None),
        Booking.settled_by_payout_id.is_(None),
        has_earnings_left(),
    )


class PayoutEngine:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        log: Optional[logging.Logger] = None,
    ):
        self._sessions = sessions
        self._notifier = notifier
        self._clock = clock
        self._logger = log or logger

    # ── Generation ────────────────────────────────────────────

    async def generate_payouts_for_period(
        self, period_start: datetime, period_end: datetime, actor: Actor
    ) -> PayoutRunResult:
        """
        Create one PENDING payout per professional for the completed,
        unsettled bookings checked out in [period_start, period_end).

        A failure reading the bookings aborts the run. A failure settling
        one professional's group is logged and counted, and the run moves on.
        """
        if not actor.is_admin:
            raise ForbiddenError("Only admins can generate payouts")
        if period_start >= period_end:
            raise BadRequestError("Period start must be before period end")

        async with self._sessions() as db:
            rows = (await db.execute(
                select(Booking.id, Booking.professional_id).where(
                    Booking.status == BookingStatus.COMPLETED,
                    Booking.final_amount_bdt.is_not(None),
                    Booking.settled_by_payout_id.is_(None),
                    has_earnings_left(),
                    Booking.check_out_at >= period_start,
                    Booking.check_out_at < period_end,
                )
            )).all()

        groups: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for booking_id, professional_id in rows:
            groups[professional_id].append(booking_id)

        result = PayoutRunResult()
        if not groups:
            self._logger.info(f"No unsettled completed bookings between {period_start} and {period_end}")
            return result

        self._logger.info(
            f"Generating payouts for {len(groups)} professionals "
            f"({len(rows)} bookings) between {period_start} and {period_end}"
        )

        for professional_id, booking_ids in groups.items():
            try:
                payout = await self._settle_group(
                    professional_id, booking_ids, period_start, period_end, actor, source="batch"
                )
            except Exception as e:
                result.failed += 1
                self._logger.exception(f"Payout generation failed for professional {professional_id}: {e}")
                continue

            if payout is None:
                continue
            result.generated += 1
            result.total_amount += payout.amount_bdt
            result.payout_ids.append(payout.id)
            await self._notify_generated(payout)

        self._logger.info(
            f"Payout run finished: {result.generated} generated, {result.failed} failed, "
            f"BDT {result.total_amount} total"
        )
        return result

    async def _settle_group(
        self,
        professional_id: uuid.UUID,
        booking_ids: list[uuid.UUID],
        period_start: datetime,
        period_end: datetime,
        actor: Actor,
        source: str,
    ) -> Optional[Payout]:
        async with self._sessions.begin() as db:
            bookings = (await db.execute(
                _unsettled_completed()
                .where(Booking.id.in_(booking_ids))
                .order_by(Booking.check_out_at)
                .with_for_update()
            )).scalars().all()
            if not bookings:
                # Claimed by a concurrent run between the scan and this transaction
                return None

            lines = []
            total_earnings = Decimal("0.00")
            total_commission = Decimal("0.00")
            for b in bookings:
                earnings = booking_earnings(b)
                commission, net = split_commission(earnings, b.commission_percent)
                total_earnings += earnings
                total_commission += commission
                lines.append({
                    "bookingId": str(b.id),
                    "amount": money_str(earnings),
                    "commissionPercent": str(b.commission_percent),
                    "commissionAmount": money_str(commission),
                    "netAmount": money_str(net),
                    "checkOutAt": b.check_out_at.isoformat() if b.check_out_at else None,
                })

            payout = Payout(
                id=uuid.uuid4(),
                professional_id=professional_id,
                period_start=period_start,
                period_end=period_end,
                amount_bdt=total_earnings - total_commission,
                status=PayoutStatus.PENDING,
                meta={
                    "bookingsCount": len(bookings),
                    "totalEarnings": money_str(total_earnings),
                    "commissionAmount": money_str(total_commission),
                    "commissionMode": COMMISSION_MODE,
                    "source": source,
                    "generatedBy": actor.label,
                    "generatedAt": self._clock().isoformat(),
                    "bookings": lines,
                },
            )
            db.add(payout)
            await db.flush()

            claimed_ids = [b.id for b in bookings]
            claim = await db.execute(
                update(Booking)
                .where(Booking.id.in_(claimed_ids), Booking.settled_by_payout_id.is_(None))
                .values(settled_by_payout_id=payout.id, version_id=Booking.version_id + 1)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != len(claimed_ids):
                raise ConflictError(
                    f"Bookings for professional {professional_id} were settled concurrently"
                )

        self._logger.info(
            f"Payout {payout.id} created for professional {professional_id}: "
            f"{len(claimed_ids)} bookings, BDT {payout.amount_bdt}"
        )
        return payout

    async def settle_booking(self, booking_id: uuid.UUID, actor: Actor) -> Payout:
        """Manual settlement of a single completed booking."""
        if not actor.is_admin:
            raise ForbiddenError("Only admins can create settlements")

        async with self._sessions() as db:
            booking = await db.get(Booking, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.status != BookingStatus.COMPLETED or booking.final_amount_bdt is None:
            raise BadRequestError("Only completed bookings can have settlements created")
        if booking.settled_by_payout_id is not None:
            raise BadRequestError("Settlement already exists for this booking")
        if booking_earnings(booking) <= 0:
            raise BadRequestError("Booking has been fully refunded, nothing to settle")

        at = booking.check_out_at or self._clock()
        payout = await self._settle_group(
            booking.professional_id, [booking.id], at, at, actor, source="manual"
        )
        if payout is None:
            raise BadRequestError("Settlement already exists for this booking")

        await self._notify_generated(payout)
        return payout

    async def _notify_generated(self, payout: Payout) -> None:
        await notify_safely(self._notifier, "payout.generated", {
            "payout_id": payout.id,
            "professional_id": payout.professional_id,
            "amount_bdt": payout.amount_bdt,
            "bookings_count": payout.meta.get("bookingsCount"),
        }, self._logger)

    # ── Mark paid ─────────────────────────────────────────────

    async def mark_payout_paid(
        self,
        payout_id: uuid.UUID,
        actor: Actor,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Payout:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can mark payouts as paid")

        async with self._sessions.begin() as db:
            payout = await db.get(Payout, payout_id, with_for_update=True)
            if not payout:
                raise NotFoundError("Payout not found")
            if payout.status != PayoutStatus.PENDING:
                raise BadRequestError("Only pending payouts can be marked as paid")

            now = self._clock()
            payout.status = PayoutStatus.PAID
            payout.paid_at = now
            payout.meta = {
                **(payout.meta or {}),
                "paidAt": now.isoformat(),
                "paidBy": actor.label,
                "paymentMethod": payment_method,
                "notes": notes,
            }

        self._logger.info(f"Payout {payout_id} marked as paid by {actor.label} via {payment_method}")
        await notify_safely(self._notifier, "payout.paid", {
            "payout_id": payout.id,
            "professional_id": payout.professional_id,
            "amount_bdt": payout.amount_bdt,
        }, self._logger)
        return payout

    # ── Queries ───────────────────────────────────────────────

    async def get_payouts(
        self,
        actor: Actor,
        professional_id: Optional[uuid.UUID] = None,
        status: Optional[PayoutStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> PayoutPage:
        stmt = select(Payout)
        if actor.is_admin:
            if professional_id:
                stmt = stmt.where(Payout.professional_id == professional_id)
        else:
            # Non-admins only ever see their own payouts, whatever the filter says
            stmt = stmt.where(Payout.professional_id == actor.user_id)
        if status:
            stmt = stmt.where(Payout.status == status)
        if from_date:
            stmt = stmt.where(Payout.period_start >= from_date)
        if to_date:
            stmt = stmt.where(Payout.period_end <= to_date)

        async with self._sessions() as db:
            total = await db.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await db.execute(
                stmt.order_by(Payout.created_at.desc()).offset((page - 1) * limit).limit(limit)
            )
            items = list(result.scalars().all())

        return PayoutPage(items=items, total=total or 0, page=page, limit=limit)

    async def get_payout_by_id(self, payout_id: uuid.UUID, actor: Actor) -> Payout:
        async with self._sessions() as db:
            payout = await db.get(Payout, payout_id)
        if not payout:
            raise NotFoundError("Payout not found")
        if not actor.is_admin and payout.professional_id != actor.user_id:
            raise ForbiddenError("Access denied to this payout")
        return payout

    async def get_payout_stats(self, actor: Actor) -> PayoutStats:
        stmt = select(Payout.status, func.count(), func.sum(Payout.amount_bdt)).group_by(Payout.status)
        if not actor.is_admin:
            stmt = stmt.where(Payout.professional_id == actor.user_id)

        stats = PayoutStats()
        async with self._sessions() as db:
            for status, count, amount in (await db.execute(stmt)).all():
                amount = quantize_bdt(amount or 0)
                status = PayoutStatus(status)
                stats.total += count
                stats.total_amount += amount
                if status == PayoutStatus.PENDING:
                    stats.pending, stats.pending_amount = count, amount
                elif status == PayoutStatus.PAID:
                    stats.paid, stats.paid_amount = count, amount
                else:
                    stats.failed = count
        return stats
