"""
services/settlement/facade.py
Admin settlement operations layered over the commission and payout engines:
daily summaries, history and the month overview, due settlements, per
professional earnings, manual settlement, mark-paid, historical backfill and
the refund trigger.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from pybreaker import CircuitBreaker, CircuitBreakerError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config.settings import settings
from services.booking.state_machine import BookingStateMachine
from services.notification.notifier import Notifier, notify_safely
from services.payment.gateway import GatewayPaymentStatus, PaymentGateway, circuit_breaker_manager
from services.payout.engine import PayoutEngine, PayoutPage, booking_earnings, has_earnings_left
from shared.actor import Actor
from shared.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentGatewayError,
)
from shared.models.models import (
    Booking,
    BookingEvent,
    BookingStatus,
    BookingEventType,
    Payment,
    PaymentStatus,
    Payout,
    PayoutStatus,
    User,
    utcnow,
)
from shared.utils.dates import day_bounds
from shared.utils.money import Number, money_str, quantize_bdt, split_commission

logger = logging.getLogger(__name__)

REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED)


@dataclass
class DailySettlementSummary:
    day: date
    status: str
    total_bookings: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")
    total_net: Decimal = Decimal("0.00")
    settled_bookings: int = 0
    unsettled_bookings: int = 0
    refunded_bookings: int = 0
    payout_ids: list = field(default_factory=list)


@dataclass
class DueSettlement:
    professional_id: uuid.UUID
    total_due: Decimal
    payout_count: int
    oldest_created_at: datetime
    payouts: list = field(default_factory=list)


@dataclass
class BackfillResult:
    processed: int = 0
    errors: int = 0
    days: int = 0
    total_amount: Decimal = Decimal("0.00")


@dataclass
class RefundResult:
    booking_id: uuid.UUID
    payment_id: uuid.UUID
    refund_id: Optional[str]
    amount: Decimal
    payment_status: PaymentStatus
    booking_status: BookingStatus
    payout_adjustment: Optional[Decimal] = None


@dataclass
class ProfessionalEarnings:
    professional_id: uuid.UUID
    total_earnings: Decimal = Decimal("0.00")
    count: int = 0
    payouts: list = field(default_factory=list)


@dataclass
class TopEarner:
    professional_id: uuid.UUID
    professional_name: str
    professional_email: str
    total_earnings: Decimal
    payout_count: int


@dataclass
class MonthTotals:
    month_start: date
    days: int = 0
    total_bookings: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")
    total_net: Decimal = Decimal("0.00")


@dataclass
class SettlementOverview:
    today: DailySettlementSummary
    this_month: MonthTotals
    pending_payouts: int
    pending_amount: Decimal
    top_earners: list = field(default_factory=list)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin access required")


def _summarize(day: date, rows) -> DailySettlementSummary:
    """rows: (final_amount, refunded_amount, commission_percent, payout_id, payout_status)"""
    if not rows:
        return DailySettlementSummary(day=day, status="NO_DATA")

    summary = DailySettlementSummary(day=day, status="UNSETTLED")
    payout_statuses = set()
    for final_amount, refunded, percent, payout_id, payout_status in rows:
        earnings = max(Decimal("0.00"), quantize_bdt(final_amount - (refunded or 0)))
        commission, net = split_commission(earnings, percent)
        summary.total_bookings += 1
        summary.total_amount += earnings
        summary.total_commission += commission
        summary.total_net += net
        if payout_id is not None:
            summary.settled_bookings += 1
            payout_statuses.add(PayoutStatus(payout_status))
            if payout_id not in summary.payout_ids:
                summary.payout_ids.append(payout_id)
        elif earnings > 0:
            summary.unsettled_bookings += 1
        else:
            summary.refunded_bookings += 1

    if summary.unsettled_bookings == 0:
        if not payout_statuses:
            summary.status = "REFUNDED"
        else:
            summary.status = "PAID" if payout_statuses == {PayoutStatus.PAID} else "PENDING"
    return summary


class SettlementFacade:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        payouts: PayoutEngine,
        gateway: PaymentGateway,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[BookingStateMachine] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utcnow,
        due_after_days: int = settings.SETTLEMENT_DUE_AFTER_DAYS,
        log: Optional[logging.Logger] = None,
    ):
        self._sessions = sessions
        self._payouts = payouts
        self._gateway = gateway
        self._notifier = notifier
        self._sm = state_machine or BookingStateMachine()
        self._breaker = breaker or circuit_breaker_manager.get_breaker("payment_gateway")
        self._clock = clock
        self._due_after_days = due_after_days
        self._logger = log or logger

    # ── Reports ───────────────────────────────────────────────

    def _settlement_rows(self, start: datetime, end: datetime):
        return (
            select(
                Booking.check_out_at,
                Booking.final_amount_bdt,
                Booking.refunded_amount_bdt,
                Booking.commission_percent,
                Booking.settled_by_payout_id,
                Payout.status,
            )
            .outerjoin(Payout, Payout.id == Booking.settled_by_payout_id)
            .where(
                Booking.status == BookingStatus.COMPLETED,
                Booking.final_amount_bdt.is_not(None),
                Booking.check_out_at >= start,
                Booking.check_out_at < end,
            )
        )

    async def get_daily_settlement_summary(self, day: date, actor: Actor) -> DailySettlementSummary:
        _require_admin(actor)
        start, end = day_bounds(day)
        async with self._sessions() as db:
            rows = (await db.execute(self._settlement_rows(start, end))).all()
        return _summarize(day, [tuple(r)[1:] for r in rows])

    async def get_settlement_history(
        self, start_day: date, end_day: date, actor: Actor
    ) -> list[DailySettlementSummary]:
        """One summary per day with completed bookings, newest first."""
        _require_admin(actor)
        if start_day > end_day:
            raise BadRequestError("Start date must not be after end date")

        start, _ = day_bounds(start_day)
        _, end = day_bounds(end_day)
        async with self._sessions() as db:
            rows = (await db.execute(self._settlement_rows(start, end))).all()

        by_day: dict[date, list] = defaultdict(list)
        for row in rows:
            by_day[row[0].date()].append(tuple(row)[1:])
        return [_summarize(day, by_day[day]) for day in sorted(by_day, reverse=True)]

    async def get_due_settlements(
        self, actor: Actor, older_than_days: Optional[int] = None
    ) -> list[DueSettlement]:
        """PENDING payouts older than the threshold, grouped per professional."""
        _require_admin(actor)
        days = self._due_after_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)

        async with self._sessions() as db:
            payouts = (await db.execute(
                select(Payout)
                .where(Payout.status == PayoutStatus.PENDING, Payout.created_at <= cutoff)
                .order_by(Payout.created_at)
            )).scalars().all()

        grouped: dict[uuid.UUID, DueSettlement] = {}
        for payout in payouts:
            due = grouped.get(payout.professional_id)
            if due is None:
                due = grouped[payout.professional_id] = DueSettlement(
                    professional_id=payout.professional_id,
                    total_due=Decimal("0.00"),
                    payout_count=0,
                    oldest_created_at=payout.created_at,
                )
            due.total_due += payout.amount_bdt
            due.payout_count += 1
            due.payouts.append(payout)

        return sorted(grouped.values(), key=lambda d: d.total_due, reverse=True)

    async def get_professional_earnings(
        self,
        professional_id: uuid.UUID,
        actor: Actor,
        start_day: Optional[date] = None,
        end_day: Optional[date] = None,
    ) -> ProfessionalEarnings:
        """PAID payouts for one professional, optionally bounded by paid date (inclusive days)."""
        _require_admin(actor)
        if start_day and end_day and start_day > end_day:
            raise BadRequestError("Start date must not be after end date")

        stmt = select(Payout).where(
            Payout.professional_id == professional_id,
            Payout.status == PayoutStatus.PAID,
        )
        if start_day:
            stmt = stmt.where(Payout.paid_at >= day_bounds(start_day)[0])
        if end_day:
            stmt = stmt.where(Payout.paid_at < day_bounds(end_day)[1])

        async with self._sessions() as db:
            payouts = list((await db.execute(stmt.order_by(Payout.paid_at.desc()))).scalars().all())

        return ProfessionalEarnings(
            professional_id=professional_id,
            total_earnings=quantize_bdt(sum((p.amount_bdt for p in payouts), Decimal("0"))),
            count=len(payouts),
            payouts=payouts,
        )

    async def get_settlement_overview(self, actor: Actor, top: int = 10) -> SettlementOverview:
        """Today's summary, month-to-date totals, the pending queue and the month's top earners."""
        _require_admin(actor)
        today = self._clock().date()
        month_start = today.replace(day=1)
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        start, _ = day_bounds(month_start)
        end, _ = day_bounds(next_month)

        async with self._sessions() as db:
            rows = (await db.execute(self._settlement_rows(start, end))).all()
            pending_count, pending_amount = (await db.execute(
                select(func.count(Payout.id), func.sum(Payout.amount_bdt))
                .where(Payout.status == PayoutStatus.PENDING)
            )).one()
            earned = func.sum(Payout.amount_bdt)
            earners = (await db.execute(
                select(Payout.professional_id, User.full_name, User.email, earned, func.count(Payout.id))
                .join(User, User.id == Payout.professional_id)
                .where(
                    Payout.status == PayoutStatus.PAID,
                    Payout.paid_at >= start,
                    Payout.paid_at < end,
                )
                .group_by(Payout.professional_id, User.full_name, User.email)
                .order_by(earned.desc())
                .limit(top)
            )).all()

        by_day: dict[date, list] = defaultdict(list)
        for row in rows:
            by_day[row[0].date()].append(tuple(row)[1:])

        month = MonthTotals(month_start=month_start, days=len(by_day))
        for day, day_rows in by_day.items():
            summary = _summarize(day, day_rows)
            month.total_bookings += summary.total_bookings
            month.total_amount += summary.total_amount
            month.total_commission += summary.total_commission
            month.total_net += summary.total_net

        return SettlementOverview(
            today=_summarize(today, by_day.get(today, [])),
            this_month=month,
            pending_payouts=pending_count or 0,
            pending_amount=quantize_bdt(pending_amount or 0),
            top_earners=[
                TopEarner(
                    professional_id=professional_id,
                    professional_name=name or "Unknown",
                    professional_email=email or "",
                    total_earnings=quantize_bdt(total or 0),
                    payout_count=count,
                )
                for professional_id, name, email, total, count in earners
            ],
        )

    async def get_all_settlements(
        self,
        actor: Actor,
        status: Optional[PayoutStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> PayoutPage:
        """Every payout, newest first."""
        _require_admin(actor)
        return await self._payouts.get_payouts(actor, status=status, page=page, limit=limit)

    # ── Manual operations ─────────────────────────────────────

    async def create_manual_settlement(self, booking_id: uuid.UUID, actor: Actor) -> Payout:
        _require_admin(actor)
        return await self._payouts.settle_booking(booking_id, actor)

    async def mark_settlement_paid(
        self,
        payout_id: uuid.UUID,
        actor: Actor,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Payout:
        _require_admin(actor)
        return await self._payouts.mark_payout_paid(payout_id, actor, payment_method, notes)

    async def backfill_settlements(
        self, actor: Actor, until: Optional[date] = None
    ) -> BackfillResult:
        """
        Settle historical completed bookings one day at a time, from the
        earliest unsettled check-out up to (not including) `until`.
        """
        _require_admin(actor)
        until = until or self._clock().date()

        async with self._sessions() as db:
            earliest = await db.scalar(
                select(func.min(Booking.check_out_at)).where(
                    Booking.status == BookingStatus.COMPLETED,
                    Booking.final_amount_bdt.is_not(None),
                    Booking.settled_by_payout_id.is_(None),
                    has_earnings_left(),
                )
            )

        result = BackfillResult()
        if earliest is None:
            return result

        day = earliest.date()
        while day < until:
            start, end = day_bounds(day)
            run = await self._payouts.generate_payouts_for_period(start, end, actor)
            result.processed += run.generated
            result.errors += run.failed
            result.total_amount += run.total_amount
            result.days += 1
            day += timedelta(days=1)

        self._logger.info(
            f"Backfill finished: {result.days} days, {result.processed} payouts, {result.errors} errors"
        )
        return result

    # ── Refunds ───────────────────────────────────────────────

    async def refund_booking(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        reason: str,
        amount: Optional[Number] = None,
    ) -> RefundResult:
        """
        Refund a booking's captured payment through the gateway, then update
        the payment, the booking and any payout the booking was settled into.

        The amount is reserved on the payment row under lock before the
        gateway is called, so concurrent refunds can never exceed what was
        captured. A gateway failure releases the reservation.
        """
        _require_admin(actor)

        async with self._sessions.begin() as db:
            booking = await db.get(Booking, booking_id)
            if not booking:
                raise NotFoundError("Booking not found")
            payment = await db.scalar(
                select(Payment)
                .where(Payment.booking_id == booking_id, Payment.status.in_(REFUNDABLE_PAYMENT_STATUSES))
                .order_by(Payment.created_at.desc())
                .limit(1)
                .with_for_update()
            )
            if not payment:
                raise BadRequestError("No captured payment found for this booking")

            refundable = quantize_bdt(
                payment.amount_bdt - payment.refunded_amount_bdt - payment.refund_reserved_bdt
            )
            refund_amount = refundable if amount is None else quantize_bdt(amount)
            if refund_amount <= 0:
                raise BadRequestError("Refund amount must be greater than zero")
            if refund_amount > refundable:
                raise BadRequestError("Refund amount exceeds captured amount")
            payment.refund_reserved_bdt = quantize_bdt(payment.refund_reserved_bdt + refund_amount)

        try:
            outcome = await self._call_gateway_refund(payment, refund_amount, reason)
        except PaymentGatewayError:
            await self._release_reservation(payment.id, refund_amount)
            raise

        try:
            async with self._sessions.begin() as db:
                result = await self._apply_refund(db, booking_id, payment.id, refund_amount, reason, outcome.refund_id, actor)
        except StaleDataError:
            self._logger.error(
                f"Refund {outcome.refund_id} for booking {booking_id} succeeded at the gateway "
                f"but bookkeeping hit a concurrent update"
            )
            raise ConflictError("Booking was modified concurrently, refund bookkeeping must be retried") from None

        self._logger.info(
            f"Refund {outcome.refund_id} of BDT {refund_amount} for booking {booking_id} by {actor.label}"
        )
        await notify_safely(self._notifier, "booking.refunded", {
            "booking_id": booking_id,
            "customer_id": booking.customer_id,
            "amount": refund_amount,
            "reason": reason,
        }, self._logger)
        return result

    async def _release_reservation(self, payment_id: uuid.UUID, amount: Decimal) -> None:
        async with self._sessions.begin() as db:
            payment = await db.get(Payment, payment_id, with_for_update=True)
            payment.refund_reserved_bdt = max(
                Decimal("0.00"), quantize_bdt(payment.refund_reserved_bdt - amount)
            )

    async def _call_gateway_refund(self, payment: Payment, amount: Decimal, reason: str):
        try:
            with self._breaker.calling():
                outcome = await self._gateway.refund_payment(
                    payment.gateway_ref or str(payment.id),
                    amount,
                    reason=reason,
                    metadata={"paymentId": str(payment.id), "bookingId": str(payment.booking_id)},
                )
        except CircuitBreakerError:
            raise PaymentGatewayError("Payment gateway temporarily unavailable") from None
        except Exception as e:
            self._logger.exception(f"Gateway refund failed for payment {payment.id}: {e}")
            raise PaymentGatewayError(f"Refund failed: {e}") from e

        if GatewayPaymentStatus(outcome.status) != GatewayPaymentStatus.REFUNDED:
            raise PaymentGatewayError(outcome.error or "Refund was not accepted by the gateway")
        return outcome

    async def _apply_refund(
        self,
        db: AsyncSession,
        booking_id: uuid.UUID,
        payment_id: uuid.UUID,
        amount: Decimal,
        reason: str,
        refund_id: Optional[str],
        actor: Actor,
    ) -> RefundResult:
        now = self._clock()
        payment = await db.get(Payment, payment_id, with_for_update=True)
        booking = (await db.execute(
            select(Booking).where(Booking.id == booking_id).with_for_update()
        )).scalar_one()

        payment.refund_reserved_bdt = max(
            Decimal("0.00"), quantize_bdt(payment.refund_reserved_bdt - amount)
        )
        if payment.refunded_amount_bdt + amount > payment.amount_bdt:
            self._logger.error(
                f"Refund {refund_id} of BDT {amount} would take payment {payment.id} past its "
                f"captured BDT {payment.amount_bdt}"
            )
            raise ConflictError("Refund exceeds the captured amount, bookkeeping needs manual review")

        payment.refunded_amount_bdt = quantize_bdt(payment.refunded_amount_bdt + amount)
        payment.refunded_at = now
        payment.status = (
            PaymentStatus.REFUNDED
            if payment.refunded_amount_bdt >= payment.amount_bdt
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        payment.meta = {
            **(payment.meta or {}),
            "refunds": [
                *(payment.meta or {}).get("refunds", []),
                {"refundId": refund_id, "amount": money_str(amount), "reason": reason, "at": now.isoformat()},
            ],
        }

        adjustment = None
        if booking.status == BookingStatus.COMPLETED:
            # The booking only absorbs what it still earns; any overpayment
            # refunded beyond the final amount never touches earnings.
            before = booking_earnings(booking)
            absorbed = min(amount, before)
            booking.refunded_amount_bdt = quantize_bdt(booking.refunded_amount_bdt + absorbed)
            if booking.settled_by_payout_id is not None and absorbed > 0:
                adjustment = await self._adjust_payout(
                    db, booking, before, booking_earnings(booking), amount, reason, now
                )
        elif booking.status != BookingStatus.CANCELLED:
            check = self._sm.can_transition_to(booking.status, BookingStatus.CANCELLED, booking.event_types)
            if check.can_transition:
                booking.status = BookingStatus.CANCELLED
                booking.cancel_reason = f"Payment refunded: {reason}"
                booking.events.append(BookingEvent(
                    type=BookingEventType.CANCELLED,
                    event_metadata={
                        "reason": booking.cancel_reason,
                        "cancelledBy": actor.label,
                        "refundAmount": money_str(amount),
                    },
                    occurred_at=now,
                ))
            else:
                self._logger.warning(f"Refunded booking {booking.id} left in {booking.status.value}: {check.reason}")

        return RefundResult(
            booking_id=booking.id,
            payment_id=payment.id,
            refund_id=refund_id,
            amount=amount,
            payment_status=payment.status,
            booking_status=booking.status,
            payout_adjustment=adjustment,
        )

    async def _adjust_payout(
        self,
        db: AsyncSession,
        booking: Booking,
        earnings_before: Decimal,
        earnings_after: Decimal,
        refund_amount: Decimal,
        reason: str,
        now: datetime,
    ) -> Decimal:
        """
        Take the refund's net share back out of the payout the booking was
        settled into. A PENDING payout has the booking's line re-derived from
        its remaining earnings and its totals reduced to match; a PAID one
        only records the clawback owed.
        """
        payout = await db.get(Payout, booking.settled_by_payout_id, with_for_update=True)
        commission_before, net_before = split_commission(earnings_before, booking.commission_percent)
        commission_after, net_after = split_commission(earnings_after, booking.commission_percent)
        earnings_share = earnings_before - earnings_after
        commission_share = commission_before - commission_after
        net_share = net_before - net_after
        entry = {
            "bookingId": str(booking.id),
            "refundAmount": money_str(refund_amount),
            "earningsShare": money_str(earnings_share),
            "commissionShare": money_str(commission_share),
            "netShare": money_str(net_share),
            "reason": reason,
            "at": now.isoformat(),
        }

        meta = dict(payout.meta or {})
        if payout.status == PayoutStatus.PENDING:
            payout.amount_bdt = quantize_bdt(payout.amount_bdt - net_share)
            meta["totalEarnings"] = money_str(quantize_bdt(meta.get("totalEarnings", "0")) - earnings_share)
            meta["commissionAmount"] = money_str(quantize_bdt(meta.get("commissionAmount", "0")) - commission_share)
            meta["bookings"] = [
                {
                    **line,
                    "amount": money_str(earnings_after),
                    "commissionAmount": money_str(commission_after),
                    "netAmount": money_str(net_after),
                }
                if line.get("bookingId") == str(booking.id) else line
                for line in meta.get("bookings", [])
            ]
            meta["adjustments"] = [*meta.get("adjustments", []), entry]
        else:
            meta["clawbacks"] = [*meta.get("clawbacks", []), entry]
            self._logger.warning(
                f"Payout {payout.id} already {payout.status.value}; BDT {net_share} clawback recorded "
                f"for booking {booking.id}"
            )
        payout.meta = meta
        return net_share
