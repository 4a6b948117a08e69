"""
tests/test_bookings.py
Booking lifecycle through the service layer:
create → accept | reject → check-in → check-out → complete, and cancel.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from services.booking.service import BookingCreate
from shared.exceptions import BadRequestError, ForbiddenError, NotFoundError
from shared.models.models import (
    Booking,
    BookingEventType,
    BookingStatus,
    CommissionSetting,
    PricingModel,
)
from tests.conftest import actor_for, completed_booking


def _request(professional, category, clock, quoted="1000", **kwargs) -> BookingCreate:
    return BookingCreate(
        professional_id=professional.id,
        category_id=category.id,
        scheduled_at=clock.now + timedelta(days=1),
        quoted_price_bdt=Decimal(quoted),
        **kwargs,
    )


# ── Creation ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_booking_freezes_commission(bookings, customer, professional, category, clock, notifier):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    assert booking.status == BookingStatus.PENDING
    assert booking.commission_percent == Decimal("15.00")
    assert booking.customer_id == customer.id
    assert booking.event_types == {BookingEventType.CREATED}
    assert notifier.names() == ["booking.created"]


@pytest.mark.asyncio
async def test_create_uses_category_commission(bookings, sessions, customer, professional, category, clock):
    async with sessions.begin() as db:
        db.add(CommissionSetting(category_id=category.id, scope_key=str(category.id), percent=Decimal("20")))

    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))
    assert booking.commission_percent == Decimal("20.00")


@pytest.mark.asyncio
async def test_create_rejects_past_schedule(bookings, customer, professional, category, clock):
    data = _request(professional, category, clock)
    data.scheduled_at = clock.now - timedelta(hours=1)

    with pytest.raises(BadRequestError) as exc:
        await bookings.create(data, actor_for(customer))
    assert exc.value.message == "Scheduled time must be in the future"


@pytest.mark.asyncio
async def test_create_rejects_non_professional(bookings, customer, admin, category, clock):
    with pytest.raises(BadRequestError) as exc:
        await bookings.create(_request(admin, category, clock), actor_for(customer))
    assert exc.value.message == "User is not a professional"


@pytest.mark.asyncio
async def test_create_unknown_category(bookings, customer, professional, clock):
    data = BookingCreate(
        professional_id=professional.id,
        category_id=uuid.uuid4(),
        scheduled_at=clock.now + timedelta(days=1),
        quoted_price_bdt=Decimal("500"),
    )
    with pytest.raises(NotFoundError):
        await bookings.create(data, actor_for(customer))


@pytest.mark.asyncio
async def test_professional_cannot_book_themselves(bookings, professional, category, clock):
    with pytest.raises(BadRequestError) as exc:
        await bookings.create(_request(professional, category, clock), actor_for(professional))
    assert exc.value.message == "Professionals cannot book themselves"


# ── Professional actions ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_fixed_price_lifecycle(bookings, customer, professional, category, clock, notifier):
    booking = await completed_booking(bookings, clock, customer, professional, category, "1200.50")

    assert booking.status == BookingStatus.COMPLETED
    assert booking.final_amount_bdt == Decimal("1200.50")
    assert booking.check_in_at == clock.now
    assert booking.check_out_at == clock.now
    assert booking.event_types == {
        BookingEventType.CREATED,
        BookingEventType.ACCEPTED,
        BookingEventType.CHECKED_IN,
        BookingEventType.CHECKED_OUT,
        BookingEventType.COMPLETED,
    }
    assert notifier.names() == [
        "booking.created", "booking.accepted", "booking.checked_in", "booking.completed",
    ]


@pytest.mark.asyncio
async def test_hourly_booking_uses_checked_out_hours(bookings, customer, professional, category, clock):
    booking = await bookings.create(
        _request(professional, category, clock, quoted="350", pricing_model=PricingModel.HOURLY),
        actor_for(customer),
    )
    pro = actor_for(professional)
    await bookings.accept(booking.id, pro)
    await bookings.check_in(booking.id, pro)
    clock.advance(hours=3)
    await bookings.check_out(booking.id, pro, "2.5", notes="Rewired kitchen")
    completed = await bookings.complete(booking.id, pro)

    assert completed.actual_hours == Decimal("2.50")
    assert completed.final_amount_bdt == Decimal("875.00")
    checked_out = [e for e in completed.events if e.type == BookingEventType.CHECKED_OUT]
    assert len(checked_out) == 1


@pytest.mark.asyncio
async def test_hourly_booking_requires_hours(bookings, customer, professional, category, clock):
    booking = await bookings.create(
        _request(professional, category, clock, pricing_model=PricingModel.HOURLY),
        actor_for(customer),
    )
    pro = actor_for(professional)
    await bookings.accept(booking.id, pro)
    await bookings.check_in(booking.id, pro)

    with pytest.raises(BadRequestError) as exc:
        await bookings.complete(booking.id, pro)
    assert exc.value.message == "Actual hours are required for hourly bookings"


@pytest.mark.asyncio
async def test_only_assigned_professional_can_accept(bookings, customer, professional, other_professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    with pytest.raises(ForbiddenError):
        await bookings.accept(booking.id, actor_for(other_professional))
    with pytest.raises(ForbiddenError):
        await bookings.accept(booking.id, actor_for(customer))


@pytest.mark.asyncio
async def test_check_in_before_accept_is_rejected(bookings, customer, professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    with pytest.raises(BadRequestError) as exc:
        await bookings.check_in(booking.id, actor_for(professional))
    assert exc.value.message == "Cannot transition from PENDING to IN_PROGRESS"


@pytest.mark.asyncio
async def test_check_out_twice_is_rejected(bookings, customer, professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))
    pro = actor_for(professional)
    await bookings.accept(booking.id, pro)
    await bookings.check_in(booking.id, pro)
    await bookings.check_out(booking.id, pro, 1)

    with pytest.raises(BadRequestError) as exc:
        await bookings.check_out(booking.id, pro, 2)
    assert exc.value.message == "Booking has already been checked out"


@pytest.mark.asyncio
async def test_tampered_status_without_events_is_blocked(bookings, sessions, customer, professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))
    async with sessions.begin() as db:
        row = await db.get(Booking, booking.id)
        row.status = BookingStatus.ACCEPTED

    with pytest.raises(BadRequestError) as exc:
        await bookings.check_in(booking.id, actor_for(professional))
    assert exc.value.message == "Missing required events for current status: ACCEPTED"


@pytest.mark.asyncio
async def test_reject_cancels_with_rejected_event(bookings, customer, professional, category, clock, notifier):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))
    rejected = await bookings.reject(booking.id, actor_for(professional), "Fully booked that day")

    assert rejected.status == BookingStatus.CANCELLED
    assert rejected.cancel_reason == "Fully booked that day"
    assert {BookingEventType.REJECTED, BookingEventType.CANCELLED} <= rejected.event_types
    assert notifier.names()[-1] == "booking.rejected"


@pytest.mark.asyncio
async def test_reject_after_accept_is_rejected(bookings, customer, professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))
    await bookings.accept(booking.id, actor_for(professional))

    with pytest.raises(BadRequestError) as exc:
        await bookings.reject(booking.id, actor_for(professional), "Changed my mind")
    assert exc.value.message == "Only pending bookings can be rejected"


# ── Cancel ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_customer_cancels_and_repeat_is_noop(bookings, customer, professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    first = await bookings.cancel(booking.id, actor_for(customer), "Plans changed")
    second = await bookings.cancel(booking.id, actor_for(customer), "Plans changed again")

    assert first.status == BookingStatus.CANCELLED
    assert second.status == BookingStatus.CANCELLED
    assert second.cancel_reason == "Plans changed"
    assert [e.type for e in second.events].count(BookingEventType.CANCELLED) == 1


@pytest.mark.asyncio
async def test_completed_booking_cannot_be_cancelled(bookings, customer, professional, category, clock, admin_actor):
    booking = await completed_booking(bookings, clock, customer, professional, category, "800")

    with pytest.raises(BadRequestError) as exc:
        await bookings.cancel(booking.id, admin_actor, "Too late")
    assert exc.value.message == "Booking cannot be cancelled in current status"


@pytest.mark.asyncio
async def test_stranger_cannot_cancel(bookings, customer, professional, other_professional, category, clock):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    with pytest.raises(ForbiddenError):
        await bookings.cancel(booking.id, actor_for(other_professional), "Not mine")


# ── Queries ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_booking_access(bookings, customer, professional, other_professional, category, clock, admin_actor):
    booking = await bookings.create(_request(professional, category, clock), actor_for(customer))

    assert (await bookings.get_booking(booking.id, actor_for(professional))).id == booking.id
    assert (await bookings.get_booking(booking.id, admin_actor)).id == booking.id
    with pytest.raises(ForbiddenError):
        await bookings.get_booking(booking.id, actor_for(other_professional))
    with pytest.raises(NotFoundError):
        await bookings.get_booking(uuid.uuid4(), admin_actor)


@pytest.mark.asyncio
async def test_list_bookings_scoped_and_filtered(bookings, customer, professional, other_professional, category, clock, admin_actor):
    await bookings.create(_request(professional, category, clock), actor_for(customer))
    second = await bookings.create(_request(other_professional, category, clock), actor_for(customer))
    await bookings.cancel(second.id, actor_for(customer), "No longer needed")

    mine = await bookings.list_bookings(actor_for(professional))
    assert mine.total == 1

    everyone = await bookings.list_bookings(admin_actor)
    assert everyone.total == 2

    cancelled = await bookings.list_bookings(actor_for(customer), status=BookingStatus.CANCELLED)
    assert [b.id for b in cancelled.items] == [second.id]


@pytest.mark.asyncio
async def test_booking_stats(bookings, customer, professional, category, clock, admin_actor):
    await completed_booking(bookings, clock, customer, professional, category, "1000")
    await bookings.create(_request(professional, category, clock), actor_for(customer))

    stats = await bookings.get_booking_stats(admin_actor)
    assert stats.total == 2
    assert stats.completed == 1
    assert stats.pending == 1
    assert stats.total_revenue == Decimal("1000.00")
    assert stats.total_commission == Decimal("150.00")
