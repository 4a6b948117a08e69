"""
tests/test_commission.py
Commission resolution precedence, exact commission/net splits,
and admin management of commission settings.
"""

import uuid
from decimal import Decimal

import pytest

from shared.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from shared.utils.money import split_commission
from tests.conftest import actor_for, completed_booking


# ── Splits ─────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("amount,percent", [
    ("1000", "20"),
    ("999.99", "12.5"),
    ("0.01", "15"),
    ("1234.57", "33.33"),
    ("0", "15"),
])
def test_split_adds_back_up_exactly(amount, percent):
    commission, net = split_commission(Decimal(amount), Decimal(percent))
    assert commission + net == Decimal(amount).quantize(Decimal("0.01"))


def test_split_rounds_half_up():
    # 10.05 * 10% = 1.005 → 1.01
    assert split_commission(Decimal("10.05"), Decimal("10")) == (Decimal("1.01"), Decimal("9.04"))


# ── Resolution ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_system_default_when_nothing_configured(commission, category):
    assert await commission.get_commission_percent(category.id) == Decimal("15.00")
    assert await commission.get_commission_percent() == Decimal("15.00")


@pytest.mark.asyncio
async def test_category_overrides_global_overrides_default(commission, category, other_category, admin_actor):
    await commission.create_commission_setting(None, Decimal("10"), admin_actor)
    await commission.create_commission_setting(category.id, Decimal("20"), admin_actor)

    assert await commission.get_commission_percent(category.id) == Decimal("20.00")
    assert await commission.get_commission_percent(other_category.id) == Decimal("10.00")
    assert await commission.get_commission_percent(None) == Decimal("10.00")


@pytest.mark.asyncio
async def test_calculate_commission_breakdown(commission, category, admin_actor):
    await commission.create_commission_setting(category.id, Decimal("20"), admin_actor)

    breakdown = await commission.calculate_commission(Decimal("1000"), category.id)
    assert breakdown.commission_percent == Decimal("20.00")
    assert breakdown.commission_amount == Decimal("200.00")
    assert breakdown.net_amount == Decimal("800.00")
    assert breakdown.category_name == "Electrical"


@pytest.mark.asyncio
async def test_calculate_negative_amount_rejected(commission):
    with pytest.raises(BadRequestError):
        await commission.calculate_commission(Decimal("-1"))


@pytest.mark.asyncio
async def test_booking_breakdown_uses_final_amount(commission, bookings, clock, customer, professional, category):
    booking = await completed_booking(bookings, clock, customer, professional, category, "2000")

    breakdown = await commission.calculate_commission_for_booking(booking.id)
    assert breakdown.amount == Decimal("2000.00")
    assert breakdown.commission_amount == Decimal("300.00")
    assert breakdown.net_amount == Decimal("1700.00")

    with pytest.raises(NotFoundError):
        await commission.calculate_commission_for_booking(uuid.uuid4())


# ── Settings CRUD ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_settings_crud(commission, category, admin_actor):
    setting = await commission.create_commission_setting(category.id, Decimal("12.5"), admin_actor)
    assert setting.percent == Decimal("12.50")

    updated = await commission.update_commission_setting(setting.id, Decimal("18"), admin_actor)
    assert updated.percent == Decimal("18.00")
    assert await commission.get_commission_percent(category.id) == Decimal("18.00")

    assert [s.id for s in await commission.list_commission_settings()] == [setting.id]

    await commission.delete_commission_setting(setting.id, admin_actor)
    with pytest.raises(NotFoundError):
        await commission.get_commission_setting(setting.id)
    assert await commission.get_commission_percent(category.id) == Decimal("15.00")


@pytest.mark.asyncio
async def test_duplicate_settings_conflict(commission, category, admin_actor):
    await commission.create_commission_setting(None, Decimal("10"), admin_actor)
    await commission.create_commission_setting(category.id, Decimal("20"), admin_actor)

    with pytest.raises(ConflictError) as exc:
        await commission.create_commission_setting(None, Decimal("11"), admin_actor)
    assert exc.value.message == "Commission setting already exists for the default"

    with pytest.raises(ConflictError) as exc:
        await commission.create_commission_setting(category.id, Decimal("21"), admin_actor)
    assert exc.value.message == "Commission setting already exists for this category"


@pytest.mark.asyncio
async def test_setting_validation(commission, admin_actor):
    with pytest.raises(BadRequestError):
        await commission.create_commission_setting(None, Decimal("100.01"), admin_actor)
    with pytest.raises(NotFoundError):
        await commission.create_commission_setting(uuid.uuid4(), Decimal("10"), admin_actor)


@pytest.mark.asyncio
async def test_non_admin_cannot_manage_settings(commission, professional):
    with pytest.raises(ForbiddenError):
        await commission.create_commission_setting(None, Decimal("10"), actor_for(professional))


@pytest.mark.asyncio
async def test_setting_change_does_not_touch_frozen_booking(commission, bookings, clock, customer, professional, category, admin_actor):
    booking = await completed_booking(bookings, clock, customer, professional, category, "1000")
    await commission.create_commission_setting(category.id, Decimal("40"), admin_actor)

    reloaded = await bookings.get_booking(booking.id, admin_actor)
    assert reloaded.commission_percent == Decimal("15.00")
    assert reloaded.final_amount_bdt == Decimal("1000.00")
