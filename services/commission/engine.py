"""
services/commission/engine.py
Commission resolution, commission/net splits, and commission setting CRUD.

Resolution order for a category:
  1. the setting for that exact category
  2. the global setting (category_id IS NULL)
  3. SYSTEM_DEFAULT_COMMISSION_PERCENT
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.actor import Actor
from shared.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from shared.models.models import Booking, CommissionSetting, ServiceCategory
from shared.utils.money import Number, quantize_bdt, split_commission, to_decimal

logger = logging.getLogger(__name__)

SYSTEM_DEFAULT_COMMISSION_PERCENT = Decimal("15.00")


@dataclass(frozen=True)
class CommissionBreakdown:
    amount: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    category_id: Optional[uuid.UUID] = None
    category_name: Optional[str] = None


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Only admins can manage commission settings")


def _validate_percent(percent: Number) -> Decimal:
    value = to_decimal(percent)
    if value < 0 or value > 100:
        raise BadRequestError("Commission percent must be between 0 and 100")
    return value.quantize(Decimal("0.01"))


class CommissionEngine:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        log: Optional[logging.Logger] = None,
    ):
        self._sessions = sessions
        self._logger = log or logger

    # ── Resolution ────────────────────────────────────────────

    async def percent_for(self, db: AsyncSession, category_id: Optional[uuid.UUID]) -> Decimal:
        """Resolve the percent inside the caller's transaction."""
        if category_id is not None:
            percent = await db.scalar(
                select(CommissionSetting.percent).where(CommissionSetting.category_id == category_id)
            )
            if percent is not None:
                return to_decimal(percent)

        percent = await db.scalar(
            select(CommissionSetting.percent).where(CommissionSetting.category_id.is_(None))
        )
        if percent is not None:
            return to_decimal(percent)

        return SYSTEM_DEFAULT_COMMISSION_PERCENT

    async def get_commission_percent(self, category_id: Optional[uuid.UUID] = None) -> Decimal:
        async with self._sessions() as db:
            return await self.percent_for(db, category_id)

    async def calculate_commission(
        self, amount: Number, category_id: Optional[uuid.UUID] = None
    ) -> CommissionBreakdown:
        async with self._sessions() as db:
            return await self._breakdown(db, amount, category_id)

    async def calculate_commission_for_booking(self, booking_id: uuid.UUID) -> CommissionBreakdown:
        async with self._sessions() as db:
            booking = await db.get(Booking, booking_id)
            if not booking:
                raise NotFoundError("Booking not found")
            amount = booking.final_amount_bdt
            if amount is None:
                amount = booking.quoted_price_bdt
            return await self._breakdown(db, amount, booking.category_id)

    async def _breakdown(
        self, db: AsyncSession, amount: Number, category_id: Optional[uuid.UUID]
    ) -> CommissionBreakdown:
        amount = quantize_bdt(amount)
        if amount < 0:
            raise BadRequestError("Amount must not be negative")

        percent = await self.percent_for(db, category_id)
        commission, net = split_commission(amount, percent)

        category_name = None
        if category_id is not None:
            category_name = await db.scalar(
                select(ServiceCategory.name).where(ServiceCategory.id == category_id)
            )

        return CommissionBreakdown(
            amount=amount,
            commission_percent=percent,
            commission_amount=commission,
            net_amount=net,
            category_id=category_id,
            category_name=category_name,
        )

    # ── Settings CRUD ─────────────────────────────────────────

    async def list_commission_settings(self) -> list[CommissionSetting]:
        async with self._sessions() as db:
            result = await db.execute(
                select(CommissionSetting).order_by(CommissionSetting.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_commission_setting(self, setting_id: uuid.UUID) -> CommissionSetting:
        async with self._sessions() as db:
            setting = await db.get(CommissionSetting, setting_id)
            if not setting:
                raise NotFoundError("Commission setting not found")
            return setting

    async def create_commission_setting(
        self,
        category_id: Optional[uuid.UUID],
        percent: Number,
        actor: Actor,
    ) -> CommissionSetting:
        _require_admin(actor)
        percent = _validate_percent(percent)
        scope = "this category" if category_id else "the default"

        try:
            async with self._sessions.begin() as db:
                if category_id is not None and not await db.get(ServiceCategory, category_id):
                    raise NotFoundError("Service category not found")

                existing = await db.scalar(
                    select(CommissionSetting.id).where(
                        CommissionSetting.scope_key == CommissionSetting.scope_for(category_id)
                    )
                )
                if existing:
                    raise ConflictError(f"Commission setting already exists for {scope}")

                setting = CommissionSetting(
                    category_id=category_id,
                    scope_key=CommissionSetting.scope_for(category_id),
                    percent=percent,
                )
                db.add(setting)
        except IntegrityError:
            # Lost a race with a concurrent create for the same scope
            raise ConflictError(f"Commission setting already exists for {scope}") from None

        self._logger.info(
            f"Commission setting {setting.id} created: {percent}% for {setting.scope_key} by {actor.label}"
        )
        return setting

    async def update_commission_setting(
        self, setting_id: uuid.UUID, percent: Number, actor: Actor
    ) -> CommissionSetting:
        _require_admin(actor)
        percent = _validate_percent(percent)

        async with self._sessions.begin() as db:
            setting = await db.get(CommissionSetting, setting_id, with_for_update=True)
            if not setting:
                raise NotFoundError("Commission setting not found")
            previous = setting.percent
            setting.percent = percent

        self._logger.info(
            f"Commission setting {setting_id} changed {previous}% → {percent}% by {actor.label}"
        )
        return setting

    async def delete_commission_setting(self, setting_id: uuid.UUID, actor: Actor) -> None:
        _require_admin(actor)

        async with self._sessions.begin() as db:
            setting = await db.get(CommissionSetting, setting_id)
            if not setting:
                raise NotFoundError("Commission setting not found")
            await db.delete(setting)

        self._logger.info(f"Commission setting {setting_id} deleted by {actor.label}")
