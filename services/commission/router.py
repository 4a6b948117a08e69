"""
services/commission/router.py
Commission calculation and admin management of commission settings.
"""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from services.commission.engine import CommissionEngine
from services.dependencies import get_commission_engine
from shared.actor import Actor
from shared.middleware.auth import get_current_actor, require_admin
from shared.schemas.schemas import (
    CommissionBreakdownResponse,
    CommissionSettingCreate,
    CommissionSettingResponse,
    CommissionSettingUpdate,
    MessageResponse,
)

router = APIRouter(prefix="/commission", tags=["Commission"])


# ── Calculation ───────────────────────────────────────────────

@router.get("/calculate", response_model=CommissionBreakdownResponse)
async def calculate_commission(
    amount: Decimal = Query(..., ge=0),
    category_id: Optional[UUID] = None,
    _: Actor = Depends(get_current_actor),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    return CommissionBreakdownResponse.model_validate(
        await commission.calculate_commission(amount, category_id)
    )


@router.get("/bookings/{booking_id}", response_model=CommissionBreakdownResponse)
async def booking_commission(
    booking_id: UUID,
    _: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    return CommissionBreakdownResponse.model_validate(
        await commission.calculate_commission_for_booking(booking_id)
    )


# ── Settings (admin) ──────────────────────────────────────────

@router.get("/settings", response_model=List[CommissionSettingResponse])
async def list_settings(
    _: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    return [CommissionSettingResponse.model_validate(s) for s in await commission.list_commission_settings()]


@router.post("/settings", response_model=CommissionSettingResponse, status_code=status.HTTP_201_CREATED)
async def create_setting(
    data: CommissionSettingCreate,
    actor: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    setting = await commission.create_commission_setting(data.category_id, data.percent, actor)
    return CommissionSettingResponse.model_validate(setting)


@router.get("/settings/{setting_id}", response_model=CommissionSettingResponse)
async def get_setting(
    setting_id: UUID,
    _: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    return CommissionSettingResponse.model_validate(await commission.get_commission_setting(setting_id))


@router.patch("/settings/{setting_id}", response_model=CommissionSettingResponse)
async def update_setting(
    setting_id: UUID,
    data: CommissionSettingUpdate,
    actor: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    setting = await commission.update_commission_setting(setting_id, data.percent, actor)
    return CommissionSettingResponse.model_validate(setting)


@router.delete("/settings/{setting_id}", response_model=MessageResponse)
async def delete_setting(
    setting_id: UUID,
    actor: Actor = Depends(require_admin),
    commission: CommissionEngine = Depends(get_commission_engine),
):
    await commission.delete_commission_setting(setting_id, actor)
    return MessageResponse(message="Commission setting deleted")
