"""
services/payout/router.py
Payout listing for professionals and admins; batch generation and mark-paid for admins.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from services.dependencies import get_payout_engine
from services.payout.engine import PayoutEngine
from shared.actor import Actor
from shared.middleware.auth import get_current_actor, require_admin
from shared.models.models import PayoutStatus
from shared.schemas.schemas import (
    MarkPaidRequest,
    PayoutGenerateRequest,
    PayoutListResponse,
    PayoutResponse,
    PayoutRunResponse,
    PayoutStatsResponse,
)
from shared.utils.dates import ensure_utc

router = APIRouter(prefix="/payouts", tags=["Payouts"])


@router.get("", response_model=PayoutListResponse)
async def list_payouts(
    professional_id: Optional[UUID] = None,
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutEngine = Depends(get_payout_engine),
):
    """Admins see every payout; everyone else only their own."""
    result = await payouts.get_payouts(
        actor,
        professional_id=professional_id,
        status=status_filter,
        from_date=ensure_utc(from_date),
        to_date=ensure_utc(to_date),
        page=page,
        limit=limit,
    )
    return PayoutListResponse(
        items=[PayoutResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get("/stats", response_model=PayoutStatsResponse)
async def payout_stats(
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutEngine = Depends(get_payout_engine),
):
    return PayoutStatsResponse.model_validate(await payouts.get_payout_stats(actor))


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: UUID,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutEngine = Depends(get_payout_engine),
):
    return PayoutResponse.model_validate(await payouts.get_payout_by_id(payout_id, actor))


@router.post("/generate", response_model=PayoutRunResponse, status_code=status.HTTP_201_CREATED)
async def generate_payouts(
    data: PayoutGenerateRequest,
    actor: Actor = Depends(require_admin),
    payouts: PayoutEngine = Depends(get_payout_engine),
):
    """Settle completed bookings checked out in [period_start, period_end)."""
    result = await payouts.generate_payouts_for_period(
        ensure_utc(data.period_start), ensure_utc(data.period_end), actor
    )
    return PayoutRunResponse.model_validate(result)


@router.post("/{payout_id}/mark-paid", response_model=PayoutResponse)
async def mark_payout_paid(
    payout_id: UUID,
    data: MarkPaidRequest = MarkPaidRequest(),
    actor: Actor = Depends(require_admin),
    payouts: PayoutEngine = Depends(get_payout_engine),
):
    payout = await payouts.mark_payout_paid(payout_id, actor, data.payment_method, data.notes)
    return PayoutResponse.model_validate(payout)
