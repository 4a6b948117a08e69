"""
services/settlement/router.py
Admin settlement console: daily summaries, the month overview, due payouts,
professional earnings, manual settlement, backfill and refunds.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from services.dependencies import get_settlement_facade
from services.settlement.facade import SettlementFacade
from shared.actor import Actor
from shared.middleware.auth import require_admin
from shared.models.models import PayoutStatus
from shared.schemas.schemas import (
    BackfillRequest,
    BackfillResponse,
    DailySettlementResponse,
    DueSettlementResponse,
    MarkPaidRequest,
    PayoutListResponse,
    PayoutResponse,
    ProfessionalEarningsResponse,
    RefundRequest,
    RefundResponse,
    SettlementOverviewResponse,
)

router = APIRouter(prefix="/admin/settlements", tags=["Settlements"])


# ── Reports ───────────────────────────────────────────────────

@router.get("/daily", response_model=DailySettlementResponse)
async def daily_summary(
    day: date,
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    return DailySettlementResponse.model_validate(
        await settlements.get_daily_settlement_summary(day, actor)
    )


@router.get("/history", response_model=List[DailySettlementResponse])
async def settlement_history(
    start: date,
    end: date,
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    history = await settlements.get_settlement_history(start, end, actor)
    return [DailySettlementResponse.model_validate(s) for s in history]


@router.get("/due", response_model=List[DueSettlementResponse])
async def due_settlements(
    older_than_days: Optional[int] = Query(None, ge=0),
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    due = await settlements.get_due_settlements(actor, older_than_days)
    return [DueSettlementResponse.model_validate(d) for d in due]


@router.get("/overview", response_model=SettlementOverviewResponse)
async def settlement_overview(
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    return SettlementOverviewResponse.model_validate(await settlements.get_settlement_overview(actor))


@router.get("/all", response_model=PayoutListResponse)
async def all_settlements(
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    result = await settlements.get_all_settlements(actor, status_filter, page, limit)
    return PayoutListResponse(
        items=[PayoutResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get("/professionals/{professional_id}/earnings", response_model=ProfessionalEarningsResponse)
async def professional_earnings(
    professional_id: UUID,
    start: Optional[date] = None,
    end: Optional[date] = None,
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    earnings = await settlements.get_professional_earnings(professional_id, actor, start, end)
    return ProfessionalEarningsResponse.model_validate(earnings)


# ── Manual operations ─────────────────────────────────────────

@router.post(
    "/bookings/{booking_id}/settle",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def settle_booking(
    booking_id: UUID,
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    """Settle a single completed booking outside the periodic run."""
    payout = await settlements.create_manual_settlement(booking_id, actor)
    return PayoutResponse.model_validate(payout)


@router.post("/{payout_id}/mark-paid", response_model=PayoutResponse)
async def mark_settlement_paid(
    payout_id: UUID,
    data: MarkPaidRequest = MarkPaidRequest(),
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    payout = await settlements.mark_settlement_paid(payout_id, actor, data.payment_method, data.notes)
    return PayoutResponse.model_validate(payout)


@router.post("/backfill", response_model=BackfillResponse)
async def backfill(
    data: BackfillRequest = BackfillRequest(),
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    return BackfillResponse.model_validate(await settlements.backfill_settlements(actor, data.until))


# ── Refunds ───────────────────────────────────────────────────

@router.post("/bookings/{booking_id}/refund", response_model=RefundResponse)
async def refund_booking(
    booking_id: UUID,
    data: RefundRequest,
    actor: Actor = Depends(require_admin),
    settlements: SettlementFacade = Depends(get_settlement_facade),
):
    result = await settlements.refund_booking(booking_id, actor, data.reason, data.amount)
    return RefundResponse.model_validate(result)
