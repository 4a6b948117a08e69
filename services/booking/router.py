"""
services/booking/router.py
Booking lifecycle endpoints.
States: PENDING → ACCEPTED → IN_PROGRESS → COMPLETED, CANCELLED from any non-completed state.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from services.booking.service import BookingCreate, BookingLifecycleService
from services.dependencies import get_booking_service
from shared.actor import Actor
from shared.middleware.auth import get_current_actor
from shared.models.models import BookingStatus
from shared.schemas.schemas import (
    BookingAcceptRequest,
    BookingCancelRequest,
    BookingCheckInRequest,
    BookingCheckOutRequest,
    BookingCompleteRequest,
    BookingCreateRequest,
    BookingListResponse,
    BookingRejectRequest,
    BookingResponse,
    BookingStatsResponse,
)
from shared.utils.dates import ensure_utc

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Create & Read ─────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    """Request a professional. The booking starts PENDING with commission frozen."""
    booking = await bookings.create(BookingCreate(**data.model_dump()), actor)
    return BookingResponse.model_validate(booking)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    result = await bookings.list_bookings(
        actor,
        status=status_filter,
        from_date=ensure_utc(from_date),
        to_date=ensure_utc(to_date),
        page=page,
        limit=limit,
    )
    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get("/stats", response_model=BookingStatsResponse)
async def booking_stats(
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    return BookingStatsResponse.model_validate(await bookings.get_booking_stats(actor))


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    return BookingResponse.model_validate(await bookings.get_booking(booking_id, actor))


# ── Professional actions ──────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    data: BookingAcceptRequest = BookingAcceptRequest(),
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    booking = await bookings.accept(booking_id, actor, message=data.message)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest,
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    booking = await bookings.reject(booking_id, actor, data.reason)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/check-in", response_model=BookingResponse)
async def check_in(
    booking_id: UUID,
    data: BookingCheckInRequest = BookingCheckInRequest(),
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    booking = await bookings.check_in(booking_id, actor, notes=data.notes, lat=data.lat, lng=data.lng)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/check-out", response_model=BookingResponse)
async def check_out(
    booking_id: UUID,
    data: BookingCheckOutRequest,
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    booking = await bookings.check_out(
        booking_id, actor, data.actual_hours, notes=data.notes, lat=data.lat, lng=data.lng
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    data: BookingCompleteRequest = BookingCompleteRequest(),
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    booking = await bookings.complete(booking_id, actor, actual_hours=data.actual_hours, notes=data.notes)
    return BookingResponse.model_validate(booking)


# ── Cancel ────────────────────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    actor: Actor = Depends(get_current_actor),
    bookings: BookingLifecycleService = Depends(get_booking_service),
):
    """Customer, assigned professional, or admin. Repeating a cancel is harmless."""
    booking = await bookings.cancel(booking_id, actor, data.reason)
    return BookingResponse.model_validate(booking)
