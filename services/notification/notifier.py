"""
services/notification/notifier.py
Notification port used by the booking and settlement services.

Delivery is fire-and-forget: a failure is logged and never propagates to
the booking or payout action that triggered it. The database notifier
stores in-app notification rows; push/SMS/email channels plug in behind
the same `notify(event, payload)` call.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.models.models import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, event: str, payload: dict) -> None: ...


# event → (recipient keys in payload, title, body template)
NOTIFICATION_TEMPLATES: dict[str, tuple[tuple[str, ...], str, str]] = {
    "booking.created": (
        ("professional_id",),
        "New booking request",
        "You have a new booking request for {scheduled_at}.",
    ),
    "booking.accepted": (
        ("customer_id",),
        "Booking accepted",
        "Your booking for {scheduled_at} has been accepted.",
    ),
    "booking.rejected": (
        ("customer_id",),
        "Booking declined",
        "Your booking was declined: {reason}",
    ),
    "booking.checked_in": (
        ("customer_id",),
        "Professional has arrived",
        "Your professional has checked in.",
    ),
    "booking.checked_out": (
        ("customer_id",),
        "Work finished",
        "Your professional has checked out after {actual_hours} hours.",
    ),
    "booking.completed": (
        ("customer_id",),
        "Booking completed",
        "Your booking is complete. Final amount: BDT {final_amount_bdt}.",
    ),
    "booking.cancelled": (
        ("customer_id", "professional_id"),
        "Booking cancelled",
        "The booking for {scheduled_at} was cancelled: {reason}",
    ),
    "booking.refunded": (
        ("customer_id",),
        "Refund issued",
        "A refund of BDT {amount} has been issued for your booking.",
    ),
    "payout.generated": (
        ("professional_id",),
        "Payout generated",
        "A payout of BDT {amount_bdt} for {bookings_count} bookings is being processed.",
    ),
    "payout.paid": (
        ("professional_id",),
        "Payout sent",
        "Your payout of BDT {amount_bdt} has been paid.",
    ),
}


def _json_safe(payload: dict) -> dict:
    safe: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (uuid.UUID, Decimal)):
            safe[key] = str(value)
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        else:
            safe[key] = value
    return safe


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


class DatabaseNotifier:
    """Writes one Notification row per recipient, retrying transient DB errors."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        max_attempts: int = settings.NOTIFICATION_MAX_ATTEMPTS,
        log: Optional[logging.Logger] = None,
    ):
        self._sessions = sessions
        self._max_attempts = max_attempts
        self._logger = log or logger

    async def notify(self, event: str, payload: dict) -> None:
        template = NOTIFICATION_TEMPLATES.get(event)
        if template is None:
            self._logger.debug(f"No notification template for {event}, skipping")
            return

        recipient_keys, title, body = template
        data = _json_safe(payload)
        recipients = [payload[k] for k in recipient_keys if payload.get(k)]
        text = body.format_map(_SafeDict(data))

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception_type(SQLAlchemyError),
                reraise=True,
            ):
                with attempt:
                    await self._store(event, recipients, title, text, data, payload.get("booking_id"))
        except Exception as e:
            self._logger.error(f"Notification {event} could not be stored: {e}", exc_info=True)

    async def _store(
        self,
        event: str,
        recipients: list,
        title: str,
        text: str,
        data: dict,
        booking_id: Optional[uuid.UUID],
    ) -> None:
        async with self._sessions.begin() as db:
            for user_id in recipients:
                db.add(Notification(
                    user_id=user_id,
                    booking_id=booking_id,
                    type=event,
                    title=title,
                    body=text,
                    data=data,
                ))


async def notify_safely(
    notifier: Optional[Notifier],
    event: str,
    payload: dict,
    log: logging.Logger,
) -> None:
    """Deliver through any notifier without letting its failure escape."""
    if notifier is None:
        return
    try:
        await notifier.notify(event, payload)
    except Exception as e:
        log.warning(f"Notifier failed for {event}: {e}")
