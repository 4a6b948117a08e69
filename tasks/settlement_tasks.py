"""
tasks/settlement_tasks.py
Celery tasks for scheduled settlement:
- Weekly payout generation for the period that just ended
- Admin-triggered backfill of historical completed bookings

Both are idempotent: a booking already claimed by a payout is never settled
again, and a Redis run lock keeps two workers off the same period.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.redis_client import RedisCache
from config.settings import settings
from services.dependencies import get_payment_gateway
from services.notification.notifier import DatabaseNotifier
from services.payout.engine import PayoutEngine
from services.settlement.facade import SettlementFacade
from shared.actor import Actor
from shared.models.models import utcnow
from shared.utils.dates import ensure_utc, previous_period
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _system_actor() -> Actor:
    user_id = uuid.UUID(settings.SYSTEM_ACTOR_ID) if settings.SYSTEM_ACTOR_ID else None
    return Actor.system(user_id)


def _task_sessions():
    """
    A fresh engine per task run. asyncio.run() starts a new event loop each
    time and pooled asyncpg connections cannot cross loops.
    """
    engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
    sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    return engine, sessions


async def _generate(period_start: datetime, period_end: datetime, owner: str) -> dict:
    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    cache = RedisCache(redis)
    start_key, end_key = period_start.isoformat(), period_end.isoformat()

    if not await cache.lock_payout_run(start_key, end_key, owner):
        logger.info(f"Payout run for {start_key} - {end_key} already in progress, skipping")
        await redis.aclose()
        return {"skipped": True}

    engine, sessions = _task_sessions()
    try:
        payouts = PayoutEngine(sessions, DatabaseNotifier(sessions))
        result = await payouts.generate_payouts_for_period(period_start, period_end, _system_actor())
        return {
            "generated": result.generated,
            "failed": result.failed,
            "total_amount": str(result.total_amount),
            "payout_ids": [str(p) for p in result.payout_ids],
        }
    finally:
        await cache.release_payout_run(start_key, end_key)
        await redis.aclose()
        await engine.dispose()


async def _backfill(until: Optional[date]) -> dict:
    engine, sessions = _task_sessions()
    try:
        notifier = DatabaseNotifier(sessions)
        facade = SettlementFacade(
            sessions,
            PayoutEngine(sessions, notifier),
            get_payment_gateway(),
            notifier,
        )
        result = await facade.backfill_settlements(_system_actor(), until)
        return {
            "processed": result.processed,
            "errors": result.errors,
            "days": result.days,
            "total_amount": str(result.total_amount),
        }
    finally:
        await engine.dispose()


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=600)
def generate_periodic_payouts(
    self,
    period_start: Optional[str] = None,
    period_end: Optional[str] = None,
):
    """
    Generate PENDING payouts for every professional with unsettled completed
    bookings checked out in [period_start, period_end).

    Defaults to the PAYOUT_PERIOD_DAYS window ending at the latest UTC midnight.
    """
    if period_start and period_end:
        start = ensure_utc(datetime.fromisoformat(period_start))
        end = ensure_utc(datetime.fromisoformat(period_end))
    else:
        start, end = previous_period(utcnow(), settings.PAYOUT_PERIOD_DAYS)

    logger.info(f"Payout run starting for {start.isoformat()} - {end.isoformat()}")
    try:
        summary = asyncio.run(_generate(start, end, owner=self.request.id or "manual"))
    except Exception as exc:
        logger.error(f"Payout run for {start.isoformat()} - {end.isoformat()} failed: {exc}")
        raise self.retry(exc=exc)

    logger.info(f"Payout run done: {summary}")
    return summary


@celery_app.task(bind=True, max_retries=1)
def backfill_settlements_task(self, until: Optional[str] = None):
    """Settle historical completed bookings day by day up to `until` (ISO date)."""
    until_day = date.fromisoformat(until) if until else None
    try:
        summary = asyncio.run(_backfill(until_day))
    except Exception as exc:
        logger.error(f"Settlement backfill failed: {exc}")
        raise self.retry(exc=exc)

    logger.info(f"Settlement backfill done: {summary}")
    return summary
