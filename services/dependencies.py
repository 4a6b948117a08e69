"""
services/dependencies.py
Wires the domain services together for the API layer.
Each request gets services bound to the shared session factory;
tests override get_session_factory / get_payment_gateway.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_session_factory
from services.booking.service import BookingLifecycleService
from services.commission.engine import CommissionEngine
from services.notification.notifier import DatabaseNotifier
from services.payment.gateway import PaymentGateway, build_payment_gateway
from services.payout.engine import PayoutEngine
from services.settlement.facade import SettlementFacade


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()


def get_notifier(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> DatabaseNotifier:
    return DatabaseNotifier(sessions)


def get_commission_engine(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CommissionEngine:
    return CommissionEngine(sessions)


def get_booking_service(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    commission: CommissionEngine = Depends(get_commission_engine),
    notifier: DatabaseNotifier = Depends(get_notifier),
) -> BookingLifecycleService:
    return BookingLifecycleService(sessions, commission, notifier)


def get_payout_engine(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: DatabaseNotifier = Depends(get_notifier),
) -> PayoutEngine:
    return PayoutEngine(sessions, notifier)


def get_settlement_facade(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    payouts: PayoutEngine = Depends(get_payout_engine),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: DatabaseNotifier = Depends(get_notifier),
) -> SettlementFacade:
    return SettlementFacade(sessions, payouts, gateway, notifier)
