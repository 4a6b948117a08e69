"""
tests/test_gateway.py
Local payment gateway, webhook signatures, the payout run lock,
and the date helpers behind the scheduled payout run.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from config.redis_client import RedisCache, payout_run_lock_key
from services.payment.gateway import (
    GatewayPaymentStatus,
    LocalPaymentGateway,
    WebhookPayload,
    build_payment_gateway,
    canonical_webhook_body,
    circuit_breaker_manager,
)
from shared.utils.dates import day_bounds, ensure_utc, previous_period
from shared.utils.security import create_access_token, sign_webhook_payload, verify_access_token, verify_webhook_signature


# ── Gateway ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_intent_capture_refund(gateway):
    intent = await gateway.create_intent(Decimal("1500"), "BDT", uuid.uuid4(), uuid.uuid4())
    assert intent.status == GatewayPaymentStatus.INITIATED

    captured = await gateway.capture_payment(intent.id)
    assert captured.status == GatewayPaymentStatus.CAPTURED

    outcome = await gateway.refund_payment(intent.id, Decimal("500"), reason="Partial")
    assert outcome.status == GatewayPaymentStatus.REFUNDED
    assert outcome.amount == Decimal("500")
    assert gateway.refunds == [outcome]


@pytest.mark.asyncio
async def test_capture_unknown_intent(gateway):
    with pytest.raises(KeyError):
        await gateway.capture_payment("pi_missing")


@pytest.mark.asyncio
async def test_refund_needs_a_captured_intent(gateway):
    with pytest.raises(KeyError):
        await gateway.refund_payment("pi_missing", Decimal("100"))

    intent = await gateway.create_intent(Decimal("300"), "BDT", uuid.uuid4(), uuid.uuid4())
    with pytest.raises(ValueError):
        await gateway.refund_payment(intent.id, Decimal("100"))
    assert gateway.refunds == []


def test_gateway_selected_by_provider_name():
    assert isinstance(build_payment_gateway("local"), LocalPaymentGateway)
    assert isinstance(build_payment_gateway("LOCAL"), LocalPaymentGateway)
    with pytest.raises(ValueError):
        build_payment_gateway("carrier-pigeon")


@pytest.mark.asyncio
async def test_webhook_signature_checked(gateway):
    intent = await gateway.create_intent(Decimal("800"), "BDT", uuid.uuid4(), uuid.uuid4())
    payload = WebhookPayload(
        event_type="payment.captured",
        payment_id=intent.id,
        status=GatewayPaymentStatus.CAPTURED,
        amount=Decimal("800"),
    )

    payload.signature = "deadbeef"
    assert not (await gateway.process_webhook(payload)).success
    assert gateway.intents[intent.id].status == GatewayPaymentStatus.INITIATED

    payload.signature = gateway.sign(canonical_webhook_body(payload))
    result = await gateway.process_webhook(payload)
    assert result.success
    assert gateway.intents[intent.id].status == GatewayPaymentStatus.CAPTURED


def test_webhook_signature_helpers():
    body = b'{"paymentId": "pi_1"}'
    signature = sign_webhook_payload(body, "secret")
    assert verify_webhook_signature(body, signature, "secret")
    assert not verify_webhook_signature(body, signature, "other-secret")
    assert not verify_webhook_signature(body + b" ", signature, "secret")


def test_breaker_is_shared_per_service():
    assert circuit_breaker_manager.get_breaker("payment_gateway") is circuit_breaker_manager.get_breaker("payment_gateway")


def test_access_token_round_trip():
    user_id = uuid.uuid4()
    token, jti = create_access_token(user_id, ["ADMIN"], "admin@example.com")
    payload = verify_access_token(token)
    assert payload["sub"] == str(user_id)
    assert payload["roles"] == ["ADMIN"]
    assert payload["jti"] == jti


# ── Payout run lock ────────────────────────────────────────────────────────────

class _FakeRedis:
    def __init__(self):
        self.store = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        self.store.pop(key, None)


@pytest.mark.asyncio
async def test_payout_run_lock_is_exclusive():
    cache = RedisCache(_FakeRedis())
    start, end = "2025-02-24T00:00:00+00:00", "2025-03-03T00:00:00+00:00"

    assert await cache.lock_payout_run(start, end, "worker-1")
    assert not await cache.lock_payout_run(start, end, "worker-2")
    assert cache.client.store[payout_run_lock_key(start, end)] == "worker-1"

    await cache.release_payout_run(start, end)
    assert await cache.lock_payout_run(start, end, "worker-2")


# ── Dates ──────────────────────────────────────────────────────────────────────

def test_previous_period_ends_at_last_midnight():
    now = datetime(2025, 3, 3, 0, 10, tzinfo=timezone.utc)
    start, end = previous_period(now, 7)
    assert end == datetime(2025, 3, 3, tzinfo=timezone.utc)
    assert start == end - timedelta(days=7)


def test_day_bounds_and_ensure_utc():
    start, end = day_bounds(date(2025, 3, 3))
    assert start == datetime(2025, 3, 3, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)

    dhaka = timezone(timedelta(hours=6))
    assert ensure_utc(datetime(2025, 3, 3, 6, 0, tzinfo=dhaka)) == start
    assert ensure_utc(datetime(2025, 3, 3)).tzinfo == timezone.utc
    assert ensure_utc(None) is None
