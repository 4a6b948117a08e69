"""
services/payment/gateway.py
Payment-gateway port consumed by the settlement refund path.

Concrete gateway wire clients live outside this service. LocalPaymentGateway
is an in-process implementation with HMAC-signed webhooks, used for local
runs and tests. Outbound calls go through a pybreaker circuit breaker.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional, Protocol

from pybreaker import CircuitBreaker, CircuitBreakerListener

from config.settings import settings
from shared.utils.security import sign_webhook_payload, verify_webhook_signature

logger = logging.getLogger(__name__)


class GatewayPaymentStatus(str, PyEnum):
    INITIATED = "INITIATED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


@dataclass
class PaymentIntent:
    id: str
    amount: Decimal
    currency: str
    status: GatewayPaymentStatus
    gateway_ref: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundOutcome:
    refund_id: Optional[str]
    status: GatewayPaymentStatus
    amount: Decimal
    error: Optional[str] = None


@dataclass
class WebhookPayload:
    event_type: str
    payment_id: str
    status: GatewayPaymentStatus
    amount: Decimal
    currency: str = "BDT"
    gateway_ref: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    signature: Optional[str] = None


@dataclass
class WebhookResult:
    success: bool
    payment_id: Optional[str] = None
    status: Optional[GatewayPaymentStatus] = None


def canonical_webhook_body(payload: WebhookPayload) -> bytes:
    """The bytes a webhook signature is computed over."""
    return json.dumps({
        "eventType": payload.event_type,
        "paymentId": payload.payment_id,
        "status": GatewayPaymentStatus(payload.status).value,
        "amount": str(payload.amount),
    }, sort_keys=True).encode()


class PaymentGateway(Protocol):
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        booking_id: uuid.UUID,
        customer_id: uuid.UUID,
        metadata: Optional[dict] = None,
    ) -> PaymentIntent: ...

    async def capture_payment(
        self, payment_id: str, amount: Optional[Decimal] = None, metadata: Optional[dict] = None
    ) -> PaymentIntent: ...

    async def refund_payment(
        self,
        payment_id: str,
        amount: Decimal,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RefundOutcome: ...

    def verify_webhook(self, payload: bytes, signature: str) -> bool: ...

    async def process_webhook(self, payload: WebhookPayload) -> WebhookResult: ...


# ── Local gateway ─────────────────────────────────────────────

class LocalPaymentGateway:
    """In-process gateway: intents live in memory, webhooks are HMAC-signed."""

    def __init__(self, webhook_secret: Optional[str] = None):
        self._secret = webhook_secret if webhook_secret is not None else settings.PAYMENT_GATEWAY_WEBHOOK_SECRET
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[RefundOutcome] = []

    async def create_intent(self, amount, currency, booking_id, customer_id, metadata=None) -> PaymentIntent:
        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        intent = PaymentIntent(
            id=intent_id,
            amount=Decimal(str(amount)),
            currency=currency,
            status=GatewayPaymentStatus.INITIATED,
            gateway_ref=f"local_{intent_id}",
            metadata={"bookingId": str(booking_id), "customerId": str(customer_id), **(metadata or {})},
        )
        self.intents[intent_id] = intent
        return intent

    async def capture_payment(self, payment_id, amount=None, metadata=None) -> PaymentIntent:
        intent = self.intents.get(payment_id)
        if intent is None:
            raise KeyError(f"Unknown payment intent {payment_id}")
        intent.status = GatewayPaymentStatus.CAPTURED
        if amount is not None:
            intent.amount = Decimal(str(amount))
        intent.metadata.update(metadata or {})
        return intent

    async def refund_payment(self, payment_id, amount, reason=None, metadata=None) -> RefundOutcome:
        intent = self.intents.get(payment_id)
        if intent is None:
            raise KeyError(f"Unknown payment intent {payment_id}")
        if intent.status not in (GatewayPaymentStatus.CAPTURED, GatewayPaymentStatus.REFUNDED):
            raise ValueError(f"Payment intent {payment_id} is {intent.status.value}, not captured")
        intent.status = GatewayPaymentStatus.REFUNDED
        outcome = RefundOutcome(
            refund_id=f"rf_{uuid.uuid4().hex[:24]}",
            status=GatewayPaymentStatus.REFUNDED,
            amount=Decimal(str(amount)),
        )
        self.refunds.append(outcome)
        logger.info(f"Local refund {outcome.refund_id} of BDT {amount} for {payment_id}: {reason}")
        return outcome

    def sign(self, payload: bytes) -> str:
        return sign_webhook_payload(payload, self._secret)

    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        return verify_webhook_signature(payload, signature, self._secret)

    async def process_webhook(self, payload: WebhookPayload) -> WebhookResult:
        if not self.verify_webhook(canonical_webhook_body(payload), payload.signature or ""):
            logger.warning(f"Rejected webhook {payload.event_type} for {payload.payment_id}: bad signature")
            return WebhookResult(success=False, payment_id=payload.payment_id)

        intent = self.intents.get(payload.payment_id)
        if intent is not None:
            intent.status = payload.status
        return WebhookResult(success=True, payment_id=payload.payment_id, status=payload.status)


# ── Provider selection ────────────────────────────────────

PAYMENT_GATEWAYS = {
    "local": LocalPaymentGateway,
}


def build_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    """Instantiate the gateway named by PAYMENT_GATEWAY_PROVIDER."""
    provider = (provider or settings.PAYMENT_GATEWAY_PROVIDER).lower()
    try:
        gateway_cls = PAYMENT_GATEWAYS[provider]
    except KeyError:
        raise ValueError(
            f"Unknown payment gateway provider {provider!r}; expected one of {sorted(PAYMENT_GATEWAYS)}"
        ) from None
    logger.info(f"Using {provider} payment gateway")
    return gateway_cls()


# ── Resilience: Circuit Breaker ───────────────────────────────

class _BreakerLogListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(f"Circuit breaker {cb.name} moved {old_state.name} → {new_state.name}")


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=settings.GATEWAY_BREAKER_FAIL_MAX,
                reset_timeout=settings.GATEWAY_BREAKER_RESET_TIMEOUT,
                listeners=[_BreakerLogListener()],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()
