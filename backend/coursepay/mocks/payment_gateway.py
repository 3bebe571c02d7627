"""
Mock Payment Gateway

Configurable in-process stand-in for Stripe, used in demo mode and tests.
Intents live in memory; their status can be driven from tests or the demo
UI, and webhooks are signed in Stripe's header format so they go through
the same verification path as production deliveries.

Test behaviour:
- External transaction ids listed in DECLINE_TOKENS fail at intent creation
- Everything else starts in requires_payment_method until a status is set
"""
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import stripe

from ..exceptions import GatewayError, InvalidSignatureError
from ..gateways.port import IntentResult, PaymentGateway, RefundResult
from ..gateways.stripe_adapter import intent_to_settlement, webhook_to_settlement
from ..models.payments import PaymentMethod
from ..models.settlement import SettlementEvent
from ..services.signature_service import sign_stripe_style_payload

logger = logging.getLogger(__name__)


# Transaction ids that trigger specific gateway rejections
DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
}


@dataclass
class FakeIntent:
    id: str
    amount: int
    currency: str
    status: str
    client_secret: str
    metadata: Dict[str, str]
    last_payment_error: Optional[Dict[str, str]] = None
    refunds: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "object": "payment_intent",
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "client_secret": self.client_secret,
            "metadata": dict(self.metadata),
            "last_payment_error": self.last_payment_error,
        }


class FakeGateway(PaymentGateway):
    """Configurable fake card gateway."""

    def __init__(self, webhook_secret: str = "whsec_fake", tolerance_seconds: int = 300) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.available = True
        self.intents: Dict[str, FakeIntent] = {}
        self.calls: List[Dict[str, Any]] = []

    def configure(self, available: bool) -> None:
        """Simulate a provider outage with available=False."""
        self.available = available

    def set_intent_status(
        self,
        gateway_reference_id: str,
        status: str,
        failure_message: Optional[str] = None
    ) -> FakeIntent:
        """Drive an intent to a Stripe status (succeeded, canceled, requires_action, ...)."""
        intent = self.intents[gateway_reference_id]
        intent.status = status
        if failure_message:
            intent.last_payment_error = {"code": "card_declined", "message": failure_message}
        return intent

    def _require_available(self, operation: str) -> None:
        if not self.available:
            raise GatewayError("Payment provider unavailable", details={"provider": "fake", "operation": operation})

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        method: PaymentMethod,
        external_transaction_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        self.calls.append({
            "method": "create_intent",
            "amount_cents": amount_cents,
            "currency": currency,
            "payment_method": method.value,
            "idempotency_key": external_transaction_id,
        })
        self._require_available("create_intent")

        if external_transaction_id in DECLINE_TOKENS:
            raise GatewayError(
                "Payment provider rejected the request",
                details={"provider": "fake", "reason": DECLINE_TOKENS[external_transaction_id]}
            )

        # Same idempotency key returns the same intent
        for intent in self.intents.values():
            if intent.metadata.get("transaction_id") == external_transaction_id:
                return IntentResult(intent.id, intent.status, intent.client_secret)

        intent_id = f"pi_fake_{uuid.uuid4().hex[:16]}"
        intent = FakeIntent(
            id=intent_id,
            amount=amount_cents,
            currency=currency.lower(),
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            metadata={"transaction_id": external_transaction_id, **(metadata or {})}
        )
        self.intents[intent_id] = intent
        logger.info(f"[fake gateway] created intent {intent_id} for {external_transaction_id}")
        return IntentResult(intent.id, intent.status, intent.client_secret)

    async def retrieve_intent(
        self,
        gateway_reference_id: str,
        external_transaction_id: Optional[str] = None,
    ) -> Optional[SettlementEvent]:
        self.calls.append({"method": "retrieve_intent", "gateway_reference_id": gateway_reference_id})
        self._require_available("retrieve_intent")

        intent = self.intents.get(gateway_reference_id)
        if intent is None:
            raise GatewayError(
                "Could not retrieve payment status",
                details={"provider": "fake", "gateway_reference_id": gateway_reference_id}
            )
        return intent_to_settlement(intent.to_dict(), "intent_poll", external_transaction_id)

    async def create_refund(self, gateway_reference_id: str, amount_cents: int, reason: str) -> RefundResult:
        self.calls.append({
            "method": "create_refund",
            "gateway_reference_id": gateway_reference_id,
            "amount_cents": amount_cents,
            "reason": reason,
        })
        if not self.available:
            return RefundResult(success=False, failure_reason="Payment provider unavailable")

        refund_id = f"re_fake_{uuid.uuid4().hex[:12]}"
        intent = self.intents.get(gateway_reference_id)
        if intent is not None:
            intent.refunds.append(refund_id)
        return RefundResult(success=True, gateway_refund_id=refund_id, gateway_status="succeeded")

    # ========================================================================
    # Webhooks
    # ========================================================================

    def build_webhook(self, event_type: str, gateway_reference_id: str) -> bytes:
        """Serialize a Stripe-shaped webhook event for one of our intents."""
        intent = self.intents[gateway_reference_id]
        event = {
            "id": f"evt_fake_{uuid.uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "data": {"object": intent.to_dict()},
        }
        return json.dumps(event).encode("utf-8")

    def sign_webhook(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        return sign_stripe_style_payload(payload.decode("utf-8"), self.webhook_secret, timestamp)

    def parse_webhook(self, payload: bytes, signature_header: str) -> Optional[SettlementEvent]:
        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[fake gateway] rejected webhook: {e}")
            raise InvalidSignatureError("Invalid webhook signature") from e

        return webhook_to_settlement(json.loads(body))
