"""
Stripe payment gateway adapter.

Uses the stripe-python SDK to:
- Create PaymentIntents (idempotent on the external transaction id)
- Retrieve PaymentIntents for the intent-status poll and client confirmation
- Create refunds
- Verify webhook signatures with the endpoint signing secret

The SDK is synchronous; calls run in a worker thread so the event loop is
never blocked on the network.
"""
import asyncio
import json
from typing import Any, Dict, Optional
import logging

import stripe

from ..exceptions import ForeignConfirmationError, GatewayError, InvalidSignatureError
from ..models.payments import PaymentMethod
from ..models.settlement import SettlementEvent, SettlementOutcome
from .port import IntentResult, PaymentGateway, RefundResult

logger = logging.getLogger(__name__)


# Webhook event type -> settlement outcome. Every other type is ignored.
WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": SettlementOutcome.SUCCEEDED,
    "payment_intent.payment_failed": SettlementOutcome.FAILED,
    "payment_intent.canceled": SettlementOutcome.CANCELED,
    "payment_intent.requires_action": SettlementOutcome.REQUIRES_ACTION,
}

# Intent status -> settlement outcome. Missing statuses are still in flight.
INTENT_OUTCOMES = {
    "succeeded": SettlementOutcome.SUCCEEDED,
    "canceled": SettlementOutcome.CANCELED,
    "requires_action": SettlementOutcome.REQUIRES_ACTION,
}

# Card-family methods as Stripe payment_method_types
_STRIPE_METHOD_TYPES = {
    PaymentMethod.CARD: "card",
    PaymentMethod.VISA: "card",
    PaymentMethod.MASTERCARD: "card",
    PaymentMethod.SEPA_DEBIT: "sepa_debit",
    PaymentMethod.SOFORT: "sofort",
    PaymentMethod.GIROPAY: "giropay",
    PaymentMethod.IDEAL: "ideal",
    PaymentMethod.BANCONTACT: "bancontact",
    PaymentMethod.EPS: "eps",
    PaymentMethod.P24: "p24",
}


def _field(obj: Any, key: str) -> Any:
    """Read a key from a plain dict or a StripeObject."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _audit_metadata(intent: Any) -> Dict[str, Any]:
    """Non-sensitive intent fields kept on the payment for the audit trail."""
    payment_method = _field(intent, "payment_method")
    latest_charge = _field(intent, "latest_charge")
    return {
        "stripe_status": _field(intent, "status"),
        "payment_method": payment_method if isinstance(payment_method, str) else None,
        "latest_charge": latest_charge if isinstance(latest_charge, str) else None,
    }


def intent_to_settlement(
    intent: Any,
    source: str,
    external_transaction_id: Optional[str] = None,
) -> Optional[SettlementEvent]:
    """
    Map a PaymentIntent onto a SettlementEvent.

    requires_payment_method only counts as failed once a payment error was
    recorded; before that the customer simply has not paid yet.

    Returns:
        None while the intent is still in flight

    Raises:
        ForeignConfirmationError: external_transaction_id was given and the
            intent was created for another transaction
    """
    intent_transaction_id = _field(_field(intent, "metadata"), "transaction_id")
    if external_transaction_id and intent_transaction_id != external_transaction_id:
        logger.warning(
            f"Intent {_field(intent, 'id')} belongs to {intent_transaction_id}, "
            f"not {external_transaction_id}"
        )
        raise ForeignConfirmationError(
            f"Intent {_field(intent, 'id')} was not created for {external_transaction_id}",
            details={"gateway_reference_id": _field(intent, "id"), "transaction_id": external_transaction_id}
        )

    status = _field(intent, "status")
    last_error = _field(intent, "last_payment_error")
    outcome = INTENT_OUTCOMES.get(status)

    if outcome is None and status == "requires_payment_method" and last_error:
        outcome = SettlementOutcome.FAILED
    if outcome is None:
        return None

    failure_reason = None
    if outcome == SettlementOutcome.FAILED:
        failure_reason = _field(last_error, "message") or _field(last_error, "code")

    return SettlementEvent(
        outcome=outcome,
        external_transaction_id=intent_transaction_id,
        gateway_reference_id=_field(intent, "id"),
        source=source,
        failure_reason=failure_reason,
        provider_metadata=_audit_metadata(intent)
    )


def webhook_to_settlement(event: Dict[str, Any]) -> Optional[SettlementEvent]:
    """
    Translate a verified Stripe webhook event body.

    Shared with the fake gateway so both produce identical events for
    identical payloads.
    """
    event_type = event.get("type")
    outcome = WEBHOOK_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info(f"Ignoring Stripe webhook type {event_type}")
        return None

    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}
    last_error = intent.get("last_payment_error") or {}

    return SettlementEvent(
        outcome=outcome,
        external_transaction_id=metadata.get("transaction_id"),
        gateway_reference_id=intent.get("id"),
        source="stripe_webhook",
        failure_reason=last_error.get("message") if outcome == SettlementOutcome.FAILED else None,
        provider_metadata={"stripe_event_id": event.get("id"), **_audit_metadata(intent)}
    )


class StripeGateway(PaymentGateway):
    """Production Stripe gateway adapter."""

    def __init__(self, api_key: str, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        method: PaymentMethod,
        external_transaction_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                idempotency_key=external_transaction_id,
                amount=amount_cents,
                currency=currency.lower(),
                payment_method_types=[_STRIPE_METHOD_TYPES.get(method, "card")],
                metadata={"transaction_id": external_transaction_id, **(metadata or {})}
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe intent creation failed for {external_transaction_id}: {e}")
            raise GatewayError(
                "Payment provider rejected the request",
                details={"provider": "stripe", "reason": getattr(e, "user_message", None) or str(e)}
            ) from e

        logger.info(f"Created Stripe intent {intent.id} for {external_transaction_id}")
        return IntentResult(
            gateway_reference_id=intent.id,
            gateway_status=intent.status,
            client_secret=intent.client_secret
        )

    async def retrieve_intent(
        self,
        gateway_reference_id: str,
        external_transaction_id: Optional[str] = None,
    ) -> Optional[SettlementEvent]:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, gateway_reference_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe intent lookup failed for {gateway_reference_id}: {e}")
            raise GatewayError(
                "Could not retrieve payment status",
                details={"provider": "stripe", "gateway_reference_id": gateway_reference_id}
            ) from e

        return intent_to_settlement(intent, "intent_poll", external_transaction_id)

    async def create_refund(self, gateway_reference_id: str, amount_cents: int, reason: str) -> RefundResult:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.api_key,
                idempotency_key=f"refund-{gateway_reference_id}",
                payment_intent=gateway_reference_id,
                amount=amount_cents,
                metadata={"reason": reason}
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {gateway_reference_id}: {e}")
            return RefundResult(success=False, failure_reason=str(e))

        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            gateway_refund_id=refund.id,
            gateway_status=refund.status
        )

    def parse_webhook(self, payload: bytes, signature_header: str) -> Optional[SettlementEvent]:
        """Verify the Stripe-Signature header, then map the event type."""
        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
            raise InvalidSignatureError("Invalid Stripe webhook signature") from e

        return webhook_to_settlement(json.loads(body))
