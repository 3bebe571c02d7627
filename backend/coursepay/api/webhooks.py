"""
Webhook Receiver

Stripe delivers payment_intent.* events here. The raw body is verified
against the Stripe-Signature header before it is parsed.
"""
from fastapi import APIRouter, Depends, Header, Request
from typing import Dict, Any, Optional
import logging

from ..exceptions import InvalidSignatureError, UnknownPaymentError
from ..gateways.port import PaymentGateway
from ..services.reconciliation import ReconciliationEngine
from .deps import get_engine, get_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PaymentGateway = Depends(get_gateway)
) -> Dict[str, Any]:
    """
    Receive a Stripe webhook.

    Returns:
        {"received": true, ...} for every authentic delivery, including
        duplicates and event types that carry no settlement, so Stripe stops
        retrying. Failed payments are acknowledged too; the 402 retry prompt
        is for students, not for the gateway.

    Errors:
        400 gateway:signature_invalid
    """
    if not stripe_signature:
        logger.warning("Stripe webhook without signature header")
        raise InvalidSignatureError("Missing Stripe-Signature header")

    payload = await request.body()
    event = gateway.parse_webhook(payload, stripe_signature)
    if event is None:
        return {"received": True, "ignored": True}

    try:
        result = await engine.apply_settlement(event)
    except UnknownPaymentError as e:
        # Intents created outside this service share the Stripe account
        logger.warning(f"Stripe webhook for unknown payment: {e.details}")
        return {"received": True, "ignored": True, "reason": e.error_code}

    return {
        "received": True,
        "transaction_id": result.payment.external_transaction_id,
        "payment_status": result.payment.status.value,
        "already_applied": result.already_applied
    }
