"""
Payments API Endpoints

Settlement entry points and payment queries. Every entry point that can
change a payment builds a SettlementEvent and hands it to the
reconciliation engine:
- POST /confirm: client confirmation after the card widget succeeded
- GET /intents/{gateway_reference_id}: intent-status poll
- POST /verify: generic verify for manual rails
- POST /callbacks/{provider}: mobile banking provider callbacks
- POST /{transaction_id}/cancel: student abandons the payment
"""
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional, Union
import logging

from ..exceptions import (
    ForeignConfirmationError,
    PaymentFailedError,
    RailMismatchError,
    UnknownPaymentError,
)
from ..gateways.callbacks import CallbackAdapter, SIGNATURE_HEADER, get_callback_adapter
from ..gateways.manual import ManualVerificationAdapter
from ..gateways.port import PaymentGateway
from ..models.api import (
    ConfirmPaymentRequest,
    PendingSettlementResponse,
    RefundRequest,
    SettlementResponse,
    VerifyPaymentRequest,
)
from ..models.payments import PaymentRail, PaymentRecord, PaymentStatus, rail_for
from ..models.settlement import SettlementEvent, SettlementOutcome, SettlementResult
from ..services import payment_store
from ..services.checkout_service import CheckoutService
from ..services.reconciliation import ReconciliationEngine
from .deps import (
    get_callback_adapters,
    get_checkout_service,
    get_engine,
    get_gateway,
    get_manual_adapter,
    get_session,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def settlement_response(result: SettlementResult) -> SettlementResponse:
    """
    Render a settlement for the student.

    A failed or canceled payment surfaces as 402 payment:failed, both the
    first time and on every duplicate.
    """
    payment = result.payment
    if payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
        raise PaymentFailedError(details={
            "transaction_id": payment.external_transaction_id,
            "payment_status": payment.status.value,
            "failure_reason": payment.failure_reason
        })
    return SettlementResponse.from_result(result)


def pending_response(payment: PaymentRecord) -> JSONResponse:
    body = PendingSettlementResponse(
        transaction_id=payment.external_transaction_id,
        payment_status=payment.status
    )
    return JSONResponse(status_code=202, content=body.model_dump(mode="json"))


async def _require_payment(db: AsyncSession, transaction_id: str) -> PaymentRecord:
    payment = await payment_store.get_by_external_id(db, transaction_id)
    if payment is None:
        raise UnknownPaymentError(
            f"No payment for transaction {transaction_id}",
            details={"transaction_id": transaction_id}
        )
    return payment


def _require_rail(payment: PaymentRecord, rail: PaymentRail, entry_point: str) -> None:
    if rail_for(payment.method) != rail:
        raise RailMismatchError(
            f"{entry_point} cannot settle a {payment.method.value} payment",
            details={"transaction_id": payment.external_transaction_id, "method": payment.method.value}
        )


# ============================================================================
# Settlement entry points
# ============================================================================

@router.post("/confirm", response_model=SettlementResponse)
async def confirm_payment(
    body: ConfirmPaymentRequest,
    db: AsyncSession = Depends(get_session),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PaymentGateway = Depends(get_gateway)
) -> Union[SettlementResponse, JSONResponse]:
    """
    Client confirmation.

    The client's word is never trusted on its own: the intent named by
    gateway_confirmation_id is re-read from the gateway and its status is
    what gets applied. A repeated confirmation returns the same body. Only
    card-rail payments are confirmed here, and only with their own intent.

    Returns:
        200 SettlementResponse, or 202 while the gateway still reports the
        intent in flight
    """
    payment = await _require_payment(db, body.transaction_id)
    _require_rail(payment, PaymentRail.CARD, "Client confirmation")
    if payment.gateway_reference_id and payment.gateway_reference_id != body.gateway_confirmation_id:
        raise ForeignConfirmationError(
            f"Confirmation {body.gateway_confirmation_id} does not belong to {body.transaction_id}",
            details={"transaction_id": body.transaction_id, "gateway_confirmation_id": body.gateway_confirmation_id}
        )

    event = await gateway.retrieve_intent(body.gateway_confirmation_id, external_transaction_id=body.transaction_id)
    if event is None:
        return pending_response(payment)

    result = await engine.apply_settlement(event.model_copy(update={"source": "client_confirm"}))
    return settlement_response(result)


@router.get("/intents/{gateway_reference_id}", response_model=SettlementResponse)
async def poll_intent(
    gateway_reference_id: str,
    db: AsyncSession = Depends(get_session),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PaymentGateway = Depends(get_gateway)
) -> Union[SettlementResponse, JSONResponse]:
    """Intent-status poll: ask the gateway and apply whatever it reports."""
    payment = await payment_store.get_by_gateway_reference(db, gateway_reference_id)
    if payment is None:
        raise UnknownPaymentError(
            f"No payment for gateway reference {gateway_reference_id}",
            details={"gateway_reference_id": gateway_reference_id}
        )
    _require_rail(payment, PaymentRail.CARD, "Intent poll")

    event = await gateway.retrieve_intent(gateway_reference_id, external_transaction_id=payment.external_transaction_id)
    if event is None:
        return pending_response(payment)

    return settlement_response(await engine.apply_settlement(event))


@router.post("/verify", response_model=SettlementResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_session),
    engine: ReconciliationEngine = Depends(get_engine),
    adapter: ManualVerificationAdapter = Depends(get_manual_adapter)
) -> SettlementResponse:
    """
    Generic verify for bank transfer / PayPal style flows.

    Card and mobile banking payments are refused with 400
    payment:rail_mismatch; they settle only through their gateway.

    Request Body:
        {
            "transaction_id": str,
            "gateway_data": {"verified": bool, "payment_gateway_id": str, ...}
        }
    """
    payment = await _require_payment(db, body.transaction_id)
    _require_rail(payment, PaymentRail.MANUAL, "Generic verify")

    event = adapter.to_event(body.transaction_id, body.gateway_data)
    return settlement_response(await engine.apply_settlement(event))


@router.post("/callbacks/{provider}")
async def provider_callback(
    provider: str,
    request: Request,
    x_callback_signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    engine: ReconciliationEngine = Depends(get_engine),
    adapters: Dict[str, CallbackAdapter] = Depends(get_callback_adapters)
) -> Dict[str, Any]:
    """
    Mobile banking callback (bkash, nagad, sslcommerz).

    The body is verified against X-Callback-Signature before anything is read
    from it. Callbacks with an unknown status are acknowledged and ignored.
    """
    adapter = get_callback_adapter(adapters, provider)
    body = await request.json()
    if not isinstance(body, dict):
        raise ValueError("Callback body must be a JSON object")

    event = adapter.parse(body, x_callback_signature)
    if event is None:
        return {"received": True, "ignored": True}

    return settlement_response(await engine.apply_settlement(event)).model_dump(mode="json")


@router.post("/{transaction_id}/cancel", response_model=SettlementResponse)
async def cancel_payment(
    transaction_id: str,
    engine: ReconciliationEngine = Depends(get_engine)
) -> SettlementResponse:
    """Student abandons the payment. No-op once the payment has settled."""
    result = await engine.apply_settlement(SettlementEvent(
        outcome=SettlementOutcome.CANCELED,
        external_transaction_id=transaction_id,
        source="client_cancel",
        failure_reason="canceled_by_user"
    ))
    return SettlementResponse.from_result(result)


@router.post("/{transaction_id}/refund", response_model=SettlementResponse)
async def refund_payment(
    transaction_id: str,
    body: RefundRequest,
    checkout_service: CheckoutService = Depends(get_checkout_service)
) -> SettlementResponse:
    """Refund a completed payment and release the seat it paid for."""
    result = await checkout_service.refund(transaction_id, body.reason)
    return SettlementResponse.from_result(result)


# ============================================================================
# Queries
# ============================================================================

@router.get("/stats")
async def payment_stats(db: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    """Payment counts per status and settled revenue."""
    return await payment_store.get_stats(db)


@router.get("/user/{user_id}")
async def user_payment_history(
    user_id: str,
    db: AsyncSession = Depends(get_session)
) -> Dict[str, Any]:
    payments = await payment_store.list_for_user(db, user_id)
    return {
        "user_id": user_id,
        "payments": payments,
        "count": len(payments)
    }


@router.get("/{transaction_id}", response_model=PaymentRecord)
async def get_payment(
    transaction_id: str,
    db: AsyncSession = Depends(get_session)
) -> PaymentRecord:
    return await _require_payment(db, transaction_id)
