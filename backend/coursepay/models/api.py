"""
Pydantic Request/Response Models for the HTTP surface.
"""
from typing import Optional, Dict, Any, Literal
from pydantic import BaseModel, Field

from .payments import PaymentMethod, PaymentStatus, EnrollmentStatus
from .settlement import SettlementResult


class CheckoutRequest(BaseModel):
    user_id: str
    course_id: str
    method: PaymentMethod
    transaction_id: Optional[str] = Field(
        default=None,
        description="Caller-supplied idempotency key; generated when omitted"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "user_id": "user_demo_001",
                "course_id": "course_b1_evening",
                "method": "card",
                "transaction_id": "TX4821730a9f"
            }
        }
    }


class CheckoutResponse(BaseModel):
    transaction_id: str
    payment_id: str
    enrollment_id: str
    payment_status: PaymentStatus
    amount_cents: int
    currency: str
    method: PaymentMethod
    gateway_reference_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Client confirmation after the card widget reports success."""
    transaction_id: str
    gateway_confirmation_id: str


class VerifyPaymentRequest(BaseModel):
    """Generic verify call used by manual and bank-transfer flows."""
    transaction_id: str
    gateway_data: Dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    reason: str = Field(default="requested_by_customer", max_length=500)


class SettlementResponse(BaseModel):
    transaction_id: str
    payment_status: PaymentStatus
    enrollment_id: Optional[str] = None
    enrollment_status: Optional[EnrollmentStatus] = None
    already_applied: bool

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettlementResponse":
        enrollment = result.enrollment
        return cls(
            transaction_id=result.payment.external_transaction_id,
            payment_status=result.payment.status,
            enrollment_id=enrollment.id if enrollment else None,
            enrollment_status=enrollment.status if enrollment else None,
            already_applied=result.already_applied,
        )


class PendingSettlementResponse(BaseModel):
    """Gateway still reports the payment as in flight."""
    transaction_id: str
    payment_status: PaymentStatus
    state: Literal["in_flight"] = "in_flight"
