"""
Pydantic Settlement Models

The normalized vocabulary every gateway adapter translates into, and the
result the reconciliation engine hands back to entry points.
"""
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, model_validator

from .payments import PaymentRecord, EnrollmentRecord, PaymentStatus


class SettlementOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REQUIRES_ACTION = "requires_action"


OUTCOME_TARGETS = {
    SettlementOutcome.SUCCEEDED: PaymentStatus.COMPLETED,
    SettlementOutcome.FAILED: PaymentStatus.FAILED,
    SettlementOutcome.CANCELED: PaymentStatus.CANCELED,
    SettlementOutcome.REQUIRES_ACTION: PaymentStatus.REQUIRES_ACTION,
}


class SettlementEvent(BaseModel):
    """
    Provider-agnostic settlement signal.

    At least one of external_transaction_id / gateway_reference_id must be
    present. The engine looks the payment up by the external id first and
    falls back to the gateway reference.
    """
    outcome: SettlementOutcome
    external_transaction_id: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    source: str = Field(default="unknown", description="Entry point that produced the event")
    failure_reason: Optional[str] = None
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def require_a_key(self):
        """An event with no idempotency key cannot target a payment."""
        if not self.external_transaction_id and not self.gateway_reference_id:
            raise ValueError("SettlementEvent needs external_transaction_id or gateway_reference_id")
        return self

    @property
    def idempotency_key(self) -> str:
        return self.external_transaction_id or self.gateway_reference_id

    @property
    def target_status(self) -> PaymentStatus:
        return OUTCOME_TARGETS[self.outcome]


class SettlementResult(BaseModel):
    """
    Outcome of applying a SettlementEvent (or refund) to a payment.

    already_applied=True means the signal was a duplicate or arrived behind
    the current state and nothing was written.
    """
    payment: PaymentRecord
    enrollment: Optional[EnrollmentRecord] = None
    already_applied: bool
    enrollment_confirmed: bool = False

    @property
    def is_first_completion(self) -> bool:
        return not self.already_applied and self.payment.status == PaymentStatus.COMPLETED


class EnrollmentConfirmed(BaseModel):
    """Published once per first-time settlement to outward subscribers."""
    user_id: str
    course_id: str
    enrollment_id: str
