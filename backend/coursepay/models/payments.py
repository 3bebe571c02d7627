"""
Pydantic Payment, Enrollment and Capacity Models

Read-side snapshots returned by the stores. Live ORM rows never leave a
session; everything the engine hands back to callers is one of these.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class EnrollmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Enrollments that occupy a seat in the course capacity ledger
SEAT_HOLDING_STATUSES = frozenset({
    EnrollmentStatus.CONFIRMED,
    EnrollmentStatus.ACTIVE,
    EnrollmentStatus.COMPLETED,
})


class PaymentMethod(str, Enum):
    # Card family, settled through the PaymentGateway (Stripe)
    CARD = "card"
    VISA = "visa"
    MASTERCARD = "mastercard"
    SEPA_DEBIT = "sepa_debit"
    SOFORT = "sofort"
    GIROPAY = "giropay"
    IDEAL = "ideal"
    BANCONTACT = "bancontact"
    EPS = "eps"
    P24 = "p24"
    # Redirect-based mobile banking, settled through provider callbacks
    BKASH = "bkash"
    NAGAD = "nagad"
    SSLCOMMERZ = "sslcommerz"
    # Settled through the generic verify call
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"


class PaymentRail(str, Enum):
    CARD = "card"
    MOBILE_BANKING = "mobile_banking"
    MANUAL = "manual"


_MOBILE_BANKING_METHODS = {PaymentMethod.BKASH, PaymentMethod.NAGAD, PaymentMethod.SSLCOMMERZ}
_MANUAL_METHODS = {PaymentMethod.BANK_TRANSFER, PaymentMethod.PAYPAL}


def rail_for(method: PaymentMethod) -> PaymentRail:
    """Return the settlement rail a payment method travels on."""
    if method in _MOBILE_BANKING_METHODS:
        return PaymentRail.MOBILE_BANKING
    if method in _MANUAL_METHODS:
        return PaymentRail.MANUAL
    return PaymentRail.CARD


class PaymentRecord(BaseModel):
    """
    Snapshot of a payment attempt.

    external_transaction_id is the idempotency key for client-side entry
    points; gateway_reference_id is the provider id used by gateway-originated
    ones. settled_at is written exactly once, on entry into completed.
    """
    id: str
    user_id: str
    course_id: str
    amount_cents: int = Field(ge=0)
    currency: str
    method: PaymentMethod
    external_transaction_id: str
    gateway_reference_id: Optional[str] = None
    status: PaymentStatus
    failure_reason: Optional[str] = None
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)
    settled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class EnrollmentRecord(BaseModel):
    """Snapshot of the single enrollment a user holds for a course."""
    id: str
    user_id: str
    course_id: str
    payment_id: str
    status: EnrollmentStatus
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CapacitySnapshot(BaseModel):
    course_id: str
    seats_taken: int
    seats_max: int

    @property
    def is_full(self) -> bool:
        return self.seats_taken >= self.seats_max


class AdmissionRequest(BaseModel):
    """A prospective enrollment asking for a pending payment/enrollment pair."""
    user_id: str
    course_id: str
    method: PaymentMethod
    external_transaction_id: Optional[str] = None


class Admission(BaseModel):
    """
    Pending pair handed back by admission.

    created=False means the caller replayed a transaction id it had already
    used and got the original pair back.
    """
    payment: PaymentRecord
    enrollment: EnrollmentRecord
    created: bool = True
