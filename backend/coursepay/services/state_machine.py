"""
Payment State Machine

Forward-only ordering of payment statuses. Settlement signals that land on
the current status, behind it, or on any terminal status resolve to a no-op
instead of an error, which is what makes duplicate and reordered signals safe.
"""
from enum import Enum
from typing import Dict, FrozenSet

from ..models.payments import PaymentStatus


class Resolution(str, Enum):
    APPLY = "apply"
    NOOP = "noop"


STATUS_RANK: Dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PROCESSING: 1,
    PaymentStatus.REQUIRES_ACTION: 2,
    PaymentStatus.COMPLETED: 3,
    PaymentStatus.FAILED: 3,
    PaymentStatus.CANCELED: 3,
    PaymentStatus.REFUNDED: 4,
}

TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELED,
    PaymentStatus.REFUNDED,
})

_SETTLED = {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELED}

LEGAL_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.REQUIRES_ACTION} | _SETTLED),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.REQUIRES_ACTION} | _SETTLED),
    # requires_action may fall back to processing once the customer completes the step
    PaymentStatus.REQUIRES_ACTION: frozenset({PaymentStatus.PROCESSING} | _SETTLED),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


def resolve(current: PaymentStatus, target: PaymentStatus) -> Resolution:
    """
    Decide what a settlement signal does to a payment.

    Terminal statuses absorb every settlement signal; the first terminal
    outcome wins. Refunds are an explicit action and never go through here.

    Args:
        current: Status stored on the payment
        target: Status the signal implies

    Returns:
        APPLY if the transition is a legal forward move, NOOP otherwise
    """
    if current == target or is_terminal(current):
        return Resolution.NOOP
    if target == PaymentStatus.REFUNDED:
        return Resolution.NOOP
    if can_transition(current, target):
        return Resolution.APPLY
    return Resolution.NOOP


def is_conflicting_outcome(current: PaymentStatus, target: PaymentStatus) -> bool:
    """A different settled outcome arriving after the payment already settled."""
    return current in _SETTLED and target in _SETTLED and current != target
