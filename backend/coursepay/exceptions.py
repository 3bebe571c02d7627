"""
CoursePay Exception Hierarchy

Error codes shared by the reconciliation engine, gateway adapters and the API.
Every error carries the HTTP status it maps to at the boundary.
"""
from typing import Optional, Dict, Any


class CoursePayError(Exception):
    """
    Base exception for all CoursePay errors.

    Subclasses fix the error code and HTTP status; the API layer renders
    them with to_dict().
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class UnknownPaymentError(CoursePayError):
    """
    No payment record matches the settlement signal.

    Data-integrity guard: the engine never fabricates a payment, and the
    condition is not retried.
    """

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:unknown", message, details)


class InvalidSignatureError(CoursePayError):
    """
    Gateway payload failed authenticity verification.

    Examples:
    - Stripe-Signature header does not match the webhook secret
    - Mobile banking callback HMAC mismatch
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:signature_invalid", message, details)


class CourseFullError(CoursePayError):
    """Admission rejected because seats_taken >= seats_max at check time."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("enrollment:course_full", message, details)


class CourseNotFoundError(CoursePayError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("course:not_found", message, details)


class CourseUnavailableError(CoursePayError):
    """Course is not open for enrollment (status other than upcoming)."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("course:unavailable", message, details)


class UserNotFoundError(CoursePayError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("user:not_found", message, details)


class AlreadyEnrolledError(CoursePayError):
    """User already holds a confirmed, active or completed enrollment."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("enrollment:already_enrolled", message, details)


class EnrollmentConflictError(CoursePayError):
    """Two checkouts for the same (user, course) collided on insert."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("enrollment:conflict", message, details)


class EnrollmentNotFoundError(CoursePayError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("enrollment:not_found", message, details)


class WithdrawalClosedError(CoursePayError):
    """Withdrawal requested after the course started."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("enrollment:withdrawal_closed", message, details)


class DuplicateTransactionError(CoursePayError):
    """Caller-supplied transaction id already belongs to another user or course."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:duplicate_transaction", message, details)


class RailMismatchError(CoursePayError):
    """
    Settlement entry point does not serve the payment's method.

    Example:
        Generic verify called for a card payment; card payments only settle
        through the gateway.
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:rail_mismatch", message, details)


class ForeignConfirmationError(CoursePayError):
    """Confirmation names a gateway intent created for a different payment."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:foreign_confirmation", message, details)


class GatewayReferenceConflictError(CoursePayError):
    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:gateway_reference_conflict", message, details)


class InvalidTransitionError(CoursePayError):
    """
    Requested an explicit action the current state does not allow.

    Settlement signals never raise this; they resolve to an idempotent
    no-op instead. Only explicit actions (refund, withdrawal, enrollment
    progression) can.
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:invalid_transition", message, details)


class ConcurrentUpdateError(CoursePayError):
    """Compare-and-swap kept losing to concurrent writers."""

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:concurrent_update", message, details)


class PaymentFailedError(CoursePayError):
    """
    Settlement resolved to failed or canceled.

    Surfaced to the student as a retry prompt.
    """

    status_code = 402

    def __init__(
        self,
        message: str = "Payment failed. Please try again.",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__("payment:failed", message, details)


class GatewayError(CoursePayError):
    """Payment provider could not be reached or rejected the request."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:unavailable", message, details)


class UnknownProviderError(CoursePayError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:unknown_provider", message, details)
