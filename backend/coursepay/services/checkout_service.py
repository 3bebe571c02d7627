"""
Checkout Service

Orchestrates a checkout across the collaborators, the reconciliation engine
and the gateway for the chosen payment rail:
- Card family: create a gateway intent and record its reference
- Mobile banking: hand back the provider redirect and mark the payment processing
- Manual (bank transfer, PayPal): nothing to do until the verify call

Gateway calls happen after admission committed and outside any database
transaction.
"""
from datetime import datetime
from typing import Dict, Optional
import logging

from ..collaborators import CourseDirectory, UserDirectory
from ..exceptions import (
    CourseNotFoundError,
    CourseUnavailableError,
    GatewayError,
    UserNotFoundError,
    WithdrawalClosedError,
    EnrollmentNotFoundError,
    UnknownPaymentError,
)
from ..gateways.callbacks import CallbackAdapter
from ..gateways.port import PaymentGateway
from ..models.api import CheckoutRequest, CheckoutResponse
from ..models.directory import CourseInfo
from ..models.payments import AdmissionRequest, EnrollmentRecord, PaymentRail, PaymentStatus, rail_for
from ..models.settlement import SettlementEvent, SettlementOutcome, SettlementResult
from . import enrollment_store, payment_store
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway: PaymentGateway,
        callback_adapters: Dict[str, CallbackAdapter],
        courses: CourseDirectory,
        users: UserDirectory
    ):
        self.engine = engine
        self.gateway = gateway
        self.callback_adapters = callback_adapters
        self.courses = courses
        self.users = users

    async def _require_course(self, course_id: str) -> CourseInfo:
        course = await self.courses.get_course(course_id)
        if course is None:
            raise CourseNotFoundError(f"Course {course_id} not found")
        return course

    async def start_checkout(self, request: CheckoutRequest) -> CheckoutResponse:
        """
        Admit the student and start the payment on the method's rail.

        Returns:
            CheckoutResponse with client_secret (card) or redirect_url (mobile banking)

        Raises:
            CourseNotFoundError, CourseUnavailableError, UserNotFoundError,
            CourseFullError, AlreadyEnrolledError, DuplicateTransactionError,
            EnrollmentConflictError, GatewayError
        """
        course = await self._require_course(request.course_id)
        if course.status != "upcoming":
            raise CourseUnavailableError(
                f"Course {course.course_id} is not open for enrollment",
                details={"status": course.status}
            )

        if await self.users.get_user(request.user_id) is None:
            raise UserNotFoundError(f"User {request.user_id} not found")

        admission = await self.engine.admit(
            AdmissionRequest(
                user_id=request.user_id,
                course_id=request.course_id,
                method=request.method,
                external_transaction_id=request.transaction_id
            ),
            course
        )
        payment = admission.payment

        client_secret: Optional[str] = None
        redirect_url: Optional[str] = None
        rail = rail_for(request.method)

        if rail == PaymentRail.CARD and payment.status == PaymentStatus.PENDING:
            try:
                intent = await self.gateway.create_intent(
                    amount_cents=payment.amount_cents,
                    currency=payment.currency,
                    method=request.method,
                    external_transaction_id=payment.external_transaction_id,
                    metadata={"user_id": payment.user_id, "course_id": payment.course_id}
                )
            except GatewayError as e:
                await self.engine.apply_settlement(SettlementEvent(
                    outcome=SettlementOutcome.FAILED,
                    external_transaction_id=payment.external_transaction_id,
                    source="checkout",
                    failure_reason="gateway_unavailable",
                    provider_metadata=e.details
                ))
                raise
            payment = await self.engine.record_gateway_reference(payment.id, intent.gateway_reference_id)
            client_secret = intent.client_secret

        elif rail == PaymentRail.MOBILE_BANKING:
            adapter = self.callback_adapters[request.method.value]
            redirect_url = adapter.redirect_url(payment.external_transaction_id, payment.amount_cents, payment.currency)
            payment = await self.engine.mark_processing(payment.id)

        logger.info(
            f"Checkout started: txn={payment.external_transaction_id}, rail={rail.value}, "
            f"status={payment.status.value}, replay={not admission.created}"
        )

        return CheckoutResponse(
            transaction_id=payment.external_transaction_id,
            payment_id=payment.id,
            enrollment_id=admission.enrollment.id,
            payment_status=payment.status,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            method=payment.method,
            gateway_reference_id=payment.gateway_reference_id,
            client_secret=client_secret,
            redirect_url=redirect_url
        )

    async def refund(self, transaction_id: str, reason: str) -> SettlementResult:
        """
        Refund a completed payment at the gateway, then record it.

        Only card-rail payments with a gateway reference are refunded through
        the gateway; other rails are refunded out of band and only recorded.

        Raises:
            UnknownPaymentError, InvalidTransitionError, GatewayError
        """
        async with self.engine.session_factory() as db:
            payment = await payment_store.get_by_external_id(db, transaction_id)
        if payment is None:
            raise UnknownPaymentError(f"No payment for transaction {transaction_id}")

        if (
            payment.status == PaymentStatus.COMPLETED
            and payment.gateway_reference_id
            and rail_for(payment.method) == PaymentRail.CARD
        ):
            refund = await self.gateway.create_refund(payment.gateway_reference_id, payment.amount_cents, reason)
            if not refund.success:
                raise GatewayError(
                    "Refund was rejected by the payment provider",
                    details={"transaction_id": transaction_id, "reason": refund.failure_reason}
                )
            logger.info(f"Gateway refund {refund.gateway_refund_id} issued for {transaction_id}")

        return await self.engine.apply_refund(transaction_id, reason)

    async def withdraw(self, enrollment_id: str, now: Optional[datetime] = None) -> EnrollmentRecord:
        """
        Withdraw from a course before it starts.

        Raises:
            EnrollmentNotFoundError, WithdrawalClosedError, InvalidTransitionError
        """
        async with self.engine.session_factory() as db:
            enrollment = await enrollment_store.get_by_id(db, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")

        course = await self._require_course(enrollment.course_id)
        if course.has_started(now):
            raise WithdrawalClosedError(
                f"Course {course.course_id} already started",
                details={"start_date": course.start_date.isoformat()}
            )

        return await self.engine.withdraw_enrollment(enrollment_id)
