"""
Reconciliation Engine

The single funnel through which payment and enrollment statuses change.
Every entry point (client confirmation, intent poll, webhooks, provider
callbacks, generic verify, the stale-payment sweeper) hands a
SettlementEvent to apply_settlement; explicit actions (admission, refund,
withdrawal, enrollment progression) are methods on the same engine.

Concurrency:
- Per-payment serialization is a compare-and-swap on the stored status
  (UPDATE ... WHERE id = ? AND status = ?). The loser of a race re-reads,
  sees the new status and resolves to the idempotent no-op path.
- Seat counting is an atomic +1/-1 on the course row, independent of the
  payment CAS.
- Side effects are dispatched after commit, only for the call that moved the
  payment into completed.
"""
import uuid
from typing import Awaitable, Callable, Optional, Tuple, TypeVar
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from ..exceptions import (
    UnknownPaymentError,
    CourseFullError,
    AlreadyEnrolledError,
    EnrollmentConflictError,
    EnrollmentNotFoundError,
    DuplicateTransactionError,
    InvalidTransitionError,
    ConcurrentUpdateError,
    GatewayReferenceConflictError,
)
from ..models.directory import CourseInfo
from ..models.payments import (
    Admission,
    AdmissionRequest,
    EnrollmentRecord,
    EnrollmentStatus,
    PaymentRecord,
    PaymentStatus,
    SEAT_HOLDING_STATUSES,
)
from ..models.settlement import SettlementEvent, SettlementResult
from . import payment_store, enrollment_store, capacity_ledger
from .state_machine import Resolution, resolve, can_transition, is_conflicting_outcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _LostRace(Exception):
    """A conditional UPDATE matched no row; the unit of work must be re-run."""


# Enrollment progression allowed through advance_enrollment
_ENROLLMENT_PROGRESSION = {
    EnrollmentStatus.CONFIRMED: {EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED},
    EnrollmentStatus.ACTIVE: {EnrollmentStatus.COMPLETED},
}

_SEAT_RELEASABLE = {EnrollmentStatus.CONFIRMED, EnrollmentStatus.ACTIVE}


class ReconciliationEngine:
    """
    Owns every status write on payments and enrollments.

    Args:
        session_factory: async_sessionmaker bound to the service database
        dispatcher: Object with an async dispatch(SettlementResult) method,
            called once per first-time completion. Optional for tooling.
        max_cas_attempts: How many times a unit of work is re-run after
            losing a compare-and-swap before giving up
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher=None,
        max_cas_attempts: int = 5
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.max_cas_attempts = max_cas_attempts

    # ========================================================================
    # Unit-of-work runner
    # ========================================================================

    async def _run(self, operation: str, key: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run work in its own transaction, re-running it after a lost race.

        Domain errors raised by work propagate and the session rolls back.
        A gateway reference already held by another payment surfaces as
        GatewayReferenceConflictError; other integrity errors propagate.
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            async with self.session_factory() as db:
                try:
                    result = await work(db)
                    await db.commit()
                except _LostRace:
                    await db.rollback()
                    logger.debug(f"{operation} {key}: lost compare-and-swap (attempt {attempt})")
                    continue
                except OperationalError as e:
                    if "locked" not in str(e):
                        raise
                    await db.rollback()
                    logger.debug(f"{operation} {key}: database locked (attempt {attempt})")
                    continue
                except IntegrityError as e:
                    await db.rollback()
                    if "gateway_reference_id" not in str(e):
                        raise
                    logger.warning(f"{operation} {key}: gateway reference already belongs to another payment")
                    raise GatewayReferenceConflictError(
                        "Gateway reference is already attached to another payment",
                        details={"key": key}
                    ) from e
                return result

        logger.error(f"{operation} {key}: gave up after {self.max_cas_attempts} attempts")
        raise ConcurrentUpdateError(
            f"Could not apply {operation} after {self.max_cas_attempts} attempts",
            details={"key": key, "attempts": self.max_cas_attempts}
        )

    # ========================================================================
    # Settlement
    # ========================================================================

    async def apply_settlement(self, event: SettlementEvent) -> SettlementResult:
        """
        Apply a normalized settlement signal to its payment.

        Args:
            event: SettlementEvent from any entry point

        Returns:
            SettlementResult; already_applied=True when the signal was a
            duplicate or arrived behind the stored status

        Raises:
            UnknownPaymentError: No payment matches the event's keys
            ConcurrentUpdateError: Lost the CAS max_cas_attempts times
        """
        async def work(db: AsyncSession) -> SettlementResult:
            payment = await payment_store.find_for_event(db, event)
            if payment is None:
                raise UnknownPaymentError(
                    f"No payment for settlement key {event.idempotency_key}",
                    details={
                        "external_transaction_id": event.external_transaction_id,
                        "gateway_reference_id": event.gateway_reference_id,
                        "source": event.source
                    }
                )

            target = event.target_status
            if resolve(payment.status, target) == Resolution.NOOP:
                if is_conflicting_outcome(payment.status, target):
                    logger.warning(
                        f"Payment {payment.id} already {payment.status.value}; "
                        f"ignoring conflicting {target.value} from {event.source}"
                    )
                else:
                    logger.info(
                        f"Payment {payment.id} already {payment.status.value}; "
                        f"{target.value} from {event.source} is a no-op"
                    )
                enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)
                return SettlementResult(payment=payment, enrollment=enrollment, already_applied=True)

            return await self._transition(db, payment, event)

        result = await self._run("settlement", event.idempotency_key, work)

        if result.is_first_completion and self.dispatcher is not None:
            await self.dispatcher.dispatch(result)

        return result

    async def _transition(self, db: AsyncSession, payment: PaymentRecord, event: SettlementEvent) -> SettlementResult:
        target = event.target_status
        failed = target in (PaymentStatus.FAILED, PaymentStatus.CANCELED)

        swapped = await payment_store.compare_and_set_status(
            db,
            payment.id,
            expected=payment.status,
            target=target,
            gateway_reference_id=event.gateway_reference_id,
            failure_reason=(event.failure_reason or target.value) if failed else None,
            provider_metadata={**payment.provider_metadata, **event.provider_metadata}
        )
        if not swapped:
            raise _LostRace()

        logger.info(
            f"Payment {payment.id} ({payment.external_transaction_id}): "
            f"{payment.status.value} -> {target.value} via {event.source}"
        )

        enrollment_confirmed = False
        if target == PaymentStatus.COMPLETED:
            enrollment, enrollment_confirmed = await self._confirm_enrollment(db, payment)
        elif failed:
            enrollment = await self._cancel_pending_enrollment(db, payment)
        else:
            enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)

        return SettlementResult(
            payment=await payment_store.get_by_id(db, payment.id),
            enrollment=enrollment,
            already_applied=False,
            enrollment_confirmed=enrollment_confirmed
        )

    async def _confirm_enrollment(self, db: AsyncSession, payment: PaymentRecord) -> Tuple[EnrollmentRecord, bool]:
        """
        Promote the pair's enrollment on first successful settlement.

        A pending or cancelled enrollment is confirmed and re-pointed at this
        payment, taking one seat. An enrollment already holding a seat is left
        untouched.
        """
        enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)

        if enrollment is None:
            enrollment = await enrollment_store.insert(
                db, payment.user_id, payment.course_id, payment.id, status=EnrollmentStatus.CONFIRMED
            )
            await capacity_ledger.confirm_seat(db, payment.course_id)
            return enrollment, True

        if enrollment.status in SEAT_HOLDING_STATUSES:
            logger.info(f"Enrollment {enrollment.id} already {enrollment.status.value}; not re-confirmed")
            return enrollment, False

        promoted = await enrollment_store.compare_and_set_status(
            db, enrollment.id, expected=enrollment.status, target=EnrollmentStatus.CONFIRMED, payment_id=payment.id
        )
        if not promoted:
            raise _LostRace()
        await capacity_ledger.confirm_seat(db, payment.course_id)

        logger.info(f"Enrollment {enrollment.id}: {enrollment.status.value} -> confirmed (payment {payment.id})")
        return await enrollment_store.get_by_id(db, enrollment.id), True

    async def _cancel_pending_enrollment(self, db: AsyncSession, payment: PaymentRecord) -> Optional[EnrollmentRecord]:
        """Cancel the pair's enrollment if it is pending on this very payment."""
        enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)
        if enrollment is None:
            return None

        if enrollment.status != EnrollmentStatus.PENDING or enrollment.payment_id != payment.id:
            return enrollment

        cancelled = await enrollment_store.compare_and_set_status(
            db, enrollment.id, expected=EnrollmentStatus.PENDING, target=EnrollmentStatus.CANCELLED
        )
        if not cancelled:
            raise _LostRace()

        logger.info(f"Enrollment {enrollment.id}: pending -> cancelled (payment {payment.id} did not settle)")
        return await enrollment_store.get_by_id(db, enrollment.id)

    # ========================================================================
    # Admission
    # ========================================================================

    async def admit(self, request: AdmissionRequest, course: CourseInfo) -> Admission:
        """
        Create the pending payment/enrollment pair for a prospective enrollment.

        The capacity check is optimistic: two admissions can both pass before
        either settles, so a course can end up over-admitted. Seats are only
        taken at confirmation time.

        Raises:
            DuplicateTransactionError: transaction id belongs to another user/course
            AlreadyEnrolledError: the pair already holds a seat
            CourseFullError: seats_taken >= seats_max at check time
            EnrollmentConflictError: a concurrent admission for the same pair won
        """
        external_id = request.external_transaction_id or f"TX{uuid.uuid4().hex[:12]}"

        async def work(db: AsyncSession) -> Admission:
            existing = await payment_store.get_by_external_id(db, external_id)
            if existing is not None:
                if existing.user_id != request.user_id or existing.course_id != request.course_id:
                    raise DuplicateTransactionError(
                        f"Transaction id {external_id} is already in use",
                        details={"transaction_id": external_id}
                    )
                enrollment = await enrollment_store.get_for_pair(db, existing.user_id, existing.course_id)
                logger.info(f"Admission replay for {external_id}; returning payment {existing.id}")
                return Admission(payment=existing, enrollment=enrollment, created=False)

            capacity = await capacity_ledger.ensure_course(db, course.course_id, course.seats_max)

            enrollment = await enrollment_store.get_for_pair(db, request.user_id, request.course_id)
            if enrollment is not None and enrollment.status in SEAT_HOLDING_STATUSES:
                raise AlreadyEnrolledError(
                    f"User {request.user_id} is already enrolled in {request.course_id}",
                    details={"enrollment_id": enrollment.id, "status": enrollment.status.value}
                )

            if capacity.is_full:
                raise CourseFullError(
                    f"Course {course.course_id} is full",
                    details={"seats_taken": capacity.seats_taken, "seats_max": capacity.seats_max}
                )

            payment = await payment_store.insert_pending(
                db,
                user_id=request.user_id,
                course_id=request.course_id,
                amount_cents=course.price_cents,
                currency=course.currency,
                method=request.method,
                external_transaction_id=external_id
            )

            if enrollment is None:
                enrollment = await enrollment_store.insert(db, request.user_id, request.course_id, payment.id)
            else:
                reused = await enrollment_store.compare_and_set_status(
                    db, enrollment.id, expected=enrollment.status,
                    target=EnrollmentStatus.PENDING, payment_id=payment.id
                )
                if not reused:
                    raise EnrollmentConflictError(
                        f"Enrollment {enrollment.id} changed during admission",
                        details={"enrollment_id": enrollment.id}
                    )
                logger.info(f"Enrollment {enrollment.id} re-pointed at payment {payment.id}")
                enrollment = await enrollment_store.get_by_id(db, enrollment.id)

            logger.info(
                f"Admitting {request.user_id} to {course.course_id}: payment={payment.id}, "
                f"enrollment={enrollment.id}, seats {capacity.seats_taken}/{capacity.seats_max}"
            )
            return Admission(payment=payment, enrollment=enrollment, created=True)

        try:
            return await self._run("admission", external_id, work)
        except IntegrityError as e:
            raise EnrollmentConflictError(
                f"Concurrent checkout for user {request.user_id} in {request.course_id}",
                details={"transaction_id": external_id}
            ) from e

    # ========================================================================
    # Gateway bookkeeping
    # ========================================================================

    async def record_gateway_reference(self, payment_id: str, gateway_reference_id: str) -> PaymentRecord:
        """Attach the provider-assigned id to a payment. Set once; later values are ignored."""
        async def work(db: AsyncSession) -> PaymentRecord:
            stored = await payment_store.set_gateway_reference_if_missing(db, payment_id, gateway_reference_id)
            payment = await payment_store.get_by_id(db, payment_id)
            if payment is None:
                raise UnknownPaymentError(f"Payment {payment_id} not found")
            if not stored and payment.gateway_reference_id != gateway_reference_id:
                logger.warning(
                    f"Payment {payment_id} already has gateway reference "
                    f"{payment.gateway_reference_id}; ignoring {gateway_reference_id}"
                )
            return payment

        return await self._run("gateway reference", payment_id, work)

    async def mark_processing(self, payment_id: str) -> PaymentRecord:
        """Record that the payment was handed to the provider and is in flight."""
        async def work(db: AsyncSession) -> PaymentRecord:
            payment = await payment_store.get_by_id(db, payment_id)
            if payment is None:
                raise UnknownPaymentError(f"Payment {payment_id} not found")
            if not can_transition(payment.status, PaymentStatus.PROCESSING):
                return payment

            if not await payment_store.compare_and_set_status(
                db, payment_id, expected=payment.status, target=PaymentStatus.PROCESSING
            ):
                raise _LostRace()
            logger.info(f"Payment {payment_id}: {payment.status.value} -> processing")
            return await payment_store.get_by_id(db, payment_id)

        return await self._run("mark processing", payment_id, work)

    # ========================================================================
    # Explicit actions
    # ========================================================================

    async def apply_refund(self, external_transaction_id: str, reason: str) -> SettlementResult:
        """
        Move a completed payment to refunded and release its seat.

        A repeated refund is an idempotent no-op.

        Raises:
            UnknownPaymentError: No payment with this transaction id
            InvalidTransitionError: Payment is not completed
        """
        async def work(db: AsyncSession) -> SettlementResult:
            payment = await payment_store.get_by_external_id(db, external_transaction_id)
            if payment is None:
                raise UnknownPaymentError(f"No payment for transaction {external_transaction_id}")

            if payment.status == PaymentStatus.REFUNDED:
                logger.info(f"Payment {payment.id} already refunded; refund is a no-op")
                enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)
                return SettlementResult(payment=payment, enrollment=enrollment, already_applied=True)

            if not can_transition(payment.status, PaymentStatus.REFUNDED):
                raise InvalidTransitionError(
                    f"Cannot refund a {payment.status.value} payment",
                    details={"transaction_id": external_transaction_id, "status": payment.status.value}
                )

            if not await payment_store.compare_and_set_status(
                db, payment.id, expected=payment.status, target=PaymentStatus.REFUNDED,
                provider_metadata={**payment.provider_metadata, "refund_reason": reason}
            ):
                raise _LostRace()
            logger.info(f"Payment {payment.id}: completed -> refunded ({reason})")

            enrollment = await enrollment_store.get_for_pair(db, payment.user_id, payment.course_id)
            if enrollment and enrollment.payment_id == payment.id and enrollment.status in _SEAT_RELEASABLE:
                enrollment = await self._cancel_and_release(db, enrollment)

            return SettlementResult(
                payment=await payment_store.get_by_id(db, payment.id),
                enrollment=enrollment,
                already_applied=False
            )

        return await self._run("refund", external_transaction_id, work)

    async def withdraw_enrollment(self, enrollment_id: str) -> EnrollmentRecord:
        """
        Cancel a confirmed or active enrollment and free its seat.

        Callers check the course start date first.
        """
        async def work(db: AsyncSession) -> EnrollmentRecord:
            enrollment = await self._require_enrollment(db, enrollment_id)
            if enrollment.status == EnrollmentStatus.CANCELLED:
                logger.info(f"Enrollment {enrollment_id} already cancelled; withdrawal is a no-op")
                return enrollment
            if enrollment.status not in _SEAT_RELEASABLE:
                raise InvalidTransitionError(
                    f"Cannot withdraw a {enrollment.status.value} enrollment",
                    details={"enrollment_id": enrollment_id, "status": enrollment.status.value}
                )
            return await self._cancel_and_release(db, enrollment)

        return await self._run("withdrawal", enrollment_id, work)

    async def advance_enrollment(self, enrollment_id: str, target: EnrollmentStatus) -> EnrollmentRecord:
        """Move an enrollment forward (confirmed -> active -> completed). Seats are unaffected."""
        async def work(db: AsyncSession) -> EnrollmentRecord:
            enrollment = await self._require_enrollment(db, enrollment_id)
            if enrollment.status == target:
                return enrollment
            if target not in _ENROLLMENT_PROGRESSION.get(enrollment.status, set()):
                raise InvalidTransitionError(
                    f"Cannot move enrollment from {enrollment.status.value} to {target.value}",
                    details={"enrollment_id": enrollment_id}
                )
            if not await enrollment_store.compare_and_set_status(
                db, enrollment_id, expected=enrollment.status, target=target
            ):
                raise _LostRace()
            logger.info(f"Enrollment {enrollment_id}: {enrollment.status.value} -> {target.value}")
            return await enrollment_store.get_by_id(db, enrollment_id)

        return await self._run("enrollment progression", enrollment_id, work)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _require_enrollment(self, db: AsyncSession, enrollment_id: str) -> EnrollmentRecord:
        enrollment = await enrollment_store.get_by_id(db, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    async def _cancel_and_release(self, db: AsyncSession, enrollment: EnrollmentRecord) -> EnrollmentRecord:
        if not await enrollment_store.compare_and_set_status(
            db, enrollment.id, expected=enrollment.status, target=EnrollmentStatus.CANCELLED
        ):
            raise _LostRace()
        await capacity_ledger.release_seat(db, enrollment.course_id)
        logger.info(f"Enrollment {enrollment.id}: {enrollment.status.value} -> cancelled, seat released")
        return await enrollment_store.get_by_id(db, enrollment.id)
