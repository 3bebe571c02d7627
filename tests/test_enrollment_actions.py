"""Refund, withdrawal and enrollment progression."""

from datetime import datetime, timedelta

import pytest

from coursepay.exceptions import (
    EnrollmentNotFoundError,
    InvalidTransitionError,
    UnknownPaymentError,
    WithdrawalClosedError,
)
from coursepay.models.payments import EnrollmentStatus, PaymentStatus
from coursepay.models.settlement import SettlementEvent, SettlementOutcome


async def enrolled(engine, admit, user_id="u1", course_id="C10", transaction_id="TX1"):
    admission = await admit(user_id, course_id, transaction_id)
    await engine.apply_settlement(SettlementEvent(
        outcome=SettlementOutcome.SUCCEEDED, external_transaction_id=transaction_id, source="test"
    ))
    return admission


class TestRefund:
    async def test_refund_releases_the_seat(self, engine, admit, inspect):
        await enrolled(engine, admit)

        result = await engine.apply_refund("TX1", "requested_by_customer")

        assert not result.already_applied
        assert result.payment.status == PaymentStatus.REFUNDED
        assert result.payment.refunded_at is not None
        assert result.payment.provider_metadata["refund_reason"] == "requested_by_customer"
        assert result.enrollment.status == EnrollmentStatus.CANCELLED
        assert (await inspect.capacity("C10")).seats_taken == 0

    async def test_repeated_refund_is_a_noop(self, engine, admit, inspect):
        await enrolled(engine, admit)
        await engine.apply_refund("TX1", "first")

        again = await engine.apply_refund("TX1", "second")

        assert again.already_applied
        assert again.payment.provider_metadata["refund_reason"] == "first"
        assert (await inspect.capacity("C10")).seats_taken == 0

    async def test_pending_payment_cannot_be_refunded(self, engine, admit):
        await admit("u1", "C10", "TX1")

        with pytest.raises(InvalidTransitionError):
            await engine.apply_refund("TX1", "requested_by_customer")

    async def test_unknown_payment(self, engine):
        with pytest.raises(UnknownPaymentError):
            await engine.apply_refund("TX_NOPE", "requested_by_customer")

    async def test_refund_then_settlement_signal_is_ignored(self, engine, inspect, admit):
        await enrolled(engine, admit)
        await engine.apply_refund("TX1", "requested_by_customer")

        late = await engine.apply_settlement(SettlementEvent(
            outcome=SettlementOutcome.SUCCEEDED, external_transaction_id="TX1", source="test"
        ))

        assert late.already_applied
        assert (await inspect.payment("TX1")).status == PaymentStatus.REFUNDED
        assert (await inspect.capacity("C10")).seats_taken == 0


class TestWithdraw:
    async def test_withdraw_cancels_and_frees_the_seat(self, engine, admit, inspect):
        admission = await enrolled(engine, admit)

        enrollment = await engine.withdraw_enrollment(admission.enrollment.id)

        assert enrollment.status == EnrollmentStatus.CANCELLED
        assert (await inspect.capacity("C10")).seats_taken == 0
        assert (await inspect.payment("TX1")).status == PaymentStatus.COMPLETED

    async def test_withdraw_twice_releases_once(self, engine, admit, inspect):
        admission = await enrolled(engine, admit, transaction_id="TX1")
        await enrolled(engine, admit, user_id="u2", transaction_id="TX2")

        await engine.withdraw_enrollment(admission.enrollment.id)
        await engine.withdraw_enrollment(admission.enrollment.id)

        assert (await inspect.capacity("C10")).seats_taken == 1

    async def test_pending_enrollment_cannot_be_withdrawn(self, engine, admit):
        admission = await admit("u1", "C10", "TX1")

        with pytest.raises(InvalidTransitionError):
            await engine.withdraw_enrollment(admission.enrollment.id)

    async def test_unknown_enrollment(self, engine):
        with pytest.raises(EnrollmentNotFoundError):
            await engine.withdraw_enrollment("enr_missing")

    async def test_withdrawal_closes_at_course_start(self, checkout, engine, admit):
        admission = await enrolled(engine, admit)

        with pytest.raises(WithdrawalClosedError):
            await checkout.withdraw(admission.enrollment.id, now=datetime.utcnow() + timedelta(days=31))

    async def test_withdrawal_before_start(self, checkout, engine, admit):
        admission = await enrolled(engine, admit)

        enrollment = await checkout.withdraw(admission.enrollment.id)

        assert enrollment.status == EnrollmentStatus.CANCELLED


class TestAdvance:
    async def test_progression_keeps_the_seat(self, engine, admit, inspect):
        admission = await enrolled(engine, admit)

        active = await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.ACTIVE)
        done = await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.COMPLETED)

        assert active.status == EnrollmentStatus.ACTIVE
        assert done.status == EnrollmentStatus.COMPLETED
        assert (await inspect.capacity("C10")).seats_taken == 1

    async def test_same_status_is_a_noop(self, engine, admit):
        admission = await enrolled(engine, admit)

        enrollment = await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.CONFIRMED)

        assert enrollment.status == EnrollmentStatus.CONFIRMED

    async def test_cannot_move_backwards(self, engine, admit):
        admission = await enrolled(engine, admit)
        await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.ACTIVE)

    async def test_pending_cannot_be_activated(self, engine, admit):
        admission = await admit("u1", "C10", "TX1")

        with pytest.raises(InvalidTransitionError):
            await engine.advance_enrollment(admission.enrollment.id, EnrollmentStatus.ACTIVE)
