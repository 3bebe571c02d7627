"""Admission: the pending pair created at checkout and the capacity check."""

import pytest
from sqlalchemy.exc import OperationalError

from coursepay.exceptions import (
    AlreadyEnrolledError,
    ConcurrentUpdateError,
    CourseFullError,
    DuplicateTransactionError,
)
from coursepay.models.payments import EnrollmentStatus, PaymentMethod, PaymentStatus
from coursepay.models.settlement import SettlementEvent, SettlementOutcome
from coursepay.services import payment_store


def succeeded(transaction_id):
    return SettlementEvent(outcome=SettlementOutcome.SUCCEEDED, external_transaction_id=transaction_id, source="test")


class TestAdmit:
    async def test_creates_pending_pair(self, admit, inspect):
        admission = await admit("u1", "C10", "TX1")

        assert admission.created
        assert admission.payment.status == PaymentStatus.PENDING
        assert admission.payment.amount_cents == 34900
        assert admission.payment.currency == "EUR"
        assert admission.enrollment.status == EnrollmentStatus.PENDING
        assert admission.enrollment.payment_id == admission.payment.id

        capacity = await inspect.capacity("C10")
        assert capacity.seats_taken == 0
        assert capacity.seats_max == 10

    async def test_generates_transaction_id_when_missing(self, admit):
        admission = await admit("u1", "C10", None)

        assert admission.payment.external_transaction_id.startswith("TX")

    async def test_replay_returns_the_original_pair(self, admit):
        first = await admit("u1", "C10", "TX1")

        replay = await admit("u1", "C10", "TX1")

        assert not replay.created
        assert replay.payment.id == first.payment.id
        assert replay.enrollment.id == first.enrollment.id

    async def test_transaction_id_of_another_user_is_rejected(self, admit):
        await admit("u1", "C10", "TX1")

        with pytest.raises(DuplicateTransactionError):
            await admit("u2", "C10", "TX1")

    async def test_already_enrolled(self, engine, admit):
        await admit("u1", "C10", "TX1")
        await engine.apply_settlement(succeeded("TX1"))

        with pytest.raises(AlreadyEnrolledError):
            await admit("u1", "C10", "TX2")

    async def test_full_course_rejects_new_admissions(self, engine, admit):
        await admit("u1", "C1", "TX1")
        await engine.apply_settlement(succeeded("TX1"))

        with pytest.raises(CourseFullError) as exc_info:
            await admit("u2", "C1", "TX2")

        assert exc_info.value.status_code == 409
        assert exc_info.value.details == {"seats_taken": 1, "seats_max": 1}

    async def test_already_enrolled_takes_precedence_over_full(self, engine, admit):
        await admit("u1", "C1", "TX1")
        await engine.apply_settlement(succeeded("TX1"))

        with pytest.raises(AlreadyEnrolledError):
            await admit("u1", "C1", "TX2")

    async def test_capacity_check_is_optimistic(self, engine, admit, inspect):
        # Both admissions pass while the single seat is still free
        await admit("u1", "C1", "TX1", PaymentMethod.CARD)
        await admit("u2", "C1", "TX2", PaymentMethod.BKASH)

        await engine.apply_settlement(succeeded("TX1"))
        await engine.apply_settlement(succeeded("TX2"))

        capacity = await inspect.capacity("C1")
        assert capacity.seats_taken == 2
        assert capacity.seats_max == 1
        assert capacity.is_full
        assert await inspect.seat_holders("C1") == 2


class TestCapacityConservation:
    async def test_seats_taken_matches_seat_holders(self, engine, admit, inspect):
        for n, user in enumerate(["u1", "u2", "u3"], start=1):
            await admit(user, "C10", f"TX{n}")

        await engine.apply_settlement(succeeded("TX1"))
        await engine.apply_settlement(SettlementEvent(
            outcome=SettlementOutcome.FAILED, external_transaction_id="TX2", source="test"
        ))
        await engine.apply_settlement(succeeded("TX3"))
        await engine.apply_refund("TX3", "requested_by_customer")

        capacity = await inspect.capacity("C10")
        assert capacity.seats_taken == 1
        assert await inspect.seat_holders("C10") == capacity.seats_taken


def database_locked():
    return OperationalError("SELECT payments", {}, Exception("database is locked"))


class TestLockedDatabase:
    async def test_admission_is_retried_after_a_lock(self, admit, inspect, monkeypatch):
        lookup = payment_store.get_by_external_id
        calls = []

        async def locked_once(db, external_transaction_id):
            calls.append(external_transaction_id)
            if len(calls) == 1:
                raise database_locked()
            return await lookup(db, external_transaction_id)

        monkeypatch.setattr(payment_store, "get_by_external_id", locked_once)

        admission = await admit("u1", "C10", "TX1")

        assert admission.created
        assert len(calls) == 2
        monkeypatch.undo()
        assert (await inspect.payment("TX1")).status == PaymentStatus.PENDING

    async def test_persistent_lock_becomes_concurrent_update(self, admit, monkeypatch):
        async def always_locked(db, external_transaction_id):
            raise database_locked()

        monkeypatch.setattr(payment_store, "get_by_external_id", always_locked)

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await admit("u1", "C10", "TX1")

        assert exc_info.value.status_code == 503
