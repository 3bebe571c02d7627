"""Concurrent deliveries of settlement signals against one database file."""

import asyncio

from coursepay.models.payments import EnrollmentStatus, PaymentStatus
from coursepay.models.settlement import SettlementEvent, SettlementOutcome


def succeeded(transaction_id, source="test"):
    return SettlementEvent(outcome=SettlementOutcome.SUCCEEDED, external_transaction_id=transaction_id, source=source)


class TestConcurrentSettlement:
    async def test_simultaneous_duplicates_apply_once(self, engine, admit, inspect, dispatcher):
        await admit("u1", "C10", "TX1")

        results = await asyncio.gather(
            engine.apply_settlement(succeeded("TX1", "stripe_webhook")),
            engine.apply_settlement(succeeded("TX1", "client_confirm")),
        )

        assert sorted(r.already_applied for r in results) == [False, True]
        assert all(r.payment.status == PaymentStatus.COMPLETED for r in results)
        assert (await inspect.capacity("C10")).seats_taken == 1
        assert dispatcher.dispatch_count == 1

    async def test_many_entry_points_at_once(self, engine, admit, inspect, dispatcher):
        await admit("u1", "C10", "TX1")

        results = await asyncio.gather(*[
            engine.apply_settlement(succeeded("TX1", f"source_{n}")) for n in range(5)
        ])

        assert [r.already_applied for r in results].count(False) == 1
        assert (await inspect.enrollment("u1", "C10")).status == EnrollmentStatus.CONFIRMED
        assert (await inspect.capacity("C10")).seats_taken == 1
        assert dispatcher.dispatch_count == 1

    async def test_success_racing_failure_settles_one_way(self, engine, admit, inspect):
        await admit("u1", "C10", "TX1")

        await asyncio.gather(
            engine.apply_settlement(succeeded("TX1")),
            engine.apply_settlement(SettlementEvent(
                outcome=SettlementOutcome.FAILED, external_transaction_id="TX1", source="test"
            )),
        )

        payment = await inspect.payment("TX1")
        enrollment = await inspect.enrollment("u1", "C10")
        seats = (await inspect.capacity("C10")).seats_taken
        if payment.status == PaymentStatus.COMPLETED:
            assert enrollment.status == EnrollmentStatus.CONFIRMED
            assert seats == 1
        else:
            assert payment.status == PaymentStatus.FAILED
            assert enrollment.status == EnrollmentStatus.CANCELLED
            assert seats == 0

    async def test_settlements_for_one_course_never_lose_a_seat(self, engine, admit, inspect):
        for n, user in enumerate(["u1", "u2", "u3"], start=1):
            await admit(user, "C10", f"TX{n}")

        await asyncio.gather(*[engine.apply_settlement(succeeded(f"TX{n}")) for n in (1, 2, 3)])

        assert (await inspect.capacity("C10")).seats_taken == 3
        assert await inspect.seat_holders("C10") == 3
