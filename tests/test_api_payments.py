"""HTTP surface: checkout, settlement entry points and queries."""

from coursepay.main import app
from coursepay.services.signature_service import sign_callback


async def start_card_checkout(client, user_id="u1", course_id="C10", transaction_id="TX1"):
    response = await client.post("/api/enrollments/checkout", json={
        "user_id": user_id,
        "course_id": course_id,
        "method": "card",
        "transaction_id": transaction_id,
    })
    assert response.status_code == 201, response.text
    return response.json()


async def confirm(client, transaction_id, gateway_confirmation_id):
    return await client.post("/api/payments/confirm", json={
        "transaction_id": transaction_id,
        "gateway_confirmation_id": gateway_confirmation_id,
    })


class TestCheckoutEndpoint:
    async def test_card_checkout(self, client):
        body = await start_card_checkout(client)

        assert body["transaction_id"] == "TX1"
        assert body["payment_status"] == "pending"
        assert body["client_secret"]
        assert body["gateway_reference_id"].startswith("pi_fake_")

    async def test_full_course(self, client, fake_gateway):
        checkout = await start_card_checkout(client, course_id="C1")
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", checkout["gateway_reference_id"])

        response = await client.post("/api/enrollments/checkout", json={
            "user_id": "u2", "course_id": "C1", "method": "card", "transaction_id": "TX2"
        })

        assert response.status_code == 409
        assert response.json()["error_code"] == "enrollment:course_full"

    async def test_unknown_course(self, client):
        response = await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C404", "method": "card"
        })

        assert response.status_code == 404
        assert response.json()["error_code"] == "course:not_found"

    async def test_invalid_method(self, client):
        response = await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "cash"
        })

        assert response.status_code == 422

    async def test_gateway_outage(self, client, fake_gateway):
        fake_gateway.configure(available=False)

        response = await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "card", "transaction_id": "TX1"
        })

        assert response.status_code == 502
        assert response.json()["error_code"] == "gateway:unavailable"


class TestConfirm:
    async def test_confirm_success_and_duplicate(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")

        first = await confirm(client, "TX1", checkout["gateway_reference_id"])
        second = await confirm(client, "TX1", checkout["gateway_reference_id"])

        assert first.status_code == 200
        assert first.json()["payment_status"] == "completed"
        assert first.json()["enrollment_status"] == "confirmed"
        assert first.json()["already_applied"] is False
        assert second.status_code == 200
        assert second.json()["already_applied"] is True
        assert second.json()["enrollment_id"] == first.json()["enrollment_id"]
        assert app.state.dispatcher.dispatch_count == 1

    async def test_confirm_while_in_flight(self, client):
        checkout = await start_card_checkout(client)

        response = await confirm(client, "TX1", checkout["gateway_reference_id"])

        assert response.status_code == 202
        assert response.json() == {"transaction_id": "TX1", "payment_status": "pending", "state": "in_flight"}

    async def test_confirm_declined(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "requires_payment_method", "Card declined")

        response = await confirm(client, "TX1", checkout["gateway_reference_id"])
        repeat = await confirm(client, "TX1", checkout["gateway_reference_id"])

        assert response.status_code == 402
        assert response.json()["error_code"] == "payment:failed"
        assert response.json()["details"]["failure_reason"] == "Card declined"
        assert repeat.status_code == 402

    async def test_confirm_unknown_payment(self, client):
        response = await confirm(client, "TX_NOPE", "pi_nope")

        assert response.status_code == 404
        assert response.json()["error_code"] == "payment:unknown"

    async def test_confirm_with_foreign_intent(self, client):
        await start_card_checkout(client)
        other = await start_card_checkout(client, user_id="u2", transaction_id="TX2")

        response = await confirm(client, "TX1", other["gateway_reference_id"])

        assert response.status_code == 400
        assert response.json()["error_code"] == "payment:foreign_confirmation"

    async def test_confirm_of_mobile_banking_payment_with_a_card_intent(self, client, fake_gateway):
        card = await start_card_checkout(client)
        fake_gateway.set_intent_status(card["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", card["gateway_reference_id"])
        await client.post("/api/enrollments/checkout", json={
            "user_id": "u2", "course_id": "C10", "method": "bkash", "transaction_id": "TX2"
        })

        response = await confirm(client, "TX2", card["gateway_reference_id"])

        assert response.status_code == 400
        assert response.json()["error_code"] == "payment:rail_mismatch"
        assert (await client.get("/api/payments/TX2")).json()["status"] == "processing"
        assert (await client.get("/api/payments/TX1")).json()["status"] == "completed"
        assert (await client.get("/api/courses/C10/capacity")).json()["seats_taken"] == 1
        assert app.state.dispatcher.dispatch_count == 1

    async def test_intent_poll(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        reference = checkout["gateway_reference_id"]

        pending = await client.get(f"/api/payments/intents/{reference}")
        fake_gateway.set_intent_status(reference, "succeeded")
        settled = await client.get(f"/api/payments/intents/{reference}")

        assert pending.status_code == 202
        assert settled.status_code == 200
        assert settled.json()["payment_status"] == "completed"


class TestOtherEntryPoints:
    async def test_generic_verify(self, client):
        await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "bank_transfer", "transaction_id": "TX1"
        })

        response = await client.post("/api/payments/verify", json={
            "transaction_id": "TX1",
            "gateway_data": {"verified": True, "payment_gateway_id": "BANK_REF_1"},
        })

        assert response.status_code == 200
        assert response.json()["enrollment_status"] == "confirmed"

    async def test_generic_verify_refuses_card_payment(self, client):
        await start_card_checkout(client)

        response = await client.post("/api/payments/verify", json={
            "transaction_id": "TX1", "gateway_data": {"verified": True}
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "payment:rail_mismatch"
        assert (await client.get("/api/payments/TX1")).json()["status"] == "pending"
        assert (await client.get("/api/courses/C10/capacity")).json()["seats_taken"] == 0
        assert app.state.dispatcher.dispatch_count == 0

    async def test_generic_verify_refuses_mobile_banking_payment(self, client):
        await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "bkash", "transaction_id": "TX1"
        })

        response = await client.post("/api/payments/verify", json={
            "transaction_id": "TX1", "gateway_data": {"verified": True}
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "payment:rail_mismatch"
        assert (await client.get("/api/payments/TX1")).json()["status"] == "processing"

    async def test_generic_verify_unknown_payment(self, client):
        response = await client.post("/api/payments/verify", json={
            "transaction_id": "TX_NOPE", "gateway_data": {"verified": True}
        })

        assert response.status_code == 404

    async def test_bank_reference_claimed_twice(self, client):
        for user_id, transaction_id in (("u1", "TX1"), ("u2", "TX2")):
            await client.post("/api/enrollments/checkout", json={
                "user_id": user_id, "course_id": "C10", "method": "bank_transfer", "transaction_id": transaction_id
            })
        await client.post("/api/payments/verify", json={
            "transaction_id": "TX1", "gateway_data": {"verified": True, "payment_gateway_id": "BANK_REF_1"}
        })

        response = await client.post("/api/payments/verify", json={
            "transaction_id": "TX2", "gateway_data": {"verified": True, "payment_gateway_id": "BANK_REF_1"}
        })

        assert response.status_code == 409
        assert response.json()["error_code"] == "payment:gateway_reference_conflict"
        assert (await client.get("/api/payments/TX2")).json()["status"] == "pending"

    async def test_bkash_callback(self, client, test_settings):
        checkout = await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "bkash", "transaction_id": "TX1"
        })
        assert checkout.json()["payment_status"] == "processing"

        body = {"paymentID": "BK_REF", "trxID": "TX1", "status": "success", "merchantInvoiceNumber": "INV-1"}
        response = await client.post(
            "/api/payments/callbacks/bkash",
            json=body,
            headers={"X-Callback-Signature": sign_callback(body, test_settings.bkash_callback_secret)},
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"

        payment = (await client.get("/api/payments/TX1")).json()
        assert payment["gateway_reference_id"] == "BK_REF"

    async def test_intent_poll_refuses_mobile_banking_reference(self, client, test_settings):
        await client.post("/api/enrollments/checkout", json={
            "user_id": "u1", "course_id": "C10", "method": "bkash", "transaction_id": "TX1"
        })
        body = {"paymentID": "BK_REF", "trxID": "TX1", "status": "success"}
        await client.post(
            "/api/payments/callbacks/bkash",
            json=body,
            headers={"X-Callback-Signature": sign_callback(body, test_settings.bkash_callback_secret)},
        )

        response = await client.get("/api/payments/intents/BK_REF")

        assert response.status_code == 400
        assert response.json()["error_code"] == "payment:rail_mismatch"

    async def test_callback_with_bad_signature(self, client):
        body = {"trxID": "TX1", "status": "success"}

        response = await client.post(
            "/api/payments/callbacks/bkash", json=body, headers={"X-Callback-Signature": "0" * 64}
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "gateway:signature_invalid"

    async def test_callback_for_unknown_provider(self, client):
        response = await client.post("/api/payments/callbacks/paytm", json={"status": "success"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "gateway:unknown_provider"

    async def test_callback_with_unknown_status(self, client, test_settings):
        body = {"trxID": "TX1", "status": "initiated"}

        response = await client.post(
            "/api/payments/callbacks/bkash",
            json=body,
            headers={"X-Callback-Signature": sign_callback(body, test_settings.bkash_callback_secret)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "ignored": True}

    async def test_client_cancel(self, client):
        await start_card_checkout(client)

        response = await client.post("/api/payments/TX1/cancel")

        assert response.status_code == 200
        assert response.json()["payment_status"] == "canceled"
        assert response.json()["enrollment_status"] == "cancelled"


class TestRefundAndQueries:
    async def test_refund(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", checkout["gateway_reference_id"])

        response = await client.post("/api/payments/TX1/refund", json={"reason": "changed_mind"})
        capacity = (await client.get("/api/courses/C10/capacity")).json()

        assert response.status_code == 200
        assert response.json()["payment_status"] == "refunded"
        assert capacity["seats_taken"] == 0

    async def test_refund_pending_payment(self, client):
        await start_card_checkout(client)

        response = await client.post("/api/payments/TX1/refund", json={})

        assert response.status_code == 409
        assert response.json()["error_code"] == "payment:invalid_transition"

    async def test_stats_and_history(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        await start_card_checkout(client, user_id="u2", transaction_id="TX2")
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", checkout["gateway_reference_id"])

        stats = (await client.get("/api/payments/stats")).json()
        history = (await client.get("/api/payments/user/u1")).json()

        assert stats["total_payments"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["completed_amount_cents"] == 34900
        assert history["count"] == 1
        assert history["payments"][0]["external_transaction_id"] == "TX1"

    async def test_get_unknown_payment(self, client):
        response = await client.get("/api/payments/TX_NOPE")

        assert response.status_code == 404

    async def test_capacity_for_course_without_admissions(self, client):
        response = await client.get("/api/courses/C1/capacity")

        assert response.json() == {
            "course_id": "C1",
            "seats_taken": 0,
            "seats_max": 1,
            "seats_available": 1,
            "is_full": False,
            "seat_holders": 0,
        }

    async def test_capacity_for_unknown_course(self, client):
        response = await client.get("/api/courses/C404/capacity")

        assert response.status_code == 404

    async def test_enrollment_listing_and_withdrawal(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", checkout["gateway_reference_id"])

        listing = (await client.get("/api/enrollments/user/u1")).json()
        withdrawn = await client.post(f"/api/enrollments/{checkout['enrollment_id']}/withdraw")

        assert listing["count"] == 1
        assert listing["enrollments"][0]["status"] == "confirmed"
        assert withdrawn.status_code == 200
        assert withdrawn.json()["status"] == "cancelled"

    async def test_advance_enrollment(self, client, fake_gateway):
        checkout = await start_card_checkout(client)
        fake_gateway.set_intent_status(checkout["gateway_reference_id"], "succeeded")
        await confirm(client, "TX1", checkout["gateway_reference_id"])

        response = await client.post(
            f"/api/enrollments/{checkout['enrollment_id']}/advance", json={"status": "active"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.json()["status"] == "healthy"
