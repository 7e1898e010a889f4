import logging

import pytest

from conftest import dumps, razorpay_signature, stripe_signature
from src.domain.payments import CustomerContact, PaymentProvider


@pytest.fixture
def initiated(container, make_booking):
    def _make(provider):
        booking = make_booking(seats=["1A"])
        result = container.payments.initiate_payment(
            "user-1", booking.id, provider, CustomerContact(email="user@example.mw")
        )
        return booking, result.correlation_id

    return _make


def _status(client, booking_id):
    return client.get(f"/bookings/{booking_id}", headers={"X-User-Id": "user-1"}).json()


def _post_stripe(client, payload, signature=None):
    body = dumps(payload)
    return client.post(
        "/payments/webhooks/stripe",
        content=body,
        headers={
            "Stripe-Signature": signature or stripe_signature(body),
            "Content-Type": "application/json",
        },
    )


def _post_razorpay(client, payload, signature=None):
    body = dumps(payload)
    return client.post(
        "/payments/webhooks/razorpay",
        content=body,
        headers={
            "X-Razorpay-Signature": signature or razorpay_signature(body),
            "Content-Type": "application/json",
        },
    )


def _stripe_completed(session_id, booking_id, amount=10000):
    return {
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "status": "complete",
                "payment_status": "paid",
                "amount_total": amount,
                "currency": "mwk",
                "client_reference_id": booking_id,
                "metadata": {"booking_id": booking_id},
                "payment_intent": "pi_1",
                "payment_method_types": ["card"],
            }
        },
    }


def _razorpay_paid(tx_ref, amount=10000):
    return {
        "entity": "event",
        "event": "payment_link.paid",
        "payload": {
            "payment_link": {
                "entity": {
                    "id": "plink_1",
                    "reference_id": tx_ref,
                    "status": "paid",
                    "amount": amount,
                    "amount_paid": amount,
                    "currency": "MWK",
                }
            },
            "payment": {"entity": {"id": "pay_1", "method": "wallet", "status": "captured"}},
        },
    }


def test_stripe_webhook_confirms_and_replay_is_noop(client, initiated):
    booking, session_id = initiated(PaymentProvider.STRIPE)
    payload = _stripe_completed(session_id, booking.id)

    first = _post_stripe(client, payload)
    replay = _post_stripe(client, payload)

    assert first.status_code == 200
    assert first.json()["result"] == "applied"
    assert replay.status_code == 200
    assert replay.json()["result"] == "ignored"
    status = _status(client, booking.id)
    assert status["payment_status"] == "paid"
    assert status["booking_status"] == "confirmed"
    assert not status["requires_review"]


def test_razorpay_webhook_with_short_payment_flags_review(client, initiated):
    booking, tx_ref = initiated(PaymentProvider.RAZORPAY)

    response = _post_razorpay(client, _razorpay_paid(tx_ref, amount=4000))

    assert response.json()["result"] == "applied"
    status = _status(client, booking.id)
    assert status["payment_status"] == "paid"
    assert status["requires_review"]


def test_bad_signature_is_rejected_and_audited(client, initiated, caplog):
    booking, tx_ref = initiated(PaymentProvider.RAZORPAY)

    with caplog.at_level(logging.WARNING, logger="security.audit"):
        response = _post_razorpay(client, _razorpay_paid(tx_ref), signature="0" * 64)

    assert response.status_code == 401
    assert _status(client, booking.id)["payment_status"] == "processing"
    assert any(record.name == "security.audit" for record in caplog.records)

    stripe_response = _post_stripe(
        client,
        _stripe_completed("cs_x", booking.id),
        signature="t=1,v1=deadbeef",
    )
    assert stripe_response.status_code == 401


def test_unknown_reference_is_acknowledged(client, initiated):
    booking, _ = initiated(PaymentProvider.RAZORPAY)

    response = _post_razorpay(client, _razorpay_paid(f"booking_{booking.id[:8]}_ffffffff"))

    assert response.status_code == 200
    assert response.json()["result"] == "not_found"
    assert _status(client, booking.id)["payment_status"] == "processing"


def test_untracked_event_type_is_ignored(client):
    response = _post_stripe(
        client,
        {"id": "evt_2", "object": "event", "type": "invoice.created", "data": {"object": {}}},
    )

    assert response.status_code == 200
    assert response.json() == {"result": "ignored", "booking_id": None, "payment_status": None}


def test_expired_link_releases_seat(client, initiated):
    booking, tx_ref = initiated(PaymentProvider.RAZORPAY)
    payload = _razorpay_paid(tx_ref)
    payload["event"] = "payment_link.expired"
    payload["payload"]["payment_link"]["entity"]["status"] = "expired"

    response = _post_razorpay(client, payload)

    assert response.json()["result"] == "applied"
    status = _status(client, booking.id)
    assert status["payment_status"] == "expired"
    assert status["booking_status"] == "cancelled"
    assert client.get(f"/schedules/{booking.schedule_id}").json()["booked"] == []


def test_verify_is_owner_only(client, initiated):
    _, session_id = initiated(PaymentProvider.STRIPE)

    response = client.get(
        "/payments/verify",
        params={"provider": "stripe", "session_id": session_id},
        headers={"X-User-Id": "someone-else"},
    )

    assert response.status_code == 403


def test_verify_requires_reference(client):
    response = client.get(
        "/payments/verify",
        params={"provider": "stripe"},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 400


def test_signed_malformed_razorpay_body_is_bad_request(client):
    body = b'{"event": "payment_link.paid", '
    response = client.post(
        "/payments/webhooks/razorpay",
        content=body,
        headers={
            "X-Razorpay-Signature": razorpay_signature(body),
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == 400
