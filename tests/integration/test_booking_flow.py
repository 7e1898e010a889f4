from datetime import timedelta

from conftest import passengers_for
from src.domain.clock import utc_now
from src.domain.payments import PaymentProvider


def _create_schedule(client, seats=("1A", "1B", "2A", "2B"), price=100):
    departure = utc_now() + timedelta(days=1)
    response = client.post(
        "/schedules",
        json={
            "company_id": "axa-coach",
            "route_id": "blantyre-lilongwe",
            "bus_id": "AXA-01",
            "departure_at": departure.isoformat(),
            "arrival_at": (departure + timedelta(hours=4)).isoformat(),
            "price": price,
            "currency": "MWK",
            "seat_layout": list(seats),
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


def _book(client, schedule_id, seats, user_id="user-1"):
    return client.post(
        "/bookings",
        headers={"X-User-Id": user_id},
        json={
            "schedule_id": schedule_id,
            "seats": list(seats),
            "passengers": passengers_for(seats),
        },
    )


def test_health(client):
    assert client.get("/health").status_code == 200


def test_booking_flow(client, gateways):
    schedule_id = _create_schedule(client)

    response = _book(client, schedule_id, ["1A", "1B"])

    assert response.status_code == 201
    booking = response.json()
    assert booking["booking_reference"].startswith("BK")
    assert booking["amount_minor"] == 20000
    assert booking["booking_status"] == "pending"
    assert booking["payment_status"] == "pending"

    seat_map = client.get(f"/schedules/{schedule_id}").json()
    assert seat_map["booked"] == ["1A", "1B"]
    assert seat_map["available_seats"] == 2

    pay_response = client.post(
        "/payments/initiate",
        headers={"X-User-Id": "user-1"},
        json={
            "booking_id": booking["booking_id"],
            "provider": "razorpay",
            "customer": {"email": "thoko@example.mw", "name": "Thoko"},
        },
    )
    assert pay_response.status_code == 200
    tx_ref = pay_response.json()["correlation_id"]
    assert pay_response.json()["checkout_url"].endswith(tx_ref)

    gateways[PaymentProvider.RAZORPAY].set_status(
        tx_ref, "paid", amount_minor=20000, currency="MWK", payment_method="upi"
    )
    verify = client.get(
        "/payments/verify",
        params={"provider": "razorpay", "tx_ref": tx_ref},
        headers={"X-User-Id": "user-1"},
    )
    assert verify.status_code == 200
    assert verify.json()["payment_status"] == "paid"
    assert verify.json()["booking_status"] == "confirmed"
    assert verify.json()["result"] == "applied"

    status = client.get(
        f"/bookings/{booking['booking_id']}",
        headers={"X-User-Id": "user-1"},
    )
    assert status.json()["payment_status"] == "paid"

    outbox = client.get("/outbox/events").json()
    assert {item["event_type"] for item in outbox} >= {
        "BOOKING_CREATED",
        "PAYMENT_INITIATED",
        "PAYMENT_CONFIRMED",
    }
    published = client.post(f"/outbox/events/{outbox[0]['id']}/mark-published")
    assert published.json()["status"] == "PUBLISHED"


def test_conflicting_seats_return_409(client):
    schedule_id = _create_schedule(client)
    assert _book(client, schedule_id, ["1A"], user_id="user-1").status_code == 201

    response = _book(client, schedule_id, ["1A", "2A"], user_id="user-2")

    assert response.status_code == 409
    assert response.json()["detail"]["conflicting_seats"] == ["1A"]


def test_validation_and_identity_errors(client):
    schedule_id = _create_schedule(client)

    assert _book(client, schedule_id, ["9Z"]).status_code == 400
    assert _book(client, "missing-schedule", ["1A"]).status_code == 404
    no_user = client.post(
        "/bookings",
        json={"schedule_id": schedule_id, "seats": ["1A"], "passengers": passengers_for(["1A"])},
    )
    assert no_user.status_code == 401


def test_bookings_are_private(client):
    schedule_id = _create_schedule(client)
    booking_id = _book(client, schedule_id, ["1A"]).json()["booking_id"]

    response = client.get(f"/bookings/{booking_id}", headers={"X-User-Id": "intruder"})

    assert response.status_code == 403


def test_double_initiation_returns_409(client):
    schedule_id = _create_schedule(client)
    booking_id = _book(client, schedule_id, ["1A"]).json()["booking_id"]
    payload = {
        "booking_id": booking_id,
        "provider": "stripe",
        "customer": {"email": "a@example.mw"},
    }

    first = client.post("/payments/initiate", headers={"X-User-Id": "user-1"}, json=payload)
    second = client.post(
        "/payments/initiate",
        headers={"X-User-Id": "user-1"},
        json={**payload, "provider": "razorpay"},
    )

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"]["current_status"] == "processing"


def test_holds_and_cancellation(client):
    schedule_id = _create_schedule(client)
    hold = client.post(
        f"/schedules/{schedule_id}/holds",
        headers={"X-User-Id": "user-1"},
        json={"seats": ["2A"]},
    )
    assert hold.status_code == 200
    assert client.get(f"/schedules/{schedule_id}").json()["held"] == ["2A"]
    assert _book(client, schedule_id, ["2A"], user_id="user-2").status_code == 409

    released = client.delete(f"/schedules/{schedule_id}/holds", headers={"X-User-Id": "user-1"})
    assert released.json() == {"released": 1}

    booking_id = _book(client, schedule_id, ["2A"], user_id="user-2").json()["booking_id"]
    cancelled = client.post(f"/bookings/{booking_id}/cancel", headers={"X-User-Id": "user-2"})
    assert cancelled.status_code == 200
    assert cancelled.json()["booking_status"] == "cancelled"
    assert client.get(f"/schedules/{schedule_id}").json()["free"] == ["1A", "1B", "2A", "2B"]

    again = client.post(f"/bookings/{booking_id}/cancel", headers={"X-User-Id": "user-2"})
    assert again.status_code == 409


def test_admin_sweep(client):
    response = client.post("/admin/sweep")
    assert response.status_code == 200
    assert response.json()["expired_pending"] == []


def test_rate_limit(client, container):
    container.rate_limiter.points = 2
    container.rate_limiter.reset()
    schedule_id = _create_schedule(client, seats=("1A", "1B", "1C"))

    codes = [_book(client, schedule_id, [seat]).status_code for seat in ("1A", "1B", "1C")]

    assert codes[:2] == [201, 201]
    assert codes[2] == 429


def test_schedule_currency_must_be_supported(client):
    departure = utc_now() + timedelta(days=1)
    payload = {
        "company_id": "axa-coach",
        "route_id": "blantyre-lilongwe",
        "bus_id": "AXA-01",
        "departure_at": departure.isoformat(),
        "arrival_at": (departure + timedelta(hours=4)).isoformat(),
        "price": 5000,
        "seat_layout": ["1A"],
    }

    rejected = client.post("/schedules", json={**payload, "currency": "JPY"})
    defaulted = client.post("/schedules", json=payload)

    assert rejected.status_code == 422
    assert defaulted.status_code == 201
    assert defaulted.json()["currency"] == "MWK"
