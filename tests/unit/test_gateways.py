import pytest

from conftest import (
    RAZORPAY_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_SECRET,
    dumps,
    razorpay_signature,
    stripe_signature,
)
from src.domain.exceptions import ConfigurationError, SignatureError, ValidationError
from src.domain.payments import EventSource, PaymentOutcome, PaymentProvider
from src.infrastructure.payments.razorpay_gateway import (
    RazorpayGateway,
    classify_razorpay_method,
)
from src.infrastructure.payments.stripe_gateway import StripeGateway, classify_stripe_method


@pytest.fixture
def stripe_gateway():
    return StripeGateway(
        secret_key=None,
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        app_url="http://testserver",
    )


@pytest.fixture
def razorpay_gateway():
    return RazorpayGateway(
        key_id=None,
        key_secret=None,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        app_url="http://testserver",
    )


def _stripe_event(event_type, obj):
    return {"id": "evt_test_1", "object": "event", "type": event_type, "data": {"object": obj}}


def test_payment_methods_are_classified():
    assert classify_stripe_method("card") == "card"
    assert classify_stripe_method("us_bank_account") == "bank_transfer"
    assert classify_stripe_method("alipay") == "mobile_money"
    assert classify_stripe_method("klarna") == "klarna"
    assert classify_razorpay_method("upi") == "mobile_money"
    assert classify_razorpay_method("netbanking") == "bank_transfer"
    assert classify_razorpay_method("card") == "card"
    assert classify_razorpay_method("paylater") == "paylater"
    assert classify_razorpay_method(None) is None


def test_stripe_completed_session(stripe_gateway):
    body = dumps(
        _stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_test_abc",
                "object": "checkout.session",
                "status": "complete",
                "payment_status": "paid",
                "amount_total": 10000,
                "currency": "mwk",
                "client_reference_id": "booking-1",
                "metadata": {"booking_id": "booking-1"},
                "payment_intent": "pi_123",
                "payment_method_types": ["card"],
            },
        )
    )

    event = stripe_gateway.parse_webhook(body, stripe_signature(body))

    assert event.provider == PaymentProvider.STRIPE
    assert event.correlation_id == "cs_test_abc"
    assert event.outcome == PaymentOutcome.SUCCEEDED
    assert event.source == EventSource.WEBHOOK
    assert event.amount_minor == 10000
    assert event.currency == "MWK"
    assert event.payment_method == "card"
    assert event.provider_payment_id == "pi_123"
    assert event.booking_hint == "booking-1"


def test_stripe_unpaid_completion_and_async_outcomes(stripe_gateway):
    unpaid = {"id": "cs_1", "status": "complete", "payment_status": "unpaid"}
    cases = [
        ("checkout.session.completed", unpaid, PaymentOutcome.PENDING),
        ("checkout.session.async_payment_succeeded", unpaid, PaymentOutcome.SUCCEEDED),
        ("checkout.session.async_payment_failed", unpaid, PaymentOutcome.FAILED),
        ("checkout.session.expired", {"id": "cs_1", "status": "expired"}, PaymentOutcome.EXPIRED),
    ]
    for event_type, obj, expected in cases:
        body = dumps(_stripe_event(event_type, obj))
        assert stripe_gateway.parse_webhook(body, stripe_signature(body)).outcome == expected


def test_stripe_intent_failure_keeps_session_open(stripe_gateway):
    body = dumps(
        _stripe_event(
            "payment_intent.payment_failed",
            {
                "id": "pi_9",
                "amount": 10000,
                "currency": "mwk",
                "metadata": {"booking_id": "booking-9"},
                "last_payment_error": {"message": "Your card was declined."},
            },
        )
    )

    event = stripe_gateway.parse_webhook(body, stripe_signature(body))

    assert event.outcome == PaymentOutcome.PENDING
    assert event.correlation_id is None
    assert event.booking_hint == "booking-9"
    assert event.failure_reason == "Your card was declined."


def test_stripe_untracked_event_type(stripe_gateway):
    body = dumps(_stripe_event("customer.created", {"id": "cus_1"}))
    assert stripe_gateway.parse_webhook(body, stripe_signature(body)) is None


def test_stripe_bad_signature(stripe_gateway):
    body = dumps(_stripe_event("checkout.session.completed", {"id": "cs_1"}))

    with pytest.raises(SignatureError):
        stripe_gateway.parse_webhook(body, stripe_signature(body, secret="whsec_wrong"))
    with pytest.raises(SignatureError):
        stripe_gateway.parse_webhook(body, None)


def test_stripe_calls_need_keys(stripe_gateway):
    with pytest.raises(ConfigurationError):
        stripe_gateway.fetch_payment("cs_1")


def _razorpay_link_event(event_type, status, reference_id="booking_3f2a9c1e_0a1b2c3d"):
    return {
        "entity": "event",
        "event": event_type,
        "payload": {
            "payment_link": {
                "entity": {
                    "id": "plink_1",
                    "reference_id": reference_id,
                    "status": status,
                    "amount": 10000,
                    "amount_paid": 10000 if status == "paid" else 0,
                    "currency": "MWK",
                    "notes": {"booking_id": "3f2a9c1e-booking"},
                }
            },
            "payment": {
                "entity": {
                    "id": "pay_1",
                    "amount": 10000,
                    "currency": "MWK",
                    "method": "upi",
                    "status": "captured",
                }
            },
        },
    }


def test_razorpay_paid_link(razorpay_gateway):
    body = dumps(_razorpay_link_event("payment_link.paid", "paid"))

    event = razorpay_gateway.parse_webhook(body, razorpay_signature(body))

    assert event.provider == PaymentProvider.RAZORPAY
    assert event.correlation_id == "booking_3f2a9c1e_0a1b2c3d"
    assert event.outcome == PaymentOutcome.SUCCEEDED
    assert event.amount_minor == 10000
    assert event.payment_method == "mobile_money"
    assert event.provider_payment_id == "pay_1"
    assert event.booking_hint == "3f2a9c1e-booking"


def test_razorpay_link_outcomes(razorpay_gateway):
    cases = [
        ("payment_link.cancelled", "cancelled", PaymentOutcome.FAILED),
        ("payment_link.expired", "expired", PaymentOutcome.EXPIRED),
        ("payment_link.partially_paid", "partially_paid", PaymentOutcome.PENDING),
    ]
    for event_type, status, expected in cases:
        body = dumps(_razorpay_link_event(event_type, status))
        assert razorpay_gateway.parse_webhook(body, razorpay_signature(body)).outcome == expected


def test_razorpay_untracked_event_and_bad_signature(razorpay_gateway):
    body = dumps({"event": "refund.processed", "payload": {}})
    assert razorpay_gateway.parse_webhook(body, razorpay_signature(body)) is None

    with pytest.raises(SignatureError):
        razorpay_gateway.parse_webhook(body, razorpay_signature(body, secret="nope"))


def test_razorpay_signed_but_malformed_body(razorpay_gateway):
    for body in (b"{not json", b"[1, 2]"):
        with pytest.raises(ValidationError):
            razorpay_gateway.parse_webhook(body, razorpay_signature(body))


def test_webhook_secret_required():
    gateway = RazorpayGateway(None, None, None, app_url="http://testserver")
    with pytest.raises(ConfigurationError):
        gateway.parse_webhook(b"{}", "sig")
