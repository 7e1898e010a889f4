from datetime import timedelta
import hashlib
import hmac
import json
import time
from uuid import uuid4

from fastapi.testclient import TestClient
import pytest

from src.domain.clock import utc_now
from src.domain.exceptions import ExternalProviderError
from src.domain.payments import (
    CheckoutRequest,
    CheckoutSession,
    EventSource,
    PaymentEvent,
    PaymentProvider,
    outcome_for_status,
)
from src.infrastructure.config import Settings
from src.infrastructure.container import ServiceContainer
from src.infrastructure.db.models import Base
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway
from src.infrastructure.payments.stripe_gateway import StripeGateway
from src.main import create_app

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_test_secret"


class ScriptedGatewayMixin:
    """Real webhook verification, scripted checkout creation and status lookups."""

    def _init_script(self):
        self.created: list[CheckoutRequest] = []
        self.statuses: dict[str, dict] = {}
        self.create_error: ExternalProviderError | None = None
        self.fetch_error: ExternalProviderError | None = None

    def set_status(self, correlation_id: str, status: str, **fields) -> None:
        self.statuses[correlation_id] = {"status": status, **fields}

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        self.created.append(request)
        if self.create_error:
            raise self.create_error
        correlation_id = self._correlation_for(request)
        return CheckoutSession(
            provider=self.provider,
            correlation_id=correlation_id,
            checkout_url=f"https://pay.example.test/{self.provider.value}/{correlation_id}",
            provider_object_id=correlation_id,
        )

    def fetch_payment(self, correlation_id: str) -> PaymentEvent:
        if self.fetch_error:
            raise self.fetch_error
        scripted = self.statuses.get(correlation_id, {"status": "open"})
        status = scripted["status"]
        return PaymentEvent(
            provider=self.provider,
            correlation_id=correlation_id,
            reported_status=status,
            outcome=outcome_for_status(status),
            source=EventSource.VERIFY,
            amount_minor=scripted.get("amount_minor"),
            currency=scripted.get("currency"),
            payment_method=scripted.get("payment_method"),
            provider_payment_id=scripted.get("provider_payment_id"),
        )


class ScriptedStripeGateway(ScriptedGatewayMixin, StripeGateway):
    def __init__(self):
        super().__init__(
            secret_key="sk_test_dummy",
            webhook_secret=STRIPE_WEBHOOK_SECRET,
            app_url="http://testserver",
        )
        self._init_script()

    def _correlation_for(self, request: CheckoutRequest) -> str:
        return f"cs_test_{uuid4().hex}"


class ScriptedRazorpayGateway(ScriptedGatewayMixin, RazorpayGateway):
    def __init__(self):
        super().__init__(
            key_id="rzp_test_key",
            key_secret="rzp_test_secret",
            webhook_secret=RAZORPAY_WEBHOOK_SECRET,
            app_url="http://testserver",
        )
        self._init_script()

    def _correlation_for(self, request: CheckoutRequest) -> str:
        return request.correlation_seed


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def razorpay_signature(payload: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def dumps(payload: dict) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'bookings.db'}",
        db_connect_max_retries=1,
        tx_max_attempts=8,
        tx_backoff_base_seconds=0.01,
        rate_limit_points=1000,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
    )


@pytest.fixture
def gateways():
    return {
        PaymentProvider.STRIPE: ScriptedStripeGateway(),
        PaymentProvider.RAZORPAY: ScriptedRazorpayGateway(),
    }


@pytest.fixture
def container(settings, gateways):
    container = ServiceContainer.build(settings, gateways=gateways)
    Base.metadata.create_all(bind=container.engine)
    yield container
    container.engine.dispose()


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


@pytest.fixture
def make_schedule(container):
    def _make(seat_layout=("1A", "1B", "2A", "2B"), price=100, currency="MWK", hours_ahead=24):
        departure = utc_now() + timedelta(hours=hours_ahead)
        return container.seats.create_schedule(
            company_id="axa-coach",
            route_id="blantyre-lilongwe",
            bus_id="AXA-01",
            departure_at=departure,
            arrival_at=departure + timedelta(hours=4),
            price=price,
            currency=currency,
            seat_layout=list(seat_layout),
        )

    return _make


def passengers_for(seats):
    return [
        {"name": f"Passenger {seat}", "age": 30, "gender": "F", "seat_number": seat}
        for seat in seats
    ]


@pytest.fixture
def make_booking(container, make_schedule):
    def _make(user_id="user-1", seats=("1A",), schedule=None):
        schedule = schedule or make_schedule()
        return container.seats.allocate_seats(
            user_id=user_id,
            schedule_id=schedule.id,
            requested_seats=list(seats),
            passengers=passengers_for(seats),
        )

    return _make
