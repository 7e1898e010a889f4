# src/domain/payments.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    PENDING = "pending"
    UNKNOWN = "unknown"


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    VERIFY = "verify"
    SWEEP = "sweep"


# Two-decimal currencies only; amounts are stored as price * 100 minor units.
SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "GBP", "MWK"})


def normalize_currency(currency: str) -> str:
    code = currency.strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(
            f"Unsupported currency {currency!r}; expected one of {', '.join(sorted(SUPPORTED_CURRENCIES))}"
        )
    return code


_REPORTED_STATUS_OUTCOMES: dict[str, PaymentOutcome] = {
    "paid": PaymentOutcome.SUCCEEDED,
    "succeeded": PaymentOutcome.SUCCEEDED,
    "successful": PaymentOutcome.SUCCEEDED,
    "success": PaymentOutcome.SUCCEEDED,
    "completed": PaymentOutcome.SUCCEEDED,
    "complete": PaymentOutcome.SUCCEEDED,
    "captured": PaymentOutcome.SUCCEEDED,
    "failed": PaymentOutcome.FAILED,
    "cancelled": PaymentOutcome.FAILED,
    "canceled": PaymentOutcome.FAILED,
    "declined": PaymentOutcome.FAILED,
    "expired": PaymentOutcome.EXPIRED,
    "pending": PaymentOutcome.PENDING,
    "processing": PaymentOutcome.PENDING,
    "created": PaymentOutcome.PENDING,
    "open": PaymentOutcome.PENDING,
    "unpaid": PaymentOutcome.PENDING,
    "issued": PaymentOutcome.PENDING,
    "partially_paid": PaymentOutcome.PENDING,
}


def outcome_for_status(reported_status: str | None) -> PaymentOutcome:
    """Maps a provider-reported status string onto a normalized outcome."""
    if not reported_status:
        return PaymentOutcome.UNKNOWN
    key = str(reported_status).strip().lower()
    return _REPORTED_STATUS_OUTCOMES.get(key, PaymentOutcome.UNKNOWN)


@dataclass(frozen=True)
class PaymentEvent:
    """A single inbound payment signal, consumed once by reconciliation."""

    provider: PaymentProvider
    correlation_id: str | None
    reported_status: str
    outcome: PaymentOutcome
    source: EventSource
    amount_minor: int | None = None
    currency: str | None = None
    payment_method: str | None = None
    provider_payment_id: str | None = None
    failure_reason: str | None = None
    booking_hint: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CustomerContact:
    email: str
    name: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class CheckoutRequest:
    booking_id: str
    booking_reference: str
    user_id: str
    amount_minor: int
    currency: str
    customer: CustomerContact
    correlation_seed: str
    attempt_key: str


@dataclass(frozen=True)
class CheckoutSession:
    provider: PaymentProvider
    correlation_id: str
    checkout_url: str
    provider_object_id: str | None = None


class PaymentGateway(ABC):
    """
    One external payment provider.

    Implementations perform network I/O and must never be called while a
    storage transaction is open.
    """

    provider: PaymentProvider

    @abstractmethod
    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Opens a hosted checkout. Raises ExternalProviderError."""

    @abstractmethod
    def fetch_payment(self, correlation_id: str) -> PaymentEvent:
        """Queries the provider for the authoritative state of a payment."""

    @abstractmethod
    def parse_webhook(self, body: bytes, signature: str | None) -> PaymentEvent | None:
        """
        Verifies and parses a webhook delivery.
        Raises SignatureError; returns None for event types we do not track.
        """
