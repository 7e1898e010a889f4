from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Mapping
from uuid import uuid4

from sqlalchemy.orm import Session

from src.application.booking_transitions import BookingTransitions
from src.domain.clock import utc_now
from src.domain.exceptions import (
    AccessDeniedError,
    ConfigurationError,
    ExternalProviderError,
    StateError,
    ValidationError,
)
from src.domain.payments import (
    CheckoutRequest,
    CheckoutSession,
    CustomerContact,
    PaymentGateway,
    PaymentProvider,
)
from src.domain.references import generate_transaction_reference
from src.domain.state_machine import BookingStatus, PaymentStatus
from src.infrastructure.db.models import Booking
from src.infrastructure.db.session import Transactor
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    booking_id: str
    provider: PaymentProvider
    correlation_id: str
    checkout_url: str


def _has_correlation(booking: Booking) -> bool:
    return bool(booking.stripe_session_id or booking.transaction_reference)


def _ensure_payable(booking: Booking) -> None:
    if booking.booking_status in (BookingStatus.CANCELLED, BookingStatus.FAILED):
        raise StateError(
            f"Booking is {booking.booking_status.value}",
            current_status=booking.booking_status.value,
        )
    if booking.payment_status != PaymentStatus.PENDING:
        raise StateError(
            f"Payment already {booking.payment_status.value} for this booking",
            current_status=booking.payment_status.value,
        )
    if _has_correlation(booking):
        raise StateError(
            "Booking already has a payment session",
            current_status=booking.payment_status.value,
        )


class PaymentInitiationService:
    """
    Opens a checkout with one provider for a pending booking.

    Booking state is checked and written in two short transactions;
    the provider is called between them with no transaction open.
    """

    def __init__(
        self,
        transactor: Transactor,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactor = transactor
        self.gateways = gateways
        self.clock = clock

    def initiate_payment(
        self,
        user_id: str,
        booking_id: str,
        provider: PaymentProvider,
        customer: CustomerContact,
    ) -> CheckoutResult:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ConfigurationError(f"Payment provider {provider.value} is not configured")
        if not customer.email or "@" not in customer.email:
            raise ValidationError("A valid customer email is required")

        request = self.transactor.run(
            lambda db: self._prepare(db, user_id, booking_id, customer),
            operation="prepare_payment",
        )

        try:
            session = gateway.create_checkout(request)
        except ExternalProviderError as exc:
            logger.warning(
                "Checkout creation failed. booking_id=%s provider=%s error=%s",
                booking_id,
                provider.value,
                exc,
            )
            self.transactor.run(
                lambda db: self._mark_failed(db, booking_id, str(exc)),
                operation="fail_payment_initiation",
            )
            raise

        self.transactor.run(
            lambda db: self._record_session(db, booking_id, session),
            operation="record_payment_session",
        )
        logger.info(
            "Payment initiated. booking_id=%s provider=%s correlation_id=%s",
            booking_id,
            provider.value,
            session.correlation_id,
        )
        return CheckoutResult(
            booking_id=booking_id,
            provider=provider,
            correlation_id=session.correlation_id,
            checkout_url=session.checkout_url,
        )

    def _prepare(
        self,
        db: Session,
        user_id: str,
        booking_id: str,
        customer: CustomerContact,
    ) -> CheckoutRequest:
        booking = BookingRepository(db).lock(booking_id)
        if booking.user_id != user_id:
            raise AccessDeniedError("Booking belongs to another user")
        _ensure_payable(booking)

        booking.contact_email = customer.email
        booking.contact_phone = customer.phone
        return CheckoutRequest(
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            user_id=booking.user_id,
            amount_minor=booking.amount_minor,
            currency=booking.currency,
            customer=customer,
            correlation_seed=generate_transaction_reference(booking.id),
            attempt_key=f"checkout-{booking.id}-{uuid4().hex}",
        )

    def _record_session(
        self,
        db: Session,
        booking_id: str,
        session: CheckoutSession,
    ) -> None:
        booking = BookingRepository(db).lock(booking_id)
        try:
            _ensure_payable(booking)
        except StateError:
            logger.warning(
                "Booking changed while checkout was created; leaving provider session to expire. booking_id=%s provider=%s correlation_id=%s",
                booking_id,
                session.provider.value,
                session.correlation_id,
            )
            raise

        BookingTransitions(db, self.clock()).start_processing(booking)
        booking.payment_provider = session.provider.value
        if session.provider == PaymentProvider.STRIPE:
            booking.stripe_session_id = session.correlation_id
        else:
            booking.transaction_reference = session.correlation_id

        OutboxRepository(db).add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="PAYMENT_INITIATED",
            payload={
                "booking_id": booking.id,
                "provider": session.provider.value,
                "correlation_id": session.correlation_id,
            },
            dedupe_key=f"booking:{booking.id}:payment_initiated",
        )

    def _mark_failed(self, db: Session, booking_id: str, reason: str) -> None:
        booking = BookingRepository(db).lock(booking_id)
        if booking.payment_status != PaymentStatus.PENDING or _has_correlation(booking):
            logger.info(
                "Not failing booking %s after provider error; status is %s",
                booking_id,
                booking.payment_status.value,
            )
            return
        BookingTransitions(db, self.clock()).settle_unpaid(
            booking,
            PaymentStatus.FAILED,
            reason,
        )
