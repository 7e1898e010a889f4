from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Callable

from sqlalchemy.orm import Session

from src.application.booking_transitions import BookingTransitions
from src.application.reference_resolver import ReferenceResolver
from src.domain.clock import utc_now
from src.domain.exceptions import NotFoundError
from src.domain.payments import PaymentEvent, PaymentOutcome
from src.domain.state_machine import IdempotencyGuard, PaymentStatus
from src.infrastructure.db.models import Booking
from src.infrastructure.db.session import Transactor
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

_TARGET_STATUS = {
    PaymentOutcome.SUCCEEDED: PaymentStatus.PAID,
    PaymentOutcome.FAILED: PaymentStatus.FAILED,
    PaymentOutcome.EXPIRED: PaymentStatus.EXPIRED,
}


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    booking_id: str | None = None
    payment_status: str | None = None
    reason: str | None = None


class ReconciliationEngine:
    """
    Single update path for webhooks, verify polls and sweep queries.

    Each event is applied in one transaction that resolves the booking,
    locks it and re-reads its payment status before writing, so concurrent
    signals for the same booking end in at most one settled transition.
    """

    def __init__(
        self,
        transactor: Transactor,
        resolver: ReferenceResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactor = transactor
        self.resolver = resolver or ReferenceResolver()
        self.clock = clock

    def reconcile(self, event: PaymentEvent) -> ReconcileResult:
        try:
            result = self.transactor.run(
                lambda db: self._apply(db, event),
                operation="reconcile",
            )
        except NotFoundError as exc:
            logger.warning(
                "Dropping payment event without booking. provider=%s source=%s correlation_id=%s status=%s",
                event.provider.value,
                event.source.value,
                event.correlation_id,
                event.reported_status,
            )
            return ReconcileResult(ReconcileOutcome.NOT_FOUND, reason=str(exc))

        logger.info(
            "Payment event reconciled. provider=%s source=%s booking_id=%s outcome=%s payment_status=%s reason=%s",
            event.provider.value,
            event.source.value,
            result.booking_id,
            result.outcome.value,
            result.payment_status,
            result.reason,
        )
        return result

    def _apply(self, db: Session, event: PaymentEvent) -> ReconcileResult:
        now = self.clock()
        repo = BookingRepository(db)
        resolved = self.resolver.resolve(
            db,
            event.provider,
            event.correlation_id,
            event.booking_hint,
        )
        booking = repo.lock(resolved.id)
        current = booking.payment_status

        if event.outcome == PaymentOutcome.UNKNOWN:
            return self._ignored(booking, f"unrecognised status {event.reported_status!r}")

        if event.outcome == PaymentOutcome.PENDING:
            if current in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                booking.payment_last_seen_at = now
                booking.payment_last_seen_status = (event.reported_status or "")[:32]
            return self._ignored(booking, f"non-terminal status {event.reported_status}")

        target = _TARGET_STATUS[event.outcome]
        decision = IdempotencyGuard.check(current, target)
        if not decision.apply:
            if target == PaymentStatus.PAID and current in (
                PaymentStatus.FAILED,
                PaymentStatus.EXPIRED,
            ):
                self._flag_late_payment(db, booking, event)
            return self._ignored(booking, decision.reason)

        transitions = BookingTransitions(db, now)
        if target == PaymentStatus.PAID:
            transitions.confirm(booking)
            self._record_payment(db, booking, event, now)
        else:
            transitions.settle_unpaid(booking, target, self._failure_reason(event))

        return ReconcileResult(
            ReconcileOutcome.APPLIED,
            booking_id=booking.id,
            payment_status=booking.payment_status.value,
        )

    def _record_payment(
        self,
        db: Session,
        booking: Booking,
        event: PaymentEvent,
        now: datetime,
    ) -> None:
        repo = BookingRepository(db)
        outbox = OutboxRepository(db)
        mismatch = _amount_mismatch(booking, event)

        if repo.get_payment_detail(booking.id) is None:
            repo.add_payment_detail(
                booking,
                provider=event.provider.value,
                provider_payment_id=event.provider_payment_id,
                correlation_id=event.correlation_id,
                amount_minor=event.amount_minor,
                currency=event.currency.upper() if event.currency else None,
                payment_method=event.payment_method,
                amount_mismatch=mismatch,
                source=event.source.value,
                raw=event.raw,
                confirmed_at=now,
            )
        else:
            logger.error("Payment detail already present for unpaid booking %s", booking.id)

        if mismatch:
            booking.requires_review = True
            logger.warning(
                "Paid amount differs from booking total. booking_id=%s expected=%s %s reported=%s %s",
                booking.id,
                booking.amount_minor,
                booking.currency,
                event.amount_minor,
                event.currency,
            )
            outbox.add(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="PAYMENT_AMOUNT_MISMATCH",
                payload={
                    "booking_id": booking.id,
                    "expected_amount_minor": booking.amount_minor,
                    "expected_currency": booking.currency,
                    "reported_amount_minor": event.amount_minor,
                    "reported_currency": event.currency,
                },
                dedupe_key=f"booking:{booking.id}:amount_mismatch",
            )

        outbox.add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="PAYMENT_CONFIRMED",
            payload={
                "booking_id": booking.id,
                "booking_reference": booking.booking_reference,
                "provider": event.provider.value,
                "provider_payment_id": event.provider_payment_id,
                "amount_minor": event.amount_minor,
                "currency": event.currency,
                "payment_method": event.payment_method,
                "source": event.source.value,
            },
            dedupe_key=f"booking:{booking.id}:payment_paid",
        )

    def _flag_late_payment(self, db: Session, booking: Booking, event: PaymentEvent) -> None:
        booking.requires_review = True
        logger.warning(
            "Success reported for booking already %s. booking_id=%s provider=%s correlation_id=%s",
            booking.payment_status.value,
            booking.id,
            event.provider.value,
            event.correlation_id,
        )
        OutboxRepository(db).add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="PAYMENT_AFTER_TERMINAL",
            payload={
                "booking_id": booking.id,
                "payment_status": booking.payment_status.value,
                "provider": event.provider.value,
                "provider_payment_id": event.provider_payment_id,
                "amount_minor": event.amount_minor,
                "currency": event.currency,
            },
            dedupe_key=f"booking:{booking.id}:payment_after_terminal",
        )

    @staticmethod
    def _failure_reason(event: PaymentEvent) -> str:
        if event.failure_reason:
            return event.failure_reason
        if event.outcome == PaymentOutcome.EXPIRED:
            return f"{event.provider.value}: checkout expired"
        return f"{event.provider.value}: payment {event.reported_status}"

    @staticmethod
    def _ignored(booking: Booking, reason: str | None) -> ReconcileResult:
        return ReconcileResult(
            ReconcileOutcome.IGNORED,
            booking_id=booking.id,
            payment_status=booking.payment_status.value,
            reason=reason,
        )


def _amount_mismatch(booking: Booking, event: PaymentEvent) -> bool:
    if event.amount_minor is None or not event.currency:
        return False
    return (
        event.amount_minor != booking.amount_minor
        or event.currency.upper() != booking.currency.upper()
    )
