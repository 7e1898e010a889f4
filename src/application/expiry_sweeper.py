from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import logging
from typing import Callable, Mapping

from sqlalchemy.orm import Session

from src.application.booking_transitions import BookingTransitions
from src.application.reconciliation import ReconcileOutcome, ReconciliationEngine
from src.application.reference_resolver import stored_correlation
from src.domain.clock import utc_now
from src.domain.exceptions import BookingEngineError, ExternalProviderError
from src.domain.payments import (
    EventSource,
    PaymentGateway,
    PaymentProvider,
)
from src.domain.state_machine import PaymentStateMachine, PaymentStatus
from src.infrastructure.db.session import Transactor
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_pending: list[str] = field(default_factory=list)
    expired_processing: list[str] = field(default_factory=list)
    reconciled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total_expired(self) -> int:
        return len(self.expired_pending) + len(self.expired_processing)


class ExpirySweeper:
    """
    Expires bookings whose payment never settled.

    Processing bookings are checked with their provider first so a payment
    that did go through is confirmed rather than expired.
    """

    def __init__(
        self,
        transactor: Transactor,
        reconciler: ReconciliationEngine,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        stale_pending_minutes: int = 30,
        stale_processing_minutes: int = 45,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactor = transactor
        self.reconciler = reconciler
        self.gateways = gateways
        self.stale_pending = timedelta(minutes=stale_pending_minutes)
        self.stale_processing = timedelta(minutes=stale_processing_minutes)
        self.batch_size = batch_size
        self.clock = clock

    def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport()

        for booking_id in self._stale_ids(PaymentStatus.PENDING, now - self.stale_pending):
            if self._expire(booking_id, PaymentStatus.PENDING, "Payment was never started", now):
                report.expired_pending.append(booking_id)

        for booking_id in self._stale_ids(PaymentStatus.PROCESSING, now - self.stale_processing):
            self._sweep_processing(booking_id, now, report)

        logger.info(
            "Sweep finished. expired_pending=%s expired_processing=%s reconciled=%s skipped=%s",
            len(report.expired_pending),
            len(report.expired_processing),
            len(report.reconciled),
            len(report.skipped),
        )
        return report

    def _stale_ids(self, status: PaymentStatus, cutoff: datetime) -> list[str]:
        with self.transactor.transaction() as db:
            return BookingRepository(db).stale_bookings(status, cutoff, self.batch_size)

    def _sweep_processing(self, booking_id: str, now: datetime, report: SweepReport) -> None:
        with self.transactor.transaction() as db:
            booking = BookingRepository(db).get_by_id(booking_id)
            if booking is None or booking.payment_status != PaymentStatus.PROCESSING:
                return
            provider = PaymentProvider(booking.payment_provider) if booking.payment_provider else None
            correlation_id = stored_correlation(booking, provider) if provider else None

        if provider and correlation_id:
            gateway = self.gateways.get(provider)
            if gateway is None:
                logger.warning(
                    "No gateway for stale booking; leaving it for later. booking_id=%s provider=%s",
                    booking_id,
                    provider.value,
                )
                report.skipped.append(booking_id)
                return
            try:
                event = gateway.fetch_payment(correlation_id)
            except ExternalProviderError as exc:
                logger.warning(
                    "Provider check failed during sweep; leaving booking for next run. booking_id=%s error=%s",
                    booking_id,
                    exc,
                )
                report.skipped.append(booking_id)
                return

            result = self.reconciler.reconcile(replace(event, source=EventSource.SWEEP))
            if result.outcome == ReconcileOutcome.APPLIED:
                report.reconciled.append(booking_id)
                return

        if self._expire(booking_id, PaymentStatus.PROCESSING, "Payment session timed out", now):
            report.expired_processing.append(booking_id)

    def _expire(
        self,
        booking_id: str,
        expected: PaymentStatus,
        reason: str,
        now: datetime,
    ) -> bool:
        def work(db: Session) -> bool:
            booking = BookingRepository(db).lock(booking_id)
            if booking.payment_status != expected or PaymentStateMachine.is_settled(
                booking.payment_status
            ):
                return False
            BookingTransitions(db, now).settle_unpaid(booking, PaymentStatus.EXPIRED, reason)
            return True

        try:
            expired = self.transactor.run(work, operation="expire_booking")
        except BookingEngineError:
            logger.exception("Could not expire stale booking %s", booking_id)
            return False
        if expired:
            logger.info("Expired stale booking. booking_id=%s was=%s", booking_id, expected.value)
        return expired
