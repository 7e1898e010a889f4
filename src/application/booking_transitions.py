from datetime import datetime
import logging

from sqlalchemy.orm import Session

from src.domain.state_machine import BookingStatus, PaymentStateMachine, PaymentStatus
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.seat_repository import SeatRepository

logger = logging.getLogger(__name__)

_BOOKING_STATUS_AFTER = {
    PaymentStatus.FAILED: BookingStatus.FAILED,
    PaymentStatus.EXPIRED: BookingStatus.CANCELLED,
}


def release_booking_seats(db: Session, booking: Booking) -> int:
    """Gives a booking's seats back to its schedule under the schedule lock."""
    seat_repo = SeatRepository(db)
    schedule = seat_repo.lock_schedule(booking.schedule_id)
    released = seat_repo.release_seats(schedule, booking.id)
    if released:
        logger.info(
            "Released seats. booking_id=%s schedule_id=%s seats=%s available=%s",
            booking.id,
            schedule.id,
            released,
            schedule.available_seats,
        )
    return released


class BookingTransitions:
    """Payment status changes applied inside an open transaction."""

    def __init__(self, db: Session, now: datetime):
        self.db = db
        self.now = now
        self.outbox = OutboxRepository(db)

    def start_processing(self, booking: Booking) -> None:
        self._transition(booking, PaymentStatus.PROCESSING)
        booking.payment_initiated_at = self.now

    def confirm(self, booking: Booking) -> None:
        self._transition(booking, PaymentStatus.PAID)
        booking.booking_status = BookingStatus.CONFIRMED
        booking.payment_confirmed_at = self.now
        booking.payment_failure_reason = None

    def settle_unpaid(
        self,
        booking: Booking,
        target: PaymentStatus,
        reason: str,
    ) -> int:
        """Moves a booking to failed/expired and frees its seats."""
        self._transition(booking, target)
        booking.payment_failure_reason = reason
        if booking.booking_status != BookingStatus.CANCELLED:
            booking.booking_status = _BOOKING_STATUS_AFTER[target]
        released = release_booking_seats(self.db, booking)
        self.outbox.add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type=f"PAYMENT_{target.value.upper()}",
            payload={
                "booking_id": booking.id,
                "booking_reference": booking.booking_reference,
                "reason": reason,
                "released_seats": released,
            },
            dedupe_key=f"booking:{booking.id}:payment_{target.value}",
        )
        return released

    def _transition(self, booking: Booking, to_status: PaymentStatus) -> None:
        PaymentStateMachine.validate_transition(booking.payment_status, to_status)
        booking.payment_status = to_status
