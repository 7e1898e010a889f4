from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from sqlalchemy.orm import Session

from src.application.booking_transitions import release_booking_seats
from src.domain.clock import as_utc, utc_now
from src.domain.exceptions import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from src.domain.payments import normalize_currency
from src.domain.state_machine import BookingStatus, PaymentStateMachine, PaymentStatus
from src.infrastructure.db.models import Booking, Schedule
from src.infrastructure.db.session import Transactor
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.seat_repository import SeatRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeatMap:
    schedule_id: str
    capacity: int
    available_seats: int
    booked: list[str]
    held: list[str]
    free: list[str]


@dataclass(frozen=True)
class HoldResult:
    schedule_id: str
    seats: list[str]
    expires_at: datetime


class SeatAllocationService:
    """
    Moves seats from free to booked on a schedule while creating the booking,
    in one atomic unit that is retried on storage write conflicts.
    """

    def __init__(
        self,
        transactor: Transactor,
        seat_hold_minutes: int = 10,
        default_currency: str = "MWK",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactor = transactor
        self.seat_hold_minutes = seat_hold_minutes
        self.default_currency = default_currency
        self.clock = clock

    def create_schedule(
        self,
        company_id: str,
        route_id: str,
        bus_id: str,
        departure_at: datetime,
        arrival_at: datetime,
        price: int,
        seat_layout: list[str],
        currency: str | None = None,
    ) -> Schedule:
        layout = _normalize_seats(seat_layout)
        try:
            currency = normalize_currency(currency or self.default_currency)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if as_utc(arrival_at) <= as_utc(departure_at):
            raise ValidationError("arrival_at must be after departure_at")
        if price < 0:
            raise ValidationError("price must not be negative")

        def work(db: Session) -> Schedule:
            return SeatRepository(db).create_schedule(
                company_id=company_id,
                route_id=route_id,
                bus_id=bus_id,
                departure_at=departure_at,
                arrival_at=arrival_at,
                price=price,
                currency=currency,
                seat_layout=layout,
            )

        schedule = self.transactor.run(work, operation="create_schedule")
        logger.info("Schedule created. schedule_id=%s capacity=%s", schedule.id, schedule.capacity)
        return schedule

    def allocate_seats(
        self,
        user_id: str,
        schedule_id: str,
        requested_seats: list[str],
        passengers: list[dict],
        price_per_seat: int | None = None,
    ) -> Booking:
        seats = _normalize_seats(requested_seats)
        manifest = _validate_manifest(seats, passengers)
        if price_per_seat is not None and price_per_seat < 0:
            raise ValidationError("price_per_seat must not be negative")

        def work(db: Session) -> Booking:
            now = self.clock()
            seat_repo = SeatRepository(db)
            schedule = seat_repo.lock_schedule(schedule_id)
            _ensure_bookable(schedule, now)
            _ensure_in_layout(schedule, seats)

            taken = seat_repo.booked_labels(schedule.id).intersection(seats)
            if taken:
                raise ConflictError(taken)

            held = {
                hold.seat_label
                for hold in seat_repo.active_holds(schedule.id, now)
                if hold.user_id != user_id
            }.intersection(seats)
            if held:
                raise ConflictError(
                    held,
                    f"Seats held by another customer: {', '.join(sorted(held))}",
                )

            if schedule.available_seats < len(seats):
                logger.error(
                    "Seat counter below free seats. schedule_id=%s available=%s requested=%s",
                    schedule.id,
                    schedule.available_seats,
                    len(seats),
                )
                raise ConflictError(
                    [],
                    f"Only {schedule.available_seats} seats available",
                )

            booking = BookingRepository(db).create_booking(
                user_id=user_id,
                schedule_id=schedule.id,
                seats=seats,
                passengers=manifest,
                price_per_seat=schedule.price if price_per_seat is None else price_per_seat,
                currency=schedule.currency,
                now=now,
            )
            db.flush()

            seat_repo.add_seats(schedule, booking.id, seats)
            seat_repo.release_holds(schedule.id, user_id, seats)
            OutboxRepository(db).add(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="BOOKING_CREATED",
                payload={
                    "booking_id": booking.id,
                    "booking_reference": booking.booking_reference,
                    "schedule_id": schedule.id,
                    "seats": seats,
                    "amount_minor": booking.amount_minor,
                    "currency": booking.currency,
                },
                dedupe_key=f"booking:{booking.id}:created",
            )
            return booking

        booking = self.transactor.run(work, operation="allocate_seats")
        logger.info(
            "Booking created. booking_id=%s reference=%s schedule_id=%s seats=%s",
            booking.id,
            booking.booking_reference,
            schedule_id,
            ",".join(seats),
        )
        return booking

    def hold_seats(
        self,
        user_id: str,
        schedule_id: str,
        requested_seats: list[str],
    ) -> HoldResult:
        seats = _normalize_seats(requested_seats)

        def work(db: Session) -> HoldResult:
            now = self.clock()
            seat_repo = SeatRepository(db)
            schedule = seat_repo.lock_schedule(schedule_id)
            _ensure_bookable(schedule, now)
            _ensure_in_layout(schedule, seats)
            seat_repo.purge_expired_holds(schedule.id, now)

            taken = seat_repo.booked_labels(schedule.id).intersection(seats)
            if taken:
                raise ConflictError(taken)
            held = {
                hold.seat_label
                for hold in seat_repo.active_holds(schedule.id, now)
                if hold.user_id != user_id
            }.intersection(seats)
            if held:
                raise ConflictError(
                    held,
                    f"Seats held by another customer: {', '.join(sorted(held))}",
                )

            expires_at = now + timedelta(minutes=self.seat_hold_minutes)
            for label in seats:
                seat_repo.upsert_hold(schedule.id, label, user_id, expires_at)
            return HoldResult(schedule_id=schedule.id, seats=seats, expires_at=expires_at)

        result = self.transactor.run(work, operation="hold_seats")
        logger.info(
            "Seats held. schedule_id=%s user_id=%s seats=%s until=%s",
            schedule_id,
            user_id,
            ",".join(result.seats),
            result.expires_at.isoformat(),
        )
        return result

    def release_holds(self, user_id: str, schedule_id: str) -> int:
        def work(db: Session) -> int:
            return SeatRepository(db).release_holds(schedule_id, user_id)

        return self.transactor.run(work, operation="release_holds")

    def seat_map(self, schedule_id: str) -> SeatMap:
        with self.transactor.transaction() as db:
            now = self.clock()
            seat_repo = SeatRepository(db)
            schedule = seat_repo.get_schedule(schedule_id)
            if not schedule:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            booked = seat_repo.booked_labels(schedule.id)
            held = {
                hold.seat_label
                for hold in seat_repo.active_holds(schedule.id, now)
            } - booked
            return SeatMap(
                schedule_id=schedule.id,
                capacity=schedule.capacity,
                available_seats=schedule.available_seats,
                booked=[s for s in schedule.seat_layout if s in booked],
                held=[s for s in schedule.seat_layout if s in held],
                free=[
                    s for s in schedule.seat_layout
                    if s not in booked and s not in held
                ],
            )

    def cancel_booking(self, user_id: str, booking_id: str) -> Booking:
        def work(db: Session) -> Booking:
            now = self.clock()
            booking = BookingRepository(db).lock(booking_id)
            if booking.user_id != user_id:
                raise AccessDeniedError("Booking belongs to another user")
            if booking.booking_status == BookingStatus.CANCELLED:
                raise StateError(
                    "Booking is already cancelled",
                    current_status=booking.booking_status.value,
                )
            if booking.payment_status == PaymentStatus.PAID:
                raise StateError(
                    "Paid bookings are cancelled through the refund flow",
                    current_status=booking.payment_status.value,
                )

            if not PaymentStateMachine.is_settled(booking.payment_status):
                PaymentStateMachine.validate_transition(
                    booking.payment_status, PaymentStatus.FAILED
                )
                booking.payment_status = PaymentStatus.FAILED
                booking.payment_failure_reason = "Booking cancelled by customer"

            booking.booking_status = BookingStatus.CANCELLED
            booking.cancelled_at = now
            released = release_booking_seats(db, booking)
            OutboxRepository(db).add(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="BOOKING_CANCELLED",
                payload={
                    "booking_id": booking.id,
                    "booking_reference": booking.booking_reference,
                    "released_seats": released,
                },
                dedupe_key=f"booking:{booking.id}:cancelled",
            )
            return booking

        booking = self.transactor.run(work, operation="cancel_booking")
        logger.info("Booking cancelled. booking_id=%s", booking.id)
        return booking


def _normalize_seats(requested_seats: list[str]) -> list[str]:
    seats = [str(seat).strip() for seat in requested_seats or []]
    if not seats or any(not seat for seat in seats):
        raise ValidationError("At least one seat label is required")
    duplicates = sorted({seat for seat in seats if seats.count(seat) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate seats requested: {', '.join(duplicates)}")
    return seats


def _validate_manifest(seats: list[str], passengers: list[dict]) -> list[dict]:
    if len(passengers) != len(seats):
        raise ValidationError(
            f"Expected {len(seats)} passengers, got {len(passengers)}"
        )
    manifest = []
    for passenger in passengers:
        name = str(passenger.get("name") or "").strip()
        if not name:
            raise ValidationError("Every passenger needs a name")
        manifest.append({**passenger, "name": name})

    manifest_seats = [str(p.get("seat_number") or "").strip() for p in manifest]
    if sorted(manifest_seats) != sorted(seats):
        raise ValidationError("Passenger seat numbers must match the requested seats")
    return manifest


def _ensure_bookable(schedule: Schedule, now: datetime) -> None:
    if schedule.status != "active":
        raise ValidationError(f"Schedule is {schedule.status}")
    if as_utc(schedule.departure_at) <= now:
        raise ValidationError("Trip has already departed")


def _ensure_in_layout(schedule: Schedule, seats: list[str]) -> None:
    unknown = [seat for seat in seats if seat not in schedule.seat_layout]
    if unknown:
        raise ValidationError(f"Unknown seats for this bus: {', '.join(unknown)}")
