# src/infrastructure/repositories/seat_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import delete, select

from src.domain.clock import as_utc
from src.domain.exceptions import NotFoundError
from src.infrastructure.db.models import BookedSeat, Schedule, SeatHold


class SeatRepository:
    """
    The only writer of a schedule's booked seats and available count.
    Callers must hold the schedule row from lock_schedule().
    """

    def __init__(self, db: Session):
        self.db = db

    def lock_schedule(self, schedule_id: str) -> Schedule:
        """
        SELECT ... FOR UPDATE
        Prevents race conditions.
        """

        stmt = (
            select(Schedule)
            .where(Schedule.id == schedule_id)
            .with_for_update()
        )

        schedule = self.db.execute(stmt).scalar_one_or_none()

        if not schedule:
            raise NotFoundError(f"Schedule {schedule_id} not found")

        return schedule

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        stmt = select(Schedule).where(Schedule.id == schedule_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_schedule(
        self,
        company_id: str,
        route_id: str,
        bus_id: str,
        departure_at: datetime,
        arrival_at: datetime,
        price: int,
        currency: str,
        seat_layout: list[str],
    ) -> Schedule:
        schedule = Schedule(
            company_id=company_id,
            route_id=route_id,
            bus_id=bus_id,
            departure_at=departure_at,
            arrival_at=arrival_at,
            price=price,
            currency=currency,
            seat_layout=list(seat_layout),
            capacity=len(seat_layout),
            available_seats=len(seat_layout),
            status="active",
        )
        self.db.add(schedule)
        return schedule

    def booked_labels(self, schedule_id: str) -> set[str]:
        stmt = select(BookedSeat.seat_label).where(BookedSeat.schedule_id == schedule_id)
        return set(self.db.execute(stmt).scalars().all())

    def add_seats(
        self,
        schedule: Schedule,
        booking_id: str,
        seats: list[str],
    ) -> None:
        for label in seats:
            self.db.add(
                BookedSeat(
                    schedule_id=schedule.id,
                    seat_label=label,
                    booking_id=booking_id,
                )
            )
        schedule.available_seats -= len(seats)

    def release_seats(self, schedule: Schedule, booking_id: str) -> int:
        """Frees the booking's seats; returns how many were still held."""
        stmt = select(BookedSeat).where(BookedSeat.booking_id == booking_id)
        rows = list(self.db.execute(stmt).scalars().all())
        for row in rows:
            self.db.delete(row)
        if rows:
            schedule.available_seats += len(rows)
        return len(rows)

    # -----------------------------
    # Holds (advisory)
    # -----------------------------
    def holds_for(self, schedule_id: str) -> list[SeatHold]:
        stmt = select(SeatHold).where(SeatHold.schedule_id == schedule_id)
        return list(self.db.execute(stmt).scalars().all())

    def active_holds(self, schedule_id: str, now: datetime) -> list[SeatHold]:
        return [
            hold
            for hold in self.holds_for(schedule_id)
            if as_utc(hold.expires_at) > now
        ]

    def purge_expired_holds(self, schedule_id: str, now: datetime) -> int:
        expired = [
            hold
            for hold in self.holds_for(schedule_id)
            if as_utc(hold.expires_at) <= now
        ]
        for hold in expired:
            self.db.delete(hold)
        if expired:
            self.db.flush()
        return len(expired)

    def upsert_hold(
        self,
        schedule_id: str,
        seat_label: str,
        user_id: str,
        expires_at: datetime,
    ) -> SeatHold:
        stmt = (
            select(SeatHold)
            .where(SeatHold.schedule_id == schedule_id)
            .where(SeatHold.seat_label == seat_label)
        )
        hold = self.db.execute(stmt).scalar_one_or_none()
        if hold:
            hold.user_id = user_id
            hold.expires_at = expires_at
            return hold

        hold = SeatHold(
            schedule_id=schedule_id,
            seat_label=seat_label,
            user_id=user_id,
            expires_at=expires_at,
        )
        self.db.add(hold)
        return hold

    def release_holds(
        self,
        schedule_id: str,
        user_id: str,
        seats: list[str] | None = None,
    ) -> int:
        stmt = (
            delete(SeatHold)
            .where(SeatHold.schedule_id == schedule_id)
            .where(SeatHold.user_id == user_id)
        )
        if seats is not None:
            stmt = stmt.where(SeatHold.seat_label.in_(seats))
        result = self.db.execute(stmt)
        return result.rowcount or 0
