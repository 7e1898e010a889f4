# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.domain.exceptions import NotFoundError
from src.domain.references import generate_booking_reference
from src.domain.state_machine import BookingStatus, PaymentStatus
from src.infrastructure.db.models import Booking, PaymentDetail


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(self, booking_id: str) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        booking = self.db.execute(stmt).scalar_one_or_none()
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def find_by_field(self, column, value: str) -> list[Booking]:
        stmt = select(Booking).where(column == value).limit(2).with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def find_by_id_prefix(self, prefix: str, limit: int = 10) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.id.startswith(prefix, autoescape=True))
            .limit(limit)
            .with_for_update()
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        user_id: str,
        schedule_id: str,
        seats: list[str],
        passengers: list[dict],
        price_per_seat: int,
        currency: str,
        now: datetime,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            schedule_id=schedule_id,
            booking_reference=generate_booking_reference(),
            seat_numbers=list(seats),
            passengers=passengers,
            price_per_seat=price_per_seat,
            amount_minor=price_per_seat * len(seats) * 100,
            currency=currency,
            booking_status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            requires_review=False,
            created_at=now,
        )

        self.db.add(booking)
        return booking

    def stale_bookings(
        self,
        payment_status: PaymentStatus,
        cutoff: datetime,
        limit: int = 100,
    ) -> list[str]:
        timestamp = (
            Booking.payment_initiated_at
            if payment_status == PaymentStatus.PROCESSING
            else Booking.created_at
        )
        stmt = (
            select(Booking.id)
            .where(Booking.payment_status == payment_status)
            .where(timestamp < cutoff)
            .order_by(timestamp)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_payment_detail(self, booking: Booking, **fields) -> PaymentDetail:
        detail = PaymentDetail(booking_id=booking.id, **fields)
        self.db.add(detail)
        return detail

    def get_payment_detail(self, booking_id: str) -> PaymentDetail | None:
        stmt = select(PaymentDetail).where(PaymentDetail.booking_id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()
