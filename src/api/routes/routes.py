import logging

from fastapi import APIRouter, Depends, status

from src.api.dependencies import (
    get_container,
    get_current_user_id,
    rate_limited,
    to_http_error,
)
from src.api.schemas.schemas import (
    BookingRequest,
    BookingResponse,
    HoldRequest,
    HoldResponse,
    OutboxEventResponse,
    ScheduleCreate,
    ScheduleResponse,
    SeatMapResponse,
    SweepResponse,
)
from src.domain.exceptions import AccessDeniedError, BookingEngineError, NotFoundError
from src.infrastructure.container import ServiceContainer
from src.infrastructure.db.models import Booking, OutboxEvent, Schedule
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        schedule_id=booking.schedule_id,
        seats=list(booking.seat_numbers),
        amount_minor=booking.amount_minor,
        currency=booking.currency,
        booking_status=booking.booking_status.value,
        payment_status=booking.payment_status.value,
        payment_provider=booking.payment_provider,
        payment_failure_reason=booking.payment_failure_reason,
        requires_review=booking.requires_review,
    )


def _schedule_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        capacity=schedule.capacity,
        available_seats=schedule.available_seats,
        price=schedule.price,
        currency=schedule.currency,
        departure_at=schedule.departure_at.isoformat(),
        status=schedule.status,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Bus Booking Integrity Engine is running"}


# -----------------------------
# Schedules and seat holds
# -----------------------------
@router.post(
    "/schedules",
    response_model=ScheduleResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_schedule(
    request: ScheduleCreate,
    container: ServiceContainer = Depends(get_container),
):
    try:
        schedule = container.seats.create_schedule(
            company_id=request.company_id,
            route_id=request.route_id,
            bus_id=request.bus_id,
            departure_at=request.departure_at,
            arrival_at=request.arrival_at,
            price=request.price,
            currency=request.currency,
            seat_layout=request.seat_layout,
        )
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return _schedule_response(schedule)


@router.get("/schedules/{schedule_id}", response_model=SeatMapResponse)
def get_seat_map(
    schedule_id: str,
    container: ServiceContainer = Depends(get_container),
):
    try:
        seat_map = container.seats.seat_map(schedule_id)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return SeatMapResponse(
        schedule_id=seat_map.schedule_id,
        capacity=seat_map.capacity,
        available_seats=seat_map.available_seats,
        booked=seat_map.booked,
        held=seat_map.held,
        free=seat_map.free,
    )


@router.post(
    "/schedules/{schedule_id}/holds",
    response_model=HoldResponse,
    dependencies=[Depends(rate_limited)],
)
def hold_seats(
    schedule_id: str,
    request: HoldRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        result = container.seats.hold_seats(user_id, schedule_id, request.seats)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return HoldResponse(
        schedule_id=result.schedule_id,
        seats=result.seats,
        expires_at=result.expires_at.isoformat(),
    )


@router.delete("/schedules/{schedule_id}/holds")
def release_holds(
    schedule_id: str,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        released = container.seats.release_holds(user_id, schedule_id)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return {"released": released}


# -----------------------------
# Bookings
# -----------------------------
@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited)],
)
def create_booking(
    request: BookingRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        booking = container.seats.allocate_seats(
            user_id=user_id,
            schedule_id=request.schedule_id,
            requested_seats=request.seats,
            passengers=[p.model_dump() for p in request.passengers],
        )
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        with container.transactor.transaction() as db:
            booking = BookingRepository(db).get_by_id(booking_id)
            if not booking:
                raise NotFoundError("Booking not found")
            if booking.user_id != user_id:
                raise AccessDeniedError(f"User {user_id} read booking {booking_id}")
            return booking_response(booking)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        booking = container.seats.cancel_booking(user_id, booking_id)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return booking_response(booking)


# -----------------------------
# Operations
# -----------------------------
@router.post("/admin/sweep", response_model=SweepResponse)
def run_sweep(container: ServiceContainer = Depends(get_container)):
    report = container.sweeper.sweep()
    return SweepResponse(
        expired_pending=report.expired_pending,
        expired_processing=report.expired_processing,
        reconciled=report.reconciled,
        skipped=report.skipped,
    )


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    container: ServiceContainer = Depends(get_container),
):
    with container.transactor.transaction() as db:
        events = OutboxRepository(db).list_by_status(status_filter, limit)
        return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    container: ServiceContainer = Depends(get_container),
):
    try:
        with container.transactor.transaction() as db:
            item = OutboxRepository(db).mark_published(event_id)
            db.flush()
            return _outbox_response(item)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
