from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from src.domain.payments import normalize_currency


class PassengerIn(BaseModel):
    name: str = Field(min_length=1)
    age: int | None = Field(default=None, ge=0)
    gender: str | None = None
    seat_number: str


class ScheduleCreate(BaseModel):
    company_id: str
    route_id: str
    bus_id: str
    departure_at: datetime
    arrival_at: datetime
    price: int = Field(ge=0)
    currency: str | None = None
    seat_layout: list[str] = Field(min_length=1)

    @field_validator("currency")
    @classmethod
    def _supported_currency(cls, value: str | None) -> str | None:
        return normalize_currency(value) if value is not None else None


class ScheduleResponse(BaseModel):
    id: str
    capacity: int
    available_seats: int
    price: int
    currency: str
    departure_at: str
    status: str


class SeatMapResponse(BaseModel):
    schedule_id: str
    capacity: int
    available_seats: int
    booked: list[str]
    held: list[str]
    free: list[str]


class HoldRequest(BaseModel):
    seats: list[str] = Field(min_length=1)


class HoldResponse(BaseModel):
    schedule_id: str
    seats: list[str]
    expires_at: str


class BookingRequest(BaseModel):
    schedule_id: str
    seats: list[str] = Field(min_length=1)
    passengers: list[PassengerIn] = Field(min_length=1)


class BookingResponse(BaseModel):
    booking_id: str
    booking_reference: str
    schedule_id: str
    seats: list[str]
    amount_minor: int
    currency: str
    booking_status: str
    payment_status: str
    payment_provider: str | None = None
    payment_failure_reason: str | None = None
    requires_review: bool = False


class CustomerIn(BaseModel):
    email: str
    name: str | None = None
    phone: str | None = None


class PaymentInitiateRequest(BaseModel):
    booking_id: str
    provider: Literal["stripe", "razorpay"]
    customer: CustomerIn


class PaymentInitiateResponse(BaseModel):
    booking_id: str
    provider: str
    correlation_id: str
    checkout_url: str


class PaymentVerifyResponse(BaseModel):
    booking_id: str
    booking_status: str
    payment_status: str
    result: str


class WebhookResponse(BaseModel):
    result: str
    booking_id: str | None = None
    payment_status: str | None = None


class SweepResponse(BaseModel):
    expired_pending: list[str]
    expired_processing: list[str]
    reconciled: list[str]
    skipped: list[str]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
