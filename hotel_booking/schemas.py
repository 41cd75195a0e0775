from datetime import date, datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Meta(CamelModel):
    timestamp: datetime
    request_id: str | None = None


class ErrorInfo(CamelModel):
    code: str
    message: str


class Envelope(CamelModel, Generic[T]):
    success: bool = True
    data: T | None = None
    error: ErrorInfo | None = None
    metadata: Meta | None = None


# ---- bookings ----

class GuestIn(CamelModel):
    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str | None = None
    country: str | None = None
    city: str | None = None


class CreateBookingRequest(CamelModel):
    hotel_id: int
    room_type_id: int
    rate_plan_id: int | None = None
    check_in_date: date
    check_out_date: date
    adults: int = Field(default=1, ge=1)
    children: int = Field(default=0, ge=0)
    rooms: int = Field(default=1, ge=1)
    guest_id: int | None = None
    guest: GuestIn | None = None
    special_requests: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def guest_given(self):
        if self.guest_id is None and self.guest is None:
            raise ValueError("either guestId or guest details are required")
        return self


class CancelBookingRequest(CamelModel):
    email: EmailStr | None = None
    reason: str | None = Field(default=None, max_length=500)


class UpdateStatusRequest(CamelModel):
    status: Literal["pending", "confirmed", "cancelled", "completed"]
    notes: str | None = Field(default=None, max_length=1000)


class BookingOut(CamelModel):
    booking_id: str
    confirmation_code: str
    hotel_id: int
    room_type_id: int
    rate_plan_id: int | None = None
    guest_id: int
    check_in_date: date
    check_out_date: date
    nights: int
    adults: int
    children: int
    rooms: int
    nightly_rate: int
    room_total: int
    taxes: int
    fees: int
    total_amount: int
    deposit_amount: int
    amount_paid: int
    currency: str
    status: str
    payment_status: str
    hold_expires_at: datetime | None = None
    special_requests: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    confirmed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class BookingList(CamelModel):
    bookings: list[BookingOut]
    total: int
    limit: int
    offset: int
    has_more: bool


# ---- availability ----

class AvailabilityOut(CamelModel):
    night: date = Field(alias="date")
    room_type_id: int
    total_rooms: int
    booked_rooms: int
    blocked_rooms: int
    held_rooms: int
    available_rooms: int
    occupancy_rate: float


class AvailabilityRange(CamelModel):
    hotel_id: int
    start_date: date
    end_date: date
    records: list[AvailabilityOut]


class AdjustBlockedRequest(CamelModel):
    hotel_id: int
    room_type_id: int
    night: date = Field(alias="date")
    delta: int


class SeedInventoryRequest(CamelModel):
    hotel_id: int
    room_type_id: int
    start_date: date
    end_date: date
    total_rooms: int = Field(ge=0)


class SeedInventoryResult(CamelModel):
    nights: int


# ---- payments ----

class CreateIntentRequest(CamelModel):
    booking_id: str
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    guest_id: int
    payment_type: Literal["full", "deposit"] = "full"


class IntentOut(CamelModel):
    payment_intent_id: str
    client_secret: str | None = None
    amount: int
    currency: str
    status: str


class ConfirmIntentRequest(CamelModel):
    payment_intent_id: str
    payment_method_id: str


class RefundRequest(CamelModel):
    charge_id: str
    amount: int | None = Field(default=None, gt=0)
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] | None = None


class PaymentOut(CamelModel):
    payment_intent_id: str
    booking_id: str
    kind: str
    amount: int
    currency: str
    status: str
    charge_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    amount_refunded: int = 0
    failure_code: str | None = None
    failure_message: str | None = None
    booking_status: str | None = None


class WebhookAck(CamelModel):
    received: bool
    duplicate: bool = False
