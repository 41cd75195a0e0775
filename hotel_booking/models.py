from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Hotel(Base):
    __tablename__ = "hotels"

    id = Column(Integer, primary_key=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    location = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)


class RoomType(Base):
    __tablename__ = "room_types"

    id = Column(Integer, primary_key=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    slug = Column(String, nullable=False)
    name = Column(String, nullable=False)
    max_occupancy = Column(Integer, nullable=False, default=2)
    base_rate = Column(Integer, nullable=False)  # minor units per night
    currency = Column(String(3), nullable=False, default="USD")


class RatePlan(Base):
    __tablename__ = "rate_plans"

    id = Column(Integer, primary_key=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    nightly_rate = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Guest(Base):
    __tablename__ = "guests"

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    country = Column(String, nullable=True)
    city = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)
    confirmation_code = Column(String, unique=True, nullable=False, index=True)

    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    rate_plan_id = Column(Integer, ForeignKey("rate_plans.id"), nullable=True)
    guest_id = Column(Integer, ForeignKey("guests.id"), nullable=False, index=True)

    check_in_date = Column(Date, nullable=False, index=True)
    check_out_date = Column(Date, nullable=False)
    adults = Column(Integer, nullable=False, default=1)
    children = Column(Integer, nullable=False, default=0)
    rooms = Column(Integer, nullable=False, default=1)

    # money, minor units
    nightly_rate = Column(Integer, nullable=False)
    room_total = Column(Integer, nullable=False)
    taxes = Column(Integer, nullable=False, default=0)
    fees = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    deposit_amount = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    status = Column(String, nullable=False, index=True)  # pending/confirmed/cancelled/completed
    payment_status = Column(String, nullable=False, default="pending")  # pending/paid/refunded
    inventory_state = Column(String, nullable=False, default="held")  # held/booked/released
    hold_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    payment_reference = Column(String, nullable=True)

    special_requests = Column(Text, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String, nullable=True)
    internal_notes = Column(Text, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days


class AvailabilityRecord(Base):
    __tablename__ = "availability"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_availability_hotel_room_date"),
        CheckConstraint("total_rooms >= 0", name="ck_availability_total"),
        CheckConstraint("booked_rooms >= 0", name="ck_availability_booked"),
        CheckConstraint("blocked_rooms >= 0", name="ck_availability_blocked"),
        CheckConstraint("held_rooms >= 0", name="ck_availability_held"),
    )

    id = Column(Integer, primary_key=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False)

    total_rooms = Column(Integer, nullable=False, default=0)
    booked_rooms = Column(Integer, nullable=False, default=0)
    blocked_rooms = Column(Integer, nullable=False, default=0)
    held_rooms = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def available_rooms(self) -> int:
        return max(0, self.total_rooms - self.booked_rooms - self.blocked_rooms - self.held_rooms)

    @property
    def occupancy_rate(self) -> float:
        if not self.total_rooms:
            return 0.0
        return round(self.booked_rooms / self.total_rooms * 100, 2)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)
    processor_intent_id = Column(String, unique=True, nullable=False, index=True)
    charge_id = Column(String, nullable=True, index=True)

    kind = Column(String, nullable=False, default="full")  # full/deposit
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, index=True)  # requires_action/succeeded/failed/refunded

    card_brand = Column(String, nullable=True)
    card_last4 = Column(String(4), nullable=True)
    failure_code = Column(String, nullable=True)
    failure_message = Column(String, nullable=True)
    amount_refunded = Column(Integer, nullable=False, default=0)
    refund_id = Column(String, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
