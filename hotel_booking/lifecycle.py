import logging
import secrets
import string
import uuid
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger
from .config import (
    CANCELLATION_WINDOW_HOURS,
    CONFIRMATION_PREFIX,
    DEPOSIT_PERCENT,
    HOLD_MINUTES,
    SERVICE_FEE_PER_NIGHT,
    TAX_RATE_PERCENT,
)
from .errors import (
    AlreadyCancelled,
    CancellationWindowPassed,
    InvalidDateRange,
    InvalidState,
    NotCancellable,
    NotFound,
    ValidationFailed,
)
from .events import queue_event
from .models import Booking, Guest, Hotel, RatePlan, RoomType, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
COMPLETED = "completed"

STATUSES = (PENDING, CONFIRMED, CANCELLED, COMPLETED)
TERMINAL = (CANCELLED, COMPLETED)

ALLOWED_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {COMPLETED, CANCELLED},
    CANCELLED: set(),
    COMPLETED: set(),
}

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_confirmation_code() -> str:
    return CONFIRMATION_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(6))


def price_stay(nightly_rate: int, nights: int, rooms: int) -> dict:
    room_total = nightly_rate * nights * rooms
    taxes = (room_total * TAX_RATE_PERCENT + 50) // 100
    fees = SERVICE_FEE_PER_NIGHT * nights * rooms
    total = room_total + taxes + fees
    deposit = (total * DEPOSIT_PERCENT + 50) // 100
    return {
        "room_total": room_total,
        "taxes": taxes,
        "fees": fees,
        "total_amount": total,
        "deposit_amount": deposit,
    }


def check_in_instant(booking: Booking) -> datetime:
    return datetime.combine(booking.check_in_date, time.min, tzinfo=timezone.utc)


def booking_event_data(booking: Booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "confirmation_code": booking.confirmation_code,
        "hotel_id": booking.hotel_id,
        "room_type_id": booking.room_type_id,
        "guest_id": booking.guest_id,
        "check_in_date": booking.check_in_date.isoformat(),
        "check_out_date": booking.check_out_date.isoformat(),
        "rooms": booking.rooms,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "total_amount": booking.total_amount,
        "currency": booking.currency,
    }


def _append_note(booking: Booking, actor: str, text: str):
    line = f"[{utcnow().isoformat()}] {actor}: {text}"
    booking.internal_notes = f"{booking.internal_notes}\n{line}" if booking.internal_notes else line


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    res = await db.execute(
        select(Booking)
        .where(Booking.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


async def get_by_confirmation_code(db: AsyncSession, code: str) -> Booking:
    res = await db.execute(select(Booking).where(Booking.confirmation_code == code.strip().upper()))
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


async def list_bookings(
    db: AsyncSession,
    hotel_id: int | None = None,
    status: str | None = None,
    check_in_from: date | None = None,
    check_out_to: date | None = None,
    guest_email: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Booking], int]:
    filters = []
    if hotel_id is not None:
        filters.append(Booking.hotel_id == hotel_id)
    if status:
        filters.append(Booking.status == status)
    if check_in_from:
        filters.append(Booking.check_in_date >= check_in_from)
    if check_out_to:
        filters.append(Booking.check_out_date <= check_out_to)
    if guest_email:
        filters.append(Booking.guest_id.in_(select(Guest.id).where(Guest.email == guest_email.lower())))

    total = (await db.execute(select(func.count(Booking.id)).where(*filters))).scalar_one()
    res = await db.execute(
        select(Booking)
        .where(*filters)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(res.scalars().all()), total


async def get_or_create_guest(
    db: AsyncSession,
    email: str,
    first_name: str,
    last_name: str,
    phone: str | None = None,
    country: str | None = None,
    city: str | None = None,
) -> Guest:
    email = email.strip().lower()
    res = await db.execute(select(Guest).where(Guest.email == email))
    guest = res.scalar_one_or_none()
    if guest:
        return guest

    guest = Guest(
        email=email,
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        country=country,
        city=city,
    )
    db.add(guest)
    await db.flush()
    return guest


async def _resolve_rate(db: AsyncSession, room_type: RoomType, rate_plan_id: int | None) -> tuple[int | None, int]:
    if rate_plan_id is not None:
        plan = await db.get(RatePlan, rate_plan_id)
        if not plan or plan.room_type_id != room_type.id or not plan.is_active:
            raise NotFound("Rate plan not found")
        return plan.id, plan.nightly_rate

    res = await db.execute(
        select(RatePlan)
        .where(RatePlan.room_type_id == room_type.id, RatePlan.is_active.is_(True))
        .order_by(RatePlan.id)
        .limit(1)
    )
    plan = res.scalar_one_or_none()
    if plan:
        return plan.id, plan.nightly_rate
    return None, room_type.base_rate


async def _unique_confirmation_code(db: AsyncSession) -> str:
    for _ in range(10):
        code = generate_confirmation_code()
        res = await db.execute(select(Booking.id).where(Booking.confirmation_code == code))
        if res.scalar_one_or_none() is None:
            return code
    raise RuntimeError("could not generate a unique confirmation code")


async def create_booking(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    guest_id: int,
    check_in: date,
    check_out: date,
    adults: int,
    children: int = 0,
    rooms: int = 1,
    rate_plan_id: int | None = None,
    special_requests: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()

    if check_out <= check_in:
        raise InvalidDateRange("checkOutDate must be after checkInDate")
    if check_in < now.date():
        raise InvalidDateRange("checkInDate must not be in the past")
    if adults < 1 or children < 0 or rooms < 1:
        raise ValidationFailed("adults and rooms must be at least 1, children must not be negative")

    hotel = await db.get(Hotel, hotel_id)
    if not hotel:
        raise NotFound("Hotel not found")
    room_type = await db.get(RoomType, room_type_id)
    if not room_type or room_type.hotel_id != hotel_id:
        raise NotFound("Room type not found")
    guest = await db.get(Guest, guest_id)
    if not guest:
        raise NotFound("Guest not found")

    if adults + children > room_type.max_occupancy * rooms:
        raise ValidationFailed(
            f"{room_type.name} sleeps at most {room_type.max_occupancy} guests per room"
        )

    plan_id, nightly_rate = await _resolve_rate(db, room_type, rate_plan_id)
    nights = (check_out - check_in).days
    prices = price_stay(nightly_rate, nights, rooms)

    await ledger.reserve(db, hotel_id, room_type_id, check_in, check_out, rooms, phase=ledger.HOLD)

    booking = Booking(
        booking_id=str(uuid.uuid4()),
        confirmation_code=await _unique_confirmation_code(db),
        hotel_id=hotel_id,
        room_type_id=room_type_id,
        rate_plan_id=plan_id,
        guest_id=guest_id,
        check_in_date=check_in,
        check_out_date=check_out,
        adults=adults,
        children=children,
        rooms=rooms,
        nightly_rate=nightly_rate,
        currency=room_type.currency,
        status=PENDING,
        payment_status="pending",
        inventory_state="held",
        hold_expires_at=now + timedelta(minutes=HOLD_MINUTES),
        amount_paid=0,
        special_requests=special_requests,
        **prices,
    )
    db.add(booking)
    await db.flush()

    logger.info(
        "booking created booking_id=%s code=%s hotel=%s room_type=%s nights=%s rooms=%s",
        booking.booking_id, booking.confirmation_code, hotel_id, room_type_id, nights, rooms,
    )
    queue_event(db, "booking.created", booking_event_data(booking))
    return booking


async def _mark_confirmed(db: AsyncSession, booking: Booking, payment_reference: str | None, paid: bool) -> bool:
    values = {
        "status": CONFIRMED,
        "inventory_state": "booked",
        "hold_expires_at": None,
        "confirmed_at": utcnow(),
    }
    if payment_reference:
        values["payment_reference"] = payment_reference
    if paid:
        values["payment_status"] = "paid"

    res = await db.execute(
        update(Booking)
        .where(
            Booking.booking_id == booking.booking_id,
            Booking.status == PENDING,
            Booking.inventory_state == "held",
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    await ledger.convert_hold(
        db, booking.hotel_id, booking.room_type_id, booking.check_in_date, booking.check_out_date, booking.rooms
    )
    return True


async def confirm_booking(db: AsyncSession, booking_id: str, payment_reference: str, paid: bool = True) -> Booking:
    """
    pending -> confirmed. Repeating the call with the same payment
    reference on a confirmed booking succeeds without touching inventory.
    With paid=False (deposit only) payment_status stays pending.
    """
    booking = await get_booking(db, booking_id)

    if booking.status == PENDING and await _mark_confirmed(db, booking, payment_reference, paid=paid):
        booking = await get_booking(db, booking_id)
        logger.info("booking confirmed booking_id=%s reference=%s", booking_id, payment_reference)
        queue_event(db, "booking.confirmed", booking_event_data(booking))
        return booking

    # lost the race or was never pending
    booking = await get_booking(db, booking_id)
    if booking.status == CONFIRMED and booking.payment_reference == payment_reference:
        return booking

    logger.warning(
        "confirm rejected booking_id=%s status=%s reference=%s",
        booking_id, booking.status, payment_reference,
    )
    raise InvalidState(f"Booking is {booking.status} and cannot be confirmed")


async def mark_paid(db: AsyncSession, booking_id: str, payment_reference: str) -> Booking:
    """Settle payment_status once the balance of a confirmed booking is in."""
    res = await db.execute(
        update(Booking)
        .where(
            Booking.booking_id == booking_id,
            Booking.status == CONFIRMED,
            Booking.payment_status == "pending",
        )
        .values(payment_status="paid", payment_reference=payment_reference)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
        logger.info("booking paid in full booking_id=%s reference=%s", booking_id, payment_reference)
    return await get_booking(db, booking_id)


async def _mark_cancelled(db: AsyncSession, booking: Booking, reason: str, actor: str, now: datetime) -> bool:
    held_by = booking.inventory_state
    res = await db.execute(
        update(Booking)
        .where(
            Booking.booking_id == booking.booking_id,
            Booking.status == booking.status,
            Booking.inventory_state == held_by,
        )
        .values(
            status=CANCELLED,
            inventory_state="released",
            hold_expires_at=None,
            cancellation_reason=reason,
            cancelled_at=now,
            cancelled_by=actor,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    if held_by in ("held", "booked"):
        await ledger.release(
            db,
            booking.hotel_id,
            booking.room_type_id,
            booking.check_in_date,
            booking.check_out_date,
            booking.rooms,
            phase=ledger.HOLD if held_by == "held" else ledger.BOOK,
        )
    return True


def _reject_terminal_cancel(booking: Booking):
    if booking.status == CANCELLED:
        raise AlreadyCancelled("Booking is already cancelled")
    if booking.status == COMPLETED:
        raise NotCancellable("Completed bookings cannot be cancelled")


async def cancel_booking(
    db: AsyncSession,
    booking_id: str,
    reason: str | None = None,
    actor: str = "guest",
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    booking = await get_booking(db, booking_id)
    _reject_terminal_cancel(booking)

    if check_in_instant(booking) - now < timedelta(hours=CANCELLATION_WINDOW_HOURS):
        raise CancellationWindowPassed(
            f"Bookings cannot be cancelled less than {CANCELLATION_WINDOW_HOURS} hours before check-in"
        )

    if not await _mark_cancelled(db, booking, reason or "Guest cancellation", actor, now):
        _reject_terminal_cancel(await get_booking(db, booking_id))
        raise InvalidState("Booking changed while cancelling, retry")

    booking = await get_booking(db, booking_id)
    logger.info("booking cancelled booking_id=%s actor=%s reason=%s", booking_id, actor, booking.cancellation_reason)
    queue_event(db, "booking.cancelled", booking_event_data(booking) | {"reason": booking.cancellation_reason})
    return booking


async def update_status(
    db: AsyncSession,
    booking_id: str,
    new_status: str,
    notes: str | None = None,
    actor: str = "admin",
) -> Booking:
    """Administrative override. Skips the cancellation window, never leaves a terminal state."""
    if new_status not in STATUSES:
        raise ValidationFailed(f"Unknown status: {new_status}")

    booking = await get_booking(db, booking_id)
    if booking.status == new_status:
        if notes:
            _append_note(booking, actor, notes)
            await db.flush()
        return booking

    if booking.status in TERMINAL:
        raise InvalidState(f"Booking is {booking.status}, no further transitions allowed")
    if new_status not in ALLOWED_TRANSITIONS[booking.status]:
        raise InvalidState(f"Cannot move booking from {booking.status} to {new_status}")

    logger.warning(
        "admin status override booking_id=%s %s -> %s actor=%s notes=%s",
        booking_id, booking.status, new_status, actor, notes,
    )

    if new_status == CANCELLED:
        done = await _mark_cancelled(db, booking, notes or "Cancelled by administrator", actor, utcnow())
    elif new_status == CONFIRMED:
        done = await _mark_confirmed(db, booking, None, paid=False)
    else:
        res = await db.execute(
            update(Booking)
            .where(Booking.booking_id == booking_id, Booking.status == CONFIRMED)
            .values(status=COMPLETED)
            .execution_options(synchronize_session=False)
        )
        done = res.rowcount == 1

    if not done:
        raise InvalidState("Booking changed while updating, retry")

    booking = await get_booking(db, booking_id)
    if notes:
        _append_note(booking, actor, notes)
        await db.flush()

    data = booking_event_data(booking)
    if new_status == CANCELLED:
        data["reason"] = booking.cancellation_reason
    queue_event(db, f"booking.{new_status}", data)
    return booking


async def expire_hold(db: AsyncSession, booking_id: str, now: datetime, reason: str = "hold_expired") -> Booking | None:
    """Cancel an unpaid pending booking whose hold lapsed. None if it moved on meanwhile."""
    booking = await get_booking(db, booking_id)
    if booking.status != PENDING or booking.inventory_state != "held" or booking.amount_paid:
        return None
    if not await _mark_cancelled(db, booking, reason, "system", now):
        return None

    booking = await get_booking(db, booking_id)
    queue_event(db, "booking.cancelled", booking_event_data(booking) | {"reason": reason})
    return booking
