"""
Per-night room inventory.

Every write to booked/held/blocked goes through reserve, release,
convert_hold or adjust_blocked. Capacity checks are conditional UPDATEs,
never a read followed by a write.
"""
import logging
from datetime import date, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import CapacityUnavailable, InvalidDateRange, NotFound, ValidationFailed
from .models import AvailabilityRecord

logger = logging.getLogger(__name__)

HOLD = "hold"
BOOK = "book"


def stay_dates(check_in: date, check_out: date) -> list[date]:
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def _counter(phase: str):
    if phase == HOLD:
        return AvailabilityRecord.held_rooms
    if phase == BOOK:
        return AvailabilityRecord.booked_rooms
    raise ValueError(f"unknown reservation phase: {phase}")


def _available():
    return (
        AvailabilityRecord.total_rooms
        - AvailabilityRecord.booked_rooms
        - AvailabilityRecord.blocked_rooms
        - AvailabilityRecord.held_rooms
    )


def _floored_decrement(column, units: int):
    return case((column >= units, column - units), else_=0)


def _for_room(hotel_id: int, room_type_id: int):
    return (
        AvailabilityRecord.hotel_id == hotel_id,
        AvailabilityRecord.room_type_id == room_type_id,
    )


async def get_availability_range(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int | None,
    start: date,
    end: date,
) -> list[AvailabilityRecord]:
    if end < start:
        raise InvalidDateRange("endDate must not be before startDate")

    stmt = select(AvailabilityRecord).where(
        AvailabilityRecord.hotel_id == hotel_id,
        AvailabilityRecord.date >= start,
        AvailabilityRecord.date <= end,
    )
    if room_type_id is not None:
        stmt = stmt.where(AvailabilityRecord.room_type_id == room_type_id)
    stmt = stmt.order_by(AvailabilityRecord.room_type_id, AvailabilityRecord.date)

    # counters are written with bulk UPDATEs, refresh anything already loaded
    res = await db.execute(stmt.execution_options(populate_existing=True))
    return list(res.scalars().all())


async def reserve(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    check_in: date,
    check_out: date,
    units: int,
    phase: str = HOLD,
):
    """
    Take `units` rooms on every night of [check_in, check_out).

    Nights are claimed in date order. If one night cannot be claimed, the
    nights already claimed by this call are given back before
    CapacityUnavailable is raised for that night.
    """
    if units < 1:
        raise ValidationFailed("units must be at least 1")
    nights = stay_dates(check_in, check_out)
    if not nights:
        raise InvalidDateRange("checkOutDate must be after checkInDate")

    counter = _counter(phase)
    claimed: list[date] = []

    for night in nights:
        stmt = (
            update(AvailabilityRecord)
            .where(*_for_room(hotel_id, room_type_id))
            .where(AvailabilityRecord.date == night, _available() >= units)
            .values({counter: counter + units})
            .execution_options(synchronize_session=False)
        )
        res = await db.execute(stmt)
        if res.rowcount != 1:
            if claimed:
                await _decrement(db, hotel_id, room_type_id, claimed, units, counter)
            logger.info(
                "reserve rejected hotel=%s room_type=%s night=%s units=%s",
                hotel_id, room_type_id, night, units,
            )
            raise CapacityUnavailable(night)
        claimed.append(night)


async def _decrement(db: AsyncSession, hotel_id: int, room_type_id: int, nights: list[date], units: int, counter):
    await db.execute(
        update(AvailabilityRecord)
        .where(*_for_room(hotel_id, room_type_id))
        .where(AvailabilityRecord.date.in_(nights))
        .values({counter: _floored_decrement(counter, units)})
        .execution_options(synchronize_session=False)
    )


async def release(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    check_in: date,
    check_out: date,
    units: int,
    phase: str = HOLD,
):
    nights = stay_dates(check_in, check_out)
    if not nights or units < 1:
        return
    await _decrement(db, hotel_id, room_type_id, nights, units, _counter(phase))


async def convert_hold(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    check_in: date,
    check_out: date,
    units: int,
):
    """Move held rooms to booked for a confirmed stay."""
    nights = stay_dates(check_in, check_out)
    if not nights:
        return
    held = AvailabilityRecord.held_rooms
    booked = AvailabilityRecord.booked_rooms
    await db.execute(
        update(AvailabilityRecord)
        .where(*_for_room(hotel_id, room_type_id))
        .where(AvailabilityRecord.date.in_(nights))
        .values({held: _floored_decrement(held, units), booked: booked + units})
        .execution_options(synchronize_session=False)
    )


async def _get_record(db: AsyncSession, hotel_id: int, room_type_id: int, night: date) -> AvailabilityRecord | None:
    res = await db.execute(
        select(AvailabilityRecord)
        .where(*_for_room(hotel_id, room_type_id))
        .where(AvailabilityRecord.date == night)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def adjust_blocked(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    night: date,
    delta: int,
) -> AvailabilityRecord:
    if delta == 0:
        raise ValidationFailed("delta must not be zero")

    blocked = AvailabilityRecord.blocked_rooms
    stmt = update(AvailabilityRecord).where(*_for_room(hotel_id, room_type_id)).where(
        AvailabilityRecord.date == night
    )
    if delta > 0:
        stmt = stmt.where(_available() >= delta).values({blocked: blocked + delta})
    else:
        stmt = stmt.values({blocked: _floored_decrement(blocked, -delta)})

    res = await db.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount != 1:
        record = await _get_record(db, hotel_id, room_type_id, night)
        if not record:
            raise NotFound(f"No inventory configured for {night.isoformat()}")
        raise CapacityUnavailable(night, f"Cannot block {delta} rooms on {night.isoformat()}")

    logger.info(
        "blocked rooms adjusted hotel=%s room_type=%s night=%s delta=%s",
        hotel_id, room_type_id, night, delta,
    )
    return await _get_record(db, hotel_id, room_type_id, night)


async def seed_inventory(
    db: AsyncSession,
    hotel_id: int,
    room_type_id: int,
    start: date,
    end: date,
    total_rooms: int,
) -> int:
    """Set total rooms for every night in [start, end]. Returns nights written."""
    if total_rooms < 0:
        raise ValidationFailed("totalRooms must not be negative")
    if end < start:
        raise InvalidDateRange("endDate must not be before startDate")

    committed = (
        AvailabilityRecord.booked_rooms
        + AvailabilityRecord.blocked_rooms
        + AvailabilityRecord.held_rooms
    )
    nights = stay_dates(start, end + timedelta(days=1))
    for night in nights:
        res = await db.execute(
            update(AvailabilityRecord)
            .where(*_for_room(hotel_id, room_type_id))
            .where(AvailabilityRecord.date == night, committed <= total_rooms)
            .values(total_rooms=total_rooms)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            continue
        if await _get_record(db, hotel_id, room_type_id, night):
            raise ValidationFailed(
                f"totalRooms {total_rooms} is below rooms already committed on {night.isoformat()}"
            )
        db.add(
            AvailabilityRecord(
                hotel_id=hotel_id,
                room_type_id=room_type_id,
                date=night,
                total_rooms=total_rooms,
                booked_rooms=0,
                blocked_rooms=0,
                held_rooms=0,
            )
        )
    await db.flush()
    return len(nights)
