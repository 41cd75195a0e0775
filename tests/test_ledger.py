import asyncio
from datetime import timedelta

import pytest

from hotel_booking import ledger
from hotel_booking.db import SessionLocal
from hotel_booking.errors import CapacityUnavailable, InvalidDateRange, NotFound, ValidationFailed
from hotel_booking.models import AvailabilityRecord

from conftest import night, seed_rooms


async def test_stay_dates_excludes_checkout(stay):
    nights = ledger.stay_dates(stay.check_in, stay.check_out)
    assert nights == [stay.check_in, stay.check_in + timedelta(days=1)]


async def test_reserve_then_release_restores_counts(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 3)

    for phase in (ledger.HOLD, ledger.BOOK):
        await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 2, phase=phase)
        first = await night(db, hotel, stay.check_in)
        assert first.available_rooms == 1

        await ledger.release(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 2, phase=phase)
        for d in ledger.stay_dates(stay.check_in, stay.check_out):
            rec = await night(db, hotel, d)
            assert (rec.booked_rooms, rec.held_rooms, rec.available_rooms) == (0, 0, 3)


async def test_reserve_is_all_or_nothing(db, hotel, stay):
    last = stay.check_in + timedelta(days=2)
    await seed_rooms(db, hotel, stay.check_in, last, 1)
    await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, last, 1)

    with pytest.raises(CapacityUnavailable) as exc:
        await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, last + timedelta(days=1), 1)

    assert exc.value.date == last
    for d in (stay.check_in, stay.check_in + timedelta(days=1)):
        rec = await night(db, hotel, d)
        assert rec.held_rooms == 0
        assert rec.available_rooms == 1


async def test_reserve_unseeded_night_is_unavailable(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_in, 5)

    with pytest.raises(CapacityUnavailable) as exc:
        await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)

    assert exc.value.date == stay.check_in + timedelta(days=1)
    assert (await night(db, hotel, stay.check_in)).held_rooms == 0


async def test_reserve_rejects_empty_range(db, hotel, stay):
    with pytest.raises(InvalidDateRange):
        await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_in, 1)


async def test_release_is_floored_at_zero(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 2)
    await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)

    await ledger.release(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)
    await ledger.release(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)

    rec = await night(db, hotel, stay.check_in)
    assert rec.held_rooms == 0
    assert rec.available_rooms == rec.total_rooms == 2


async def test_convert_hold_moves_held_to_booked(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 2)
    await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)
    await ledger.convert_hold(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 1)

    rec = await night(db, hotel, stay.check_in)
    assert (rec.held_rooms, rec.booked_rooms, rec.available_rooms) == (0, 1, 1)
    assert rec.occupancy_rate == 50.0


async def test_adjust_blocked(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_in, 2)

    rec = await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, stay.check_in, 2)
    assert rec.available_rooms == 0

    with pytest.raises(CapacityUnavailable):
        await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, stay.check_in, 1)

    rec = await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, stay.check_in, -5)
    assert rec.blocked_rooms == 0
    assert rec.available_rooms == 2

    with pytest.raises(NotFound):
        await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, stay.check_in - timedelta(days=1), 1)
    with pytest.raises(ValidationFailed):
        await ledger.adjust_blocked(db, hotel.id, hotel.room_type_id, stay.check_in, 0)


async def test_seed_inventory_cannot_drop_below_committed(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 3)
    await ledger.reserve(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 2)

    with pytest.raises(ValidationFailed):
        await ledger.seed_inventory(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_in, 1)

    written = await ledger.seed_inventory(db, hotel.id, hotel.room_type_id, stay.check_in, stay.check_out, 4)
    assert written == 3
    assert (await night(db, hotel, stay.check_in)).available_rooms == 2


async def test_occupancy_rate_with_no_rooms():
    rec = AvailabilityRecord(total_rooms=0, booked_rooms=0, blocked_rooms=0, held_rooms=0)
    assert rec.occupancy_rate == 0.0
    assert rec.available_rooms == 0


async def test_available_rooms_never_negative():
    rec = AvailabilityRecord(total_rooms=1, booked_rooms=1, blocked_rooms=1, held_rooms=0)
    assert rec.available_rooms == 0


async def test_concurrent_reserve_on_last_room(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_in, 1)

    async def attempt():
        async with SessionLocal() as session:
            try:
                await ledger.reserve(
                    session, hotel.id, hotel.room_type_id, stay.check_in,
                    stay.check_in + timedelta(days=1), 1, phase=ledger.BOOK,
                )
            except CapacityUnavailable:
                await session.rollback()
                return False
            await session.commit()
            return True

    results = await asyncio.gather(*(attempt() for _ in range(5)))

    assert results.count(True) == 1
    assert results.count(False) == 4
    rec = await night(db, hotel, stay.check_in)
    assert rec.booked_rooms == 1
    assert rec.available_rooms == 0
