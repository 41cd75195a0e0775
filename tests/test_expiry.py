from datetime import timedelta

from hotel_booking import lifecycle, payments
from hotel_booking.expiry_worker import sweep_expired_holds
from hotel_booking.models import utcnow
from hotel_booking.publisher import commit_and_publish

from conftest import night, seed_rooms


async def pending_booking(db, hotel, stay):
    booking = await lifecycle.create_booking(
        db, hotel.id, hotel.room_type_id, hotel.guest_id, stay.check_in, stay.check_out, adults=1
    )
    await commit_and_publish(db)
    return booking.booking_id


async def test_sweep_releases_lapsed_holds(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 1)
    booking_id = await pending_booking(db, hotel, stay)

    assert await sweep_expired_holds(db, now=utcnow() + timedelta(minutes=5)) == 0
    assert (await night(db, hotel, stay.check_in)).held_rooms == 1

    assert await sweep_expired_holds(db, now=utcnow() + timedelta(minutes=16)) == 1
    booking = await lifecycle.get_booking(db, booking_id)
    assert booking.status == "cancelled"
    assert booking.cancellation_reason == "hold_expired"
    assert booking.cancelled_by == "system"
    rec = await night(db, hotel, stay.check_in)
    assert (rec.held_rooms, rec.available_rooms) == (0, 1)

    # second pass finds nothing and leaves counts alone
    assert await sweep_expired_holds(db, now=utcnow() + timedelta(minutes=30)) == 0
    assert (await night(db, hotel, stay.check_in)).available_rooms == 1


async def test_sweep_skips_confirmed_and_deposit_paid(db, hotel, stay, processor):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 2)
    confirmed_id = await pending_booking(db, hotel, stay)
    await lifecycle.confirm_booking(db, confirmed_id, "pi_paid")
    await commit_and_publish(db)

    deposit_id = await pending_booking(db, hotel, stay)
    booking = await lifecycle.get_booking(db, deposit_id)
    payment, _ = await payments.create_intent(
        db, processor, deposit_id, booking.deposit_amount, "USD", hotel.guest_id, payments.DEPOSIT
    )
    await payments.confirm_intent(db, processor, payment.processor_intent_id, "pm_card_visa")

    assert await sweep_expired_holds(db, now=utcnow() + timedelta(hours=2)) == 0
    assert (await lifecycle.get_booking(db, confirmed_id)).status == "confirmed"
    assert (await lifecycle.get_booking(db, deposit_id)).status == "pending"
    rec = await night(db, hotel, stay.check_in)
    assert (rec.booked_rooms, rec.held_rooms) == (1, 1)
