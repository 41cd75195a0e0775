from datetime import date

import pytest

from hotel_booking import consumer, lifecycle, notifications, payments
from hotel_booking.errors import NotFound
from hotel_booking.publisher import commit_and_publish

from conftest import seed_rooms


@pytest.fixture
async def booking_id(db, hotel, stay):
    await seed_rooms(db, hotel, stay.check_in, stay.check_out, 1)
    booking = await lifecycle.create_booking(
        db, hotel.id, hotel.room_type_id, hotel.guest_id, stay.check_in, stay.check_out,
        adults=2, special_requests="Late arrival",
    )
    await commit_and_publish(db)
    return booking.booking_id


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    async def fake_send(recipient, subject, html):
        sent.append({"to": recipient, "subject": subject, "html": html})

    monkeypatch.setattr(notifications, "send_email", fake_send)
    return sent


def test_formatting_helpers():
    assert notifications.long_date(date(2026, 10, 19)) == "Monday, October 19, 2026"
    assert notifications.major_units(51800) == "518.00"
    assert notifications.major_units(123456789) == "1,234,567.89"
    assert notifications.major_units(None) == "0.00"


async def test_view_model(db, booking_id):
    vm = await notifications.load_view_model(db, booking_id)
    assert vm["guest_name"] == "Ada Lovelace"
    assert vm["hotel_name"] == "Ambassador Downtown"
    assert vm["room_type"] == "King Room"
    assert vm["rate_plan"] == "Best Available Rate"
    assert vm["nights"] == 2
    assert vm["total_amount"] == "518.00"
    assert vm["balance_due"] == "518.00"
    assert vm["special_requests"] == "Late arrival"


async def test_confirmation_email(db, booking_id, outbox):
    await lifecycle.confirm_booking(db, booking_id, "pi_1")
    await commit_and_publish(db)

    assert await notifications.notify(db, "booking.confirmed", {"booking_id": booking_id})
    assert len(outbox) == 1
    mail = outbox[0]
    booking = await lifecycle.get_booking(db, booking_id)
    assert mail["to"] == "ada@example.com"
    assert booking.confirmation_code in mail["subject"]
    assert booking.confirmation_code in mail["html"]
    assert "Balance due" not in mail["html"]


async def test_confirmation_email_shows_balance_after_deposit(db, booking_id, processor, outbox, monkeypatch):
    monkeypatch.setattr(payments, "DEPOSIT_CONFIRMS_BOOKING", True)
    booking = await lifecycle.get_booking(db, booking_id)
    payment, _ = await payments.create_intent(
        db, processor, booking_id, booking.deposit_amount, "USD", booking.guest_id, payments.DEPOSIT
    )
    await payments.confirm_intent(db, processor, payment.processor_intent_id, "pm_card_visa")

    vm = await notifications.load_view_model(db, booking_id)
    assert vm["status"] == "confirmed"
    assert vm["balance_due"] == "362.60"

    await notifications.notify(db, "booking.confirmed", {"booking_id": booking_id})
    assert "Balance due: 362.60 USD" in outbox[0]["html"]


async def test_payment_failed_email(db, booking_id, outbox):
    data = {"booking_id": booking_id, "amount": 51800, "failure_message": "Insufficient funds."}
    assert await notifications.notify(db, "payment.failed", data)
    html = outbox[0]["html"]
    assert "Insufficient funds." in html
    assert "518.00" in html


async def test_events_without_email_are_skipped(db, booking_id, outbox):
    assert not await notifications.notify(db, "booking.created", {"booking_id": booking_id})
    assert outbox == []


async def test_send_email_is_noop_when_mail_disabled():
    await notifications.send_email("ada@example.com", "subject", "<p>hi</p>")


async def test_deliver_sends(booking_id, outbox):
    result = await consumer.deliver(
        {"event_type": "booking.cancelled", "data": {"booking_id": booking_id}}, 1, None
    )
    assert result == consumer.SENT
    assert "cancelled" in outbox[0]["subject"]


async def test_deliver_retries_then_gives_up(monkeypatch):
    async def broken(db, event_type, data):
        raise ConnectionError("smtp down")

    monkeypatch.setattr(consumer, "notify", broken)
    retries = []

    async def retry(event, attempt):
        retries.append(attempt)

    event = {"event_type": "booking.confirmed", "data": {"booking_id": "abc"}}
    assert await consumer.deliver(event, 1, retry) == consumer.RETRY
    assert retries == [2]

    assert await consumer.deliver(event, consumer.NOTIFY_MAX_ATTEMPTS, retry) == consumer.DROPPED
    assert retries == [2]


async def test_deliver_drops_unknown_and_missing_bookings(monkeypatch):
    async def missing(db, event_type, data):
        raise NotFound("Booking not found")

    async def retry(event, attempt):
        raise AssertionError("should not retry")

    assert await consumer.deliver({"event_type": "booking.created", "data": {"booking_id": "x"}}, 1, retry) == consumer.DROPPED
    assert await consumer.deliver({"event_type": "booking.confirmed", "data": {}}, 1, retry) == consumer.DROPPED

    monkeypatch.setattr(consumer, "notify", missing)
    assert await consumer.deliver({"event_type": "booking.confirmed", "data": {"booking_id": "x"}}, 1, retry) == consumer.DROPPED


def test_backoff_is_capped():
    assert consumer.backoff_seconds(1) == 2.0
    assert consumer.backoff_seconds(10) == 60.0
