import logging
from datetime import date
from pathlib import Path

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.ext.asyncio import AsyncSession

from . import lifecycle
from .config import (
    MAIL_ENABLED,
    MAIL_FROM,
    MAIL_FROM_NAME,
    MAIL_PASSWORD,
    MAIL_PORT,
    MAIL_SERVER,
    MAIL_STARTTLS,
    MAIL_USERNAME,
)
from .models import Guest, Hotel, RatePlan, RoomType

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

CANCELLATION_POLICY = (
    "Free cancellation up to 24 hours before check-in. Late cancellations may incur charges."
)

conf = ConnectionConfig(
    MAIL_USERNAME=MAIL_USERNAME,
    MAIL_PASSWORD=MAIL_PASSWORD,
    MAIL_FROM=MAIL_FROM,
    MAIL_PORT=MAIL_PORT,
    MAIL_SERVER=MAIL_SERVER,
    MAIL_FROM_NAME=MAIL_FROM_NAME,
    MAIL_STARTTLS=MAIL_STARTTLS,
    MAIL_SSL_TLS=False,
    USE_CREDENTIALS=bool(MAIL_USERNAME),
    VALIDATE_CERTS=True,
)

templates = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)

# event type -> (template, subject)
EMAILS = {
    "booking.confirmed": ("booking_confirmation.html", "Your reservation is confirmed - {code}"),
    "booking.cancelled": ("booking_cancellation.html", "Your reservation has been cancelled - {code}"),
    "payment.succeeded": ("payment_confirmation.html", "Payment received - {code}"),
    "payment.failed": ("payment_failed.html", "Payment unsuccessful - {code}"),
}


def long_date(d: date) -> str:
    return f"{d:%A, %B} {d.day}, {d.year}"


def major_units(amount: int | None) -> str:
    return f"{(amount or 0) / 100:,.2f}"


def balance_due(booking) -> int:
    if booking.payment_status == "paid":
        return 0
    return max(booking.total_amount - booking.amount_paid, 0)


def build_view_model(booking, guest: Guest, hotel: Hotel, room_type: RoomType, rate_plan: RatePlan | None) -> dict:
    return {
        "booking_reference": booking.confirmation_code,
        "guest_name": f"{guest.first_name} {guest.last_name}",
        "guest_email": guest.email,
        "hotel_name": hotel.name,
        "hotel_location": hotel.location or "",
        "hotel_phone": hotel.phone or "",
        "room_type": room_type.name,
        "rate_plan": rate_plan.name if rate_plan else "Standard Rate",
        "check_in": long_date(booking.check_in_date),
        "check_out": long_date(booking.check_out_date),
        "nights": booking.nights,
        "adults": booking.adults,
        "children": booking.children,
        "rooms": booking.rooms,
        "total_amount": major_units(booking.total_amount),
        "deposit_amount": major_units(booking.deposit_amount),
        "balance_due": major_units(balance_due(booking)),
        "currency": booking.currency,
        "special_requests": booking.special_requests or "",
        "payment_status": booking.payment_status,
        "status": booking.status,
        "cancellation_reason": booking.cancellation_reason or "",
        "cancellation_policy": CANCELLATION_POLICY,
    }


async def load_view_model(db: AsyncSession, booking_id: str) -> dict:
    booking = await lifecycle.get_booking(db, booking_id)
    guest = await db.get(Guest, booking.guest_id)
    hotel = await db.get(Hotel, booking.hotel_id)
    room_type = await db.get(RoomType, booking.room_type_id)
    rate_plan = await db.get(RatePlan, booking.rate_plan_id) if booking.rate_plan_id else None
    return build_view_model(booking, guest, hotel, room_type, rate_plan)


def render(template_name: str, context: dict) -> str:
    return templates.get_template(template_name).render(**context)


async def send_email(recipient: str, subject: str, html: str):
    if not MAIL_ENABLED:
        logger.info("mail disabled, not sending %r to %s", subject, recipient)
        return

    message = MessageSchema(
        subject=subject,
        recipients=[recipient],
        body=html,
        subtype=MessageType.html,
    )
    fm = FastMail(conf)
    await fm.send_message(message)


async def notify(db: AsyncSession, event_type: str, data: dict) -> bool:
    """Send the email for a domain event. Returns False when the event has no email."""
    if event_type not in EMAILS:
        return False

    template_name, subject = EMAILS[event_type]
    context = await load_view_model(db, data["booking_id"])
    if event_type == "payment.failed":
        context["failure_message"] = data.get("failure_message") or "Your card was declined."
    if event_type in ("payment.succeeded", "payment.failed"):
        context["payment_amount"] = major_units(data.get("amount"))

    html = render(template_name, context)
    await send_email(context["guest_email"], subject.format(code=context["booking_reference"]), html)
    logger.info("sent %s email booking_id=%s", template_name, data["booking_id"])
    return True
