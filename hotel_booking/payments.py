"""
Maps payment processor state onto Payment rows and booking status.

Each operation here owns its transaction: processor calls happen outside
any rollback, so failures are committed before they are reported.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import lifecycle
from .config import DEPOSIT_CONFIRMS_BOOKING, SUPPORTED_CURRENCIES
from .errors import AmountMismatch, InvalidState, NotFound, PaymentError, SignatureInvalid, ValidationFailed
from .events import queue_event
from .idempotency import is_processed, mark_processed
from .models import Booking, Payment, ProcessedEvent
from .processor import PaymentProcessorError, ProcessorIntent
from .publisher import commit_and_publish, rollback

logger = logging.getLogger(__name__)

FULL = "full"
DEPOSIT = "deposit"

REQUIRES_ACTION = "requires_action"
SUCCEEDED = "succeeded"
FAILED = "failed"
REFUNDED = "refunded"

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def payment_event_data(payment: Payment) -> dict:
    return {
        "booking_id": payment.booking_id,
        "payment_intent_id": payment.processor_intent_id,
        "charge_id": payment.charge_id,
        "kind": payment.kind,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "failure_code": payment.failure_code,
        "failure_message": payment.failure_message,
    }


async def _payment_where(db: AsyncSession, *criteria) -> Payment | None:
    res = await db.execute(select(Payment).where(*criteria).execution_options(populate_existing=True))
    return res.scalars().first()


async def get_payment_by_intent(db: AsyncSession, intent_id: str) -> Payment:
    payment = await _payment_where(db, Payment.processor_intent_id == intent_id)
    if not payment:
        raise NotFound("Payment intent not found")
    return payment


def expected_amount(booking: Booking, kind: str) -> int:
    if kind == DEPOSIT:
        return booking.deposit_amount
    return booking.total_amount - booking.amount_paid


async def create_intent(
    db: AsyncSession,
    processor,
    booking_id: str,
    amount: int,
    currency: str,
    guest_id: int,
    kind: str = FULL,
) -> tuple[Payment, str | None]:
    booking = await lifecycle.get_booking(db, booking_id)
    if booking.guest_id != guest_id:
        raise NotFound("Booking not found")
    balance_open = booking.status == lifecycle.CONFIRMED and kind == FULL
    if booking.status != lifecycle.PENDING and not balance_open:
        raise InvalidState(f"Booking is {booking.status}, payment not accepted")
    if booking.amount_paid >= booking.total_amount:
        raise InvalidState("Booking is already paid")

    in_flight = await _payment_where(
        db, Payment.booking_id == booking.booking_id, Payment.status == REQUIRES_ACTION
    )
    if in_flight:
        raise InvalidState(f"Payment {in_flight.processor_intent_id} is already open for this booking")

    currency = currency.upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationFailed(f"Unsupported currency: {currency}")
    if kind not in (FULL, DEPOSIT):
        raise ValidationFailed(f"Unknown payment type: {kind}")
    if kind == DEPOSIT and booking.amount_paid:
        raise InvalidState("Deposit already paid")

    expected = expected_amount(booking, kind)
    if currency != booking.currency or amount != expected:
        logger.warning(
            "amount mismatch booking_id=%s kind=%s got=%s %s expected=%s %s",
            booking_id, kind, amount, currency, expected, booking.currency,
        )
        raise AmountMismatch("Payment amount does not match booking total")

    try:
        intent = await processor.create_intent(
            amount,
            currency,
            metadata={
                "booking_id": booking.booking_id,
                "confirmation_code": booking.confirmation_code,
                "guest_id": str(guest_id),
                "kind": kind,
            },
        )
    except PaymentProcessorError as e:
        logger.error("create intent failed booking_id=%s: %s", booking_id, e)
        raise PaymentError(e.message, e.code) from e

    payment = Payment(
        booking_id=booking.booking_id,
        processor_intent_id=intent.id,
        kind=kind,
        amount=amount,
        currency=currency,
        status=REQUIRES_ACTION,
        payment_metadata={"confirmation_code": booking.confirmation_code},
    )
    db.add(payment)
    await commit_and_publish(db)

    logger.info("payment intent created booking_id=%s intent=%s kind=%s amount=%s", booking_id, intent.id, kind, amount)
    return payment, intent.client_secret


async def _mark_failed(db: AsyncSession, intent_id: str, code: str | None, message: str | None) -> Payment | None:
    res = await db.execute(
        update(Payment)
        .where(Payment.processor_intent_id == intent_id, Payment.status.in_((REQUIRES_ACTION, FAILED)))
        .values(status=FAILED, failure_code=code, failure_message=message)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return None
    payment = await get_payment_by_intent(db, intent_id)
    queue_event(db, "payment.failed", payment_event_data(payment))
    logger.warning("payment failed booking_id=%s intent=%s code=%s", payment.booking_id, intent_id, code)
    return payment


async def apply_payment_success(
    db: AsyncSession,
    intent_id: str,
    charge_id: str | None = None,
    card_brand: str | None = None,
    card_last4: str | None = None,
) -> bool:
    """
    Record a succeeded intent once. Returns False when it was already
    recorded, so inventory and booking state are touched at most once.
    """
    values = {"status": SUCCEEDED, "failure_code": None, "failure_message": None}
    if charge_id:
        values["charge_id"] = charge_id
    if card_brand:
        values["card_brand"] = card_brand
    if card_last4:
        values["card_last4"] = card_last4

    res = await db.execute(
        update(Payment)
        .where(Payment.processor_intent_id == intent_id, Payment.status.in_((REQUIRES_ACTION, FAILED)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    payment = await get_payment_by_intent(db, intent_id)
    await db.execute(
        update(Booking)
        .where(Booking.booking_id == payment.booking_id)
        .values(amount_paid=Booking.amount_paid + payment.amount)
        .execution_options(synchronize_session=False)
    )
    booking = await lifecycle.get_booking(db, payment.booking_id)
    queue_event(db, "payment.succeeded", payment_event_data(payment))
    logger.info("payment succeeded booking_id=%s intent=%s amount=%s", booking.booking_id, intent_id, payment.amount)

    if booking.status == lifecycle.CANCELLED:
        logger.error(
            "payment %s succeeded for cancelled booking %s, manual refund required",
            intent_id, booking.booking_id,
        )
        return True
    if booking.amount_paid > booking.total_amount:
        logger.error(
            "payment %s overpays booking %s by %s, manual refund required",
            intent_id, booking.booking_id, booking.amount_paid - booking.total_amount,
        )

    fully_paid = booking.amount_paid >= booking.total_amount
    qualifies = payment.kind == FULL or DEPOSIT_CONFIRMS_BOOKING
    if booking.status == lifecycle.PENDING and qualifies:
        try:
            await lifecycle.confirm_booking(db, booking.booking_id, intent_id, paid=fully_paid)
        except InvalidState:
            logger.error(
                "payment %s succeeded but booking %s could not be confirmed, manual refund required",
                intent_id, booking.booking_id,
            )
    elif booking.status == lifecycle.CONFIRMED and fully_paid:
        await lifecycle.mark_paid(db, booking.booking_id, intent_id)
    return True


async def confirm_intent(db: AsyncSession, processor, intent_id: str, payment_method_id: str) -> Payment:
    payment = await get_payment_by_intent(db, intent_id)
    if payment.status in (SUCCEEDED, REFUNDED):
        return payment

    try:
        result: ProcessorIntent = await processor.confirm_intent(intent_id, payment_method_id)
    except PaymentProcessorError as e:
        await _mark_failed(db, intent_id, e.code, e.message)
        await commit_and_publish(db)
        raise PaymentError(e.message, e.code) from e

    if result.succeeded:
        await apply_payment_success(db, intent_id, result.charge_id, result.card_brand, result.card_last4)
        await commit_and_publish(db)
    elif result.status == "requires_payment_method":
        code = result.failure_code or "payment_failed"
        message = result.failure_message or "Payment was declined"
        await _mark_failed(db, intent_id, code, message)
        await commit_and_publish(db)
        raise PaymentError(message, code)
    else:
        # requires_action / processing, the webhook settles it
        logger.info("intent %s is %s after confirm", intent_id, result.status)

    return await get_payment_by_intent(db, intent_id)


async def _apply_refund(db: AsyncSession, payment: Payment, amount_refunded: int, refund_id: str | None):
    values = {"status": REFUNDED, "amount_refunded": amount_refunded}
    if refund_id:
        values["refund_id"] = refund_id
    await db.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(Booking)
        .where(Booking.booking_id == payment.booking_id)
        .values(payment_status="refunded")
        .execution_options(synchronize_session=False)
    )
    payment = await _payment_where(db, Payment.id == payment.id)
    queue_event(db, "payment.refunded", payment_event_data(payment) | {"amount_refunded": amount_refunded})


async def create_refund(
    db: AsyncSession,
    processor,
    charge_id: str,
    amount: int | None = None,
    reason: str | None = None,
) -> Payment:
    """Refund a captured charge. The booking keeps its status."""
    payment = await _payment_where(db, Payment.charge_id == charge_id)
    if not payment:
        raise NotFound("Charge not found")
    if payment.status not in (SUCCEEDED, REFUNDED):
        raise InvalidState(f"Payment is {payment.status}, nothing to refund")

    remaining = payment.amount - payment.amount_refunded
    if remaining <= 0:
        raise InvalidState("Payment is already fully refunded")
    if amount is not None and not 0 < amount <= remaining:
        raise ValidationFailed(f"Refund amount must be between 1 and {remaining}")
    if reason and reason not in REFUND_REASONS:
        raise ValidationFailed(f"Unknown refund reason: {reason}")

    try:
        refund = await processor.create_refund(charge_id, amount, reason)
    except PaymentProcessorError as e:
        logger.error("refund failed charge=%s: %s", charge_id, e)
        raise PaymentError(e.message, e.code) from e

    await _apply_refund(db, payment, payment.amount_refunded + refund.amount, refund.id)
    await commit_and_publish(db)
    logger.info("refund created booking_id=%s charge=%s amount=%s", payment.booking_id, charge_id, refund.amount)
    return await _payment_where(db, Payment.id == payment.id)


async def _on_intent_succeeded(db: AsyncSession, obj: dict):
    charge = obj.get("latest_charge")
    if isinstance(charge, dict):
        card = (charge.get("payment_method_details") or {}).get("card") or {}
        applied = await apply_payment_success(db, obj["id"], charge.get("id"), card.get("brand"), card.get("last4"))
    else:
        applied = await apply_payment_success(db, obj["id"], charge)
    if not applied:
        logger.info("intent %s not applied, unknown or already recorded", obj["id"])


async def _on_intent_failed(db: AsyncSession, obj: dict):
    error = obj.get("last_payment_error") or {}
    payment = await _mark_failed(db, obj["id"], error.get("code"), error.get("message"))
    if not payment:
        logger.info("ignoring failure for intent %s, already settled", obj["id"])


async def _on_charge_succeeded(db: AsyncSession, obj: dict):
    card = (obj.get("payment_method_details") or {}).get("card") or {}
    await db.execute(
        update(Payment)
        .where(Payment.processor_intent_id == obj.get("payment_intent"))
        .values(charge_id=obj["id"], card_brand=card.get("brand"), card_last4=card.get("last4"))
        .execution_options(synchronize_session=False)
    )


async def _on_charge_refunded(db: AsyncSession, obj: dict):
    payment = await _payment_where(db, Payment.charge_id == obj["id"])
    if not payment and obj.get("payment_intent"):
        payment = await _payment_where(db, Payment.processor_intent_id == obj["payment_intent"])
    if not payment:
        logger.warning("refund webhook for unknown charge %s", obj["id"])
        return
    refunds = (obj.get("refunds") or {}).get("data") or []
    await _apply_refund(db, payment, obj.get("amount_refunded") or payment.amount, refunds[0]["id"] if refunds else None)


WEBHOOK_HANDLERS = {
    "payment_intent.succeeded": _on_intent_succeeded,
    "payment_intent.payment_failed": _on_intent_failed,
    "charge.succeeded": _on_charge_succeeded,
    "charge.refunded": _on_charge_refunded,
}


async def _duplicate(db: AsyncSession, event_id: str) -> dict:
    await rollback(db)
    await mark_processed(event_id)
    logger.info("webhook %s already processed", event_id)
    return {"received": True, "duplicate": True}


async def handle_webhook(db: AsyncSession, processor, payload: bytes, signature: str | None) -> dict:
    try:
        event = processor.construct_event(payload, signature)
    except SignatureInvalid:
        logger.warning("webhook rejected: bad signature")
        raise

    if await is_processed(event.id):
        logger.info("webhook %s already processed", event.id)
        return {"received": True, "duplicate": True}

    db.add(ProcessedEvent(event_id=event.id, event_type=event.type))
    try:
        await db.flush()
    except IntegrityError:
        return await _duplicate(db, event.id)

    handler = WEBHOOK_HANDLERS.get(event.type)
    if handler:
        await handler(db, event.data)
    else:
        logger.info("webhook %s of type %s ignored", event.id, event.type)

    try:
        await commit_and_publish(db)
    except IntegrityError:
        return await _duplicate(db, event.id)

    await mark_processed(event.id)
    logger.info("webhook %s (%s) processed", event.id, event.type)
    return {"received": True, "duplicate": False}
