from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import payments
from . import processor as processor_module
from .db import get_db
from .lifecycle import get_booking
from .models import Payment
from .rbac import require_admin
from .responses import ok
from .schemas import (
    ConfirmIntentRequest,
    CreateIntentRequest,
    Envelope,
    IntentOut,
    PaymentOut,
    RefundRequest,
    WebhookAck,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_processor():
    return processor_module.processor


def payment_out(payment: Payment, booking_status: str | None = None) -> PaymentOut:
    return PaymentOut(
        payment_intent_id=payment.processor_intent_id,
        booking_id=payment.booking_id,
        kind=payment.kind,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        charge_id=payment.charge_id,
        card_brand=payment.card_brand,
        card_last4=payment.card_last4,
        amount_refunded=payment.amount_refunded,
        failure_code=payment.failure_code,
        failure_message=payment.failure_message,
        booking_status=booking_status,
    )


@router.post("/intent", response_model=Envelope[IntentOut], status_code=201)
async def create_intent(
    data: CreateIntentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_processor),
):
    payment, client_secret = await payments.create_intent(
        db,
        processor,
        booking_id=data.booking_id,
        amount=data.amount,
        currency=data.currency,
        guest_id=data.guest_id,
        kind=data.payment_type,
    )
    return ok(
        request,
        IntentOut(
            payment_intent_id=payment.processor_intent_id,
            client_secret=client_secret,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
        ),
    )


@router.post("/confirm", response_model=Envelope[PaymentOut])
async def confirm_intent(
    data: ConfirmIntentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_processor),
):
    payment = await payments.confirm_intent(db, processor, data.payment_intent_id, data.payment_method_id)
    booking = await get_booking(db, payment.booking_id)
    return ok(request, payment_out(payment, booking.status))


@router.post("/webhook", response_model=Envelope[WebhookAck])
async def webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_processor),
):
    payload = await request.body()
    result = await payments.handle_webhook(db, processor, payload, stripe_signature)
    return ok(request, WebhookAck(**result))


@router.post("/refund", response_model=Envelope[PaymentOut])
async def create_refund(
    data: RefundRequest,
    request: Request,
    user=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_processor),
):
    payment = await payments.create_refund(db, processor, data.charge_id, data.amount, data.reason)
    booking = await get_booking(db, payment.booking_id)
    return ok(request, payment_out(payment, booking.status))
