import asyncio
import json
import logging
from dataclasses import dataclass, field

import stripe

from .config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, STRIPE_WEBHOOK_TOLERANCE_SECONDS
from .errors import SignatureInvalid, ValidationFailed

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


@dataclass
class ProcessorIntent:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    charge_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class ProcessorRefund:
    id: str
    status: str
    amount: int
    charge_id: str


@dataclass
class ProcessorEvent:
    id: str
    type: str
    data: dict = field(default_factory=dict)


def _get(obj, *path):
    for name in path:
        if obj is None:
            return None
        obj = getattr(obj, name, None)
    return obj


def _intent_from_stripe(pi) -> ProcessorIntent:
    charge = _get(pi, "latest_charge")
    if isinstance(charge, str):
        charge_id, card = charge, None
    else:
        charge_id, card = _get(charge, "id"), _get(charge, "payment_method_details", "card")

    return ProcessorIntent(
        id=pi.id,
        status=pi.status,
        amount=pi.amount,
        currency=pi.currency.upper(),
        client_secret=_get(pi, "client_secret"),
        charge_id=charge_id,
        card_brand=_get(card, "brand"),
        card_last4=_get(card, "last4"),
        failure_code=_get(pi, "last_payment_error", "code"),
        failure_message=_get(pi, "last_payment_error", "message"),
    )


class StripeProcessor:
    """Thin async wrapper over the blocking Stripe SDK."""

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        tolerance: int = STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.CardError as e:
            raise PaymentProcessorError(e.code or "card_declined", e.user_message or str(e)) from e
        except stripe.StripeError as e:
            logger.error("stripe call %s failed: %s", getattr(fn, "__name__", fn), e)
            raise PaymentProcessorError(e.code or "processor_error", e.user_message or str(e)) from e

    async def create_intent(self, amount: int, currency: str, metadata: dict) -> ProcessorIntent:
        pi = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            metadata=metadata,
            capture_method="automatic",
            payment_method_types=["card"],
        )
        return _intent_from_stripe(pi)

    async def confirm_intent(self, intent_id: str, payment_method_id: str) -> ProcessorIntent:
        pi = await self._call(
            stripe.PaymentIntent.confirm,
            intent_id,
            payment_method=payment_method_id,
            expand=["latest_charge"],
        )
        return _intent_from_stripe(pi)

    async def create_refund(self, charge_id: str, amount: int | None = None, reason: str | None = None) -> ProcessorRefund:
        params = {"charge": charge_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        refund = await self._call(stripe.Refund.create, **params)
        return ProcessorRefund(id=refund.id, status=refund.status, amount=refund.amount, charge_id=charge_id)

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        if not signature or not self.webhook_secret:
            raise SignatureInvalid("Missing webhook signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
            body = json.loads(payload)
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise SignatureInvalid("Invalid webhook signature") from e

        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise ValidationFailed("Webhook event is missing id or type")

        return ProcessorEvent(
            id=body["id"],
            type=body["type"],
            data=(body.get("data") or {}).get("object") or {},
        )


processor = StripeProcessor()
