import asyncio
import json
import logging

import aio_pika

from .config import NOTIFY_MAX_ATTEMPTS, RABBIT_URL
from .db import SessionLocal
from .errors import BookingError
from .events import to_json
from .notifications import EMAILS, notify
from .publisher import EXCHANGE_NAME

logger = logging.getLogger(__name__)

QUEUE_NAME = "hotel_booking_notifications"
ROUTING_KEYS = list(EMAILS)

SENT = "sent"
RETRY = "retry"
DROPPED = "dropped"


def backoff_seconds(attempt: int) -> float:
    return float(min(2 ** attempt, 60))


async def deliver(event: dict, attempt: int, retry) -> str:
    """
    Send the email for one event. On failure `retry(event, attempt + 1)` is
    awaited until NOTIFY_MAX_ATTEMPTS is reached. Booking state is never
    touched here.
    """
    event_type = event.get("event_type")
    data = event.get("data") or {}
    if event_type not in EMAILS or not data.get("booking_id"):
        return DROPPED

    try:
        async with SessionLocal() as db:
            await notify(db, event_type, data)
        return SENT
    except BookingError as e:
        logger.error("notification %s for %s dropped: %s", event_type, data.get("booking_id"), e)
        return DROPPED
    except Exception as e:
        logger.error(
            "notification %s for %s failed (attempt %s/%s): %s",
            event_type, data.get("booking_id"), attempt, NOTIFY_MAX_ATTEMPTS, e,
        )

    if attempt >= NOTIFY_MAX_ATTEMPTS:
        logger.error("giving up on %s for %s", event_type, data.get("booking_id"))
        return DROPPED

    await retry(event, attempt + 1)
    return RETRY


class NotificationConsumer:
    def __init__(self, url: str | None = RABBIT_URL):
        self.url = url
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None

    async def _retry(self, event: dict, attempt: int):
        await asyncio.sleep(backoff_seconds(attempt - 1))
        msg = aio_pika.Message(
            body=to_json(event).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            headers={"x-attempt": attempt},
        )
        # straight back onto our own queue, other subscribers already have it
        await self._channel.default_exchange.publish(msg, routing_key=QUEUE_NAME)

    async def handle_message(self, message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process(requeue=False):
            try:
                event = json.loads(message.body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("dropping malformed message on %s", QUEUE_NAME)
                return

            attempt = int((message.headers or {}).get("x-attempt") or 1)
            await deliver(event, attempt, self._retry)

    async def start(self):
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=10)

        exchange = await self._channel.declare_exchange(
            EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
        )

        queue = await self._channel.declare_queue(QUEUE_NAME, durable=True)
        for rk in ROUTING_KEYS:
            await queue.bind(exchange, routing_key=rk)

        await queue.consume(self.handle_message)
        logger.info("notification consumer started on %s", QUEUE_NAME)

    async def close(self):
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self._channel = None
