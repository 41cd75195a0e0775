import logging
from contextlib import asynccontextmanager

import aio_pika
from sqlalchemy.ext.asyncio import AsyncSession

from .config import RABBIT_URL
from .events import take_pending_events, discard_pending_events, to_json

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "domain_events"


class RabbitPublisher:
    def __init__(self, url: str | None = RABBIT_URL):
        self.url = url
        self.enabled = bool(url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            logger.warning("RabbitMQ connect failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str, headers: dict | None = None):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                headers=headers or {},
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.error("RabbitMQ publish failed for %s: %s", routing_key, e)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None


publisher = RabbitPublisher()


async def commit_and_publish(db: AsyncSession):
    """Commit the session, then publish whatever events it staged."""
    try:
        await db.commit()
    except Exception:
        discard_pending_events(db)
        raise

    for event in take_pending_events(db):
        await publisher.publish(event["event_type"], to_json(event))


async def rollback(db: AsyncSession):
    discard_pending_events(db)
    await db.rollback()


@asynccontextmanager
async def transaction(db: AsyncSession):
    """Commit and publish on success, roll back and drop staged events on error."""
    try:
        yield db
    except Exception:
        await rollback(db)
        raise
    await commit_and_publish(db)
