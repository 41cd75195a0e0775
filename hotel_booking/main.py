import asyncio
import logging

from fastapi import FastAPI

from .config import LOG_LEVEL, RATE_LIMIT_PER_MINUTE, RABBIT_URL
from .consumer import NotificationConsumer
from .expiry_worker import expiry_loop
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .payment_routes import router as payment_router
from .publisher import publisher
from .responses import install_exception_handlers
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints."},
    {"name": "Bookings", "description": "Booking lifecycle: create, look up, cancel, admin status changes."},
    {"name": "Availability", "description": "Per-night room inventory and admin adjustments."},
    {"name": "Payments", "description": "Payment intents, processor webhooks and refunds."},
]

app = FastAPI(title="Hotel Booking Service", openapi_tags=OPENAPI_TAGS)

app.add_middleware(RateLimitMiddleware, max_per_minute=RATE_LIMIT_PER_MINUTE)
app.add_middleware(RequestLoggingMiddleware)
install_exception_handlers(app)

app.include_router(router)
app.include_router(payment_router)

_consumer: NotificationConsumer | None = None
_stop_event = asyncio.Event()
_expiry_task = None


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": "hotel-booking-service", "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    global _consumer, _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    # notification consumer is optional, the booking flow never waits on it
    if RABBIT_URL:
        try:
            _consumer = NotificationConsumer(RABBIT_URL)
            await _consumer.start()
        except Exception as e:
            _consumer = None
            logger.warning("notification consumer failed to start: %s", e)

    _stop_event.clear()
    _expiry_task = asyncio.create_task(expiry_loop(_stop_event))


@app.on_event("shutdown")
async def shutdown():
    global _consumer, _expiry_task
    _stop_event.set()
    if _expiry_task:
        await _expiry_task
        _expiry_task = None

    if _consumer:
        try:
            await _consumer.close()
        except Exception as e:
            logger.warning("notification consumer close failed: %s", e)
        _consumer = None

    try:
        await publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)
