import asyncio
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import lifecycle
from .config import HOLD_SWEEP_INTERVAL_SECONDS
from .db import SessionLocal
from .models import Booking, utcnow
from .publisher import commit_and_publish, rollback

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


async def sweep_expired_holds(db: AsyncSession, now: datetime | None = None) -> int:
    """
    Cancel unpaid pending bookings whose hold has lapsed and give their
    rooms back. Safe to run repeatedly or from several processes.
    """
    now = now or utcnow()
    res = await db.execute(
        select(Booking.booking_id)
        .where(
            Booking.status == lifecycle.PENDING,
            Booking.inventory_state == "held",
            Booking.amount_paid == 0,
            Booking.hold_expires_at.is_not(None),
            Booking.hold_expires_at <= now,
        )
        .order_by(Booking.hold_expires_at)
        .limit(BATCH_SIZE)
    )
    expired = list(res.scalars().all())

    released = 0
    for booking_id in expired:
        booking = await lifecycle.expire_hold(db, booking_id, now)
        if not booking:
            await rollback(db)
            continue
        await commit_and_publish(db)
        released += 1
        logger.info("hold expired booking_id=%s rooms=%s released", booking_id, booking.rooms)

    return released


async def expiry_loop(stop_event: asyncio.Event):
    while not stop_event.is_set():
        try:
            async with SessionLocal() as db:
                await sweep_expired_holds(db)
        except Exception:
            logger.exception("hold sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=HOLD_SWEEP_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            continue
