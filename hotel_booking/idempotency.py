import logging

from . import redis_client as rc

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def is_processed(event_id: str) -> bool:
    # fast path only, processed_events table is authoritative
    try:
        return bool(await rc.redis_client.exists(processed_key(event_id)))
    except Exception as e:
        logger.warning("redis unavailable for idempotency check: %s", e)
        return False


async def mark_processed(event_id: str):
    try:
        await rc.redis_client.set(processed_key(event_id), "1", ex=IDEMPOTENCY_TTL)
    except Exception as e:
        logger.warning("redis unavailable, event %s not marked: %s", event_id, e)
