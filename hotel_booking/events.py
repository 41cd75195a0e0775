import json
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def queue_event(db: AsyncSession, event_type: str, data: dict) -> dict:
    """
    Stage an event on the session. It is published only after the
    surrounding transaction commits (see publisher.commit_and_publish).
    """
    event = build_event(event_type, data)
    db.info.setdefault("pending_events", []).append(event)
    return event


def take_pending_events(db: AsyncSession) -> list[dict]:
    return db.info.pop("pending_events", [])


def discard_pending_events(db: AsyncSession):
    db.info.pop("pending_events", None)
