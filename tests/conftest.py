import hashlib
import hmac
import json
import os
import tempfile
import time
import uuid
from datetime import date, datetime, time as dtime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

_DB_DIR = tempfile.mkdtemp(prefix="hotel-booking-tests-")

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'test.db'}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["MAIL_ENABLED"] = "false"
os.environ["HOLD_MINUTES"] = "15"
os.environ["DEPOSIT_CONFIRMS_BOOKING"] = "false"
os.environ.pop("RABBIT_URL", None)

import fakeredis
import httpx
import pytest
from jose import jwt

from hotel_booking import ledger
from hotel_booking import redis_client as rc
from hotel_booking.db import Base, SessionLocal, engine
from hotel_booking.models import Guest, Hotel, RatePlan, RoomType
from hotel_booking.processor import PaymentProcessorError, ProcessorIntent, ProcessorRefund, StripeProcessor

WEBHOOK_SECRET = "whsec_test_secret"
NIGHTLY_RATE = 20000


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = fakeredis.FakeAsyncRedis(decode_responses=True)
    monkeypatch.setattr(rc, "redis_client", fake)
    return fake


@pytest.fixture
async def db():
    async with SessionLocal() as session:
        yield session


@pytest.fixture
async def hotel(db):
    h = Hotel(slug="ambassador-downtown", name="Ambassador Downtown", location="Wichita, KS", phone="+1 316 555 0100")
    db.add(h)
    await db.flush()

    room = RoomType(hotel_id=h.id, slug="king", name="King Room", max_occupancy=2, base_rate=18000, currency="USD")
    db.add(room)
    await db.flush()

    plan = RatePlan(hotel_id=h.id, room_type_id=room.id, name="Best Available Rate", nightly_rate=NIGHTLY_RATE)
    guest = Guest(email="ada@example.com", first_name="Ada", last_name="Lovelace")
    db.add_all([plan, guest])
    await db.commit()

    return SimpleNamespace(id=h.id, room_type_id=room.id, rate_plan_id=plan.id, guest_id=guest.id, guest_email=guest.email)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def midnight(d: date) -> datetime:
    return datetime.combine(d, dtime.min, tzinfo=timezone.utc)


@pytest.fixture
def stay():
    check_in = utc_today() + timedelta(days=30)
    return SimpleNamespace(check_in=check_in, check_out=check_in + timedelta(days=2))


async def seed_rooms(db, hotel, start: date, end: date, total: int):
    await ledger.seed_inventory(db, hotel.id, hotel.room_type_id, start, end, total)
    await db.commit()


async def night(db, hotel, d: date):
    records = await ledger.get_availability_range(db, hotel.id, hotel.room_type_id, d, d)
    return records[0]


class FakeProcessor:
    """In-memory processor; webhook signatures are checked with the real Stripe verifier."""

    def __init__(self):
        self.intents = {}
        self.confirm_calls = 0
        self.refunds = []
        self.decline_next = None
        self._verifier = StripeProcessor(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)

    async def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_{uuid.uuid4().hex[:16]}"
        self.intents[intent_id] = {"amount": amount, "currency": currency, "metadata": metadata}
        return ProcessorIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret_x",
        )

    async def confirm_intent(self, intent_id, payment_method_id):
        self.confirm_calls += 1
        if self.decline_next:
            code, message = self.decline_next
            self.decline_next = None
            raise PaymentProcessorError(code, message)
        intent = self.intents[intent_id]
        return ProcessorIntent(
            id=intent_id,
            status="succeeded",
            amount=intent["amount"],
            currency=intent["currency"],
            charge_id=f"ch_{intent_id[3:]}",
            card_brand="visa",
            card_last4="4242",
        )

    async def create_refund(self, charge_id, amount=None, reason=None):
        intent_id = f"pi_{charge_id[3:]}"
        refund = ProcessorRefund(
            id=f"re_{uuid.uuid4().hex[:12]}",
            status="succeeded",
            amount=amount if amount is not None else self.intents[intent_id]["amount"],
            charge_id=charge_id,
        )
        self.refunds.append(refund)
        return refund

    def construct_event(self, payload, signature):
        return self._verifier.construct_event(payload, signature)


@pytest.fixture
def processor():
    return FakeProcessor()


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    t = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{t}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={t},v1={digest}"


def webhook_event(event_type: str, obj: dict, event_id: str | None = None) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode()


def make_token(sub: str = "admin@ambassador.test", roles: list[str] | None = None) -> str:
    return jwt.encode({"sub": sub, "roles": roles or ["admin"]}, "test-secret", algorithm="HS256")


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
async def client(processor):
    from hotel_booking.main import app
    from hotel_booking.payment_routes import get_processor

    app.dependency_overrides[get_processor] = lambda: processor
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
