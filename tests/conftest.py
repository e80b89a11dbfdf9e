import json
import os
from datetime import date
from decimal import Decimal

os.environ.setdefault("BOOKING_DB", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace_shared.database import Base, get_session
from marketplace_shared.idempotency import EventLedger

from booking_service.catalog import ServiceInfo
from booking_service.core import BookingCore
from booking_service.errors import NotFoundError
from booking_service.gateway import MockPaymentGateway
from booking_service.notifications import Notifier

MONDAY = date(2024, 6, 3)
SUNDAY = date(2024, 6, 9)
WEBHOOK_SECRET = "whsec_test"

SERVICES = [
    ServiceInfo("svc-cut", "prov-1", 60, Decimal("50.00"), "Haircut"),
    ServiceInfo("svc-color", "prov-1", 90, Decimal("120.00"), "Colouring"),
    ServiceInfo("svc-nails", "prov-2", 45, Decimal("35.00"), "Manicure"),
]


class FakeCatalog:
    def __init__(self, services):
        self.services = {s.service_id: s for s in services}

    async def get_service(self, service_id):
        try:
            return self.services[service_id]
        except KeyError:
            raise NotFoundError("service")


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.messages = []

    async def publish(self, routing_key, message_body):
        self.messages.append((routing_key, json.loads(message_body)))

    def of_type(self, notification_type):
        return [
            body["data"] for key, body in self.messages
            if key == "notification.requested" and body["data"]["type"] == notification_type
        ]

    def events(self, routing_key):
        return [body["data"] for key, body in self.messages if key == routing_key]


class FakeRedis:
    def __init__(self):
        self.store = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return int(self.store.pop(key, None) is not None)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def catalog():
    return FakeCatalog(SERVICES)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def core(session_factory, catalog, gateway, publisher, redis):
    return BookingCore(
        session_factory,
        catalog,
        gateway,
        Notifier(publisher),
        EventLedger(redis),
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def book(core):
    async def _book(customer_id, service_id, slot, day=MONDAY):
        ticket = await core.create_reservation(customer_id, service_id, None, day, slot)
        return await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    return _book
