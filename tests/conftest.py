"""
Shared fixtures: in-memory SQLite database, fake carrier, recording event bus.
"""
import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CARRIER_MODE", "fake")
os.environ.setdefault("TRACKING_SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["SMTP_HOST"] = ""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from parceltrack.database import Base
from parceltrack.models import Order, OrderStatus
from parceltrack.services.carrier_gateway import FakeCarrierGateway
from parceltrack.services.events import StatusEventBus
from parceltrack.services.order_store import OrderStore
from parceltrack.services.reconciler import Reconciler


class FakeClock:
    """Deterministic clock; every call returns the current time, advance() moves it."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def run(coro, bus: StatusEventBus = None):
    """Drive a coroutine to completion, then drain event deliveries on the same loop."""
    async def _main():
        result = await coro
        if bus is not None:
            await bus.join()
        return result
    return asyncio.run(_main())


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_order(db_session):
    created = [datetime(2024, 4, 1, 12, 0, 0)]

    def _make(carrier_shipment_id="CD-100", status=OrderStatus.PENDING, user_id="user-1", **fields):
        # strictly increasing created_at keeps tie-breaks deterministic
        created[0] = created[0] + timedelta(minutes=1)
        order = Order(
            user_id=user_id,
            customer_name=fields.pop("customer_name", "Ada Lovelace"),
            customer_email=fields.pop("customer_email", "ada@example.com"),
            status=status,
            carrier_shipment_id=carrier_shipment_id,
            status_history=fields.pop("status_history", []),
            created_at=fields.pop("created_at", created[0]),
            **fields,
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture
def gateway():
    return FakeCarrierGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return StatusEventBus()


@pytest.fixture
def published(bus):
    events = []

    async def _record(event):
        events.append(event)

    bus.subscribe(_record)
    return events


@pytest.fixture
def reconciler(db_session, gateway, bus, clock):
    return Reconciler(OrderStore(db_session), gateway, events=bus, batch_limit=100, clock=clock)
