"""
Shared fixtures: an in-memory store seeded with roles and actors, fake gateway / calendar, and the
fully wired lifecycle container.
"""
import pytest
import pytest_asyncio

from _helper import seed_actor, seed_roles
from fulfillment.bootstrap import build_container
from fulfillment.calendar_sync import FakeCalendarClient
from fulfillment.config import Settings
from fulfillment.gateway import FakeGateway
from fulfillment.service import Caller
from fulfillment.store import InMemoryEntityStore


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        side_effect_backend="inline",
        payment_gateway_timeout_seconds=1.0,
        calendar_timeout_seconds=1.0,
        event_min_order_smallest_unit=0,
    )


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore(max_attempts=5)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest_asyncio.fixture
async def seeded(store):
    await seed_roles(store)
    await seed_actor(store, "admin1", "Admin")
    await seed_actor(store, "courier1", "Courier")
    await seed_actor(store, "cust1", "Customer")
    await seed_actor(store, "cust2", "Customer")
    return store


@pytest_asyncio.fixture
async def container(seeded, gateway, calendar_client, settings):
    c = build_container(store=seeded, gateway=gateway, calendar_client=calendar_client, settings=settings)
    yield c
    await c.dispatcher.drain()


@pytest.fixture
def service(container):
    return container.service


@pytest.fixture
def admin() -> Caller:
    return Caller("admin1", "Admin")


@pytest.fixture
def courier() -> Caller:
    return Caller("courier1", "Courier")


@pytest.fixture
def customer() -> Caller:
    return Caller("cust1", "Customer")
