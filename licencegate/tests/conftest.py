from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from licencegate.apps.api.main import create_app
from licencegate.persistence.store import InMemoryComplianceStore
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.tests.utils.world import FakeClock, RecordingEnqueue, seed_world


@pytest.fixture
def store() -> InMemoryComplianceStore:
    # Each test gets an isolated process-local store.
    return InMemoryComplianceStore()


@pytest.fixture
def queue() -> RecordingEnqueue:
    return RecordingEnqueue()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher(store: InMemoryComplianceStore, queue: RecordingEnqueue, clock: FakeClock) -> NotificationDispatcher:
    # Keep delivery off Redis; tests drive process_delivery directly.
    return NotificationDispatcher(store, enqueue=queue, clock=clock)


@pytest_asyncio.fixture
async def world(store: InMemoryComplianceStore) -> InMemoryComplianceStore:
    await seed_world(store)
    return store


@pytest_asyncio.fixture
async def client(world: InMemoryComplianceStore, dispatcher: NotificationDispatcher):
    # Serve the API over the seeded in-memory store without touching Postgres or Redis.
    app = create_app(store=world, dispatcher=dispatcher)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
