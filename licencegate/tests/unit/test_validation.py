from __future__ import annotations

import pytest
import pytest_asyncio

from licencegate.core.errors import EvaluationTimeoutError
from licencegate.domain.compliance import STATUS_PASS
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.services.validation import ValidationService
from licencegate.tests.utils.world import TODAY, FakeClock, RecordingEnqueue, SlowStore, order, seed_world


@pytest_asyncio.fixture
async def slow_world() -> SlowStore:
    store = SlowStore(delay_s=1.0)
    await seed_world(store)
    return store


@pytest.mark.asyncio
async def test_slow_reference_data_times_out_without_a_verdict(slow_world) -> None:
    service = ValidationService(slow_world, NotificationDispatcher(slow_world, enqueue=RecordingEnqueue(), clock=FakeClock()))

    with pytest.raises(EvaluationTimeoutError):
        await service.validate_transaction(order(("MORPH", "1", "g")), deadline_s=0.01, today=TODAY)

    assert await slow_world.list_transactions() == []
    assert not [r for r in slow_world.audit_log if r.event_type == "transaction.validated"]


@pytest.mark.asyncio
async def test_deadline_only_bounds_the_reference_data_read(slow_world) -> None:
    slow_world.delay_s = 0.0
    service = ValidationService(slow_world, NotificationDispatcher(slow_world, enqueue=RecordingEnqueue(), clock=FakeClock()))

    transaction = await service.validate_transaction(order(("MORPH", "1", "g")), deadline_s=0.5, today=TODAY)
    assert transaction.status == STATUS_PASS
    assert [t.id for t in await slow_world.list_transactions()] == [transaction.id]
