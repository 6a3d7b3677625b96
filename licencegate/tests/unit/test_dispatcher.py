from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from licencegate.core.errors import StructuralValidationError
from licencegate.domain.compliance import (
    AUDIENCE_SYSTEM_ADMIN,
    DELIVERY_CANCELLED,
    DELIVERY_DELIVERED,
    DELIVERY_DELIVERING,
    DELIVERY_EXHAUSTED,
    DELIVERY_QUEUED,
    DELIVERY_RETRYING,
    EVENT_COMPLIANCE_STATUS_CHANGED,
    EVENT_LICENCE_EXPIRING,
)
from licencegate.persistence.store import KIND_DELIVERY, KIND_SUBSCRIPTION
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.services.notifications.signing import HEADER_SIGNATURE, verify_signature


SECRET = "whsec-test-0001"


class Receiver:
    """Scripted webhook endpoint backed by ``httpx.MockTransport``."""

    def __init__(self, statuses: list[int | BaseException]) -> None:
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        if isinstance(status, BaseException):
            raise status
        return httpx.Response(status, json={"ok": status < 400})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


async def _subscribe_and_dispatch(store, queue, clock, receiver: Receiver) -> tuple[NotificationDispatcher, str, str]:
    dispatcher = NotificationDispatcher(store, enqueue=queue, transport=receiver.transport, clock=clock)
    subscription, _secret = await dispatcher.create_subscription(
        callback_url="https://erp.example.test/hooks/compliance",
        event_types=[EVENT_COMPLIANCE_STATUS_CHANGED],
        secret=SECRET,
    )
    await dispatcher.dispatch(
        EVENT_COMPLIANCE_STATUS_CHANGED,
        {"transaction_id": "tx-1", "status": "Pending"},
        entity_type="transaction",
        entity_id="tx-1",
        new_status="Pending",
    )
    delivery_id, defer_s = queue.calls[-1]
    assert defer_s == 0
    return dispatcher, subscription.id, delivery_id


@pytest.mark.asyncio
async def test_successful_delivery_is_signed(store, queue, clock) -> None:
    receiver = Receiver([200])
    dispatcher, _sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    delivery = await dispatcher.process_delivery(delivery_id)
    assert delivery.status == DELIVERY_DELIVERED
    assert delivery.attempt_count == 1

    request = receiver.requests[0]
    body = request.content
    assert HEADER_SIGNATURE in request.headers
    assert verify_signature(dict(request.headers), body, SECRET).ok
    payload = json.loads(body)
    assert payload["event_type"] == EVENT_COMPLIANCE_STATUS_CHANGED
    assert payload["entity_id"] == "tx-1"


@pytest.mark.asyncio
async def test_receiver_down_exhausts_and_raises_one_alert(store, queue, clock) -> None:
    receiver = Receiver([500, 500, 500, 500, 500])
    dispatcher, sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    expected_delays = [10, 60, 300]
    for attempt, delay in enumerate(expected_delays, start=1):
        delivery = await dispatcher.process_delivery(delivery_id)
        assert delivery.status == DELIVERY_RETRYING
        assert delivery.attempt_count == attempt
        assert queue.calls[-1] == (delivery_id, delay)
        # Not due yet: a premature attempt is a no-op.
        assert await dispatcher.process_delivery(delivery_id) is None
        clock.advance(delay)

    enqueued_before = len(queue.calls)
    delivery = await dispatcher.process_delivery(delivery_id)
    assert delivery.status == DELIVERY_EXHAUSTED
    assert delivery.attempt_count == 4
    assert len(receiver.requests) == 4
    assert len(queue.calls) == enqueued_before

    subscription = (await store.load(KIND_SUBSCRIPTION, sub_id)).entity
    assert subscription.is_healthy is False
    assert subscription.is_active is True

    alerts = await store.list_alerts(audience=AUDIENCE_SYSTEM_ADMIN)
    assert len(alerts) == 1
    assert alerts[0].alert_type == "WebhookSubscriptionUnhealthy"
    assert alerts[0].severity == "High"

    # Exhausted deliveries are terminal.
    clock.advance(3600)
    assert await dispatcher.process_delivery(delivery_id) is None


@pytest.mark.asyncio
async def test_success_after_failure_restores_health(store, queue, clock) -> None:
    receiver = Receiver([503, 200])
    dispatcher, sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    assert (await dispatcher.process_delivery(delivery_id)).status == DELIVERY_RETRYING
    clock.advance(10)
    assert (await dispatcher.process_delivery(delivery_id)).status == DELIVERY_DELIVERED

    subscription = (await store.load(KIND_SUBSCRIPTION, sub_id)).entity
    assert subscription.consecutive_failures == 0
    assert subscription.last_success_at == clock.now


@pytest.mark.asyncio
async def test_deactivated_subscription_cancels_pending_delivery(store, queue, clock) -> None:
    receiver = Receiver([])
    dispatcher, sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    await dispatcher.deactivate_subscription(sub_id)
    delivery = await dispatcher.process_delivery(delivery_id)
    assert delivery.status == DELIVERY_CANCELLED
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_only_matching_subscriptions_receive_deliveries(store, queue, clock) -> None:
    dispatcher = NotificationDispatcher(store, enqueue=queue, clock=clock)
    await dispatcher.create_subscription(callback_url="https://a.example.test/hook", event_types=[EVENT_LICENCE_EXPIRING])
    wildcard, _ = await dispatcher.create_subscription(callback_url="https://b.example.test/hook", event_types=["*"])

    await dispatcher.dispatch(
        EVENT_COMPLIANCE_STATUS_CHANGED, {"status": "Pass"}, entity_type="transaction", entity_id="tx-9"
    )

    assert len(queue.calls) == 1
    delivery = (await store.load(KIND_DELIVERY, queue.calls[0][0])).entity
    assert delivery.subscription_id == wildcard.id
    assert delivery.status == DELIVERY_QUEUED


@pytest.mark.asyncio
async def test_enqueue_due_requeues_overdue_retries(store, queue, clock) -> None:
    receiver = Receiver([500])
    dispatcher, _sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)
    await dispatcher.process_delivery(delivery_id)
    queue.calls.clear()

    assert await dispatcher.enqueue_due() == 0
    clock.advance(11)
    assert await dispatcher.enqueue_due() == 1
    assert queue.calls == [(delivery_id, 0)]


@pytest.mark.asyncio
async def test_subscription_input_is_validated(store, queue, clock) -> None:
    dispatcher = NotificationDispatcher(store, enqueue=queue, clock=clock)
    with pytest.raises(StructuralValidationError):
        await dispatcher.create_subscription(callback_url="ftp://nope", event_types=["*"])
    with pytest.raises(StructuralValidationError):
        await dispatcher.create_subscription(callback_url="https://ok.example.test", event_types=["NoSuchEvent"])


@pytest.mark.asyncio
async def test_unexpected_send_error_schedules_a_retry(store, queue, clock) -> None:
    receiver = Receiver([RuntimeError("socket closed unexpectedly"), 200])
    dispatcher, _sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    delivery = await dispatcher.process_delivery(delivery_id)
    assert delivery.status == DELIVERY_RETRYING
    assert delivery.attempt_count == 1
    assert delivery.last_error == "RuntimeError"

    clock.advance(3600)
    queue.calls.clear()
    assert await dispatcher.enqueue_due() == 1
    assert (await dispatcher.process_delivery(delivery_id)).status == DELIVERY_DELIVERED


@pytest.mark.asyncio
async def test_delivery_abandoned_mid_request_is_reclaimed_after_lease(store, queue, clock) -> None:
    # CancelledError escapes the attempt the way a killed worker would, leaving the row claimed.
    receiver = Receiver([asyncio.CancelledError(), 200])
    dispatcher, _sub_id, delivery_id = await _subscribe_and_dispatch(store, queue, clock, receiver)

    with pytest.raises(asyncio.CancelledError):
        await dispatcher.process_delivery(delivery_id)
    assert (await store.load(KIND_DELIVERY, delivery_id)).entity.status == DELIVERY_DELIVERING

    # Still leased: neither the requeue loop nor a duplicate job picks it up.
    queue.calls.clear()
    assert await dispatcher.enqueue_due() == 0
    assert await dispatcher.process_delivery(delivery_id) is None

    clock.advance(61)
    assert await dispatcher.enqueue_due() == 1
    delivery = await dispatcher.process_delivery(delivery_id)
    assert delivery.status == DELIVERY_DELIVERED
    assert len(receiver.requests) == 2
