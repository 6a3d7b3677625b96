from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlparse
from uuid import uuid4

import httpx
from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy.exc import SQLAlchemyError

from licencegate.core.config import get_settings
from licencegate.core.errors import ConcurrencyConflictError, DatabaseError, NotFoundError, StructuralValidationError
from licencegate.domain.compliance import (
    AUDIENCE_SYSTEM_ADMIN,
    Alert,
    DELIVERY_CANCELLED,
    DELIVERY_DELIVERED,
    DELIVERY_DELIVERING,
    DELIVERY_EXHAUSTED,
    DELIVERY_QUEUED,
    DELIVERY_READY_STATUSES,
    DELIVERY_RETRYING,
    TargetRef,
    WEBHOOK_EVENT_TYPES,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
)
from licencegate.persistence.store import KIND_DELIVERY, KIND_SUBSCRIPTION, ComplianceStore
from licencegate.services.audit import to_jsonable
from licencegate.services.concurrency import ConcurrencyGuard
from licencegate.services.notifications.signing import (
    HEADER_DELIVERY_ID,
    HEADER_EVENT,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    compute_signature,
    serialize_payload,
)
from licencegate.services.security.keyring import (
    KeyringConfigurationError,
    generate_secret,
    seal_secret,
    unseal_secret,
)


logger = logging.getLogger(__name__)

Enqueue = Callable[..., Awaitable[bool]]

_webhook_queue_pool = None
_webhook_queue_pool_loop: asyncio.AbstractEventLoop | None = None
_webhook_queue_lock = asyncio.Lock()

# Health updates race with other deliveries for the same subscription; re-read and reapply a few times.
_SUBSCRIPTION_UPDATE_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_webhook_queue_pool():
    # Cache ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _webhook_queue_pool, _webhook_queue_pool_loop, _webhook_queue_lock
    current_loop = asyncio.get_running_loop()
    if _webhook_queue_pool is not None and _webhook_queue_pool_loop == current_loop:
        return _webhook_queue_pool
    if _webhook_queue_pool_loop != current_loop:
        _webhook_queue_pool = None
        _webhook_queue_lock = asyncio.Lock()
    async with _webhook_queue_lock:
        if _webhook_queue_pool is None:
            settings = get_settings()
            _webhook_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _webhook_queue_pool_loop = current_loop
    return _webhook_queue_pool


async def enqueue_webhook_delivery(*, delivery_id: str, defer_s: int = 0) -> bool:
    # Publish delivery ids onto ARQ so each subscription is delivered independently.
    settings = get_settings()
    defer_delta = timedelta(seconds=max(0, int(defer_s)))
    try:
        redis = await get_webhook_queue_pool()
        await redis.enqueue_job(
            "deliver_webhook",
            delivery_id,
            _queue_name=settings.notify_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception:  # noqa: BLE001 - keep enqueue best-effort and rely on the due-delivery requeue loop.
        logger.warning("webhook_enqueue_failed delivery_id=%s", delivery_id, exc_info=True)
        return False


def _validate_callback_url(callback_url: str) -> str:
    parsed = urlparse(callback_url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise StructuralValidationError("callback_url must be an absolute http(s) URL")
    return callback_url.strip()


def _normalize_event_types(event_types: Iterable[str]) -> frozenset[str]:
    normalized = frozenset(str(item).strip() for item in event_types if str(item).strip())
    if not normalized:
        raise StructuralValidationError("at least one event type is required")
    unknown = sorted(item for item in normalized if item != "*" and item not in WEBHOOK_EVENT_TYPES)
    if unknown:
        raise StructuralValidationError(f"unknown event types: {', '.join(unknown)}")
    return normalized


def build_delivery_body(event: WebhookEvent) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "new_status": event.new_status,
        "timestamp": event.occurred_at.isoformat(),
        "payload": to_jsonable(event.payload),
    }


class NotificationDispatcher:
    """Fan compliance events out to webhook subscribers.

    ``dispatch`` only persists the event and one delivery per matching active
    subscription, then enqueues; HTTP work happens in ``process_delivery`` on
    the worker. The first attempt is immediate and each failure schedules the
    next retry from ``notify_retry_delays_s``. Once those are used up the
    delivery is exhausted and the subscription is flagged unhealthy, with one
    SystemAdmin alert per healthy to unhealthy transition.
    """

    def __init__(
        self,
        store: ComplianceStore,
        *,
        enqueue: Enqueue | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._guard = ConcurrencyGuard(store)
        self._enqueue = enqueue or enqueue_webhook_delivery
        self._transport = transport
        self._clock = clock or _utc_now

    @property
    def store(self) -> ComplianceStore:
        return self._store

    async def create_subscription(
        self,
        *,
        callback_url: str,
        event_types: Iterable[str],
        secret: str | None = None,
        description: str | None = None,
    ) -> tuple[WebhookSubscription, str]:
        # Return the plaintext secret once; only the sealed form is persisted.
        shared_secret = secret or generate_secret()
        subscription = WebhookSubscription(
            id=str(uuid4()),
            callback_url=_validate_callback_url(callback_url),
            event_types=_normalize_event_types(event_types),
            secret_sealed=seal_secret(shared_secret),
            description=description,
        )
        await self._store.insert(KIND_SUBSCRIPTION, subscription)
        logger.info("webhook_subscription_created subscription_id=%s url=%s", subscription.id, subscription.callback_url)
        return subscription, shared_secret

    async def list_subscriptions(self) -> list[WebhookSubscription]:
        return await self._store.list_subscriptions()

    async def deactivate_subscription(self, subscription_id: str) -> WebhookSubscription:
        current = await self._guard.read(KIND_SUBSCRIPTION, subscription_id)
        updated = await self._guard.compare_and_swap(
            KIND_SUBSCRIPTION,
            subscription_id,
            current.version,
            lambda sub: replace(sub, is_active=False),
        )
        logger.info("webhook_subscription_deactivated subscription_id=%s", subscription_id)
        return updated.entity

    async def list_subscription_events(
        self, subscription_id: str, *, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[tuple[WebhookEvent, WebhookDelivery]]:
        if await self._store.load(KIND_SUBSCRIPTION, subscription_id) is None:
            raise NotFoundError(KIND_SUBSCRIPTION, subscription_id)
        return await self._store.list_subscription_events(subscription_id, statuses=statuses, limit=limit)

    async def dispatch(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        entity_type: str,
        entity_id: str,
        new_status: str | None = None,
    ) -> WebhookEvent | None:
        # Never raise into the caller's decision path; missed enqueues are recovered by the requeue loop.
        now = self._clock()
        event = WebhookEvent(
            id=str(uuid4()),
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            new_status=new_status,
            payload=to_jsonable(payload),
            occurred_at=now,
        )
        try:
            await self._store.insert_event(event)
            subscriptions = [
                sub for sub in await self._store.list_subscriptions(active_only=True) if sub.matches(event_type)
            ]
            deliveries = []
            for subscription in subscriptions:
                delivery = WebhookDelivery(
                    id=str(uuid4()),
                    subscription_id=subscription.id,
                    event_id=event.id,
                    status=DELIVERY_QUEUED,
                    attempt_count=0,
                    next_attempt_at=now,
                )
                await self._store.insert(KIND_DELIVERY, delivery)
                deliveries.append(delivery)
        except (SQLAlchemyError, DatabaseError):
            logger.exception("webhook_dispatch_failed event_type=%s entity_id=%s", event_type, entity_id)
            return None
        for delivery in deliveries:
            await self._enqueue(delivery_id=delivery.id)
        logger.info(
            "webhook_event_dispatched event_type=%s entity_type=%s entity_id=%s deliveries=%s",
            event_type,
            entity_type,
            entity_id,
            len(deliveries),
        )
        return event

    async def enqueue_due(self, *, limit: int = 100) -> int:
        # Re-enqueue overdue deliveries so retries survive worker restarts.
        rows = await self._store.list_due_deliveries(self._clock(), max(1, limit))
        count = 0
        for delivery in rows:
            if await self._enqueue(delivery_id=delivery.id):
                count += 1
        return count

    async def _claim(self, delivery_id: str) -> WebhookDelivery | None:
        current = await self._store.load(KIND_DELIVERY, delivery_id)
        if current is None:
            return None
        delivery = current.entity
        now = self._clock()
        if delivery.status not in DELIVERY_READY_STATUSES or delivery.next_attempt_at > now:
            return None
        if delivery.status == DELIVERY_DELIVERING:
            logger.warning("webhook_delivery_lease_expired delivery_id=%s attempt=%s", delivery_id, delivery.attempt_count + 1)
        lease_until = now + timedelta(seconds=max(1, get_settings().notify_delivery_lease_s))
        try:
            claimed = await self._guard.compare_and_swap(
                KIND_DELIVERY,
                delivery_id,
                current.version,
                lambda row: replace(row, status=DELIVERY_DELIVERING, next_attempt_at=lease_until),
            )
        except ConcurrencyConflictError:
            # Another worker claimed it first.
            return None
        return claimed.entity

    async def _finish(self, delivery_id: str, **changes: Any) -> WebhookDelivery:
        current = await self._guard.read(KIND_DELIVERY, delivery_id)
        saved = await self._guard.compare_and_swap(
            KIND_DELIVERY, delivery_id, current.version, lambda row: replace(row, **changes)
        )
        return saved.entity

    async def _update_subscription(
        self, subscription_id: str, mutator: Callable[[WebhookSubscription], WebhookSubscription]
    ) -> tuple[WebhookSubscription, WebhookSubscription] | None:
        for _ in range(_SUBSCRIPTION_UPDATE_ATTEMPTS):
            current = await self._store.load(KIND_SUBSCRIPTION, subscription_id)
            if current is None:
                return None
            try:
                saved = await self._guard.compare_and_swap(KIND_SUBSCRIPTION, subscription_id, current.version, mutator)
            except ConcurrencyConflictError:
                continue
            return current.entity, saved.entity
        logger.warning("webhook_subscription_update_conflict subscription_id=%s", subscription_id)
        return None

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        timeout_s = max(0.2, get_settings().notify_http_timeout_ms / 1000.0)
        async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
            response = await client.post(url, content=body, headers=headers)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Receiver rejected webhook delivery ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            return response

    async def process_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        """Run one delivery attempt; returns ``None`` when the delivery is not due or already claimed."""
        delivery = await self._claim(delivery_id)
        if delivery is None:
            return None
        loaded = await self._store.load(KIND_SUBSCRIPTION, delivery.subscription_id)
        if loaded is None or not loaded.entity.is_active:
            logger.info("webhook_delivery_cancelled delivery_id=%s subscription_id=%s", delivery.id, delivery.subscription_id)
            return await self._finish(delivery.id, status=DELIVERY_CANCELLED, last_error="subscription_inactive")
        subscription = loaded.entity
        event = await self._store.get_event(delivery.event_id)
        if event is None:
            return await self._finish(delivery.id, status=DELIVERY_CANCELLED, last_error="event_missing")

        body = serialize_payload(build_delivery_body(event))
        now = self._clock()
        headers = {
            "Content-Type": "application/json",
            HEADER_EVENT: event.event_type,
            HEADER_DELIVERY_ID: delivery.id,
            HEADER_TIMESTAMP: now.isoformat(),
        }
        attempt_no = delivery.attempt_count + 1
        try:
            headers[HEADER_SIGNATURE] = compute_signature(body, unseal_secret(subscription.secret_sealed))
            await self._post(subscription.callback_url, body, headers)
        except (httpx.HTTPError, KeyringConfigurationError) as exc:
            return await self._record_failure(delivery, subscription, attempt_no, str(exc) or type(exc).__name__)
        except Exception as exc:  # noqa: BLE001 - any other failure still consumes the attempt and schedules a retry.
            logger.exception("webhook_delivery_error delivery_id=%s attempt=%s", delivery.id, attempt_no)
            return await self._record_failure(delivery, subscription, attempt_no, type(exc).__name__)

        saved = await self._finish(
            delivery.id,
            status=DELIVERY_DELIVERED,
            attempt_count=attempt_no,
            delivered_at=now,
            last_error=None,
        )
        result = await self._update_subscription(
            subscription.id,
            lambda sub: replace(sub, is_healthy=True, consecutive_failures=0, last_success_at=now),
        )
        if result is not None and not result[0].is_healthy:
            logger.info("webhook_subscription_recovered subscription_id=%s", subscription.id)
        logger.info("webhook_delivered delivery_id=%s attempt=%s", delivery.id, attempt_no)
        return saved

    async def _record_failure(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempt_no: int,
        error: str,
    ) -> WebhookDelivery:
        now = self._clock()
        retry_delays = list(get_settings().notify_retry_delays_s)
        # attempt_no counts the initial attempt, so retries remain while attempt_no <= len(retry_delays).
        if attempt_no <= len(retry_delays):
            delay_s = int(retry_delays[attempt_no - 1])
            saved = await self._finish(
                delivery.id,
                status=DELIVERY_RETRYING,
                attempt_count=attempt_no,
                next_attempt_at=now + timedelta(seconds=delay_s),
                last_error=error,
            )
            await self._update_subscription(
                subscription.id,
                lambda sub: replace(sub, consecutive_failures=sub.consecutive_failures + 1, last_failure_at=now),
            )
            await self._enqueue(delivery_id=delivery.id, defer_s=delay_s)
            logger.info(
                "webhook_retry_scheduled delivery_id=%s attempt=%s delay_s=%s error=%s",
                delivery.id,
                attempt_no,
                delay_s,
                error,
            )
            return saved

        saved = await self._finish(
            delivery.id,
            status=DELIVERY_EXHAUSTED,
            attempt_count=attempt_no,
            next_attempt_at=now,
            last_error=error,
        )
        result = await self._update_subscription(
            subscription.id,
            lambda sub: replace(
                sub,
                is_healthy=False,
                consecutive_failures=sub.consecutive_failures + 1,
                last_failure_at=now,
            ),
        )
        logger.warning("webhook_delivery_exhausted delivery_id=%s attempts=%s error=%s", delivery.id, attempt_no, error)
        if result is not None and result[0].is_healthy:
            await self._raise_unhealthy_alert(result[1], delivery, error, now)
        return saved

    async def _raise_unhealthy_alert(
        self, subscription: WebhookSubscription, delivery: WebhookDelivery, error: str, now: datetime
    ) -> None:
        alert = Alert(
            id=str(uuid4()),
            alert_type="WebhookSubscriptionUnhealthy",
            severity="High",
            target=TargetRef(kind=KIND_SUBSCRIPTION, id=subscription.id),
            audience=AUDIENCE_SYSTEM_ADMIN,
            message=(
                f"Webhook subscription {subscription.id} ({subscription.callback_url}) is unhealthy "
                f"after exhausting retries for delivery {delivery.id}: {error}"
            ),
            created_at=now,
            details={
                "delivery_id": delivery.id,
                "event_id": delivery.event_id,
                "consecutive_failures": subscription.consecutive_failures,
            },
        )
        try:
            await self._store.insert_alert(alert)
        except (SQLAlchemyError, DatabaseError):
            logger.exception("webhook_alert_write_failed subscription_id=%s", subscription.id)
            return
        logger.warning("webhook_subscription_unhealthy subscription_id=%s alert_id=%s", subscription.id, alert.id)
