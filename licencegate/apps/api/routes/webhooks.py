from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from licencegate.apps.api.deps import Actor, get_actor, get_dispatcher, get_store
from licencegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from licencegate.apps.api.response import SuccessEnvelope, get_request_id, success_response
from licencegate.domain.compliance import TargetRef, WebhookSubscription
from licencegate.persistence.store import KIND_SUBSCRIPTION, ComplianceStore
from licencegate.services.audit import record_event
from licencegate.services.notifications.dispatcher import NotificationDispatcher


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionCreate(BaseModel):
    callback_url: str
    event_types: list[str] = Field(min_length=1)
    secret: str | None = Field(default=None, min_length=16)
    description: str | None = None


class SubscriptionOut(BaseModel):
    id: str
    callback_url: str
    event_types: list[str]
    is_active: bool
    is_healthy: bool
    consecutive_failures: int
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    description: str | None = None


class SubscriptionCreated(SubscriptionOut):
    # Shared secret is returned exactly once, at creation.
    secret: str


class SubscriptionEventOut(BaseModel):
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    new_status: str | None = None
    occurred_at: datetime
    payload: dict[str, Any]
    delivery_id: str
    delivery_status: str
    attempt_count: int
    next_attempt_at: datetime
    last_error: str | None = None
    delivered_at: datetime | None = None


def _subscription_fields(sub: WebhookSubscription) -> dict[str, Any]:
    return {
        "id": sub.id,
        "callback_url": sub.callback_url,
        "event_types": sorted(sub.event_types),
        "is_active": sub.is_active,
        "is_healthy": sub.is_healthy,
        "consecutive_failures": sub.consecutive_failures,
        "last_success_at": sub.last_success_at,
        "last_failure_at": sub.last_failure_at,
        "description": sub.description,
    }


@router.post(
    "/subscriptions",
    status_code=201,
    response_model=SuccessEnvelope[SubscriptionCreated] | SubscriptionCreated,
)
async def create_subscription(
    request: Request,
    body: SubscriptionCreate,
    actor: Actor = Depends(get_actor),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: ComplianceStore = Depends(get_store),
) -> dict:
    subscription, secret = await dispatcher.create_subscription(
        callback_url=body.callback_url,
        event_types=body.event_types,
        secret=body.secret,
        description=body.description,
    )
    await record_event(
        store,
        event_type="webhook_subscription.created",
        actor_id=actor.actor_id,
        target=TargetRef(kind=KIND_SUBSCRIPTION, id=subscription.id),
        outcome="success",
        metadata={"callback_url": subscription.callback_url, "event_types": sorted(subscription.event_types)},
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=SubscriptionCreated(**_subscription_fields(subscription), secret=secret))


@router.get("/subscriptions", response_model=SuccessEnvelope[list[SubscriptionOut]] | list[SubscriptionOut])
async def list_subscriptions(
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> dict:
    rows = await dispatcher.list_subscriptions()
    return success_response(request=request, data=[SubscriptionOut(**_subscription_fields(row)) for row in rows])


@router.delete(
    "/subscriptions/{subscription_id}",
    response_model=SuccessEnvelope[SubscriptionOut] | SubscriptionOut,
)
async def deactivate_subscription(
    request: Request,
    subscription_id: str,
    actor: Actor = Depends(get_actor),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    store: ComplianceStore = Depends(get_store),
) -> dict:
    # Deactivation keeps history; pending retries for this subscription are cancelled when they fire.
    subscription = await dispatcher.deactivate_subscription(subscription_id)
    await record_event(
        store,
        event_type="webhook_subscription.deactivated",
        actor_id=actor.actor_id,
        target=TargetRef(kind=KIND_SUBSCRIPTION, id=subscription_id),
        outcome="success",
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=SubscriptionOut(**_subscription_fields(subscription)))


@router.get(
    "/subscriptions/{subscription_id}/events",
    response_model=SuccessEnvelope[list[SubscriptionEventOut]] | list[SubscriptionEventOut],
)
async def list_subscription_events(
    request: Request,
    subscription_id: str,
    status: list[str] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> dict:
    # Lets receivers recover events they missed while unhealthy.
    pairs = await dispatcher.list_subscription_events(subscription_id, statuses=status, limit=limit)
    payload = [
        SubscriptionEventOut(
            event_id=event.id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            new_status=event.new_status,
            occurred_at=event.occurred_at,
            payload=event.payload,
            delivery_id=delivery.id,
            delivery_status=delivery.status,
            attempt_count=delivery.attempt_count,
            next_attempt_at=delivery.next_attempt_at,
            last_error=delivery.last_error,
            delivered_at=delivery.delivered_at,
        )
        for event, delivery in pairs
    ]
    return success_response(request=request, data=payload)
