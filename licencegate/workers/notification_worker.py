from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from licencegate.core.config import get_settings
from licencegate.core.logging import configure_logging
from licencegate.persistence.db import SessionLocal
from licencegate.persistence.sql_store import SqlComplianceStore
from licencegate.services.monitors import scan_expiring_licences, scan_requalification_reminders
from licencegate.services.notifications.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


def worker_dispatcher(ctx) -> NotificationDispatcher:
    dispatcher = ctx.get("dispatcher")
    if dispatcher is None:
        dispatcher = NotificationDispatcher(SqlComplianceStore(SessionLocal))
        ctx["dispatcher"] = dispatcher
    return dispatcher


async def deliver_webhook(ctx, delivery_id: str) -> str:
    # Consume queued delivery ids and run one signed delivery attempt.
    row = await worker_dispatcher(ctx).process_delivery(delivery_id)
    return row.status if row is not None else "skipped"


async def run_daily_monitors(ctx) -> dict[str, int]:
    dispatcher = worker_dispatcher(ctx)
    store = dispatcher.store
    expiry = await scan_expiring_licences(store, dispatcher)
    reminders = await scan_requalification_reminders(store)
    return {
        "expiry_alerts": expiry.alerts_created,
        "requalification_alerts": reminders.alerts_created,
    }


async def run_requeue_loop(dispatcher: NotificationDispatcher) -> None:
    # Re-enqueue due deliveries on a bounded cadence to recover from enqueue or worker outages.
    settings = get_settings()
    interval_s = max(1, int(settings.notify_worker_poll_interval_s))
    batch = max(1, int(settings.notify_requeue_batch_size))
    while True:
        try:
            await dispatcher.enqueue_due(limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("webhook due-delivery scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["scheduler_task"] = asyncio.create_task(run_requeue_loop(worker_dispatcher(ctx)))


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    # Delivery retries are scheduled from persisted state; ARQ only re-runs crashed jobs.
    max_tries = 2
    functions = [deliver_webhook]
    cron_jobs = [cron(run_daily_monitors, hour={settings.monitor_run_hour_utc}, minute={0}, unique=True)]
    on_startup = _startup
    on_shutdown = _shutdown
