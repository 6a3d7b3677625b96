from __future__ import annotations

import argparse
import asyncio
import json

from licencegate.core.logging import configure_logging
from licencegate.workers.notification_worker import run_daily_monitors, run_requeue_loop, worker_dispatcher


async def _main(*, monitors_once: bool) -> None:
    # Run the due-delivery requeue loop outside ARQ, or one monitor pass for cron-less deployments.
    configure_logging()
    ctx: dict = {}
    if monitors_once:
        print(json.dumps(await run_daily_monitors(ctx), sort_keys=True))
        return
    await run_requeue_loop(worker_dispatcher(ctx))


def main() -> None:
    parser = argparse.ArgumentParser(description="Webhook requeue loop and daily compliance monitors.")
    parser.add_argument("--monitors-once", action="store_true", help="Run licence and re-qualification monitors once and exit.")
    args = parser.parse_args()
    asyncio.run(_main(monitors_once=args.monitors_once))


if __name__ == "__main__":
    main()
