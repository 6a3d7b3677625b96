from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from licencegate.core.config import get_settings
from licencegate.persistence.db import SessionLocal


def _latest_revision() -> str | None:
    # Resolve repository head revision directly from migration files for deterministic checks.
    versions = sorted(Path("licencegate/persistence/alembic/versions").glob("*.py"))
    if not versions:
        return None
    latest = versions[-1]
    for line in latest.read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _db_revision() -> str | None:
    # Query alembic_version to ensure the runtime schema matches repository head.
    try:
        async with SessionLocal() as session:
            return (
                await session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
            ).scalar_one_or_none()
    except SQLAlchemyError:
        return None


async def _check_redis() -> bool:
    # The webhook queue and the worker cron both live on Redis.
    client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:
        return False
    finally:
        await client.aclose()


def _required_env_names() -> list[str]:
    # Keep env requirements explicit and avoid printing secret values.
    return ["DATABASE_URL", "REDIS_URL", "WEBHOOK_SECRET_KEY"]


def _check_api_routes() -> bool:
    from licencegate.apps.api.routes.transactions import router as transactions_router

    route_paths = {route.path for route in transactions_router.routes}
    required = {"/transactions/validate", "/transactions/{transaction_id}/override/approve"}
    return required.issubset(route_paths)


async def run_preflight(*, output_json: str | None) -> int:
    settings = get_settings()
    results: list[dict[str, Any]] = []

    db_rev = await _db_revision()
    head_rev = _latest_revision()
    results.append(
        {
            "check": "alembic_current_matches_head",
            "status": "pass" if db_rev == head_rev else "fail",
            "detail": {"db_revision": db_rev, "head_revision": head_rev},
        }
    )

    missing_env = [name for name in _required_env_names() if not os.environ.get(name)]
    results.append(
        {
            "check": "required_env_present",
            "status": "pass" if not missing_env else "fail",
            "detail": {"missing": missing_env},
        }
    )

    redis_ok = await _check_redis()
    results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

    results.append(
        {"check": "api_routes_present", "status": "pass" if _check_api_routes() else "fail", "detail": {}}
    )

    results.append(
        {
            "check": "override_roles_configured",
            "status": "pass" if settings.override_approver_roles else "fail",
            "detail": {"roles": list(settings.override_approver_roles)},
        }
    )

    failed = [row for row in results if row["status"] == "fail"]
    summary = {
        "status": "pass" if not failed else "fail",
        "checks": results,
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deterministic deploy preflight checks.")
    parser.add_argument("--output-json", default="var/ops/preflight.json")
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
