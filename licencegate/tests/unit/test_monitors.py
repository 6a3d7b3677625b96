from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

import pytest

from licencegate.domain.compliance import AUDIENCE_COMPLIANCE_TEAM, EVENT_LICENCE_EXPIRING, TargetRef
from licencegate.persistence.store import KIND_CUSTOMER
from licencegate.services.monitors import (
    ALERT_LICENCE_EXPIRING,
    ALERT_REVERIFICATION_DUE,
    expiry_severity,
    scan_expiring_licences,
    scan_requalification_reminders,
)
from licencegate.tests.utils.world import TODAY, add_customer_licence


@pytest.mark.parametrize(
    ("days", "severity"),
    [(90, "Info"), (61, "Info"), (60, "Warning"), (31, "Warning"), (30, "Critical"), (0, "Critical")],
)
def test_expiry_severity_tiers(days: int, severity: str) -> None:
    assert expiry_severity(days) == severity


@pytest.mark.asyncio
async def test_expiry_scan_alerts_once_per_window(world, dispatcher, queue) -> None:
    await add_customer_licence(world, "lic-soon", "cust-1", ("MORPH",), expiry_date=TODAY + timedelta(days=45))
    await dispatcher.create_subscription(callback_url="https://erp.example.test/hook", event_types=[EVENT_LICENCE_EXPIRING])

    first = await scan_expiring_licences(world, dispatcher, today=TODAY, windows_days=[90, 60, 30])
    assert first.alerts_created == 1
    again = await scan_expiring_licences(world, dispatcher, today=TODAY, windows_days=[90, 60, 30])
    assert again.alerts_created == 0

    alerts = [a for a in await world.list_alerts(audience=AUDIENCE_COMPLIANCE_TEAM) if a.alert_type == ALERT_LICENCE_EXPIRING]
    assert len(alerts) == 1
    assert alerts[0].severity == "Warning"
    assert alerts[0].target == TargetRef(kind="licence", id="lic-soon")
    assert len(queue.calls) == 1

    # Crossing into the 30-day window escalates with a new alert.
    later = await scan_expiring_licences(world, dispatcher, today=TODAY + timedelta(days=20), windows_days=[90, 60, 30])
    assert later.alerts_created == 1


@pytest.mark.asyncio
async def test_expired_licences_are_not_reported_as_expiring(world, dispatcher) -> None:
    await add_customer_licence(world, "lic-old", "cust-1", ("CODE",), expiry_date=TODAY - timedelta(days=1))
    report = await scan_expiring_licences(world, dispatcher, today=TODAY, windows_days=[90])
    assert report.alerts_created == 0


@pytest.mark.asyncio
async def test_reverification_due_raises_reminder(world) -> None:
    current = await world.load(KIND_CUSTOMER, "cust-1")
    await world.swap(
        KIND_CUSTOMER, "cust-1", current.version, replace(current.entity, reverification_due=date(2026, 1, 15))
    )

    report = await scan_requalification_reminders(world, today=TODAY)
    assert report.alerts_created == 1
    alerts = await world.list_alerts(audience=AUDIENCE_COMPLIANCE_TEAM)
    assert alerts[0].alert_type == ALERT_REVERIFICATION_DUE
    assert alerts[0].severity == "Critical"

    assert (await scan_requalification_reminders(world, today=TODAY)).alerts_created == 0
