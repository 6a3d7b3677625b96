from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Iterable
from uuid import uuid4

from licencegate.core.config import get_settings
from licencegate.domain.compliance import (
    AUDIENCE_COMPLIANCE_TEAM,
    Alert,
    EVENT_LICENCE_EXPIRING,
    Licence,
    TargetRef,
)
from licencegate.persistence.store import KIND_CUSTOMER, KIND_LICENCE, ComplianceStore
from licencegate.services.notifications.dispatcher import NotificationDispatcher


logger = logging.getLogger(__name__)

ALERT_LICENCE_EXPIRING = "LicenceExpiring"
ALERT_REQUALIFICATION_PENDING = "ReQualificationPending"
ALERT_REVERIFICATION_DUE = "ReVerificationDue"


@dataclass(frozen=True)
class MonitorReport:
    scanned: int
    alerts_created: int


def expiry_severity(days_until_expiry: int) -> str:
    if days_until_expiry <= 30:
        return "Critical"
    if days_until_expiry <= 60:
        return "Warning"
    return "Info"


def expiry_message(licence: Licence, days_until_expiry: int) -> str:
    if days_until_expiry <= 30:
        return f"Licence {licence.licence_number} expires in {days_until_expiry} days - URGENT ACTION REQUIRED"
    if days_until_expiry <= 60:
        return f"Licence {licence.licence_number} expires in {days_until_expiry} days - action required"
    return f"Licence {licence.licence_number} expires in {days_until_expiry} days - renewal recommended"


async def scan_expiring_licences(
    store: ComplianceStore,
    dispatcher: NotificationDispatcher,
    *,
    today: date | None = None,
    windows_days: Iterable[int] | None = None,
) -> MonitorReport:
    """Raise one alert per licence and look-ahead window, widest window first."""
    settings = get_settings()
    windows = sorted({int(item) for item in (windows_days or settings.monitor_expiry_windows_days)}, reverse=True)
    if not windows:
        return MonitorReport(scanned=0, alerts_created=0)
    as_of = today or datetime.now(timezone.utc).date()
    licences = await store.list_licences_expiring(as_of, as_of + timedelta(days=windows[0]))
    created = 0
    for licence in licences:
        days_left = (licence.expiry_date - as_of).days
        if days_left < 0 or not licence.is_valid_on(as_of):
            continue
        # Narrowest window the licence has entered decides the severity tier.
        window = min(item for item in windows if days_left <= item)
        severity = expiry_severity(window)
        target = TargetRef(kind=KIND_LICENCE, id=licence.id)
        if await store.alert_exists(ALERT_LICENCE_EXPIRING, target, severity=severity):
            continue
        await store.insert_alert(
            Alert(
                id=str(uuid4()),
                alert_type=ALERT_LICENCE_EXPIRING,
                severity=severity,
                target=target,
                audience=AUDIENCE_COMPLIANCE_TEAM,
                message=expiry_message(licence, days_left),
                created_at=datetime.now(timezone.utc),
                details={"window_days": window, "expiry_date": licence.expiry_date.isoformat()},
            )
        )
        await dispatcher.dispatch(
            EVENT_LICENCE_EXPIRING,
            {
                "licence_id": licence.id,
                "licence_number": licence.licence_number,
                "holder_kind": licence.holder.kind,
                "holder_id": licence.holder.id,
                "expiry_date": licence.expiry_date.isoformat(),
                "days_until_expiry": days_left,
            },
            entity_type=KIND_LICENCE,
            entity_id=licence.id,
            new_status=licence.effective_status(as_of),
        )
        created += 1
    logger.info("licence_expiry_scan scanned=%s alerts_created=%s", len(licences), created)
    return MonitorReport(scanned=len(licences), alerts_created=created)


async def scan_requalification_reminders(store: ComplianceStore, *, today: date | None = None) -> MonitorReport:
    # Remind the compliance team about open reclassification holds and lapsed GDP re-verifications.
    as_of = today or datetime.now(timezone.utc).date()
    holds: dict[str, list[str]] = defaultdict(list)
    for impact in await store.list_open_impacts():
        holds[impact.customer_id].append(impact.substance_code)
    due = await store.list_customers_reverification_due(as_of)

    created = 0
    for customer_id, substance_codes in sorted(holds.items()):
        target = TargetRef(kind=KIND_CUSTOMER, id=customer_id)
        if await store.alert_exists(ALERT_REQUALIFICATION_PENDING, target):
            continue
        await store.insert_alert(
            Alert(
                id=str(uuid4()),
                alert_type=ALERT_REQUALIFICATION_PENDING,
                severity="Warning",
                target=target,
                audience=AUDIENCE_COMPLIANCE_TEAM,
                message=(
                    f"Customer {customer_id} is blocked for {', '.join(sorted(substance_codes))} "
                    "until re-qualified after reclassification"
                ),
                created_at=datetime.now(timezone.utc),
                details={"substance_codes": sorted(substance_codes)},
            )
        )
        created += 1
    for customer in due:
        target = TargetRef(kind=KIND_CUSTOMER, id=customer.id)
        if await store.alert_exists(ALERT_REVERIFICATION_DUE, target):
            continue
        overdue_days = (as_of - customer.reverification_due).days if customer.reverification_due else 0
        await store.insert_alert(
            Alert(
                id=str(uuid4()),
                alert_type=ALERT_REVERIFICATION_DUE,
                severity="Critical" if overdue_days > 30 else "Warning",
                target=target,
                audience=AUDIENCE_COMPLIANCE_TEAM,
                message=(
                    f"Customer {customer.business_name} ({customer.account}) re-verification was due "
                    f"{customer.reverification_due.isoformat() if customer.reverification_due else 'unknown'}"
                ),
                created_at=datetime.now(timezone.utc),
                details={"overdue_days": overdue_days},
            )
        )
        created += 1
    logger.info(
        "requalification_scan open_holds=%s reverification_due=%s alerts_created=%s",
        len(holds),
        len(due),
        created,
    )
    return MonitorReport(scanned=len(holds) + len(due), alerts_created=created)
