from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Generic, Iterable, Protocol, TypeVar

from licencegate.core.errors import ConcurrencyConflictError, NotFoundError
from licencegate.domain.compliance import (
    Alert,
    AuditRecord,
    ControlledSubstance,
    Customer,
    CustomerImpact,
    DELIVERY_READY_STATUSES,
    HolderRef,
    Licence,
    LicenceSubstanceMapping,
    LicenceType,
    RECLASS_COMPLETED,
    STATUS_OVERRIDE_APPROVED,
    STATUS_PASS,
    SubstanceReclassification,
    TargetRef,
    Threshold,
    Transaction,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
    validate_mapping,
)


# Entity kinds that carry a version token and are written through the concurrency guard.
KIND_LICENCE = "licence"
KIND_CUSTOMER = "customer"
KIND_SUBSTANCE = "substance"
KIND_TRANSACTION = "transaction"
KIND_RECLASSIFICATION = "reclassification"
KIND_CUSTOMER_IMPACT = "customer_impact"
KIND_SUBSCRIPTION = "webhook_subscription"
KIND_DELIVERY = "webhook_delivery"
VERSIONED_KINDS = (
    KIND_LICENCE,
    KIND_CUSTOMER,
    KIND_SUBSTANCE,
    KIND_TRANSACTION,
    KIND_RECLASSIFICATION,
    KIND_CUSTOMER_IMPACT,
    KIND_SUBSCRIPTION,
    KIND_DELIVERY,
)

# Only transactions that actually proceeded count towards threshold usage.
COUNTED_TRANSACTION_STATUSES = (STATUS_PASS, STATUS_OVERRIDE_APPROVED)

T = TypeVar("T")


@dataclass(frozen=True)
class Versioned(Generic[T]):
    entity: T
    version: str


def entity_key(kind: str, entity: Any) -> str:
    # Resolve the primary key for a versioned entity by dispatching on its kind.
    if kind == KIND_SUBSTANCE:
        return entity.code
    return entity.id


class ComplianceStore(Protocol):
    """Read and compare-and-swap contract over the compliance backing store.

    Reference data (licences, mappings, substances, thresholds, customers) is
    owned by external master-data systems; this contract is the collaborator
    boundary. Every mutation of a versioned entity goes through ``swap`` which
    must compare the supplied version atomically and raise
    ``ConcurrencyConflictError`` on mismatch.
    """

    async def load(self, kind: str, entity_id: str) -> Versioned[Any] | None: ...

    async def insert(self, kind: str, entity: Any) -> str: ...

    async def swap(self, kind: str, entity_id: str, expected_version: str, entity: Any) -> str: ...

    async def get_customer_by_account(self, account: str, data_area: str) -> Versioned[Customer] | None: ...

    async def list_licences_by_holder(self, holder: HolderRef) -> list[Licence]: ...

    async def list_licences_by_substance(self, substance_code: str) -> list[Licence]: ...

    async def list_licences_expiring(self, start: date, end: date) -> list[Licence]: ...

    async def list_mappings(self, licence_ids: Iterable[str]) -> list[LicenceSubstanceMapping]: ...

    async def put_mapping(self, mapping: LicenceSubstanceMapping) -> None: ...

    async def get_licence_types(self, type_ids: Iterable[str]) -> dict[str, LicenceType]: ...

    async def put_licence_type(self, licence_type: LicenceType) -> None: ...

    async def get_substances(self, codes: Iterable[str]) -> dict[str, ControlledSubstance]: ...

    async def list_thresholds(self, customer_id: str, substance_codes: Iterable[str]) -> list[Threshold]: ...

    async def put_threshold(self, threshold: Threshold) -> None: ...

    async def sum_quantity(
        self, *, customer_id: str, substance_code: str, unit: str, start: date, end: date
    ) -> Decimal: ...

    async def count_transactions(
        self, *, customer_id: str, substance_code: str, start: date, end: date
    ) -> int: ...

    async def list_transactions(self, *, status: str | None = None, limit: int = 100) -> list[Transaction]: ...

    async def list_customers_reverification_due(self, on_date: date) -> list[Customer]: ...

    async def list_reclassifications(self, substance_code: str) -> list[SubstanceReclassification]: ...

    async def list_impacts(self, reclassification_id: str) -> list[Versioned[CustomerImpact]]: ...

    async def list_open_impacts(self, customer_id: str | None = None) -> list[CustomerImpact]: ...

    async def list_subscriptions(self, *, active_only: bool = False) -> list[WebhookSubscription]: ...

    async def insert_event(self, event: WebhookEvent) -> None: ...

    async def get_event(self, event_id: str) -> WebhookEvent | None: ...

    async def list_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]: ...

    async def list_subscription_events(
        self, subscription_id: str, *, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[tuple[WebhookEvent, WebhookDelivery]]: ...

    async def insert_alert(self, alert: Alert) -> None: ...

    async def list_alerts(self, *, audience: str | None = None, limit: int = 100) -> list[Alert]: ...

    async def alert_exists(self, alert_type: str, target: TargetRef, *, severity: str | None = None) -> bool: ...

    async def append_audit(self, record: AuditRecord) -> None: ...


class InMemoryComplianceStore:
    # Keep a process-local store for deterministic tests and single-node local runs.
    def __init__(self) -> None:
        self._entities: dict[str, dict[str, tuple[Any, int]]] = {kind: {} for kind in VERSIONED_KINDS}
        self._mappings: dict[tuple[str, str, date], LicenceSubstanceMapping] = {}
        self._licence_types: dict[str, LicenceType] = {}
        self._thresholds: dict[str, Threshold] = {}
        self._events: dict[str, WebhookEvent] = {}
        self._alerts: list[Alert] = []
        self.audit_log: list[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def load(self, kind: str, entity_id: str) -> Versioned[Any] | None:
        row = self._entities[kind].get(entity_id)
        if row is None:
            return None
        entity, version = row
        return Versioned(entity=entity, version=str(version))

    async def insert(self, kind: str, entity: Any) -> str:
        key = entity_key(kind, entity)
        async with self._lock:
            if key in self._entities[kind]:
                raise ValueError(f"{kind} '{key}' already exists")
            self._entities[kind][key] = (entity, 1)
        return "1"

    async def swap(self, kind: str, entity_id: str, expected_version: str, entity: Any) -> str:
        # Compare and write under one lock so two writers holding the same version cannot both succeed.
        async with self._lock:
            row = self._entities[kind].get(entity_id)
            current_version = str(row[1]) if row is not None else None
            if row is None or current_version != str(expected_version):
                raise ConcurrencyConflictError(
                    entity_type=kind,
                    entity_id=entity_id,
                    expected_version=expected_version,
                    current_version=current_version,
                )
            new_version = row[1] + 1
            self._entities[kind][entity_id] = (entity, new_version)
        return str(new_version)

    def _all(self, kind: str) -> list[Any]:
        return [entity for entity, _version in self._entities[kind].values()]

    async def get_customer_by_account(self, account: str, data_area: str) -> Versioned[Customer] | None:
        for entity, version in self._entities[KIND_CUSTOMER].values():
            if entity.account == account and entity.data_area == data_area:
                return Versioned(entity=entity, version=str(version))
        return None

    async def list_licences_by_holder(self, holder: HolderRef) -> list[Licence]:
        return [licence for licence in self._all(KIND_LICENCE) if licence.holder == holder]

    async def list_licences_by_substance(self, substance_code: str) -> list[Licence]:
        licence_ids = {m.licence_id for m in self._mappings.values() if m.substance_code == substance_code}
        return [licence for licence in self._all(KIND_LICENCE) if licence.id in licence_ids]

    async def list_licences_expiring(self, start: date, end: date) -> list[Licence]:
        return [licence for licence in self._all(KIND_LICENCE) if start <= licence.expiry_date <= end]

    async def list_mappings(self, licence_ids: Iterable[str]) -> list[LicenceSubstanceMapping]:
        wanted = set(licence_ids)
        return [mapping for mapping in self._mappings.values() if mapping.licence_id in wanted]

    async def put_mapping(self, mapping: LicenceSubstanceMapping) -> None:
        row = self._entities[KIND_LICENCE].get(mapping.licence_id)
        if row is None:
            raise NotFoundError(KIND_LICENCE, mapping.licence_id)
        validate_mapping(mapping, row[0])
        self._mappings[mapping.key] = mapping

    async def get_licence_types(self, type_ids: Iterable[str]) -> dict[str, LicenceType]:
        return {type_id: self._licence_types[type_id] for type_id in set(type_ids) if type_id in self._licence_types}

    async def put_licence_type(self, licence_type: LicenceType) -> None:
        self._licence_types[licence_type.id] = licence_type

    async def get_substances(self, codes: Iterable[str]) -> dict[str, ControlledSubstance]:
        found: dict[str, ControlledSubstance] = {}
        for code in set(codes):
            row = self._entities[KIND_SUBSTANCE].get(code)
            if row is not None:
                found[code] = row[0]
        return found

    async def list_thresholds(self, customer_id: str, substance_codes: Iterable[str]) -> list[Threshold]:
        wanted = set(substance_codes)
        return [
            threshold
            for threshold in self._thresholds.values()
            if threshold.customer_id == customer_id and threshold.substance_code in wanted
        ]

    async def put_threshold(self, threshold: Threshold) -> None:
        self._thresholds[threshold.id] = threshold

    def _counted(self, customer_id: str, start: date, end: date) -> list[Transaction]:
        return [
            tx
            for tx in self._all(KIND_TRANSACTION)
            if tx.customer_id == customer_id
            and tx.status in COUNTED_TRANSACTION_STATUSES
            and start <= tx.transaction_date <= end
        ]

    async def sum_quantity(
        self, *, customer_id: str, substance_code: str, unit: str, start: date, end: date
    ) -> Decimal:
        total = Decimal("0")
        for tx in self._counted(customer_id, start, end):
            for line in tx.lines:
                if line.substance_code == substance_code and line.unit == unit:
                    total += line.quantity
        return total

    async def count_transactions(
        self, *, customer_id: str, substance_code: str, start: date, end: date
    ) -> int:
        return sum(
            1
            for tx in self._counted(customer_id, start, end)
            if any(line.substance_code == substance_code for line in tx.lines)
        )

    async def list_transactions(self, *, status: str | None = None, limit: int = 100) -> list[Transaction]:
        rows = [tx for tx in self._all(KIND_TRANSACTION) if status is None or tx.status == status]
        rows.sort(key=lambda tx: (tx.created_at or datetime.min, tx.id), reverse=True)
        return rows[:limit]

    async def list_customers_reverification_due(self, on_date: date) -> list[Customer]:
        return [
            customer
            for customer in self._all(KIND_CUSTOMER)
            if customer.reverification_due is not None and customer.reverification_due <= on_date
        ]

    async def list_reclassifications(self, substance_code: str) -> list[SubstanceReclassification]:
        rows = [r for r in self._all(KIND_RECLASSIFICATION) if r.substance_code == substance_code]
        rows.sort(key=lambda r: (r.effective_date, r.id))
        return rows

    async def list_impacts(self, reclassification_id: str) -> list[Versioned[CustomerImpact]]:
        return [
            Versioned(entity=impact, version=str(version))
            for impact, version in self._entities[KIND_CUSTOMER_IMPACT].values()
            if impact.reclassification_id == reclassification_id
        ]

    async def list_open_impacts(self, customer_id: str | None = None) -> list[CustomerImpact]:
        completed = {r.id for r in self._all(KIND_RECLASSIFICATION) if r.status == RECLASS_COMPLETED}
        return [
            impact
            for impact in self._all(KIND_CUSTOMER_IMPACT)
            if impact.requires_requalification
            and impact.reclassification_id in completed
            and (customer_id is None or impact.customer_id == customer_id)
        ]

    async def list_subscriptions(self, *, active_only: bool = False) -> list[WebhookSubscription]:
        return [sub for sub in self._all(KIND_SUBSCRIPTION) if sub.is_active or not active_only]

    async def insert_event(self, event: WebhookEvent) -> None:
        self._events[event.id] = event

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        return self._events.get(event_id)

    async def list_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        rows = [
            delivery
            for delivery in self._all(KIND_DELIVERY)
            if delivery.status in DELIVERY_READY_STATUSES and delivery.next_attempt_at <= now
        ]
        rows.sort(key=lambda d: d.next_attempt_at)
        return rows[:limit]

    async def list_subscription_events(
        self, subscription_id: str, *, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[tuple[WebhookEvent, WebhookDelivery]]:
        wanted = set(statuses) if statuses is not None else None
        pairs = []
        for delivery in self._all(KIND_DELIVERY):
            if delivery.subscription_id != subscription_id:
                continue
            if wanted is not None and delivery.status not in wanted:
                continue
            event = self._events.get(delivery.event_id)
            if event is not None:
                pairs.append((event, delivery))
        pairs.sort(key=lambda pair: pair[0].occurred_at, reverse=True)
        return pairs[:limit]

    async def insert_alert(self, alert: Alert) -> None:
        self._alerts.append(alert)

    async def list_alerts(self, *, audience: str | None = None, limit: int = 100) -> list[Alert]:
        rows = [alert for alert in self._alerts if audience is None or alert.audience == audience]
        return list(reversed(rows))[:limit]

    async def alert_exists(self, alert_type: str, target: TargetRef, *, severity: str | None = None) -> bool:
        return any(
            alert.alert_type == alert_type
            and alert.target == target
            and (severity is None or alert.severity == severity)
            and alert.acknowledged_at is None
            for alert in self._alerts
        )

    async def append_audit(self, record: AuditRecord) -> None:
        self.audit_log.append(record)
