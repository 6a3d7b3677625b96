from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, AsyncIterator, Callable, Iterable

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licencegate.core.errors import ConcurrencyConflictError, DatabaseError, NotFoundError
from licencegate.domain import models
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
    SubstanceReclassification,
    TargetRef,
    Threshold,
    Transaction,
    TransactionLine,
    Violation,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
    validate_mapping,
)
from licencegate.persistence.store import (
    COUNTED_TRANSACTION_STATUSES,
    KIND_CUSTOMER,
    KIND_CUSTOMER_IMPACT,
    KIND_DELIVERY,
    KIND_LICENCE,
    KIND_RECLASSIFICATION,
    KIND_SUBSCRIPTION,
    KIND_SUBSTANCE,
    KIND_TRANSACTION,
    Versioned,
    entity_key,
)


logger = logging.getLogger(__name__)


def _licence_to_row(licence: Licence) -> dict[str, Any]:
    return {
        "id": licence.id,
        "licence_number": licence.licence_number,
        "licence_type_id": licence.licence_type_id,
        "holder_kind": licence.holder.kind,
        "holder_id": licence.holder.id,
        "issuing_authority": licence.issuing_authority,
        "issue_date": licence.issue_date,
        "expiry_date": licence.expiry_date,
        "grace_period_end": licence.grace_period_end,
        "status": licence.status,
        "permitted_activities": sorted(licence.permitted_activities),
    }


def _licence_from_row(row: models.LicenceRow) -> Licence:
    return Licence(
        id=row.id,
        licence_number=row.licence_number,
        licence_type_id=row.licence_type_id,
        holder=HolderRef(kind=row.holder_kind, id=row.holder_id),  # type: ignore[arg-type]
        issuing_authority=row.issuing_authority,
        issue_date=row.issue_date,
        expiry_date=row.expiry_date,
        status=row.status,
        permitted_activities=frozenset(row.permitted_activities or []),
        grace_period_end=row.grace_period_end,
    )


def _customer_to_row(customer: Customer) -> dict[str, Any]:
    return {
        "id": customer.id,
        "account": customer.account,
        "data_area": customer.data_area,
        "business_name": customer.business_name,
        "business_category": customer.business_category,
        "approval_status": customer.approval_status,
        "is_suspended": customer.is_suspended,
        "suspension_reason": customer.suspension_reason,
        "gdp_qualification_status": customer.gdp_qualification_status,
        "reverification_due": customer.reverification_due,
    }


def _customer_from_row(row: models.CustomerRow) -> Customer:
    return Customer(
        id=row.id,
        account=row.account,
        data_area=row.data_area,
        business_name=row.business_name,
        business_category=row.business_category,
        approval_status=row.approval_status,
        is_suspended=row.is_suspended,
        suspension_reason=row.suspension_reason,
        gdp_qualification_status=row.gdp_qualification_status,
        reverification_due=row.reverification_due,
    )


def _substance_to_row(substance: ControlledSubstance) -> dict[str, Any]:
    return {
        "code": substance.code,
        "name": substance.name,
        "opium_act_list": substance.opium_act_list,
        "precursor_category": substance.precursor_category,
        "is_active": substance.is_active,
        "classification_effective_date": substance.classification_effective_date,
    }


def _substance_from_row(row: models.ControlledSubstanceRow) -> ControlledSubstance:
    return ControlledSubstance(
        code=row.code,
        name=row.name,
        opium_act_list=row.opium_act_list,
        precursor_category=row.precursor_category,
        is_active=row.is_active,
        classification_effective_date=row.classification_effective_date,
    )


def _line_to_json(line: TransactionLine) -> dict[str, Any]:
    return {"substance_code": line.substance_code, "quantity": str(line.quantity), "unit": line.unit}


def _transaction_to_row(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "external_id": tx.external_id,
        "customer_id": tx.customer_id,
        "customer_account": tx.customer_account,
        "customer_data_area": tx.customer_data_area,
        "transaction_type": tx.transaction_type,
        "transaction_date": tx.transaction_date,
        "destination_country": tx.destination_country,
        "calling_system": tx.calling_system,
        "status": tx.status,
        "lines_json": [_line_to_json(line) for line in tx.lines],
        "violations_json": [violation.to_dict() for violation in tx.violations],
        "approver_id": tx.approver_id,
        "reason_code": tx.reason_code,
        "justification": tx.justification,
        "authority_ref": tx.authority_ref,
        "decided_at": tx.decided_at,
    }


def _transaction_from_row(row: models.TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        external_id=row.external_id,
        customer_id=row.customer_id,
        customer_account=row.customer_account,
        customer_data_area=row.customer_data_area,
        transaction_type=row.transaction_type,
        transaction_date=row.transaction_date,
        lines=tuple(
            TransactionLine(
                substance_code=item["substance_code"],
                quantity=Decimal(str(item["quantity"])),
                unit=item["unit"],
            )
            for item in (row.lines_json or [])
        ),
        status=row.status,
        violations=tuple(Violation.from_dict(item) for item in (row.violations_json or [])),
        destination_country=row.destination_country,
        calling_system=row.calling_system,
        approver_id=row.approver_id,
        reason_code=row.reason_code,
        justification=row.justification,
        authority_ref=row.authority_ref,
        decided_at=row.decided_at,
        created_at=row.created_at,
    )


def _reclassification_to_row(item: SubstanceReclassification) -> dict[str, Any]:
    return {
        "id": item.id,
        "substance_code": item.substance_code,
        "previous_opium_act_list": item.previous_opium_act_list,
        "new_opium_act_list": item.new_opium_act_list,
        "previous_precursor_category": item.previous_precursor_category,
        "new_precursor_category": item.new_precursor_category,
        "effective_date": item.effective_date,
        "regulatory_reference": item.regulatory_reference,
        "regulatory_authority": item.regulatory_authority,
        "status": item.status,
        "affected_customer_count": item.affected_customer_count,
        "flagged_customer_count": item.flagged_customer_count,
        "processed_at": item.processed_at,
    }


def _reclassification_from_row(row: models.SubstanceReclassificationRow) -> SubstanceReclassification:
    return SubstanceReclassification(
        id=row.id,
        substance_code=row.substance_code,
        previous_opium_act_list=row.previous_opium_act_list,
        new_opium_act_list=row.new_opium_act_list,
        previous_precursor_category=row.previous_precursor_category,
        new_precursor_category=row.new_precursor_category,
        effective_date=row.effective_date,
        regulatory_reference=row.regulatory_reference,
        regulatory_authority=row.regulatory_authority,
        status=row.status,
        affected_customer_count=row.affected_customer_count,
        flagged_customer_count=row.flagged_customer_count,
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def _impact_to_row(impact: CustomerImpact) -> dict[str, Any]:
    return {
        "id": impact.id,
        "reclassification_id": impact.reclassification_id,
        "customer_id": impact.customer_id,
        "substance_code": impact.substance_code,
        "has_sufficient_licence": impact.has_sufficient_licence,
        "requires_requalification": impact.requires_requalification,
        "gap_summary": impact.gap_summary,
        "relevant_licence_ids": list(impact.relevant_licence_ids),
        "requalified_at": impact.requalified_at,
    }


def _impact_from_row(row: models.CustomerImpactRow) -> CustomerImpact:
    return CustomerImpact(
        id=row.id,
        reclassification_id=row.reclassification_id,
        customer_id=row.customer_id,
        substance_code=row.substance_code,
        has_sufficient_licence=row.has_sufficient_licence,
        requires_requalification=row.requires_requalification,
        gap_summary=row.gap_summary,
        relevant_licence_ids=tuple(row.relevant_licence_ids or []),
        requalified_at=row.requalified_at,
    )


def _subscription_to_row(sub: WebhookSubscription) -> dict[str, Any]:
    return {
        "id": sub.id,
        "callback_url": sub.callback_url,
        "event_types": sorted(sub.event_types),
        "secret_sealed": sub.secret_sealed,
        "is_active": sub.is_active,
        "is_healthy": sub.is_healthy,
        "consecutive_failures": sub.consecutive_failures,
        "last_success_at": sub.last_success_at,
        "last_failure_at": sub.last_failure_at,
        "description": sub.description,
    }


def _subscription_from_row(row: models.WebhookSubscriptionRow) -> WebhookSubscription:
    return WebhookSubscription(
        id=row.id,
        callback_url=row.callback_url,
        event_types=frozenset(row.event_types or []),
        secret_sealed=row.secret_sealed,
        is_active=row.is_active,
        is_healthy=row.is_healthy,
        consecutive_failures=row.consecutive_failures,
        last_success_at=row.last_success_at,
        last_failure_at=row.last_failure_at,
        description=row.description,
    )


def _delivery_to_row(delivery: WebhookDelivery) -> dict[str, Any]:
    return {
        "id": delivery.id,
        "subscription_id": delivery.subscription_id,
        "event_id": delivery.event_id,
        "status": delivery.status,
        "attempt_count": delivery.attempt_count,
        "next_attempt_at": delivery.next_attempt_at,
        "last_error": delivery.last_error,
        "delivered_at": delivery.delivered_at,
    }


def _delivery_from_row(row: models.WebhookDeliveryRow) -> WebhookDelivery:
    return WebhookDelivery(
        id=row.id,
        subscription_id=row.subscription_id,
        event_id=row.event_id,
        status=row.status,
        attempt_count=row.attempt_count,
        next_attempt_at=row.next_attempt_at,
        last_error=row.last_error,
        delivered_at=row.delivered_at,
    )


def _event_from_row(row: models.WebhookEventRow) -> WebhookEvent:
    return WebhookEvent(
        id=row.id,
        event_type=row.event_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        new_status=row.new_status,
        payload=dict(row.payload or {}),
        occurred_at=row.occurred_at,
    )


def _alert_from_row(row: models.AlertRow) -> Alert:
    return Alert(
        id=row.id,
        alert_type=row.alert_type,
        severity=row.severity,
        target=TargetRef(kind=row.target_kind, id=row.target_id),
        audience=row.audience,
        message=row.message,
        created_at=row.created_at,
        details=dict(row.details or {}),
        acknowledged_at=row.acknowledged_at,
    )


@dataclass(frozen=True)
class _KindMapping:
    model: Any
    key_column: str
    to_row: Callable[[Any], dict[str, Any]]
    from_row: Callable[[Any], Any]


_KINDS: dict[str, _KindMapping] = {
    KIND_LICENCE: _KindMapping(models.LicenceRow, "id", _licence_to_row, _licence_from_row),
    KIND_CUSTOMER: _KindMapping(models.CustomerRow, "id", _customer_to_row, _customer_from_row),
    KIND_SUBSTANCE: _KindMapping(models.ControlledSubstanceRow, "code", _substance_to_row, _substance_from_row),
    KIND_TRANSACTION: _KindMapping(models.TransactionRow, "id", _transaction_to_row, _transaction_from_row),
    KIND_RECLASSIFICATION: _KindMapping(
        models.SubstanceReclassificationRow, "id", _reclassification_to_row, _reclassification_from_row
    ),
    KIND_CUSTOMER_IMPACT: _KindMapping(models.CustomerImpactRow, "id", _impact_to_row, _impact_from_row),
    KIND_SUBSCRIPTION: _KindMapping(
        models.WebhookSubscriptionRow, "id", _subscription_to_row, _subscription_from_row
    ),
    KIND_DELIVERY: _KindMapping(models.WebhookDeliveryRow, "id", _delivery_to_row, _delivery_from_row),
}


class SqlComplianceStore:
    """PostgreSQL-backed compliance store.

    Versions are integer columns incremented on every swap. The swap is a
    single ``UPDATE ... WHERE version = :expected`` so the database performs
    the comparison atomically; a zero row count means another writer won.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("compliance_store_failed")
            raise DatabaseError(str(exc)) from exc

    async def load(self, kind: str, entity_id: str) -> Versioned[Any] | None:
        table = _KINDS[kind]
        async with self._session() as session:
            row = await session.get(table.model, entity_id)
            if row is None:
                return None
            return Versioned(entity=table.from_row(row), version=str(row.version))

    async def insert(self, kind: str, entity: Any) -> str:
        table = _KINDS[kind]
        key = entity_key(kind, entity)
        try:
            async with self._sessions() as session:
                session.add(table.model(**table.to_row(entity), version=1))
                if kind == KIND_TRANSACTION:
                    for number, line in enumerate(entity.lines, start=1):
                        session.add(
                            models.TransactionLineRow(
                                transaction_id=entity.id,
                                line_number=number,
                                substance_code=line.substance_code,
                                quantity=line.quantity,
                                unit=line.unit,
                            )
                        )
                await session.commit()
        except IntegrityError as exc:
            raise ValueError(f"{kind} '{key}' already exists") from exc
        except SQLAlchemyError as exc:
            logger.exception("compliance_store_insert_failed kind=%s id=%s", kind, key)
            raise DatabaseError(str(exc)) from exc
        return "1"

    async def swap(self, kind: str, entity_id: str, expected_version: str, entity: Any) -> str:
        table = _KINDS[kind]
        try:
            expected = int(expected_version)
        except (TypeError, ValueError):
            expected = None
        key_column = getattr(table.model, table.key_column)
        async with self._session() as session:
            current_version: int | None = None
            if expected is not None:
                values = table.to_row(entity)
                values.pop(table.key_column, None)
                result = await session.execute(
                    update(table.model)
                    .where(key_column == entity_id, table.model.version == expected)
                    .values(**values, version=table.model.version + 1)
                    .returning(table.model.version)
                )
                current_version = result.scalar_one_or_none()
                if current_version is not None:
                    await session.commit()
                    return str(current_version)
                await session.rollback()
            stored = await session.scalar(select(table.model.version).where(key_column == entity_id))
            raise ConcurrencyConflictError(
                entity_type=kind,
                entity_id=entity_id,
                expected_version=str(expected_version),
                current_version=str(stored) if stored is not None else None,
            )

    async def get_customer_by_account(self, account: str, data_area: str) -> Versioned[Customer] | None:
        async with self._session() as session:
            row = await session.scalar(
                select(models.CustomerRow).where(
                    models.CustomerRow.account == account,
                    models.CustomerRow.data_area == data_area,
                )
            )
            if row is None:
                return None
            return Versioned(entity=_customer_from_row(row), version=str(row.version))

    async def list_licences_by_holder(self, holder: HolderRef) -> list[Licence]:
        async with self._session() as session:
            rows = await session.scalars(
                select(models.LicenceRow).where(
                    models.LicenceRow.holder_kind == holder.kind,
                    models.LicenceRow.holder_id == holder.id,
                )
            )
            return [_licence_from_row(row) for row in rows]

    async def list_licences_by_substance(self, substance_code: str) -> list[Licence]:
        mapped = select(models.LicenceSubstanceMappingRow.licence_id).where(
            models.LicenceSubstanceMappingRow.substance_code == substance_code
        )
        async with self._session() as session:
            rows = await session.scalars(select(models.LicenceRow).where(models.LicenceRow.id.in_(mapped)))
            return [_licence_from_row(row) for row in rows]

    async def list_licences_expiring(self, start: date, end: date) -> list[Licence]:
        async with self._session() as session:
            rows = await session.scalars(
                select(models.LicenceRow)
                .where(models.LicenceRow.expiry_date.between(start, end))
                .order_by(models.LicenceRow.expiry_date)
            )
            return [_licence_from_row(row) for row in rows]

    async def list_mappings(self, licence_ids: Iterable[str]) -> list[LicenceSubstanceMapping]:
        wanted = sorted(set(licence_ids))
        if not wanted:
            return []
        async with self._session() as session:
            rows = await session.scalars(
                select(models.LicenceSubstanceMappingRow).where(
                    models.LicenceSubstanceMappingRow.licence_id.in_(wanted)
                )
            )
            return [
                LicenceSubstanceMapping(
                    licence_id=row.licence_id,
                    substance_code=row.substance_code,
                    effective_date=row.effective_date,
                    expiry_date=row.expiry_date,
                )
                for row in rows
            ]

    async def put_mapping(self, mapping: LicenceSubstanceMapping) -> None:
        owner = await self.load(KIND_LICENCE, mapping.licence_id)
        if owner is None:
            raise NotFoundError(KIND_LICENCE, mapping.licence_id)
        validate_mapping(mapping, owner.entity)
        async with self._session() as session:
            await session.merge(
                models.LicenceSubstanceMappingRow(
                    licence_id=mapping.licence_id,
                    substance_code=mapping.substance_code,
                    effective_date=mapping.effective_date,
                    expiry_date=mapping.expiry_date,
                )
            )
            await session.commit()

    async def get_licence_types(self, type_ids: Iterable[str]) -> dict[str, LicenceType]:
        wanted = sorted(set(type_ids))
        if not wanted:
            return {}
        async with self._session() as session:
            rows = await session.scalars(select(models.LicenceTypeRow).where(models.LicenceTypeRow.id.in_(wanted)))
            return {
                row.id: LicenceType(
                    id=row.id,
                    name=row.name,
                    permitted_activities=frozenset(row.permitted_activities or []),
                    is_active=row.is_active,
                )
                for row in rows
            }

    async def put_licence_type(self, licence_type: LicenceType) -> None:
        async with self._session() as session:
            await session.merge(
                models.LicenceTypeRow(
                    id=licence_type.id,
                    name=licence_type.name,
                    permitted_activities=sorted(licence_type.permitted_activities),
                    is_active=licence_type.is_active,
                )
            )
            await session.commit()

    async def get_substances(self, codes: Iterable[str]) -> dict[str, ControlledSubstance]:
        wanted = sorted(set(codes))
        if not wanted:
            return {}
        async with self._session() as session:
            rows = await session.scalars(
                select(models.ControlledSubstanceRow).where(models.ControlledSubstanceRow.code.in_(wanted))
            )
            return {row.code: _substance_from_row(row) for row in rows}

    async def list_thresholds(self, customer_id: str, substance_codes: Iterable[str]) -> list[Threshold]:
        wanted = sorted(set(substance_codes))
        if not wanted:
            return []
        async with self._session() as session:
            rows = await session.scalars(
                select(models.ThresholdRow).where(
                    models.ThresholdRow.customer_id == customer_id,
                    models.ThresholdRow.substance_code.in_(wanted),
                )
            )
            return [
                Threshold(
                    id=row.id,
                    customer_id=row.customer_id,
                    substance_code=row.substance_code,
                    kind=row.kind,
                    limit=Decimal(row.limit),
                    window_days=row.window_days,
                    unit=row.unit,
                )
                for row in rows
            ]

    async def put_threshold(self, threshold: Threshold) -> None:
        async with self._session() as session:
            await session.merge(
                models.ThresholdRow(
                    id=threshold.id,
                    customer_id=threshold.customer_id,
                    substance_code=threshold.substance_code,
                    kind=threshold.kind,
                    limit=threshold.limit,
                    window_days=threshold.window_days,
                    unit=threshold.unit,
                )
            )
            await session.commit()

    @staticmethod
    def _counted_filter(customer_id: str, substance_code: str, start: date, end: date) -> Any:
        tx = models.TransactionRow
        line = models.TransactionLineRow
        return and_(
            tx.customer_id == customer_id,
            tx.status.in_(COUNTED_TRANSACTION_STATUSES),
            tx.transaction_date.between(start, end),
            line.substance_code == substance_code,
        )

    async def sum_quantity(
        self, *, customer_id: str, substance_code: str, unit: str, start: date, end: date
    ) -> Decimal:
        tx = models.TransactionRow
        line = models.TransactionLineRow
        stmt = (
            select(func.coalesce(func.sum(line.quantity), 0))
            .select_from(line)
            .join(tx, tx.id == line.transaction_id)
            .where(self._counted_filter(customer_id, substance_code, start, end), line.unit == unit)
        )
        async with self._session() as session:
            total = await session.scalar(stmt)
        return Decimal(str(total or 0))

    async def count_transactions(
        self, *, customer_id: str, substance_code: str, start: date, end: date
    ) -> int:
        tx = models.TransactionRow
        line = models.TransactionLineRow
        stmt = (
            select(func.count(func.distinct(tx.id)))
            .select_from(line)
            .join(tx, tx.id == line.transaction_id)
            .where(self._counted_filter(customer_id, substance_code, start, end))
        )
        async with self._session() as session:
            return int(await session.scalar(stmt) or 0)

    async def list_transactions(self, *, status: str | None = None, limit: int = 100) -> list[Transaction]:
        stmt = select(models.TransactionRow)
        if status is not None:
            stmt = stmt.where(models.TransactionRow.status == status)
        stmt = stmt.order_by(models.TransactionRow.created_at.desc(), models.TransactionRow.id.desc()).limit(limit)
        async with self._session() as session:
            rows = await session.scalars(stmt)
            return [_transaction_from_row(row) for row in rows]

    async def list_customers_reverification_due(self, on_date: date) -> list[Customer]:
        async with self._session() as session:
            rows = await session.scalars(
                select(models.CustomerRow).where(
                    models.CustomerRow.reverification_due.is_not(None),
                    models.CustomerRow.reverification_due <= on_date,
                )
            )
            return [_customer_from_row(row) for row in rows]

    async def list_reclassifications(self, substance_code: str) -> list[SubstanceReclassification]:
        row_type = models.SubstanceReclassificationRow
        async with self._session() as session:
            rows = await session.scalars(
                select(row_type)
                .where(row_type.substance_code == substance_code)
                .order_by(row_type.effective_date, row_type.id)
            )
            return [_reclassification_from_row(row) for row in rows]

    async def list_impacts(self, reclassification_id: str) -> list[Versioned[CustomerImpact]]:
        async with self._session() as session:
            rows = await session.scalars(
                select(models.CustomerImpactRow)
                .where(models.CustomerImpactRow.reclassification_id == reclassification_id)
                .order_by(models.CustomerImpactRow.customer_id)
            )
            return [Versioned(entity=_impact_from_row(row), version=str(row.version)) for row in rows]

    async def list_open_impacts(self, customer_id: str | None = None) -> list[CustomerImpact]:
        impact = models.CustomerImpactRow
        reclass = models.SubstanceReclassificationRow
        stmt = (
            select(impact)
            .join(reclass, reclass.id == impact.reclassification_id)
            .where(impact.requires_requalification.is_(True), reclass.status == RECLASS_COMPLETED)
        )
        if customer_id is not None:
            stmt = stmt.where(impact.customer_id == customer_id)
        async with self._session() as session:
            rows = await session.scalars(stmt)
            return [_impact_from_row(row) for row in rows]

    async def list_subscriptions(self, *, active_only: bool = False) -> list[WebhookSubscription]:
        stmt = select(models.WebhookSubscriptionRow).order_by(models.WebhookSubscriptionRow.created_at)
        if active_only:
            stmt = stmt.where(models.WebhookSubscriptionRow.is_active.is_(True))
        async with self._session() as session:
            rows = await session.scalars(stmt)
            return [_subscription_from_row(row) for row in rows]

    async def insert_event(self, event: WebhookEvent) -> None:
        async with self._session() as session:
            session.add(
                models.WebhookEventRow(
                    id=event.id,
                    event_type=event.event_type,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    new_status=event.new_status,
                    payload=event.payload,
                    occurred_at=event.occurred_at,
                )
            )
            await session.commit()

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        async with self._session() as session:
            row = await session.get(models.WebhookEventRow, event_id)
            return _event_from_row(row) if row is not None else None

    async def list_due_deliveries(self, now: datetime, limit: int) -> list[WebhookDelivery]:
        row_type = models.WebhookDeliveryRow
        async with self._session() as session:
            rows = await session.scalars(
                select(row_type)
                .where(row_type.status.in_(DELIVERY_READY_STATUSES), row_type.next_attempt_at <= now)
                .order_by(row_type.next_attempt_at)
                .limit(limit)
            )
            return [_delivery_from_row(row) for row in rows]

    async def list_subscription_events(
        self, subscription_id: str, *, statuses: Iterable[str] | None = None, limit: int = 100
    ) -> list[tuple[WebhookEvent, WebhookDelivery]]:
        event = models.WebhookEventRow
        delivery = models.WebhookDeliveryRow
        stmt = (
            select(event, delivery)
            .join(delivery, delivery.event_id == event.id)
            .where(delivery.subscription_id == subscription_id)
        )
        if statuses is not None:
            stmt = stmt.where(delivery.status.in_(sorted(set(statuses))))
        stmt = stmt.order_by(event.occurred_at.desc()).limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [(_event_from_row(ev), _delivery_from_row(dl)) for ev, dl in result.all()]

    async def insert_alert(self, alert: Alert) -> None:
        async with self._session() as session:
            session.add(
                models.AlertRow(
                    id=alert.id,
                    alert_type=alert.alert_type,
                    severity=alert.severity,
                    target_kind=alert.target.kind,
                    target_id=alert.target.id,
                    audience=alert.audience,
                    message=alert.message,
                    details=alert.details,
                    created_at=alert.created_at,
                    acknowledged_at=alert.acknowledged_at,
                )
            )
            await session.commit()

    async def list_alerts(self, *, audience: str | None = None, limit: int = 100) -> list[Alert]:
        stmt = select(models.AlertRow)
        if audience is not None:
            stmt = stmt.where(models.AlertRow.audience == audience)
        stmt = stmt.order_by(models.AlertRow.created_at.desc()).limit(limit)
        async with self._session() as session:
            rows = await session.scalars(stmt)
            return [_alert_from_row(row) for row in rows]

    async def alert_exists(self, alert_type: str, target: TargetRef, *, severity: str | None = None) -> bool:
        row_type = models.AlertRow
        stmt = select(row_type.id).where(
            row_type.alert_type == alert_type,
            row_type.target_kind == target.kind,
            row_type.target_id == target.id,
            row_type.acknowledged_at.is_(None),
        )
        if severity is not None:
            stmt = stmt.where(row_type.severity == severity)
        async with self._session() as session:
            return (await session.scalar(stmt.limit(1))) is not None

    async def append_audit(self, record: AuditRecord) -> None:
        async with self._session() as session:
            session.add(
                models.AuditEvent(
                    occurred_at=record.occurred_at,
                    event_type=record.event_type,
                    actor_id=record.actor_id,
                    target_kind=record.target.kind,
                    target_id=record.target.id,
                    outcome=record.outcome,
                    before_json=record.before,
                    after_json=record.after,
                    metadata_json=record.metadata,
                )
            )
            await session.commit()
