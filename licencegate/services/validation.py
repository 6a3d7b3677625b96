from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import logging
from uuid import uuid4

from licencegate.core.config import get_settings
from licencegate.core.errors import EvaluationTimeoutError, NotFoundError, StructuralValidationError
from licencegate.domain.compliance import (
    EVENT_COMPLIANCE_STATUS_CHANGED,
    HolderRef,
    TRANSACTION_TYPES,
    THRESHOLD_ANNUAL_FREQUENCY,
    THRESHOLD_MONTHLY_QUANTITY,
    TargetRef,
    Transaction,
    TransactionRequest,
)
from licencegate.persistence.store import KIND_TRANSACTION, ComplianceStore, Versioned
from licencegate.services.audit import record_event
from licencegate.services.evaluator import EvaluationSnapshot, evaluate
from licencegate.services.notifications.dispatcher import NotificationDispatcher


logger = logging.getLogger(__name__)


def validate_request_shape(request: TransactionRequest) -> None:
    # Reject malformed requests before any reference data is read.
    if request.transaction_type not in TRANSACTION_TYPES:
        raise StructuralValidationError(f"unknown transaction type '{request.transaction_type}'")
    if not request.lines:
        raise StructuralValidationError("a transaction needs at least one line")
    for index, line in enumerate(request.lines, start=1):
        if not line.substance_code or not line.unit:
            raise StructuralValidationError(f"line {index} needs a substance code and a unit")
        if line.quantity <= 0:
            raise StructuralValidationError(f"line {index} quantity must be positive")


async def load_snapshot(
    store: ComplianceStore, request: TransactionRequest, *, today: date, company_holder_id: str
) -> EvaluationSnapshot:
    """Read everything the evaluator needs for one request."""
    found = await store.get_customer_by_account(request.customer_account, request.customer_data_area)
    if found is None:
        return EvaluationSnapshot(today=today, customer=None)
    customer = found.entity
    codes = sorted({line.substance_code for line in request.lines})

    customer_licences = tuple(await store.list_licences_by_holder(customer.holder))
    company_licences = tuple(await store.list_licences_by_holder(HolderRef(kind="company", id=company_holder_id)))
    licence_ids = [licence.id for licence in customer_licences + company_licences]
    mappings = tuple(await store.list_mappings(licence_ids))
    licence_types = await store.get_licence_types(
        {licence.licence_type_id for licence in customer_licences + company_licences}
    )
    substances = await store.get_substances(codes)
    thresholds = tuple(await store.list_thresholds(customer.id, codes))

    line_units = {}
    for line in request.lines:
        line_units.setdefault(line.substance_code, line.unit)
    usage: dict[str, Decimal] = {}
    for threshold in thresholds:
        start = request.transaction_date - timedelta(days=max(1, threshold.window_days) - 1)
        if threshold.kind == THRESHOLD_MONTHLY_QUANTITY:
            usage[threshold.id] = await store.sum_quantity(
                customer_id=customer.id,
                substance_code=threshold.substance_code,
                unit=threshold.unit or line_units[threshold.substance_code],
                start=start,
                end=request.transaction_date,
            )
        elif threshold.kind == THRESHOLD_ANNUAL_FREQUENCY:
            count = await store.count_transactions(
                customer_id=customer.id,
                substance_code=threshold.substance_code,
                start=start,
                end=request.transaction_date,
            )
            usage[threshold.id] = Decimal(count)

    open_holds = frozenset(impact.substance_code for impact in await store.list_open_impacts(customer.id))
    return EvaluationSnapshot(
        today=today,
        customer=customer,
        customer_licences=customer_licences,
        company_licences=company_licences,
        mappings=mappings,
        licence_types=licence_types,
        substances=substances,
        thresholds=thresholds,
        threshold_usage=usage,
        open_holds=open_holds,
    )


class ValidationService:
    """Validate order lines and persist each verdict as a new transaction record."""

    def __init__(self, store: ComplianceStore, dispatcher: NotificationDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    async def validate_transaction(
        self,
        request: TransactionRequest,
        *,
        deadline_s: float | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        today: date | None = None,
    ) -> Transaction:
        settings = get_settings()
        validate_request_shape(request)
        timeout_s = deadline_s if deadline_s is not None else settings.evaluation_timeout_ms / 1000.0
        evaluation_date = today or datetime.now(timezone.utc).date()
        try:
            async with asyncio.timeout(timeout_s):
                snapshot = await load_snapshot(
                    self._store,
                    request,
                    today=evaluation_date,
                    company_holder_id=settings.company_holder_id,
                )
        except TimeoutError as exc:
            logger.warning(
                "evaluation_timeout external_id=%s customer=%s deadline_s=%s",
                request.external_id,
                request.customer_account,
                timeout_s,
            )
            raise EvaluationTimeoutError(
                f"reference data for transaction {request.external_id} not loaded within {timeout_s}s"
            ) from exc

        verdict = evaluate(request, snapshot)
        transaction = Transaction(
            id=str(uuid4()),
            external_id=request.external_id,
            customer_id=snapshot.customer.id if snapshot.customer else None,
            customer_account=request.customer_account,
            customer_data_area=request.customer_data_area,
            transaction_type=request.transaction_type,
            transaction_date=request.transaction_date,
            lines=request.lines,
            status=verdict.status,
            violations=verdict.violations,
            destination_country=request.destination_country,
            calling_system=request.calling_system,
            created_at=datetime.now(timezone.utc),
        )
        await self._store.insert(KIND_TRANSACTION, transaction)
        logger.info(
            "transaction_validated transaction_id=%s external_id=%s status=%s codes=%s",
            transaction.id,
            transaction.external_id,
            transaction.status,
            ",".join(verdict.codes),
        )
        await record_event(
            self._store,
            event_type="transaction.validated",
            actor_id=actor_id or request.calling_system,
            target=TargetRef(kind=KIND_TRANSACTION, id=transaction.id),
            outcome=transaction.status,
            after=transaction,
            metadata={"external_id": transaction.external_id, "codes": verdict.codes},
            request_id=request_id,
        )
        await self._dispatcher.dispatch(
            EVENT_COMPLIANCE_STATUS_CHANGED,
            {
                "transaction_id": transaction.id,
                "external_id": transaction.external_id,
                "customer_account": transaction.customer_account,
                "status": transaction.status,
                "codes": verdict.codes,
            },
            entity_type=KIND_TRANSACTION,
            entity_id=transaction.id,
            new_status=transaction.status,
        )
        return transaction

    async def get_transaction(self, transaction_id: str) -> Versioned[Transaction]:
        found = await self._store.load(KIND_TRANSACTION, transaction_id)
        if found is None:
            raise NotFoundError(KIND_TRANSACTION, transaction_id)
        return found

    async def list_transactions(self, *, status: str | None = None, limit: int = 100) -> list[Transaction]:
        return await self._store.list_transactions(status=status, limit=limit)
