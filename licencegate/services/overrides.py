from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Iterable

from licencegate.core.config import get_settings
from licencegate.core.errors import ConcurrencyConflictError, LicenceGateError
from licencegate.domain.compliance import (
    EVENT_COMPLIANCE_STATUS_CHANGED,
    EVENT_ORDER_APPROVED,
    EVENT_OVERRIDE_APPROVED,
    EVENT_ORDER_REJECTED,
    OVERRIDE_REASON_CODES,
    STATUS_OVERRIDE_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    TargetRef,
    Transaction,
)
from licencegate.persistence.store import KIND_TRANSACTION, ComplianceStore
from licencegate.services.audit import record_event
from licencegate.services.concurrency import ConcurrencyGuard
from licencegate.services.notifications.dispatcher import NotificationDispatcher


logger = logging.getLogger(__name__)

OVERRIDE_OK = "OK"
OVERRIDE_NOT_FOUND = "NOT_FOUND"
OVERRIDE_INVALID_STATE = "INVALID_STATE"
OVERRIDE_UNAUTHORIZED = "UNAUTHORIZED"
OVERRIDE_VALIDATION_ERROR = "VALIDATION_ERROR"
OVERRIDE_CONFLICT = "CONCURRENCY_CONFLICT"


@dataclass(frozen=True)
class Approver:
    id: str
    roles: frozenset[str]


@dataclass(frozen=True)
class OverrideResult:
    code: str
    message: str
    transaction: Transaction | None = None
    version: str | None = None
    conflict: ConcurrencyConflictError | None = None

    @property
    def ok(self) -> bool:
        return self.code == OVERRIDE_OK


def _failure(code: str, message: str, transaction: Transaction | None = None) -> OverrideResult:
    return OverrideResult(code=code, message=message, transaction=transaction)


class OverrideWorkflow:
    """Resolve soft-blocked transactions: ``Pending`` to ``OverrideApproved`` or ``Rejected``.

    Expected refusals come back as ``OverrideResult`` codes. Terminal states
    are never reopened; a stale concurrent decision surfaces as
    ``CONCURRENCY_CONFLICT`` instead of a second transition.
    """

    def __init__(self, store: ComplianceStore, dispatcher: NotificationDispatcher) -> None:
        self._store = store
        self._guard = ConcurrencyGuard(store)
        self._dispatcher = dispatcher

    async def list_pending(self, *, limit: int = 100) -> list[Transaction]:
        return await self._store.list_transactions(status=STATUS_PENDING, limit=limit)

    async def approve(
        self,
        transaction_id: str,
        approver: Approver,
        reason_code: str,
        justification: str,
        authority_ref: str | None = None,
        *,
        expected_version: str | None = None,
        request_id: str | None = None,
    ) -> OverrideResult:
        return await self._decide(
            transaction_id,
            approver,
            reason_code,
            justification,
            authority_ref,
            target_status=STATUS_OVERRIDE_APPROVED,
            expected_version=expected_version,
            request_id=request_id,
        )

    async def reject(
        self,
        transaction_id: str,
        approver: Approver,
        reason_code: str,
        justification: str,
        authority_ref: str | None = None,
        *,
        expected_version: str | None = None,
        request_id: str | None = None,
    ) -> OverrideResult:
        return await self._decide(
            transaction_id,
            approver,
            reason_code,
            justification,
            authority_ref,
            target_status=STATUS_REJECTED,
            expected_version=expected_version,
            request_id=request_id,
        )

    def _check_input(self, approver: Approver, reason_code: str, justification: str) -> OverrideResult | None:
        settings = get_settings()
        allowed_roles: Iterable[str] = settings.override_approver_roles
        if not approver.id or not set(approver.roles) & set(allowed_roles):
            return _failure(
                OVERRIDE_UNAUTHORIZED,
                f"Approver must hold one of the roles: {', '.join(sorted(allowed_roles))}.",
            )
        minimum = settings.override_min_justification_length
        if len((justification or "").strip()) < minimum:
            return _failure(OVERRIDE_VALIDATION_ERROR, f"Justification must be at least {minimum} characters.")
        if reason_code not in OVERRIDE_REASON_CODES:
            return _failure(
                OVERRIDE_VALIDATION_ERROR,
                f"Reason code must be one of: {', '.join(sorted(OVERRIDE_REASON_CODES))}.",
            )
        return None

    async def _decide(
        self,
        transaction_id: str,
        approver: Approver,
        reason_code: str,
        justification: str,
        authority_ref: str | None,
        *,
        target_status: str,
        expected_version: str | None,
        request_id: str | None,
    ) -> OverrideResult:
        current = await self._store.load(KIND_TRANSACTION, transaction_id)
        if current is None:
            return _failure(OVERRIDE_NOT_FOUND, f"Transaction {transaction_id} not found.")
        before = current.entity
        if before.status != STATUS_PENDING:
            return _failure(
                OVERRIDE_INVALID_STATE,
                f"Transaction {transaction_id} is {before.status}; only Pending transactions can be decided.",
                before,
            )
        refused = self._check_input(approver, reason_code, justification)
        if refused is not None:
            return refused

        decided_at = datetime.now(timezone.utc)

        def transition(row: Transaction) -> Transaction:
            # Re-check state against the stored row so a decision is never applied twice.
            if row.status != STATUS_PENDING:
                raise _AlreadyDecided(row)
            return replace(
                row,
                status=target_status,
                approver_id=approver.id,
                reason_code=reason_code,
                justification=justification.strip(),
                authority_ref=authority_ref,
                decided_at=decided_at,
            )

        try:
            saved = await self._guard.compare_and_swap(
                KIND_TRANSACTION,
                transaction_id,
                expected_version or current.version,
                transition,
                base=before,
            )
        except _AlreadyDecided as exc:
            return _failure(
                OVERRIDE_INVALID_STATE,
                f"Transaction {transaction_id} is {exc.row.status}; only Pending transactions can be decided.",
                exc.row,
            )
        except ConcurrencyConflictError as exc:
            return OverrideResult(code=OVERRIDE_CONFLICT, message=str(exc), conflict=exc)

        after = saved.entity
        logger.info(
            "override_decided transaction_id=%s status=%s approver_id=%s reason_code=%s",
            transaction_id,
            after.status,
            approver.id,
            reason_code,
        )
        await record_event(
            self._store,
            event_type="transaction.override.approved"
            if target_status == STATUS_OVERRIDE_APPROVED
            else "transaction.override.rejected",
            actor_id=approver.id,
            target=TargetRef(kind=KIND_TRANSACTION, id=transaction_id),
            outcome=after.status,
            before=before,
            after=after,
            metadata={"reason_code": reason_code, "authority_ref": authority_ref, "roles": sorted(approver.roles)},
            request_id=request_id,
        )
        payload = {
            "transaction_id": after.id,
            "external_id": after.external_id,
            "customer_account": after.customer_account,
            "status": after.status,
            "previous_status": before.status,
            "approver_id": approver.id,
            "reason_code": reason_code,
        }
        await self._dispatcher.dispatch(
            EVENT_COMPLIANCE_STATUS_CHANGED,
            payload,
            entity_type=KIND_TRANSACTION,
            entity_id=after.id,
            new_status=after.status,
        )
        await self._dispatcher.dispatch(
            EVENT_OVERRIDE_APPROVED if target_status == STATUS_OVERRIDE_APPROVED else EVENT_ORDER_REJECTED,
            payload,
            entity_type=KIND_TRANSACTION,
            entity_id=after.id,
            new_status=after.status,
        )
        if target_status == STATUS_OVERRIDE_APPROVED:
            # An approved override releases the order as well.
            await self._dispatcher.dispatch(
                EVENT_ORDER_APPROVED,
                payload,
                entity_type=KIND_TRANSACTION,
                entity_id=after.id,
                new_status=after.status,
            )
        return OverrideResult(
            code=OVERRIDE_OK,
            message=f"Transaction {transaction_id} is now {after.status}.",
            transaction=after,
            version=saved.version,
        )


class _AlreadyDecided(LicenceGateError):
    def __init__(self, row: Transaction) -> None:
        super().__init__(row.status)
        self.row = row
