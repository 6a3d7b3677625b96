from __future__ import annotations

from dataclasses import replace
import logging
from typing import Any

from licencegate.core.errors import NotFoundError, StructuralValidationError
from licencegate.domain.compliance import ALL_ACTIVITIES, LICENCE_STATUSES, Customer, Licence, TargetRef
from licencegate.persistence.store import KIND_CUSTOMER, KIND_LICENCE, ComplianceStore, Versioned
from licencegate.services.audit import record_event
from licencegate.services.concurrency import ConcurrencyGuard


logger = logging.getLogger(__name__)

LICENCE_MUTABLE_FIELDS = frozenset({"status", "expiry_date", "grace_period_end", "permitted_activities"})
CUSTOMER_COMPLIANCE_FIELDS = frozenset(
    {
        "approval_status",
        "is_suspended",
        "suspension_reason",
        "gdp_qualification_status",
        "reverification_due",
    }
)


def _check_fields(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise StructuralValidationError(f"fields cannot be updated: {', '.join(unknown)}")
    if not changes:
        raise StructuralValidationError("no changes supplied")


class RecordService:
    """Versioned reads and guarded updates of licence and customer compliance records."""

    def __init__(self, store: ComplianceStore) -> None:
        self._store = store
        self._guard = ConcurrencyGuard(store)

    async def get_licence(self, licence_id: str) -> Versioned[Licence]:
        return await self._guard.read(KIND_LICENCE, licence_id)

    async def get_customer(self, customer_id: str) -> Versioned[Customer]:
        return await self._guard.read(KIND_CUSTOMER, customer_id)

    async def update_licence(
        self,
        licence_id: str,
        expected_version: str,
        changes: dict[str, Any],
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> Versioned[Licence]:
        _check_fields(changes, LICENCE_MUTABLE_FIELDS)
        if "status" in changes and changes["status"] not in LICENCE_STATUSES:
            raise StructuralValidationError(f"unknown licence status '{changes['status']}'")
        if "permitted_activities" in changes:
            activities = frozenset(changes["permitted_activities"])
            if activities - ALL_ACTIVITIES:
                raise StructuralValidationError(
                    f"unknown activities: {', '.join(sorted(activities - ALL_ACTIVITIES))}"
                )
            changes = {**changes, "permitted_activities": activities}
        saved = await self._update(KIND_LICENCE, licence_id, expected_version, changes, actor_id, request_id)
        if "expiry_date" in changes:
            await self._clamp_mappings(saved.entity, actor_id=actor_id, request_id=request_id)
        return saved

    async def _clamp_mappings(self, licence: Licence, *, actor_id: str | None, request_id: str | None) -> None:
        # A shortened licence pulls every substance mapping that outlived it back to the new expiry.
        clamped: list[str] = []
        for mapping in await self._store.list_mappings([licence.id]):
            if mapping.expiry_date is not None and mapping.expiry_date > licence.expiry_date:
                await self._store.put_mapping(replace(mapping, expiry_date=licence.expiry_date))
                clamped.append(mapping.substance_code)
        if not clamped:
            return
        logger.info(
            "licence_mappings_clamped licence_id=%s expiry_date=%s substances=%s",
            licence.id,
            licence.expiry_date,
            ",".join(sorted(clamped)),
        )
        await record_event(
            self._store,
            event_type="licence.mappings.clamped",
            actor_id=actor_id,
            target=TargetRef(kind=KIND_LICENCE, id=licence.id),
            outcome="success",
            metadata={"substances": sorted(clamped), "expiry_date": licence.expiry_date.isoformat()},
            request_id=request_id,
        )

    async def update_customer_compliance(
        self,
        customer_id: str,
        expected_version: str,
        changes: dict[str, Any],
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> Versioned[Customer]:
        _check_fields(changes, CUSTOMER_COMPLIANCE_FIELDS)
        return await self._update(KIND_CUSTOMER, customer_id, expected_version, changes, actor_id, request_id)

    async def _update(
        self,
        kind: str,
        entity_id: str,
        expected_version: str,
        changes: dict[str, Any],
        actor_id: str | None,
        request_id: str | None,
    ) -> Versioned[Any]:
        before = await self._store.load(kind, entity_id)
        if before is None:
            raise NotFoundError(kind, entity_id)
        saved = await self._guard.compare_and_swap(
            kind,
            entity_id,
            expected_version,
            lambda row: replace(row, **changes),
        )
        logger.info(
            "record_updated kind=%s id=%s version=%s fields=%s",
            kind,
            entity_id,
            saved.version,
            ",".join(sorted(changes)),
        )
        await record_event(
            self._store,
            event_type=f"{kind}.updated",
            actor_id=actor_id,
            target=TargetRef(kind=kind, id=entity_id),
            outcome="success",
            before=before.entity,
            after=saved.entity,
            metadata={"fields": sorted(changes)},
            request_id=request_id,
        )
        return saved
