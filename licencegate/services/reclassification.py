from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
import logging
from uuid import uuid4

from licencegate.core.errors import NotFoundError, StructuralValidationError
from licencegate.domain.compliance import (
    ACTIVITY_DISTRIBUTE,
    ACTIVITY_HANDLE_PRECURSORS,
    ACTIVITY_POSSESS,
    ACTIVITY_STORE,
    AUDIENCE_COMPLIANCE_TEAM,
    Alert,
    Classification,
    ControlledSubstance,
    CustomerImpact,
    EVENT_RECLASSIFICATION_PROCESSED,
    Licence,
    LicenceType,
    OPIUM_LIST_I,
    OPIUM_LIST_II,
    OPIUM_NONE,
    OPIUM_SEVERITY,
    PRECURSOR_CATEGORY_1,
    PRECURSOR_CATEGORY_2,
    PRECURSOR_CATEGORY_3,
    PRECURSOR_NONE,
    PRECURSOR_SEVERITY,
    RECLASS_COMPLETED,
    RECLASS_PENDING,
    RECLASS_PROCESSING,
    SubstanceReclassification,
    TargetRef,
)
from licencegate.persistence.store import (
    KIND_CUSTOMER_IMPACT,
    KIND_RECLASSIFICATION,
    KIND_SUBSTANCE,
    ComplianceStore,
    Versioned,
)
from licencegate.services.audit import record_event, to_jsonable
from licencegate.services.concurrency import ConcurrencyGuard
from licencegate.services.evaluator import licence_activities
from licencegate.services.notifications.dispatcher import NotificationDispatcher


logger = logging.getLogger(__name__)

ACTION_UPDATE_LICENCE = "Update licence to cover new classification requirements"


@dataclass(frozen=True)
class ImpactAnalysis:
    reclassification: SubstanceReclassification
    total_customers: int
    sufficient_count: int
    flagged_count: int
    customers: tuple[CustomerImpact, ...]


@dataclass(frozen=True)
class ProcessResult:
    ok: bool
    message: str
    reclassification: SubstanceReclassification | None = None
    analysis: ImpactAnalysis | None = None


@dataclass(frozen=True)
class CustomerAction:
    customer_id: str
    action_required: str
    gap_summary: str | None
    relevant_licence_ids: tuple[str, ...]


@dataclass(frozen=True)
class ComplianceNotification:
    reclassification_id: str
    substance_code: str
    substance_name: str
    regulatory_reference: str
    effective_date: date
    total_customers: int
    customers_requiring_action: int
    required_actions: tuple[CustomerAction, ...]


def covers_opium_list(activities: frozenset[str], opium_list: str) -> bool:
    if opium_list == OPIUM_LIST_I:
        return ACTIVITY_POSSESS in activities and ACTIVITY_STORE in activities
    if opium_list == OPIUM_LIST_II:
        return ACTIVITY_DISTRIBUTE in activities
    return True


def covers_precursor_category(activities: frozenset[str], category: str) -> bool:
    if category == PRECURSOR_CATEGORY_1:
        return ACTIVITY_HANDLE_PRECURSORS in activities
    if category in (PRECURSOR_CATEGORY_2, PRECURSOR_CATEGORY_3):
        return ACTIVITY_HANDLE_PRECURSORS in activities or ACTIVITY_DISTRIBUTE in activities
    return True


def licences_sufficient(
    reclassification: SubstanceReclassification,
    licences: list[Licence],
    licence_types: dict[str, LicenceType],
    today: date,
) -> bool:
    """Whether valid licences cover the new classification; downgrades always pass."""
    if not reclassification.is_upgrade:
        return True
    valid = [licence for licence in licences if licence.is_valid_on(today)]
    if reclassification.is_opium_upgrade and not any(
        covers_opium_list(licence_activities(licence, licence_types), reclassification.new_opium_act_list)
        for licence in valid
    ):
        return False
    if reclassification.is_precursor_upgrade and not any(
        covers_precursor_category(licence_activities(licence, licence_types), reclassification.new_precursor_category)
        for licence in valid
    ):
        return False
    return True


def gap_summary(
    reclassification: SubstanceReclassification,
    licences: list[Licence],
    licence_types: dict[str, LicenceType],
) -> str:
    gaps: list[str] = []
    if reclassification.is_opium_upgrade:
        gaps.append(f"Requires licence covering Opium Act {reclassification.new_opium_act_list}")
    if reclassification.is_precursor_upgrade:
        gaps.append(f"Requires licence covering Precursor {reclassification.new_precursor_category}")
    names: list[str] = []
    for licence in licences:
        licence_type = licence_types.get(licence.licence_type_id)
        if licence_type is not None and licence_type.name not in names:
            names.append(licence_type.name)
    if names:
        gaps.append(f"Current licences: {', '.join(names)}")
    return "; ".join(gaps)


def _impact_id(reclassification_id: str, customer_id: str) -> str:
    # Stable per (reclassification, customer) so a retried process run rewrites instead of duplicating.
    return f"{reclassification_id}:{customer_id}"


class ReclassificationService:
    """Assess and commit regulatory reclassifications of controlled substances."""

    def __init__(self, store: ComplianceStore, dispatcher: NotificationDispatcher) -> None:
        self._store = store
        self._guard = ConcurrencyGuard(store)
        self._dispatcher = dispatcher

    async def create_reclassification(
        self,
        *,
        substance_code: str,
        new_opium_act_list: str,
        new_precursor_category: str,
        effective_date: date,
        regulatory_reference: str,
        regulatory_authority: str,
        actor_id: str | None = None,
    ) -> SubstanceReclassification:
        found = await self._store.load(KIND_SUBSTANCE, substance_code)
        if found is None:
            raise NotFoundError(KIND_SUBSTANCE, substance_code)
        substance = found.entity
        if not (regulatory_reference or "").strip():
            raise StructuralValidationError("regulatory_reference is required")
        if not (regulatory_authority or "").strip():
            raise StructuralValidationError("regulatory_authority is required")
        if new_opium_act_list not in OPIUM_SEVERITY:
            raise StructuralValidationError(f"unknown opium act list '{new_opium_act_list}'")
        if new_precursor_category not in PRECURSOR_SEVERITY:
            raise StructuralValidationError(f"unknown precursor category '{new_precursor_category}'")
        if new_opium_act_list == OPIUM_NONE and new_precursor_category == PRECURSOR_NONE:
            raise StructuralValidationError("new classification must keep an opium act list or a precursor category")
        if (
            new_opium_act_list == substance.opium_act_list
            and new_precursor_category == substance.precursor_category
        ):
            raise StructuralValidationError("new classification must differ from the current classification")

        reclassification = SubstanceReclassification(
            id=str(uuid4()),
            substance_code=substance_code,
            previous_opium_act_list=substance.opium_act_list,
            new_opium_act_list=new_opium_act_list,
            previous_precursor_category=substance.precursor_category,
            new_precursor_category=new_precursor_category,
            effective_date=effective_date,
            regulatory_reference=regulatory_reference.strip(),
            regulatory_authority=regulatory_authority.strip(),
            created_at=datetime.now(timezone.utc),
        )
        await self._store.insert(KIND_RECLASSIFICATION, reclassification)
        logger.info(
            "reclassification_created reclassification_id=%s substance_code=%s upgrade=%s",
            reclassification.id,
            substance_code,
            reclassification.is_upgrade,
        )
        await record_event(
            self._store,
            event_type="reclassification.created",
            actor_id=actor_id,
            target=TargetRef(kind=KIND_RECLASSIFICATION, id=reclassification.id),
            outcome=reclassification.status,
            after=reclassification,
        )
        return reclassification

    async def get_reclassification(self, reclassification_id: str) -> Versioned[SubstanceReclassification]:
        found = await self._store.load(KIND_RECLASSIFICATION, reclassification_id)
        if found is None:
            raise NotFoundError(KIND_RECLASSIFICATION, reclassification_id)
        return found

    async def analyze_impact(self, reclassification_id: str, *, today: date | None = None) -> ImpactAnalysis:
        reclassification = (await self.get_reclassification(reclassification_id)).entity
        evaluation_date = today or datetime.now(timezone.utc).date()
        licences = await self._store.list_licences_by_substance(reclassification.substance_code)
        by_customer: dict[str, list[Licence]] = defaultdict(list)
        for licence in licences:
            if licence.holder.kind == "customer":
                by_customer[licence.holder.id].append(licence)
        licence_types = await self._store.get_licence_types({licence.licence_type_id for licence in licences})

        impacts: list[CustomerImpact] = []
        for customer_id in sorted(by_customer):
            customer_licences = by_customer[customer_id]
            sufficient = licences_sufficient(reclassification, customer_licences, licence_types, evaluation_date)
            impacts.append(
                CustomerImpact(
                    id=_impact_id(reclassification.id, customer_id),
                    reclassification_id=reclassification.id,
                    customer_id=customer_id,
                    substance_code=reclassification.substance_code,
                    has_sufficient_licence=sufficient,
                    requires_requalification=not sufficient,
                    gap_summary=None if sufficient else gap_summary(reclassification, customer_licences, licence_types),
                    relevant_licence_ids=tuple(licence.id for licence in customer_licences),
                )
            )
        flagged = sum(1 for impact in impacts if impact.requires_requalification)
        logger.info(
            "reclassification_impact_analyzed reclassification_id=%s total=%s sufficient=%s flagged=%s",
            reclassification.id,
            len(impacts),
            len(impacts) - flagged,
            flagged,
        )
        return ImpactAnalysis(
            reclassification=reclassification,
            total_customers=len(impacts),
            sufficient_count=len(impacts) - flagged,
            flagged_count=flagged,
            customers=tuple(impacts),
        )

    async def process(self, reclassification_id: str, *, actor_id: str | None = None) -> ProcessResult:
        """Commit a pending reclassification.

        The record moves to ``Processing`` before anything else is written and
        falls back to ``Pending`` on any failure, so a retry starts clean.
        Holds created here only take effect once the record is ``Completed``.
        """
        current = await self.get_reclassification(reclassification_id)
        if current.entity.status != RECLASS_PENDING:
            return ProcessResult(
                ok=False,
                message=f"Reclassification is already in status {current.entity.status}",
                reclassification=current.entity,
            )
        processing = await self._guard.compare_and_swap(
            KIND_RECLASSIFICATION,
            reclassification_id,
            current.version,
            lambda row: replace(row, status=RECLASS_PROCESSING),
        )
        original: ControlledSubstance | None = None
        reclassified: Versioned[ControlledSubstance] | None = None
        try:
            analysis = await self.analyze_impact(reclassification_id)
            for impact in analysis.customers:
                await self._save_impact(impact)
            substance = await self._guard.read(KIND_SUBSTANCE, analysis.reclassification.substance_code)
            original = substance.entity
            reclassified = await self._guard.compare_and_swap(
                KIND_SUBSTANCE,
                substance.entity.code,
                substance.version,
                lambda row: replace(
                    row,
                    opium_act_list=analysis.reclassification.new_opium_act_list,
                    precursor_category=analysis.reclassification.new_precursor_category,
                    classification_effective_date=analysis.reclassification.effective_date,
                ),
            )
            completed = await self._guard.compare_and_swap(
                KIND_RECLASSIFICATION,
                reclassification_id,
                processing.version,
                lambda row: replace(
                    row,
                    status=RECLASS_COMPLETED,
                    affected_customer_count=analysis.total_customers,
                    flagged_customer_count=analysis.flagged_count,
                    processed_at=datetime.now(timezone.utc),
                ),
            )
        except Exception as exc:  # noqa: BLE001 - any failure must leave the record retryable.
            logger.exception("reclassification_process_failed reclassification_id=%s", reclassification_id)
            if reclassified is not None and original is not None:
                await self._restore_classification(original, reclassified.version)
            await self._revert_to_pending(reclassification_id)
            return ProcessResult(ok=False, message=f"Error processing reclassification: {exc}")

        reclassification = completed.entity
        await record_event(
            self._store,
            event_type="reclassification.processed",
            actor_id=actor_id,
            target=TargetRef(kind=KIND_RECLASSIFICATION, id=reclassification_id),
            outcome=reclassification.status,
            before=current.entity,
            after=reclassification,
            metadata={"flagged": analysis.flagged_count, "total": analysis.total_customers},
        )
        notification = await self.compliance_notification(reclassification_id)
        await self._notify_compliance_team(notification)
        await self._dispatcher.dispatch(
            EVENT_RECLASSIFICATION_PROCESSED,
            to_jsonable(notification),
            entity_type=KIND_RECLASSIFICATION,
            entity_id=reclassification_id,
            new_status=reclassification.status,
        )
        return ProcessResult(
            ok=True,
            message=f"Reclassification {reclassification_id} completed.",
            reclassification=reclassification,
            analysis=analysis,
        )

    async def _save_impact(self, impact: CustomerImpact) -> None:
        existing = await self._store.load(KIND_CUSTOMER_IMPACT, impact.id)
        if existing is None:
            await self._store.insert(KIND_CUSTOMER_IMPACT, impact)
            return
        await self._guard.compare_and_swap(KIND_CUSTOMER_IMPACT, impact.id, existing.version, lambda _row: impact)

    async def _restore_classification(self, original: ControlledSubstance, version: str) -> None:
        # The substance was already rewritten; put the previous classification back before the retry.
        await self._guard.compare_and_swap(
            KIND_SUBSTANCE,
            original.code,
            version,
            lambda row: replace(
                row,
                opium_act_list=original.opium_act_list,
                precursor_category=original.precursor_category,
                classification_effective_date=original.classification_effective_date,
            ),
        )
        logger.warning("reclassification_classification_restored substance_code=%s", original.code)

    async def _revert_to_pending(self, reclassification_id: str) -> None:
        latest = await self._store.load(KIND_RECLASSIFICATION, reclassification_id)
        if latest is None or latest.entity.status != RECLASS_PROCESSING:
            return
        await self._guard.compare_and_swap(
            KIND_RECLASSIFICATION,
            reclassification_id,
            latest.version,
            lambda row: replace(row, status=RECLASS_PENDING),
        )

    async def list_impacts(self, reclassification_id: str) -> list[Versioned[CustomerImpact]]:
        await self.get_reclassification(reclassification_id)
        return await self._store.list_impacts(reclassification_id)

    async def mark_requalified(
        self,
        reclassification_id: str,
        customer_id: str,
        *,
        expected_version: str | None = None,
        actor_id: str | None = None,
    ) -> Versioned[CustomerImpact]:
        impact_id = _impact_id(reclassification_id, customer_id)
        current = await self._store.load(KIND_CUSTOMER_IMPACT, impact_id)
        if current is None:
            raise NotFoundError(KIND_CUSTOMER_IMPACT, impact_id)
        requalified_at = datetime.now(timezone.utc)
        saved = await self._guard.compare_and_swap(
            KIND_CUSTOMER_IMPACT,
            impact_id,
            expected_version or current.version,
            lambda row: replace(row, requires_requalification=False, requalified_at=requalified_at),
            base=current.entity,
        )
        logger.info(
            "customer_requalified reclassification_id=%s customer_id=%s", reclassification_id, customer_id
        )
        await record_event(
            self._store,
            event_type="reclassification.customer.requalified",
            actor_id=actor_id,
            target=TargetRef(kind=KIND_CUSTOMER_IMPACT, id=impact_id),
            outcome="success",
            before=current.entity,
            after=saved.entity,
        )
        return saved

    async def get_effective_classification(self, substance_code: str, as_of: date) -> Classification:
        history = [
            item
            for item in await self._store.list_reclassifications(substance_code)
            if item.status == RECLASS_COMPLETED
        ]
        history.sort(key=lambda item: (item.effective_date, item.processed_at or datetime.min.replace(tzinfo=timezone.utc)))
        in_force = [item for item in history if item.effective_date <= as_of]
        if in_force:
            latest = in_force[-1]
            return Classification(
                substance_code=substance_code,
                as_of=as_of,
                opium_act_list=latest.new_opium_act_list,
                precursor_category=latest.new_precursor_category,
                source_reclassification_id=latest.id,
            )
        if history:
            # Before the first change took effect the original values were in force.
            earliest = history[0]
            return Classification(
                substance_code=substance_code,
                as_of=as_of,
                opium_act_list=earliest.previous_opium_act_list,
                precursor_category=earliest.previous_precursor_category,
                source_reclassification_id=earliest.id,
            )
        found = await self._store.load(KIND_SUBSTANCE, substance_code)
        if found is None:
            raise NotFoundError(KIND_SUBSTANCE, substance_code)
        return Classification(
            substance_code=substance_code,
            as_of=as_of,
            opium_act_list=found.entity.opium_act_list,
            precursor_category=found.entity.precursor_category,
        )

    async def compliance_notification(self, reclassification_id: str) -> ComplianceNotification:
        reclassification = (await self.get_reclassification(reclassification_id)).entity
        substance = await self._store.load(KIND_SUBSTANCE, reclassification.substance_code)
        impacts = [item.entity for item in await self._store.list_impacts(reclassification_id)]
        actions = tuple(
            CustomerAction(
                customer_id=impact.customer_id,
                action_required=ACTION_UPDATE_LICENCE,
                gap_summary=impact.gap_summary,
                relevant_licence_ids=impact.relevant_licence_ids,
            )
            for impact in sorted(impacts, key=lambda item: item.customer_id)
            if impact.requires_requalification
        )
        return ComplianceNotification(
            reclassification_id=reclassification_id,
            substance_code=reclassification.substance_code,
            substance_name=substance.entity.name if substance else "Unknown",
            regulatory_reference=reclassification.regulatory_reference,
            effective_date=reclassification.effective_date,
            total_customers=len(impacts),
            customers_requiring_action=len(actions),
            required_actions=actions,
        )

    async def _notify_compliance_team(self, notification: ComplianceNotification) -> None:
        if not notification.customers_requiring_action:
            return
        await self._store.insert_alert(
            Alert(
                id=str(uuid4()),
                alert_type="ReclassificationRequiresAction",
                severity="Warning",
                target=TargetRef(kind=KIND_RECLASSIFICATION, id=notification.reclassification_id),
                audience=AUDIENCE_COMPLIANCE_TEAM,
                message=(
                    f"{notification.customers_requiring_action} of {notification.total_customers} customers need "
                    f"re-qualification for {notification.substance_name} ({notification.regulatory_reference})."
                ),
                created_at=datetime.now(timezone.utc),
                details={"customer_ids": [action.customer_id for action in notification.required_actions]},
            )
        )
