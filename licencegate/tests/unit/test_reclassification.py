from __future__ import annotations

from datetime import date

import pytest

from licencegate.core.errors import NotFoundError, StructuralValidationError
from licencegate.domain.compliance import (
    AUDIENCE_COMPLIANCE_TEAM,
    CODE_REQUIRES_REQUALIFICATION,
    EVENT_RECLASSIFICATION_PROCESSED,
    OPIUM_LIST_I,
    OPIUM_LIST_II,
    PRECURSOR_CATEGORY_1,
    PRECURSOR_NONE,
    RECLASS_COMPLETED,
    RECLASS_PENDING,
    STATUS_PASS,
    STATUS_PENDING,
)
from licencegate.persistence.store import KIND_RECLASSIFICATION, KIND_SUBSTANCE
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.services.reclassification import ReclassificationService
from licencegate.services.validation import ValidationService
from licencegate.tests.utils.world import TODAY, add_customer_licence, order


EFFECTIVE = date(2026, 3, 1)


async def _morphine_precursor_upgrade(service: ReclassificationService):
    # Morphine additionally becomes a Category 1 precursor; the pharmacy lacks HandlePrecursors.
    return await service.create_reclassification(
        substance_code="MORPH",
        new_opium_act_list=OPIUM_LIST_I,
        new_precursor_category=PRECURSOR_CATEGORY_1,
        effective_date=EFFECTIVE,
        regulatory_reference="Stcrt. 2026-4411",
        regulatory_authority="Farmatec",
        actor_id="compliance-eva",
    )


@pytest.mark.asyncio
async def test_impact_analysis_flags_customers_without_cover(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    await add_customer_licence(
        world,
        "lic-cust-2",
        "cust-2",
        ("MORPH",),
        licence_type_id="lt-precursor",
        activities=frozenset({"HandlePrecursors", "Possess", "Store"}),
    )
    reclassification = await _morphine_precursor_upgrade(service)

    analysis = await service.analyze_impact(reclassification.id, today=TODAY)
    assert analysis.total_customers == 2
    assert analysis.flagged_count == 1
    flagged = [impact for impact in analysis.customers if impact.requires_requalification]
    assert [impact.customer_id for impact in flagged] == ["cust-1"]
    assert "Precursor Category1" in flagged[0].gap_summary


@pytest.mark.asyncio
async def test_downgrade_never_flags(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    reclassification = await service.create_reclassification(
        substance_code="MORPH",
        new_opium_act_list=OPIUM_LIST_II,
        new_precursor_category=PRECURSOR_NONE,
        effective_date=EFFECTIVE,
        regulatory_reference="Stcrt. 2026-5000",
        regulatory_authority="Farmatec",
    )
    analysis = await service.analyze_impact(reclassification.id, today=TODAY)
    assert analysis.flagged_count == 0


@pytest.mark.asyncio
async def test_process_creates_hold_until_requalified(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    validation = ValidationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)

    before = await validation.validate_transaction(order(("MORPH", "1", "g")), today=TODAY)
    assert before.status == STATUS_PASS

    result = await service.process(reclassification.id, actor_id="compliance-eva")
    assert result.ok
    assert result.reclassification.status == RECLASS_COMPLETED
    assert result.reclassification.flagged_customer_count == 1

    held = await validation.validate_transaction(order(("MORPH", "1", "g"), external_id="SO-1001"), today=TODAY)
    assert held.status == STATUS_PENDING
    assert CODE_REQUIRES_REQUALIFICATION in {v.code for v in held.violations}

    alerts = await world.list_alerts(audience=AUDIENCE_COMPLIANCE_TEAM)
    assert [alert.alert_type for alert in alerts] == ["ReclassificationRequiresAction"]

    await service.mark_requalified(reclassification.id, "cust-1", actor_id="compliance-eva")
    cleared = await validation.validate_transaction(order(("MORPH", "1", "g"), external_id="SO-1002"), today=TODAY)
    assert CODE_REQUIRES_REQUALIFICATION not in {v.code for v in cleared.violations}


@pytest.mark.asyncio
async def test_completed_reclassification_cannot_be_reprocessed(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)
    assert (await service.process(reclassification.id)).ok

    again = await service.process(reclassification.id)
    assert not again.ok
    assert "Completed" in again.message


@pytest.mark.asyncio
async def test_failed_processing_reverts_to_pending(world, dispatcher, monkeypatch) -> None:
    service = ReclassificationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)
    original_swap = world.swap

    async def failing_swap(kind, entity_id, expected_version, entity):
        if kind == KIND_SUBSTANCE:
            raise RuntimeError("substance table locked")
        return await original_swap(kind, entity_id, expected_version, entity)

    monkeypatch.setattr(world, "swap", failing_swap)
    result = await service.process(reclassification.id)
    assert not result.ok

    stored = await world.load(KIND_RECLASSIFICATION, reclassification.id)
    assert stored.entity.status == RECLASS_PENDING
    substance = await world.load(KIND_SUBSTANCE, "MORPH")
    assert substance.entity.precursor_category == PRECURSOR_NONE
    # Impacts written before the failure stay inert while the record is not Completed.
    assert await world.list_open_impacts("cust-1") == []

    monkeypatch.setattr(world, "swap", original_swap)
    assert (await service.process(reclassification.id)).ok


@pytest.mark.asyncio
async def test_failed_completion_restores_substance_classification(world, dispatcher, monkeypatch) -> None:
    service = ReclassificationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)
    original_swap = world.swap
    reclassification_writes = []

    async def failing_swap(kind, entity_id, expected_version, entity):
        if kind == KIND_RECLASSIFICATION:
            reclassification_writes.append(entity.status)
            if entity.status == RECLASS_COMPLETED:
                raise RuntimeError("connection reset")
        return await original_swap(kind, entity_id, expected_version, entity)

    monkeypatch.setattr(world, "swap", failing_swap)
    result = await service.process(reclassification.id)
    assert not result.ok
    assert reclassification_writes == ["Processing", RECLASS_COMPLETED, RECLASS_PENDING]

    stored = await world.load(KIND_RECLASSIFICATION, reclassification.id)
    assert stored.entity.status == RECLASS_PENDING
    substance = await world.load(KIND_SUBSTANCE, "MORPH")
    assert substance.entity.opium_act_list == OPIUM_LIST_I
    assert substance.entity.precursor_category == PRECURSOR_NONE
    assert substance.entity.classification_effective_date is None
    assert await world.list_open_impacts("cust-1") == []

    monkeypatch.setattr(world, "swap", original_swap)
    retried = await service.process(reclassification.id)
    assert retried.ok
    assert (await world.load(KIND_SUBSTANCE, "MORPH")).entity.precursor_category == PRECURSOR_CATEGORY_1


@pytest.mark.asyncio
async def test_classification_history_is_preserved(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)
    await service.process(reclassification.id)

    earlier = await service.get_effective_classification("MORPH", date(2026, 2, 15))
    later = await service.get_effective_classification("MORPH", date(2026, 3, 2))
    assert (earlier.opium_act_list, earlier.precursor_category) == (OPIUM_LIST_I, PRECURSOR_NONE)
    assert (later.opium_act_list, later.precursor_category) == (OPIUM_LIST_I, PRECURSOR_CATEGORY_1)
    assert later.source_reclassification_id == reclassification.id


@pytest.mark.asyncio
async def test_unchanged_classification_is_rejected(world, dispatcher) -> None:
    service = ReclassificationService(world, dispatcher)
    with pytest.raises(StructuralValidationError):
        await service.create_reclassification(
            substance_code="CODE",
            new_opium_act_list=OPIUM_LIST_II,
            new_precursor_category=PRECURSOR_NONE,
            effective_date=EFFECTIVE,
            regulatory_reference="Stcrt. 2026-1",
            regulatory_authority="Farmatec",
        )
    with pytest.raises(NotFoundError):
        await service.create_reclassification(
            substance_code="NOPE",
            new_opium_act_list=OPIUM_LIST_I,
            new_precursor_category=PRECURSOR_NONE,
            effective_date=EFFECTIVE,
            regulatory_reference="Stcrt. 2026-1",
            regulatory_authority="Farmatec",
        )


@pytest.mark.asyncio
async def test_processed_event_is_dispatched_to_subscribers(world, queue, clock) -> None:
    dispatcher = NotificationDispatcher(world, enqueue=queue, clock=clock)
    await dispatcher.create_subscription(
        callback_url="https://erp.example.test/hooks", event_types=[EVENT_RECLASSIFICATION_PROCESSED]
    )
    service = ReclassificationService(world, dispatcher)
    reclassification = await _morphine_precursor_upgrade(service)
    await service.process(reclassification.id)

    assert len(queue.calls) == 1
