from __future__ import annotations

from datetime import date

import pytest

from licencegate.core.errors import ConcurrencyConflictError, NotFoundError, StructuralValidationError
from licencegate.domain.compliance import LicenceSubstanceMapping
from licencegate.services.records import RecordService


@pytest.mark.asyncio
async def test_licence_update_bumps_version_and_audits(world) -> None:
    service = RecordService(world)
    current = await service.get_licence("lic-cust-1")

    saved = await service.update_licence(
        "lic-cust-1",
        current.version,
        {"expiry_date": date(2031, 12, 31)},
        actor_id="qa-anna",
        request_id="req-7",
    )
    assert saved.version == "2"
    assert saved.entity.expiry_date == date(2031, 12, 31)

    record = world.audit_log[-1]
    assert record.event_type == "licence.updated"
    assert record.before["expiry_date"] == "2030-12-31"
    assert record.after["expiry_date"] == "2031-12-31"
    assert record.metadata == {"fields": ["expiry_date"], "request_id": "req-7"}


@pytest.mark.asyncio
async def test_stale_update_reports_conflicting_fields(world) -> None:
    service = RecordService(world)
    await service.update_licence("lic-cust-1", "1", {"status": "Suspended"})

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        await service.update_licence("lic-cust-1", "1", {"status": "Revoked"})
    assert excinfo.value.current_version == "2"
    assert excinfo.value.conflicting_fields == ["status"]


@pytest.mark.asyncio
async def test_immutable_and_unknown_values_are_rejected(world) -> None:
    service = RecordService(world)
    with pytest.raises(StructuralValidationError):
        await service.update_licence("lic-cust-1", "1", {"licence_number": "X"})
    with pytest.raises(StructuralValidationError):
        await service.update_licence("lic-cust-1", "1", {"status": "Lapsed"})
    with pytest.raises(StructuralValidationError):
        await service.update_licence("lic-cust-1", "1", {"permitted_activities": ["Smuggle"]})
    with pytest.raises(StructuralValidationError):
        await service.update_customer_compliance("cust-1", "1", {})


@pytest.mark.asyncio
async def test_customer_compliance_update(world) -> None:
    service = RecordService(world)
    saved = await service.update_customer_compliance(
        "cust-1", "1", {"is_suspended": True, "suspension_reason": "IGJ inspection"}
    )
    assert saved.entity.is_suspended
    with pytest.raises(NotFoundError):
        await service.update_customer_compliance("cust-404", "1", {"is_suspended": True})


@pytest.mark.asyncio
async def test_mapping_cannot_outlive_its_licence(world) -> None:
    with pytest.raises(StructuralValidationError):
        await world.put_mapping(
            LicenceSubstanceMapping(
                licence_id="lic-cust-1",
                substance_code="EPHED",
                effective_date=date(2024, 1, 1),
                expiry_date=date(2099, 12, 31),
            )
        )
    with pytest.raises(NotFoundError):
        await world.put_mapping(
            LicenceSubstanceMapping(licence_id="lic-ghost", substance_code="EPHED", effective_date=date(2024, 1, 1))
        )
    assert {m.substance_code for m in await world.list_mappings(["lic-cust-1"])} == {"MORPH", "CODE"}


@pytest.mark.asyncio
async def test_shortened_licence_clamps_its_mappings(world) -> None:
    service = RecordService(world)
    await service.update_licence("lic-cust-1", "1", {"expiry_date": date(2026, 6, 1)}, request_id="req-9")

    mappings = await world.list_mappings(["lic-cust-1"])
    assert {m.expiry_date for m in mappings} == {date(2026, 6, 1)}

    clamped = [r for r in world.audit_log if r.event_type == "licence.mappings.clamped"]
    assert len(clamped) == 1
    assert clamped[0].metadata["substances"] == ["CODE", "MORPH"]
