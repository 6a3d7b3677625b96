from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import date

import pytest

from licencegate.core.errors import ConcurrencyConflictError, NotFoundError
from licencegate.persistence.store import KIND_LICENCE
from licencegate.services.concurrency import ConcurrencyGuard, diff_fields


@pytest.mark.asyncio
async def test_two_writers_on_same_version_one_conflicts(world) -> None:
    guard = ConcurrencyGuard(world)
    original = await guard.read(KIND_LICENCE, "lic-cust-1")

    results = await asyncio.gather(
        guard.compare_and_swap(
            KIND_LICENCE,
            "lic-cust-1",
            original.version,
            lambda row: replace(row, expiry_date=date(2031, 6, 30)),
            base=original.entity,
        ),
        guard.compare_and_swap(
            KIND_LICENCE,
            "lic-cust-1",
            original.version,
            lambda row: replace(row, status="Suspended"),
            base=original.entity,
        ),
        return_exceptions=True,
    )

    conflicts = [item for item in results if isinstance(item, ConcurrencyConflictError)]
    saved = [item for item in results if not isinstance(item, BaseException)]
    assert len(conflicts) == 1
    assert len(saved) == 1
    conflict = conflicts[0]
    assert conflict.expected_version == "1"
    assert conflict.current_version == "2"
    assert "status" in conflict.conflicting_fields
    assert "expiry_date" in conflict.conflicting_fields

    stored = await world.load(KIND_LICENCE, "lic-cust-1")
    assert stored.version == "2"


@pytest.mark.asyncio
async def test_stale_version_writes_nothing(world) -> None:
    guard = ConcurrencyGuard(world)
    await guard.compare_and_swap(KIND_LICENCE, "lic-cust-1", "1", lambda row: replace(row, status="Suspended"))

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        await guard.compare_and_swap(KIND_LICENCE, "lic-cust-1", "1", lambda row: replace(row, status="Revoked"))

    stored = await world.load(KIND_LICENCE, "lic-cust-1")
    assert stored.entity.status == "Suspended"
    assert excinfo.value.to_details()["current_version"] == "2"


@pytest.mark.asyncio
async def test_missing_record_raises_not_found(world) -> None:
    guard = ConcurrencyGuard(world)
    with pytest.raises(NotFoundError):
        await guard.compare_and_swap(KIND_LICENCE, "lic-missing", "1", lambda row: row)


def test_diff_fields_lists_changed_attributes() -> None:
    assert diff_fields(_Row(1, "x"), _Row(2, "x")) == ["a"]
    assert diff_fields(None, _Row(1, "x")) == []


@dataclass(frozen=True)
class _Row:
    a: int
    b: str
