from __future__ import annotations

import asyncio

import pytest

from licencegate.domain.compliance import (
    EVENT_ORDER_APPROVED,
    STATUS_OVERRIDE_APPROVED,
    STATUS_PASS,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from licencegate.persistence.store import KIND_TRANSACTION
from licencegate.services.overrides import (
    OVERRIDE_CONFLICT,
    OVERRIDE_INVALID_STATE,
    OVERRIDE_NOT_FOUND,
    OVERRIDE_OK,
    OVERRIDE_UNAUTHORIZED,
    OVERRIDE_VALIDATION_ERROR,
    Approver,
    OverrideWorkflow,
)
from licencegate.services.validation import ValidationService
from licencegate.tests.utils.world import TODAY, order


MANAGER = Approver(id="qa-anna", roles=frozenset({"QAManager"}))
JUSTIFICATION_20 = "Renewal filed Feb 26"


async def _pending_transaction(world, dispatcher) -> str:
    service = ValidationService(world, dispatcher)
    transaction = await service.validate_transaction(order(("EPHED", "1", "kg")), today=TODAY)
    assert transaction.status == STATUS_PENDING
    return transaction.id


@pytest.mark.asyncio
async def test_justification_length_boundary(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)
    assert len(JUSTIFICATION_20) == 20

    short = await workflow.approve(transaction_id, MANAGER, "LicenceRenewalInProgress", JUSTIFICATION_20[:19])
    assert short.code == OVERRIDE_VALIDATION_ERROR
    assert (await world.load(KIND_TRANSACTION, transaction_id)).entity.status == STATUS_PENDING

    result = await workflow.approve(transaction_id, MANAGER, "LicenceRenewalInProgress", JUSTIFICATION_20)
    assert result.code == OVERRIDE_OK
    assert result.transaction.status == STATUS_OVERRIDE_APPROVED
    assert result.transaction.approver_id == "qa-anna"
    assert result.version == "2"


@pytest.mark.asyncio
async def test_unauthorized_role_is_refused(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)
    clerk = Approver(id="sales-bob", roles=frozenset({"SalesAdmin"}))

    result = await workflow.approve(transaction_id, clerk, "EmergencyMedicalSupply", "x" * 40)
    assert result.code == OVERRIDE_UNAUTHORIZED


@pytest.mark.asyncio
async def test_unknown_reason_code_is_a_validation_error(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)

    result = await workflow.approve(transaction_id, MANAGER, "BecauseISaidSo", "x" * 40)
    assert result.code == OVERRIDE_VALIDATION_ERROR


@pytest.mark.asyncio
async def test_decided_transaction_cannot_be_reopened(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)

    rejected = await workflow.reject(transaction_id, MANAGER, "Other", "Customer licence lapsed, no renewal")
    assert rejected.ok
    assert rejected.transaction.status == STATUS_REJECTED

    again = await workflow.approve(transaction_id, MANAGER, "Other", "Customer licence lapsed, no renewal")
    assert again.code == OVERRIDE_INVALID_STATE
    assert again.transaction.status == STATUS_REJECTED


@pytest.mark.asyncio
async def test_passing_transaction_is_not_overridable(world, dispatcher) -> None:
    service = ValidationService(world, dispatcher)
    transaction = await service.validate_transaction(order(("MORPH", "1", "g")), today=TODAY)
    assert transaction.status == STATUS_PASS

    result = await OverrideWorkflow(world, dispatcher).approve(transaction.id, MANAGER, "Other", "x" * 25)
    assert result.code == OVERRIDE_INVALID_STATE


@pytest.mark.asyncio
async def test_unknown_transaction_is_not_found(world, dispatcher) -> None:
    result = await OverrideWorkflow(world, dispatcher).approve("tx-missing", MANAGER, "Other", "x" * 25)
    assert result.code == OVERRIDE_NOT_FOUND


@pytest.mark.asyncio
async def test_stale_if_match_reports_conflict(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)

    result = await workflow.approve(
        transaction_id, MANAGER, "AuthorityPreApproval", "Farmatec pre-approval 2026-114", expected_version="7"
    )
    assert result.code == OVERRIDE_CONFLICT
    assert result.conflict is not None
    assert result.conflict.current_version == "1"


@pytest.mark.asyncio
async def test_approval_is_audited_with_before_and_after(world, dispatcher) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    await OverrideWorkflow(world, dispatcher).approve(
        transaction_id, MANAGER, "EmergencyMedicalSupply", "Hospital stock-out, ICU request", request_id="req-42"
    )

    records = [r for r in world.audit_log if r.event_type == "transaction.override.approved"]
    assert len(records) == 1
    record = records[0]
    assert record.actor_id == "qa-anna"
    assert record.before["status"] == STATUS_PENDING
    assert record.after["status"] == STATUS_OVERRIDE_APPROVED
    assert record.metadata["request_id"] == "req-42"


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject_decide_once(world, dispatcher, monkeypatch) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    workflow = OverrideWorkflow(world, dispatcher)
    original_load = world.load

    async def yielding_load(kind, entity_id):
        # Let the other decision read the same row before either writes.
        await asyncio.sleep(0)
        return await original_load(kind, entity_id)

    monkeypatch.setattr(world, "load", yielding_load)
    approved, rejected = await asyncio.gather(
        workflow.approve(transaction_id, MANAGER, "LicenceRenewalInProgress", "Renewal filed Feb 26, ref 88"),
        workflow.reject(transaction_id, MANAGER, "Other", "Customer licence lapsed, no renewal"),
    )

    codes = [approved.code, rejected.code]
    assert codes.count(OVERRIDE_OK) == 1
    assert {code for code in codes if code != OVERRIDE_OK} <= {OVERRIDE_CONFLICT, OVERRIDE_INVALID_STATE}

    winner = approved if approved.code == OVERRIDE_OK else rejected
    stored = await original_load(KIND_TRANSACTION, transaction_id)
    assert stored.entity.status == winner.transaction.status
    assert stored.version == "2"
    decided = [r for r in world.audit_log if r.event_type.startswith("transaction.override.")]
    assert len(decided) == 1


@pytest.mark.asyncio
async def test_approval_releases_the_order_to_subscribers(world, dispatcher, queue) -> None:
    transaction_id = await _pending_transaction(world, dispatcher)
    subscription, _secret = await dispatcher.create_subscription(
        callback_url="https://erp.example.test/orders", event_types=[EVENT_ORDER_APPROVED]
    )
    workflow = OverrideWorkflow(world, dispatcher)

    result = await workflow.approve(transaction_id, MANAGER, "EmergencyMedicalSupply", "Hospital stock-out, ICU request")
    assert result.code == OVERRIDE_OK

    delivered = await world.list_subscription_events(subscription.id)
    assert [event.event_type for event, _delivery in delivered] == [EVENT_ORDER_APPROVED]
    assert delivered[0][0].payload["transaction_id"] == transaction_id
    assert delivered[0][0].payload["status"] == STATUS_OVERRIDE_APPROVED
    assert len(queue.calls) == 1
