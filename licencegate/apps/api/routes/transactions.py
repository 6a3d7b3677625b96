from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from licencegate.apps.api.deps import (
    Actor,
    get_actor,
    get_override_workflow,
    get_validation_service,
    optional_if_match,
)
from licencegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, VALIDATE_ERROR_RESPONSES, WRITE_ERROR_RESPONSES
from licencegate.apps.api.response import SuccessEnvelope, etag_for, get_request_id, success_response
from licencegate.domain.compliance import Transaction, TransactionLine, TransactionRequest
from licencegate.services.overrides import (
    OVERRIDE_CONFLICT,
    OVERRIDE_INVALID_STATE,
    OVERRIDE_NOT_FOUND,
    OVERRIDE_UNAUTHORIZED,
    OVERRIDE_VALIDATION_ERROR,
    OverrideResult,
    OverrideWorkflow,
)
from licencegate.services.validation import ValidationService


router = APIRouter(prefix="/transactions", tags=["transactions"], responses=DEFAULT_ERROR_RESPONSES)

_OVERRIDE_HTTP_STATUS = {
    OVERRIDE_NOT_FOUND: 404,
    OVERRIDE_INVALID_STATE: 409,
    OVERRIDE_UNAUTHORIZED: 403,
    OVERRIDE_VALIDATION_ERROR: 422,
    OVERRIDE_CONFLICT: 409,
}


class TransactionLineIn(BaseModel):
    substance_code: str
    quantity: Decimal
    unit: str


class ValidateRequest(BaseModel):
    external_id: str = Field(min_length=1, max_length=128)
    customer_account: str
    customer_data_area: str
    transaction_type: str
    transaction_date: date
    lines: list[TransactionLineIn]
    destination_country: str | None = None


class ViolationOut(BaseModel):
    violation_type: str
    code: str
    substance_code: str | None = None
    licence_type_required: str | None = None
    line_number: int | None = None
    message: str
    blocking: bool


class TransactionOut(BaseModel):
    id: str
    external_id: str
    status: str
    codes: list[str]
    violations: list[ViolationOut]
    customer_id: str | None
    customer_account: str
    customer_data_area: str
    transaction_type: str
    transaction_date: date
    calling_system: str | None = None
    approver_id: str | None = None
    reason_code: str | None = None
    justification: str | None = None
    authority_ref: str | None = None
    decided_at: datetime | None = None
    version: str | None = None


class OverrideRequest(BaseModel):
    reason_code: str
    justification: str
    authority_ref: str | None = None


def _to_payload(transaction: Transaction, version: str | None = None) -> TransactionOut:
    return TransactionOut(
        id=transaction.id,
        external_id=transaction.external_id,
        status=transaction.status,
        codes=sorted({violation.code for violation in transaction.violations}),
        violations=[ViolationOut(**violation.to_dict()) for violation in transaction.violations],
        customer_id=transaction.customer_id,
        customer_account=transaction.customer_account,
        customer_data_area=transaction.customer_data_area,
        transaction_type=transaction.transaction_type,
        transaction_date=transaction.transaction_date,
        calling_system=transaction.calling_system,
        approver_id=transaction.approver_id,
        reason_code=transaction.reason_code,
        justification=transaction.justification,
        authority_ref=transaction.authority_ref,
        decided_at=transaction.decided_at,
        version=version,
    )


def _raise_for_result(result: OverrideResult) -> None:
    if result.ok:
        return
    details = result.conflict.to_details() if result.conflict is not None else None
    raise HTTPException(
        status_code=_OVERRIDE_HTTP_STATUS.get(result.code, 400),
        detail={"code": result.code, "message": result.message, **(details or {})},
    )


@router.post(
    "/validate",
    response_model=SuccessEnvelope[TransactionOut] | TransactionOut,
    responses=VALIDATE_ERROR_RESPONSES,
)
async def validate_transaction(
    request: Request,
    body: ValidateRequest,
    response: Response,
    actor: Actor = Depends(get_actor),
    service: ValidationService = Depends(get_validation_service),
) -> dict:
    # Every call records a new transaction; verdicts are never cached.
    transaction = await service.validate_transaction(
        TransactionRequest(
            external_id=body.external_id,
            customer_account=body.customer_account,
            customer_data_area=body.customer_data_area,
            transaction_type=body.transaction_type,
            transaction_date=body.transaction_date,
            lines=tuple(
                TransactionLine(substance_code=line.substance_code, quantity=line.quantity, unit=line.unit)
                for line in body.lines
            ),
            destination_country=body.destination_country,
            calling_system=actor.calling_system,
        ),
        actor_id=actor.actor_id,
        request_id=get_request_id(request),
    )
    response.headers["ETag"] = etag_for("1")
    return success_response(request=request, data=_to_payload(transaction, "1"))


@router.get("", response_model=SuccessEnvelope[list[TransactionOut]] | list[TransactionOut])
async def list_transactions(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    service: ValidationService = Depends(get_validation_service),
) -> dict:
    rows = await service.list_transactions(status=status, limit=limit)
    return success_response(request=request, data=[_to_payload(row) for row in rows])


@router.get("/{transaction_id}", response_model=SuccessEnvelope[TransactionOut] | TransactionOut)
async def get_transaction(
    request: Request,
    transaction_id: str,
    response: Response,
    service: ValidationService = Depends(get_validation_service),
) -> dict:
    found = await service.get_transaction(transaction_id)
    response.headers["ETag"] = etag_for(found.version)
    return success_response(request=request, data=_to_payload(found.entity, found.version))


async def _decide(
    request: Request,
    response: Response,
    transaction_id: str,
    body: OverrideRequest,
    actor: Actor,
    expected_version: str | None,
    workflow: OverrideWorkflow,
    *,
    approve: bool,
) -> dict:
    decide = workflow.approve if approve else workflow.reject
    result = await decide(
        transaction_id,
        actor.as_approver(),
        body.reason_code,
        body.justification,
        body.authority_ref,
        expected_version=expected_version,
        request_id=get_request_id(request),
    )
    _raise_for_result(result)
    assert result.transaction is not None and result.version is not None
    response.headers["ETag"] = etag_for(result.version)
    return success_response(request=request, data=_to_payload(result.transaction, result.version))


@router.post(
    "/{transaction_id}/override/approve",
    response_model=SuccessEnvelope[TransactionOut] | TransactionOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def approve_override(
    request: Request,
    response: Response,
    transaction_id: str,
    body: OverrideRequest,
    actor: Actor = Depends(get_actor),
    expected_version: str | None = Depends(optional_if_match),
    workflow: OverrideWorkflow = Depends(get_override_workflow),
) -> dict:
    return await _decide(request, response, transaction_id, body, actor, expected_version, workflow, approve=True)


@router.post(
    "/{transaction_id}/override/reject",
    response_model=SuccessEnvelope[TransactionOut] | TransactionOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def reject_override(
    request: Request,
    response: Response,
    transaction_id: str,
    body: OverrideRequest,
    actor: Actor = Depends(get_actor),
    expected_version: str | None = Depends(optional_if_match),
    workflow: OverrideWorkflow = Depends(get_override_workflow),
) -> dict:
    return await _decide(request, response, transaction_id, body, actor, expected_version, workflow, approve=False)
