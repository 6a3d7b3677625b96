from __future__ import annotations

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from licencegate.apps.api.deps import Actor, get_actor, get_record_service, require_if_match
from licencegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, WRITE_ERROR_RESPONSES
from licencegate.apps.api.response import SuccessEnvelope, etag_for, get_request_id, success_response
from licencegate.domain.compliance import Customer, Licence
from licencegate.services.records import RecordService


router = APIRouter(tags=["records"], responses=DEFAULT_ERROR_RESPONSES)


class LicenceOut(BaseModel):
    id: str
    licence_number: str
    licence_type_id: str
    holder_kind: str
    holder_id: str
    issuing_authority: str
    issue_date: date
    expiry_date: date
    grace_period_end: date | None = None
    status: str
    effective_status: str
    permitted_activities: list[str]
    version: str


class LicencePatch(BaseModel):
    status: str | None = None
    expiry_date: date | None = None
    grace_period_end: date | None = None
    permitted_activities: list[str] | None = None


class CustomerOut(BaseModel):
    id: str
    account: str
    data_area: str
    business_name: str
    business_category: str
    approval_status: str
    is_suspended: bool
    suspension_reason: str | None = None
    gdp_qualification_status: str
    reverification_due: date | None = None
    version: str


class CustomerCompliancePatch(BaseModel):
    approval_status: str | None = None
    is_suspended: bool | None = None
    suspension_reason: str | None = None
    gdp_qualification_status: str | None = None
    reverification_due: date | None = None


def _licence_payload(licence: Licence, version: str) -> LicenceOut:
    return LicenceOut(
        id=licence.id,
        licence_number=licence.licence_number,
        licence_type_id=licence.licence_type_id,
        holder_kind=licence.holder.kind,
        holder_id=licence.holder.id,
        issuing_authority=licence.issuing_authority,
        issue_date=licence.issue_date,
        expiry_date=licence.expiry_date,
        grace_period_end=licence.grace_period_end,
        status=licence.status,
        effective_status=licence.effective_status(datetime.now(timezone.utc).date()),
        permitted_activities=sorted(licence.permitted_activities),
        version=version,
    )


def _customer_payload(customer: Customer, version: str) -> CustomerOut:
    return CustomerOut(
        id=customer.id,
        account=customer.account,
        data_area=customer.data_area,
        business_name=customer.business_name,
        business_category=customer.business_category,
        approval_status=customer.approval_status,
        is_suspended=customer.is_suspended,
        suspension_reason=customer.suspension_reason,
        gdp_qualification_status=customer.gdp_qualification_status,
        reverification_due=customer.reverification_due,
        version=version,
    )


@router.get("/licences/{licence_id}", response_model=SuccessEnvelope[LicenceOut] | LicenceOut)
async def get_licence(
    request: Request,
    response: Response,
    licence_id: str,
    service: RecordService = Depends(get_record_service),
) -> dict:
    found = await service.get_licence(licence_id)
    response.headers["ETag"] = etag_for(found.version)
    return success_response(request=request, data=_licence_payload(found.entity, found.version))


@router.patch(
    "/licences/{licence_id}",
    response_model=SuccessEnvelope[LicenceOut] | LicenceOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def update_licence(
    request: Request,
    response: Response,
    licence_id: str,
    body: LicencePatch,
    expected_version: str = Depends(require_if_match),
    actor: Actor = Depends(get_actor),
    service: RecordService = Depends(get_record_service),
) -> dict:
    saved = await service.update_licence(
        licence_id,
        expected_version,
        body.model_dump(exclude_unset=True),
        actor_id=actor.actor_id,
        request_id=get_request_id(request),
    )
    response.headers["ETag"] = etag_for(saved.version)
    return success_response(request=request, data=_licence_payload(saved.entity, saved.version))


@router.get("/customers/{customer_id}", response_model=SuccessEnvelope[CustomerOut] | CustomerOut)
async def get_customer(
    request: Request,
    response: Response,
    customer_id: str,
    service: RecordService = Depends(get_record_service),
) -> dict:
    found = await service.get_customer(customer_id)
    response.headers["ETag"] = etag_for(found.version)
    return success_response(request=request, data=_customer_payload(found.entity, found.version))


@router.patch(
    "/customers/{customer_id}/compliance",
    response_model=SuccessEnvelope[CustomerOut] | CustomerOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def update_customer_compliance(
    request: Request,
    response: Response,
    customer_id: str,
    body: CustomerCompliancePatch,
    expected_version: str = Depends(require_if_match),
    actor: Actor = Depends(get_actor),
    service: RecordService = Depends(get_record_service),
) -> dict:
    saved = await service.update_customer_compliance(
        customer_id,
        expected_version,
        body.model_dump(exclude_unset=True),
        actor_id=actor.actor_id,
        request_id=get_request_id(request),
    )
    response.headers["ETag"] = etag_for(saved.version)
    return success_response(request=request, data=_customer_payload(saved.entity, saved.version))
