from __future__ import annotations

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel

from licencegate.apps.api.deps import Actor, get_actor, get_reclassification_service, optional_if_match
from licencegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES, WRITE_ERROR_RESPONSES
from licencegate.apps.api.response import SuccessEnvelope, etag_for, success_response
from licencegate.domain.compliance import CustomerImpact, SubstanceReclassification
from licencegate.services.reclassification import ImpactAnalysis, ReclassificationService


router = APIRouter(tags=["reclassifications"], responses=DEFAULT_ERROR_RESPONSES)


class ReclassificationCreate(BaseModel):
    substance_code: str
    new_opium_act_list: str
    new_precursor_category: str
    effective_date: date
    regulatory_reference: str
    regulatory_authority: str


class ReclassificationOut(BaseModel):
    id: str
    substance_code: str
    previous_opium_act_list: str
    new_opium_act_list: str
    previous_precursor_category: str
    new_precursor_category: str
    effective_date: date
    regulatory_reference: str
    regulatory_authority: str
    status: str
    is_upgrade: bool
    affected_customer_count: int
    flagged_customer_count: int
    processed_at: datetime | None = None
    version: str | None = None


class CustomerImpactOut(BaseModel):
    customer_id: str
    has_sufficient_licence: bool
    requires_requalification: bool
    gap_summary: str | None = None
    relevant_licence_ids: list[str]
    requalified_at: datetime | None = None
    version: str | None = None


class ImpactAnalysisOut(BaseModel):
    reclassification_id: str
    total_customers: int
    sufficient_count: int
    flagged_count: int
    customers: list[CustomerImpactOut]


class ProcessOut(BaseModel):
    reclassification: ReclassificationOut
    analysis: ImpactAnalysisOut


class ClassificationOut(BaseModel):
    substance_code: str
    as_of: date
    opium_act_list: str
    precursor_category: str
    source_reclassification_id: str | None = None


def _reclassification_payload(item: SubstanceReclassification, version: str | None = None) -> ReclassificationOut:
    return ReclassificationOut(
        id=item.id,
        substance_code=item.substance_code,
        previous_opium_act_list=item.previous_opium_act_list,
        new_opium_act_list=item.new_opium_act_list,
        previous_precursor_category=item.previous_precursor_category,
        new_precursor_category=item.new_precursor_category,
        effective_date=item.effective_date,
        regulatory_reference=item.regulatory_reference,
        regulatory_authority=item.regulatory_authority,
        status=item.status,
        is_upgrade=item.is_upgrade,
        affected_customer_count=item.affected_customer_count,
        flagged_customer_count=item.flagged_customer_count,
        processed_at=item.processed_at,
        version=version,
    )


def _impact_payload(impact: CustomerImpact, version: str | None = None) -> CustomerImpactOut:
    return CustomerImpactOut(
        customer_id=impact.customer_id,
        has_sufficient_licence=impact.has_sufficient_licence,
        requires_requalification=impact.requires_requalification,
        gap_summary=impact.gap_summary,
        relevant_licence_ids=list(impact.relevant_licence_ids),
        requalified_at=impact.requalified_at,
        version=version,
    )


def _analysis_payload(analysis: ImpactAnalysis) -> ImpactAnalysisOut:
    return ImpactAnalysisOut(
        reclassification_id=analysis.reclassification.id,
        total_customers=analysis.total_customers,
        sufficient_count=analysis.sufficient_count,
        flagged_count=analysis.flagged_count,
        customers=[_impact_payload(impact) for impact in analysis.customers],
    )


@router.post(
    "/reclassifications",
    status_code=201,
    response_model=SuccessEnvelope[ReclassificationOut] | ReclassificationOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def create_reclassification(
    request: Request,
    response: Response,
    body: ReclassificationCreate,
    actor: Actor = Depends(get_actor),
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    created = await service.create_reclassification(**body.model_dump(), actor_id=actor.actor_id)
    response.headers["ETag"] = etag_for("1")
    return success_response(request=request, data=_reclassification_payload(created, "1"))


@router.get(
    "/reclassifications/{reclassification_id}",
    response_model=SuccessEnvelope[ReclassificationOut] | ReclassificationOut,
)
async def get_reclassification(
    request: Request,
    response: Response,
    reclassification_id: str,
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    found = await service.get_reclassification(reclassification_id)
    response.headers["ETag"] = etag_for(found.version)
    return success_response(request=request, data=_reclassification_payload(found.entity, found.version))


@router.get(
    "/reclassifications/{reclassification_id}/impact",
    response_model=SuccessEnvelope[ImpactAnalysisOut] | ImpactAnalysisOut,
)
async def get_impact(
    request: Request,
    reclassification_id: str,
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    # Preview only; nothing is persisted until the reclassification is processed.
    analysis = await service.analyze_impact(reclassification_id)
    return success_response(request=request, data=_analysis_payload(analysis))


@router.get(
    "/reclassifications/{reclassification_id}/customers",
    response_model=SuccessEnvelope[list[CustomerImpactOut]] | list[CustomerImpactOut],
)
async def list_customer_impacts(
    request: Request,
    reclassification_id: str,
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    rows = await service.list_impacts(reclassification_id)
    return success_response(request=request, data=[_impact_payload(row.entity, row.version) for row in rows])


@router.post(
    "/reclassifications/{reclassification_id}/process",
    response_model=SuccessEnvelope[ProcessOut] | ProcessOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def process_reclassification(
    request: Request,
    reclassification_id: str,
    actor: Actor = Depends(get_actor),
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    result = await service.process(reclassification_id, actor_id=actor.actor_id)
    if not result.ok or result.reclassification is None or result.analysis is None:
        raise HTTPException(status_code=409, detail={"code": "INVALID_STATE", "message": result.message})
    payload = ProcessOut(
        reclassification=_reclassification_payload(result.reclassification),
        analysis=_analysis_payload(result.analysis),
    )
    return success_response(request=request, data=payload)


@router.post(
    "/reclassifications/{reclassification_id}/customers/{customer_id}/requalify",
    response_model=SuccessEnvelope[CustomerImpactOut] | CustomerImpactOut,
    responses=WRITE_ERROR_RESPONSES,
)
async def requalify_customer(
    request: Request,
    response: Response,
    reclassification_id: str,
    customer_id: str,
    expected_version: str | None = Depends(optional_if_match),
    actor: Actor = Depends(get_actor),
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    saved = await service.mark_requalified(
        reclassification_id,
        customer_id,
        expected_version=expected_version,
        actor_id=actor.actor_id,
    )
    response.headers["ETag"] = etag_for(saved.version)
    return success_response(request=request, data=_impact_payload(saved.entity, saved.version))


@router.get(
    "/substances/{substance_code}/classification",
    response_model=SuccessEnvelope[ClassificationOut] | ClassificationOut,
)
async def get_classification(
    request: Request,
    substance_code: str,
    as_of: date | None = Query(default=None),
    service: ReclassificationService = Depends(get_reclassification_service),
) -> dict:
    classification = await service.get_effective_classification(
        substance_code, as_of or datetime.now(timezone.utc).date()
    )
    return success_response(
        request=request,
        data=ClassificationOut(
            substance_code=classification.substance_code,
            as_of=classification.as_of,
            opium_act_list=classification.opium_act_list,
            precursor_category=classification.precursor_category,
            source_reclassification_id=classification.source_reclassification_id,
        ),
    )
