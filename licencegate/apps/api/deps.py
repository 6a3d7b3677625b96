from __future__ import annotations

from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel

from licencegate.apps.api.response import parse_if_match
from licencegate.persistence.store import ComplianceStore
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.services.overrides import Approver, OverrideWorkflow
from licencegate.services.reclassification import ReclassificationService
from licencegate.services.records import RecordService
from licencegate.services.validation import ValidationService


class Actor(BaseModel):
    # Caller identity asserted by the upstream gateway; authentication happens there.
    actor_id: str | None = None
    roles: list[str] = []
    calling_system: str | None = None

    def as_approver(self) -> Approver:
        return Approver(id=self.actor_id or "", roles=frozenset(self.roles))


def get_actor(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id", max_length=128),
    actor_roles: str | None = Header(default=None, alias="X-Actor-Roles"),
    calling_system: str | None = Header(default=None, alias="X-Calling-System", max_length=128),
) -> Actor:
    roles = [item.strip() for item in (actor_roles or "").split(",") if item.strip()]
    return Actor(actor_id=actor_id, roles=roles, calling_system=calling_system)


def require_if_match(if_match: str | None = Header(default=None, alias="If-Match")) -> str:
    # Optimistic writes must name the version they were based on.
    version = parse_if_match(if_match)
    if version is None:
        raise HTTPException(
            status_code=status.HTTP_428_PRECONDITION_REQUIRED,
            detail={"code": "PRECONDITION_REQUIRED", "message": "If-Match header is required"},
        )
    return version


def optional_if_match(if_match: str | None = Header(default=None, alias="If-Match")) -> str | None:
    return parse_if_match(if_match)


def get_store(request: Request) -> ComplianceStore:
    return request.app.state.store


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_validation_service(request: Request) -> ValidationService:
    return request.app.state.validation


def get_override_workflow(request: Request) -> OverrideWorkflow:
    return request.app.state.overrides


def get_record_service(request: Request) -> RecordService:
    return request.app.state.records


def get_reclassification_service(request: Request) -> ReclassificationService:
    return request.app.state.reclassifications
