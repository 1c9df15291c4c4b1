from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    DealChangeStageRequest,
    DealCreate,
    DealHistoryRead,
    DealRead,
    FunnelCreate,
    FunnelRead,
    StageCreate,
    StageRead,
)
from app.crm.service import ActorUser, ContactService, DealService, FunnelService

funnels_router = APIRouter(prefix="/api/crm", tags=["crm.funnels"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
funnel_service = FunnelService()
contact_service = ContactService()
deal_service = DealService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_uuid_list(raw: str | None) -> list[uuid.UUID]:
    if not raw:
        return []
    values = [item.strip() for item in raw.split(",") if item.strip()]
    parsed: list[uuid.UUID] = []
    for value in values:
        parsed.append(uuid.UUID(value))
    return parsed


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    organizations_header = request.headers.get("x-allowed-organizations")
    current_organization_raw = request.headers.get("x-current-organization")

    if current_organization_raw:
        current_organization_id = uuid.UUID(current_organization_raw)
    else:
        context_organization = getattr(getattr(request.state, "context", None), "organization", None)
        current_organization_id = None
        if context_organization and context_organization != "default":
            try:
                current_organization_id = uuid.UUID(context_organization)
            except ValueError:
                current_organization_id = None

    allowed_organizations = _parse_uuid_list(organizations_header)
    if not allowed_organizations:
        allowed_organizations = _parse_uuid_list(",".join(auth_user.organization_ids))
    if not allowed_organizations and current_organization_id is not None:
        allowed_organizations = [current_organization_id]

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles

    return ActorUser(
        user_id=auth_user.sub,
        allowed_organization_ids=allowed_organizations,
        current_organization_id=current_organization_id,
        permissions=set(auth_user.roles),
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_any_permission(user: ActorUser, permissions: list[str]) -> None:
    if not any(permission in user.permissions for permission in permissions):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {' or '.join(permissions)}")


@funnels_router.post("/funnels", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def create_funnel(
    request: Request,
    dto: FunnelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.create_funnel(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.get("/funnels/{funnel_id}", response_model=FunnelRead)
def get_funnel(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_any_permission(user, ["crm.funnels.read", "crm.funnels.manage"])
        return funnel_service.get_funnel(db, user, funnel_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_funnel_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.post("/funnels/{funnel_id}/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def add_funnel_stage(
    request: Request,
    funnel_id: uuid.UUID,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.add_stage(db, user, funnel_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@funnels_router.get("/funnels/{funnel_id}/stages", response_model=list[StageRead])
def list_funnel_stages(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_any_permission(user, ["crm.funnels.read", "crm.funnels.manage"])
        return funnel_service.list_stages(db, user, funnel_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/change-stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealChangeStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.change_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_change_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}/history", response_model=list[DealHistoryRead])
def list_deal_history(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealHistoryRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_history(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_history_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
