from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser
from app.flows.schemas import FlowCreate, FlowRead
from app.flows.service import FlowService

router = APIRouter(prefix="/api/flows", tags=["flows"])
flow_service = FlowService()


@router.post("", response_model=FlowRead, status_code=status.HTTP_201_CREATED)
def create_flow(
    request: Request,
    dto: FlowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FlowRead | JSONResponse:
    try:
        require_permission(user, "flows.manage")
        return flow_service.create_flow(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="flow_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("", response_model=list[FlowRead])
def list_flows(
    request: Request,
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FlowRead] | JSONResponse:
    try:
        require_permission(user, "flows.read")
        return flow_service.list_flows(db, user, active_only=active_only)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="flow_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
