from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.automation.schemas import (
    AutomationCancelResponse,
    AutomationLogRead,
    BulkStartRequest,
    BulkStartResponse,
    DealAutomationRead,
    FunnelAutomationRead,
    StageAutomationRead,
    StageAutomationUpsert,
    SweepStatsRead,
)
from app.automation.service import StageAutomationService
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_any_permission, require_permission
from app.crm.service import ActorUser

router = APIRouter(prefix="/api/crm", tags=["crm.automations"])
automation_service = StageAutomationService()


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@router.get("/stages/{stage_id}/automation", response_model=StageAutomationRead | None)
def get_stage_automation(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageAutomationRead | None | JSONResponse:
    try:
        require_any_permission(user, ["crm.automations.read", "crm.automations.manage"])
        return automation_service.get_config(db, user, stage_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_automation_get_failed")


@router.put("/stages/{stage_id}/automation", response_model=StageAutomationRead)
def upsert_stage_automation(
    request: Request,
    stage_id: uuid.UUID,
    dto: StageAutomationUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageAutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.upsert_config(db, user, stage_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_automation_save_failed")


@router.delete("/stages/{stage_id}/automation", response_model=None)
def delete_stage_automation(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, bool] | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.delete_config(db, user, stage_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_automation_delete_failed")


@router.get("/funnels/{funnel_id}/automations", response_model=list[FunnelAutomationRead])
def list_funnel_automations(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelAutomationRead] | JSONResponse:
    try:
        require_any_permission(user, ["crm.automations.read", "crm.automations.manage"])
        return automation_service.list_for_funnel(db, user, funnel_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_funnel_automations_list_failed")


@router.get("/deals/{deal_id}/automation-status", response_model=list[DealAutomationRead])
def get_deal_automation_status(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealAutomationRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_runs_for_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_automation_status_failed")


@router.get("/deals/{deal_id}/automation-logs", response_model=list[AutomationLogRead])
def get_deal_automation_logs(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_logs_for_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_automation_logs_failed")


@router.post("/deals/bulk-start-automation", response_model=BulkStartResponse)
def bulk_start_automation(
    request: Request,
    dto: BulkStartRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.bulk_start(db, user, dto.deal_ids, dto.target_stage_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_bulk_start_failed")


@router.post("/deals/{deal_id}/start-automation", response_model=DealAutomationRead)
def start_deal_automation(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealAutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.start_for_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_start_failed")


@router.post("/deals/{deal_id}/cancel-automation", response_model=AutomationCancelResponse)
def cancel_deal_automation(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.cancel_for_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_cancel_failed")


@router.post("/automations/sweep", response_model=SweepStatsRead)
def run_automation_sweep(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.run_sweep(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_sweep_failed")
