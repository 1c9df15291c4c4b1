from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.automation.engine import AutomationEngine, automation_engine
from app.automation.models import CRMAutomationLog, CRMDealAutomation, CRMStageAutomation
from app.automation.schemas import (
    AutomationLogRead,
    DealAutomationRead,
    FunnelAutomationRead,
    StageAutomationRead,
    StageAutomationUpsert,
)
from app.core.config import get_settings
from app.crm.models import CRMDeal, CRMFunnel, CRMStage
from app.crm.service import ActorUser, can_view_organization
from app.flows.models import Flow


logger = logging.getLogger("app.automation")


class StageAutomationService:
    entity_type = "crm.stage_automation"

    def __init__(self, engine: AutomationEngine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> AutomationEngine:
        return self._engine or automation_engine

    def get_config(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> StageAutomationRead | None:
        stage = self._get_visible_stage(session, actor_user, stage_id)
        config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == stage.id))
        if config is None:
            return None
        return self._to_read(session, config)

    def upsert_config(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: StageAutomationUpsert,
    ) -> StageAutomationRead:
        stage = self._get_visible_stage(session, actor_user, stage_id)
        if stage.is_terminal:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="terminal stages cannot have automations",
            )
        self._validate_flow(session, dto.flow_id)
        self._validate_next_stage(session, stage, dto.next_stage_id)
        self._validate_fallback(session, stage, dto.fallback_funnel_id, dto.fallback_stage_id)

        config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == stage.id))
        before = self._to_audit(config) if config is not None else None
        if config is None:
            config = CRMStageAutomation(stage_id=stage.id, wait_hours=dto.wait_hours)
            session.add(config)
        config.flow_id = dto.flow_id
        config.wait_hours = dto.wait_hours
        config.next_stage_id = dto.next_stage_id
        config.fallback_funnel_id = dto.fallback_funnel_id
        config.fallback_stage_id = dto.fallback_stage_id
        config.is_active = dto.is_active
        config.execute_immediately = dto.execute_immediately
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(config.id),
            action="create" if before is None else "update",
            before=before,
            after=self._to_audit(config),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_read(session, config)

    def delete_config(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> dict[str, bool]:
        stage = self._get_visible_stage(session, actor_user, stage_id)
        config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == stage.id))
        if config is None:
            return {"success": True}

        before = self._to_audit(config)
        config_id = config.id
        session.delete(config)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(config_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return {"success": True}

    def list_for_funnel(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID) -> list[FunnelAutomationRead]:
        funnel = session.scalar(select(CRMFunnel).where(and_(CRMFunnel.id == funnel_id, CRMFunnel.deleted_at.is_(None))))
        if funnel is None or not can_view_organization(actor_user, funnel.organization_id, "crm.funnels.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")

        rows = session.execute(
            select(CRMStageAutomation, CRMStage.name, CRMStage.position)
            .join(CRMStage, CRMStage.id == CRMStageAutomation.stage_id)
            .where(and_(CRMStage.funnel_id == funnel.id, CRMStage.deleted_at.is_(None)))
            .order_by(CRMStage.position, CRMStage.id)
        ).all()
        return [
            FunnelAutomationRead.model_validate(
                {
                    **self._to_read(session, config).model_dump(),
                    "stage_name": stage_name,
                    "position": position,
                }
            )
            for config, stage_name, position in rows
        ]

    def list_runs_for_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DealAutomationRead]:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        runs = session.scalars(
            select(CRMDealAutomation)
            .where(CRMDealAutomation.deal_id == deal.id)
            .order_by(CRMDealAutomation.created_at.desc(), CRMDealAutomation.id)
            .limit(get_settings().automation_status_limit)
        ).all()
        return [self._to_run_read(session, run) for run in runs]

    def list_logs_for_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[AutomationLogRead]:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        rows = session.scalars(
            select(CRMAutomationLog)
            .where(CRMAutomationLog.deal_id == deal.id)
            .order_by(CRMAutomationLog.created_at.desc(), CRMAutomationLog.id)
            .limit(get_settings().automation_log_limit)
        ).all()
        return [AutomationLogRead.model_validate(row) for row in rows]

    def start_for_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealAutomationRead:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        run = self.engine.start_for_deal(session, deal.id, actor_user_id=actor_user.user_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.deal_automation",
            entity_id=str(run.id),
            action="manual_start",
            before=None,
            after={"deal_id": str(run.deal_id), "stage_id": str(run.stage_id), "status": run.status},
            correlation_id=actor_user.correlation_id,
        )
        return self._to_run_read(session, run)

    def cancel_for_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> dict[str, Any]:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        result = self.engine.cancel_for_deal(session, deal.id, actor_user_id=actor_user.user_id)
        if result["cancelled"]:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.deal_automation",
                entity_id=str(deal.id),
                action="manual_cancel",
                before=None,
                after=result,
                correlation_id=actor_user.correlation_id,
            )
        return result

    def bulk_start(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_ids: list[uuid.UUID],
        target_stage_id: uuid.UUID,
    ) -> dict[str, Any]:
        stage = self._get_visible_stage(session, actor_user, target_stage_id)
        unique_ids = list(dict.fromkeys(deal_ids))
        visible_ids: list[uuid.UUID] = []
        hidden = 0
        for deal_id in unique_ids:
            deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
            if deal is not None and not can_view_organization(actor_user, deal.organization_id, "crm.deals.read_all"):
                hidden += 1
                continue
            visible_ids.append(deal_id)

        if unique_ids and not visible_ids:
            self.engine.require_active_config(session, stage.id)
            return {"success": True, "started": 0, "failed": hidden}

        result = self.engine.bulk_start(session, visible_ids, stage.id, actor_user_id=actor_user.user_id)
        result["failed"] += hidden
        return result

    def run_sweep(self, session: Session, actor_user: ActorUser) -> dict[str, int]:
        logger.info("automation_sweep_requested", extra={"reason": f"actor:{actor_user.user_id}"})
        return self.engine.run_sweep(session)

    def _validate_flow(self, session: Session, flow_id: uuid.UUID | None) -> None:
        if flow_id is None:
            return
        flow = session.scalar(select(Flow).where(Flow.id == flow_id))
        if flow is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="flow not found")

    def _validate_next_stage(self, session: Session, stage: CRMStage, next_stage_id: uuid.UUID | None) -> None:
        if next_stage_id is None:
            return
        next_stage = session.scalar(
            select(CRMStage).where(and_(CRMStage.id == next_stage_id, CRMStage.deleted_at.is_(None)))
        )
        if next_stage is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="next stage not found")
        if next_stage.funnel_id != stage.funnel_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="next stage must be in the same funnel",
            )
        if next_stage.position <= stage.position:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="next stage must come after the current stage",
            )
        if next_stage.is_terminal:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="next stage cannot be a terminal stage",
            )

    def _validate_fallback(
        self,
        session: Session,
        stage: CRMStage,
        fallback_funnel_id: uuid.UUID | None,
        fallback_stage_id: uuid.UUID | None,
    ) -> None:
        if fallback_funnel_id is None and fallback_stage_id is None:
            return
        if fallback_funnel_id is None or fallback_stage_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="fallback_funnel_id and fallback_stage_id must be set together",
            )
        funnel = session.scalar(
            select(CRMFunnel).where(and_(CRMFunnel.id == fallback_funnel_id, CRMFunnel.deleted_at.is_(None)))
        )
        if funnel is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="fallback funnel not found")
        fallback_stage = session.scalar(
            select(CRMStage).where(and_(CRMStage.id == fallback_stage_id, CRMStage.deleted_at.is_(None)))
        )
        if fallback_stage is None or fallback_stage.funnel_id != funnel.id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="fallback stage must belong to the fallback funnel",
            )
        if fallback_stage.is_terminal:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="fallback stage cannot be a terminal stage",
            )
        if fallback_stage.id == stage.id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="fallback stage must differ from the current stage",
            )

    def _get_visible_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> CRMStage:
        row = session.execute(
            select(CRMStage, CRMFunnel.organization_id)
            .join(CRMFunnel, CRMFunnel.id == CRMStage.funnel_id)
            .where(and_(CRMStage.id == stage_id, CRMStage.deleted_at.is_(None), CRMFunnel.deleted_at.is_(None)))
        ).first()
        if row is None or not can_view_organization(actor_user, row[1], "crm.funnels.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        return row[0]

    def _get_visible_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
        if deal is None or not can_view_organization(actor_user, deal.organization_id, "crm.deals.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _name_of(self, session: Session, model: Any, item_id: uuid.UUID | None) -> str | None:
        if item_id is None:
            return None
        return session.scalar(select(model.name).where(model.id == item_id))

    def _to_read(self, session: Session, config: CRMStageAutomation) -> StageAutomationRead:
        return StageAutomationRead.model_validate(
            {
                "id": config.id,
                "stage_id": config.stage_id,
                "flow_id": config.flow_id,
                "wait_hours": config.wait_hours,
                "next_stage_id": config.next_stage_id,
                "fallback_funnel_id": config.fallback_funnel_id,
                "fallback_stage_id": config.fallback_stage_id,
                "is_active": config.is_active,
                "execute_immediately": config.execute_immediately,
                "created_at": config.created_at,
                "updated_at": config.updated_at,
                "flow_name": self._name_of(session, Flow, config.flow_id),
                "next_stage_name": self._name_of(session, CRMStage, config.next_stage_id),
                "fallback_funnel_name": self._name_of(session, CRMFunnel, config.fallback_funnel_id),
                "fallback_stage_name": self._name_of(session, CRMStage, config.fallback_stage_id),
            }
        )

    def _to_run_read(self, session: Session, run: CRMDealAutomation) -> DealAutomationRead:
        payload = DealAutomationRead.model_validate(run).model_dump()
        payload["flow_name"] = self._name_of(session, Flow, run.flow_id)
        payload["stage_name"] = self._name_of(session, CRMStage, run.stage_id)
        payload["next_stage_name"] = self._name_of(session, CRMStage, run.next_stage_id)
        return DealAutomationRead.model_validate(payload)

    def _to_audit(self, config: CRMStageAutomation) -> dict[str, Any]:
        return {
            "stage_id": str(config.stage_id),
            "flow_id": str(config.flow_id) if config.flow_id else None,
            "wait_hours": config.wait_hours,
            "next_stage_id": str(config.next_stage_id) if config.next_stage_id else None,
            "fallback_funnel_id": str(config.fallback_funnel_id) if config.fallback_funnel_id else None,
            "fallback_stage_id": str(config.fallback_stage_id) if config.fallback_stage_id else None,
            "is_active": config.is_active,
            "execute_immediately": config.execute_immediately,
        }
