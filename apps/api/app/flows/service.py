from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app import audit
from app.crm.service import ActorUser
from app.flows.models import Flow
from app.flows.schemas import FlowCreate, FlowRead


class FlowService:
    entity_type = "flow"

    def create_flow(self, session: Session, actor_user: ActorUser, dto: FlowCreate) -> FlowRead:
        flow = Flow(
            name=dto.name.strip(),
            is_active=dto.is_active,
            organization_id=dto.organization_id or actor_user.current_organization_id,
        )
        session.add(flow)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(flow.id),
            action="create",
            before=None,
            after={"name": flow.name, "is_active": flow.is_active},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return FlowRead.model_validate(flow)

    def list_flows(self, session: Session, actor_user: ActorUser, active_only: bool = False) -> list[FlowRead]:
        stmt = select(Flow)
        if not (actor_user.is_super_admin or "flows.read_all" in actor_user.permissions):
            stmt = stmt.where(
                or_(Flow.organization_id.is_(None), Flow.organization_id.in_(actor_user.allowed_organization_ids))
            )
        if active_only:
            stmt = stmt.where(Flow.is_active.is_(True))
        rows = session.scalars(stmt.order_by(Flow.name, Flow.id)).all()
        return [FlowRead.model_validate(row) for row in rows]
