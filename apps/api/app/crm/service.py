from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.models import CRMContact, CRMDeal, CRMDealHistory, CRMFunnel, CRMStage
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


logger = logging.getLogger("app.crm")

DEAL_CREATED_EVENT = "crm.deal.created"
DEAL_STAGE_CHANGED_EVENT = "crm.deal.stage_changed"

_NON_DIGITS_RE = re.compile(r"\D+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    digits = _NON_DIGITS_RE.sub("", value)
    return digits or None


@dataclass
class ActorUser:
    user_id: str
    allowed_organization_ids: list[uuid.UUID]
    current_organization_id: uuid.UUID | None
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None


def can_view_organization(actor_user: ActorUser, organization_id: uuid.UUID | None, read_all_permission: str) -> bool:
    if actor_user.is_super_admin or read_all_permission in actor_user.permissions:
        return True
    if organization_id is None:
        return True
    return organization_id in set(actor_user.allowed_organization_ids)


class FunnelService:
    entity_type = "crm.funnel"

    def create_funnel(self, session: Session, actor_user: ActorUser, dto: FunnelCreate) -> FunnelRead:
        organization_id = dto.organization_id or actor_user.current_organization_id
        funnel = CRMFunnel(name=dto.name.strip(), organization_id=organization_id, is_default=dto.is_default)
        session.add(funnel)
        session.flush()

        if dto.is_default:
            session.execute(
                update(CRMFunnel)
                .where(
                    and_(
                        CRMFunnel.id != funnel.id,
                        CRMFunnel.deleted_at.is_(None),
                        CRMFunnel.organization_id == organization_id,
                        CRMFunnel.is_default.is_(True),
                    )
                )
                .values(is_default=False, updated_at=utcnow(), row_version=CRMFunnel.row_version + 1)
            )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(funnel.id),
            action="create",
            before=None,
            after={
                "name": funnel.name,
                "organization_id": str(organization_id) if organization_id else None,
                "is_default": funnel.is_default,
            },
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_funnel_read(funnel, [])

    def add_stage(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID, dto: StageCreate) -> StageRead:
        funnel = self._get_visible_funnel(session, actor_user, funnel_id)
        position_taken = session.scalar(
            select(CRMStage.id).where(and_(CRMStage.funnel_id == funnel.id, CRMStage.position == dto.position))
        )
        if position_taken is not None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage position already used")

        stage = CRMStage(
            funnel_id=funnel.id,
            name=dto.name.strip(),
            position=dto.position,
            stage_type=dto.stage_type,
            is_active=dto.is_active,
        )
        session.add(stage)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={
                "funnel_id": str(stage.funnel_id),
                "name": stage.name,
                "position": stage.position,
                "stage_type": stage.stage_type,
            },
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return StageRead.model_validate(stage)

    def get_funnel(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID) -> FunnelRead:
        funnel = self._get_visible_funnel(session, actor_user, funnel_id)
        return self._to_funnel_read(funnel, self._sorted_stages(funnel.stages))

    def list_stages(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID) -> list[StageRead]:
        funnel = self._get_visible_funnel(session, actor_user, funnel_id)
        return [StageRead.model_validate(stage) for stage in self._sorted_stages(funnel.stages)]

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMStage | None:
        return session.scalar(select(CRMStage).where(and_(CRMStage.id == stage_id, CRMStage.deleted_at.is_(None))))

    def _get_visible_funnel(self, session: Session, actor_user: ActorUser, funnel_id: uuid.UUID) -> CRMFunnel:
        funnel = session.scalar(
            select(CRMFunnel)
            .where(and_(CRMFunnel.id == funnel_id, CRMFunnel.deleted_at.is_(None)))
            .options(selectinload(CRMFunnel.stages))
        )
        if funnel is None or not can_view_organization(actor_user, funnel.organization_id, "crm.funnels.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")
        return funnel

    def _sorted_stages(self, stages: list[CRMStage]) -> list[CRMStage]:
        filtered = [stage for stage in stages if stage.deleted_at is None]
        return sorted(filtered, key=lambda item: (item.position, str(item.id)))

    def _to_funnel_read(self, funnel: CRMFunnel, stages: list[CRMStage]) -> FunnelRead:
        return FunnelRead.model_validate(
            {
                "id": funnel.id,
                "name": funnel.name,
                "organization_id": funnel.organization_id,
                "is_default": funnel.is_default,
                "created_at": funnel.created_at,
                "updated_at": funnel.updated_at,
                "deleted_at": funnel.deleted_at,
                "row_version": funnel.row_version,
                "stages": [StageRead.model_validate(stage).model_dump(mode="json") for stage in stages],
            }
        )


class ContactService:
    entity_type = "crm.contact"

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        contact = CRMContact(
            organization_id=dto.organization_id or actor_user.current_organization_id,
            name=dto.name.strip(),
            phone=normalize_phone(dto.phone),
            email=dto.email.strip().lower() if dto.email else None,
        )
        session.add(contact)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="create",
            before=None,
            after={"name": contact.name, "phone": contact.phone, "email": contact.email},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ContactRead.model_validate(contact)

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        contact = session.scalar(
            select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.deleted_at.is_(None)))
        )
        if contact is None or not can_view_organization(actor_user, contact.organization_id, "crm.contacts.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return ContactRead.model_validate(contact)


class DealService:
    """Owner of ``crm_deal.stage_id``.

    User-facing mutations commit and then publish ``crm.deal.stage_changed``.
    ``move_to_stage`` is the in-transaction variant for callers that need the
    deal update to share a transaction with their own writes; those callers
    commit and then call ``publish_stage_changed`` themselves.
    """

    entity_type = "crm.deal"

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        funnel = session.scalar(
            select(CRMFunnel)
            .where(and_(CRMFunnel.id == dto.funnel_id, CRMFunnel.deleted_at.is_(None)))
            .options(selectinload(CRMFunnel.stages))
        )
        if funnel is None or not can_view_organization(actor_user, funnel.organization_id, "crm.funnels.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="funnel not found")

        stage = self._resolve_create_stage(funnel, dto.stage_id)
        if dto.primary_contact_id is not None:
            contact = session.scalar(
                select(CRMContact).where(and_(CRMContact.id == dto.primary_contact_id, CRMContact.deleted_at.is_(None)))
            )
            if contact is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="primary contact not found")

        now = utcnow()
        deal = CRMDeal(
            organization_id=dto.organization_id or funnel.organization_id or actor_user.current_organization_id,
            funnel_id=funnel.id,
            stage_id=stage.id,
            title=dto.title.strip(),
            value=dto.value,
            company_name=dto.company_name,
            primary_contact_id=dto.primary_contact_id,
            last_activity_at=now,
        )
        session.add(deal)
        session.flush()
        self._record_history(session, deal.id, "created", None, stage.name, None, actor_user.user_id)

        created = DealRead.model_validate(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": DEAL_CREATED_EVENT,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "organization_id": str(created.organization_id) if created.organization_id else None,
                "version": 1,
                "correlation_id": actor_user.correlation_id,
                "payload": {
                    "deal_id": str(created.id),
                    "stage_id": str(created.stage_id),
                    "previous_stage_id": None,
                    "trigger": "deal_created",
                },
            }
        )
        return created

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._get_visible_deal(session, actor_user, deal_id))

    def list_history(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DealHistoryRead]:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        rows = session.scalars(
            select(CRMDealHistory)
            .where(CRMDealHistory.deal_id == deal.id)
            .order_by(CRMDealHistory.created_at.desc(), CRMDealHistory.id)
        ).all()
        return [DealHistoryRead.model_validate(row) for row in rows]

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealChangeStageRequest,
    ) -> DealRead:
        deal = self._get_visible_deal(session, actor_user, deal_id)
        stage = session.scalar(select(CRMStage).where(and_(CRMStage.id == dto.stage_id, CRMStage.deleted_at.is_(None))))
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        if stage.funnel_id != deal.funnel_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage must be in same funnel")
        if not stage.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage is inactive")
        if stage.id == deal.stage_id:
            return DealRead.model_validate(deal)

        previous_stage_id = deal.stage_id
        previous_stage = session.get(CRMStage, previous_stage_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")

        now = utcnow()
        result = session.execute(
            update(CRMDeal)
            .where(
                and_(
                    CRMDeal.id == deal.id,
                    CRMDeal.row_version == dto.row_version,
                    CRMDeal.deleted_at.is_(None),
                )
            )
            .values(
                stage_id=stage.id,
                last_activity_at=now,
                updated_at=now,
                row_version=CRMDeal.row_version + 1,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(deal)
        self._record_history(
            session,
            deal.id,
            "stage_changed",
            previous_stage.name if previous_stage is not None else None,
            stage.name,
            dto.notes,
            actor_user.user_id,
        )
        updated = DealRead.model_validate(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="change_stage",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        self.publish_stage_changed(
            deal_id=deal.id,
            stage_id=stage.id,
            previous_stage_id=previous_stage_id,
            actor_user_id=actor_user.user_id,
            organization_id=updated.organization_id,
            trigger="user",
            correlation_id=actor_user.correlation_id,
        )
        return updated

    def move_to_stage(
        self,
        session: Session,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        *,
        actor_user_id: str,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> CRMDeal:
        """Move a deal to any stage, including one in another funnel.

        Does not commit and does not publish.
        """
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        stage = session.scalar(select(CRMStage).where(and_(CRMStage.id == stage_id, CRMStage.deleted_at.is_(None))))
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")

        previous_stage = session.get(CRMStage, deal.stage_id)
        before = {"stage_id": str(deal.stage_id), "funnel_id": str(deal.funnel_id)}
        now = utcnow()
        result = session.execute(
            update(CRMDeal)
            .where(
                and_(
                    CRMDeal.id == deal.id,
                    CRMDeal.row_version == deal.row_version,
                    CRMDeal.deleted_at.is_(None),
                )
            )
            .values(
                stage_id=stage.id,
                funnel_id=stage.funnel_id,
                last_activity_at=now,
                updated_at=now,
                row_version=CRMDeal.row_version + 1,
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(deal)
        self._record_history(
            session,
            deal.id,
            "stage_changed",
            previous_stage.name if previous_stage is not None else None,
            stage.name,
            notes,
            actor_user_id,
        )
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="move_stage",
            before=before,
            after={"stage_id": str(deal.stage_id), "funnel_id": str(deal.funnel_id)},
            correlation_id=correlation_id,
        )
        return deal

    def publish_stage_changed(
        self,
        *,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        previous_stage_id: uuid.UUID | None,
        actor_user_id: str,
        organization_id: uuid.UUID | None,
        trigger: str,
        correlation_id: str | None = None,
    ) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": DEAL_STAGE_CHANGED_EVENT,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user_id,
                "organization_id": str(organization_id) if organization_id else None,
                "version": 1,
                "correlation_id": correlation_id,
                "payload": {
                    "deal_id": str(deal_id),
                    "stage_id": str(stage_id),
                    "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
                    "trigger": trigger,
                },
            }
        )

    def touch_activity(self, session: Session, deal_id: uuid.UUID, at: datetime | None = None) -> None:
        session.execute(
            update(CRMDeal)
            .where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None)))
            .values(last_activity_at=at or utcnow())
        )

    def _resolve_create_stage(self, funnel: CRMFunnel, stage_id: uuid.UUID | None) -> CRMStage:
        stages = [stage for stage in funnel.stages if stage.deleted_at is None]
        if stage_id is not None:
            for stage in stages:
                if stage.id == stage_id:
                    return stage
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage must belong to funnel")

        open_stages = [stage for stage in stages if stage.is_active and not stage.is_terminal]
        if not open_stages:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="funnel has no active open stage")
        return sorted(open_stages, key=lambda item: item.position)[0]

    def _get_visible_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
        if deal is None or not can_view_organization(actor_user, deal.organization_id, "crm.deals.read_all"):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _record_history(
        self,
        session: Session,
        deal_id: uuid.UUID,
        action: str,
        from_value: str | None,
        to_value: str | None,
        notes: str | None,
        actor_user_id: str | None,
    ) -> None:
        session.add(
            CRMDealHistory(
                deal_id=deal_id,
                action=action,
                from_value=from_value,
                to_value=to_value,
                notes=notes,
                actor_user_id=actor_user_id,
            )
        )
        session.flush()


def deal_snapshot(session: Session, deal: CRMDeal) -> dict[str, Any]:
    contact = session.get(CRMContact, deal.primary_contact_id) if deal.primary_contact_id else None
    return {
        "deal_id": str(deal.id),
        "title": deal.title,
        "value": float(deal.value) if deal.value is not None else 0,
        "company_name": deal.company_name,
        "contact_name": contact.name if contact is not None else None,
        "contact_phone": normalize_phone(contact.phone) if contact is not None else None,
        "contact_email": contact.email if contact is not None else None,
    }
