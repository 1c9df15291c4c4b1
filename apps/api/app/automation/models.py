from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


RUN_STATUS_PENDING = "pending"
RUN_STATUS_FLOW_SENT = "flow_sent"
RUN_STATUS_WAITING = "waiting"
RUN_STATUS_RESPONDED = "responded"
RUN_STATUS_MOVED = "moved"
RUN_STATUS_CANCELLED = "cancelled"

ACTIVE_RUN_STATUSES = (RUN_STATUS_PENDING, RUN_STATUS_FLOW_SENT, RUN_STATUS_WAITING)
TERMINAL_RUN_STATUSES = (RUN_STATUS_RESPONDED, RUN_STATUS_MOVED, RUN_STATUS_CANCELLED)
REPLY_RUN_STATUSES = (RUN_STATUS_FLOW_SENT, RUN_STATUS_WAITING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMStageAutomation(Base):
    __tablename__ = "crm_stage_automation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_stage.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    flow_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("flow.id", ondelete="SET NULL"),
        nullable=True,
    )
    wait_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    next_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_stage.id", ondelete="SET NULL"),
        nullable=True,
    )
    fallback_funnel_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_funnel.id", ondelete="SET NULL"),
        nullable=True,
    )
    fallback_stage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_stage.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    execute_immediately: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMDealAutomation(Base):
    __tablename__ = "crm_deal_automation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_deal.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_stage.id", ondelete="CASCADE"),
        nullable=False,
    )
    automation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_stage_automation.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RUN_STATUS_PENDING)
    flow_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    flow_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    flow_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    wait_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    next_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    next_funnel_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    flow_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    wait_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    moved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index(
            "uq_crm_deal_automation_active_deal_stage",
            "deal_id",
            "stage_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'flow_sent', 'waiting')"),
            sqlite_where=text("status IN ('pending', 'flow_sent', 'waiting')"),
        ),
    )


class CRMAutomationLog(Base):
    __tablename__ = "crm_automation_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_automation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_deal_automation.id", ondelete="SET NULL"),
        nullable=True,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_crm_deal_automation_status_wait_until", CRMDealAutomation.status, CRMDealAutomation.wait_until)
Index("ix_crm_deal_automation_contact_phone_status", CRMDealAutomation.contact_phone, CRMDealAutomation.status)
Index("ix_crm_deal_automation_deal_created", CRMDealAutomation.deal_id, CRMDealAutomation.created_at)
Index("ix_crm_automation_log_deal_created", CRMAutomationLog.deal_id, CRMAutomationLog.created_at)
