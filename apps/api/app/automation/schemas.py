from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StageAutomationUpsert(BaseModel):
    flow_id: UUID | None = None
    wait_hours: int = Field(ge=1)
    next_stage_id: UUID | None = None
    fallback_funnel_id: UUID | None = None
    fallback_stage_id: UUID | None = None
    is_active: bool = True
    execute_immediately: bool = True

    @model_validator(mode="after")
    def validate_fallback_pair(self) -> StageAutomationUpsert:
        if (self.fallback_funnel_id is None) != (self.fallback_stage_id is None):
            raise ValueError("fallback_funnel_id and fallback_stage_id must be set together")
        return self


class StageAutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_id: UUID
    flow_id: UUID | None
    wait_hours: int
    next_stage_id: UUID | None
    fallback_funnel_id: UUID | None
    fallback_stage_id: UUID | None
    is_active: bool
    execute_immediately: bool
    created_at: datetime
    updated_at: datetime
    flow_name: str | None = None
    next_stage_name: str | None = None
    fallback_funnel_name: str | None = None
    fallback_stage_name: str | None = None


class FunnelAutomationRead(StageAutomationRead):
    stage_name: str
    position: int


class DealAutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    stage_id: UUID
    automation_id: UUID | None
    status: str
    flow_id: UUID | None
    flow_session_id: UUID | None
    flow_attempts: int
    wait_hours: int
    next_stage_id: UUID | None
    next_funnel_id: UUID | None
    contact_phone: str | None
    flow_sent_at: datetime | None
    wait_until: datetime | None
    next_attempt_at: datetime | None = None
    responded_at: datetime | None
    moved_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    flow_name: str | None = None
    stage_name: str | None = None
    next_stage_name: str | None = None


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_automation_id: UUID | None
    deal_id: UUID
    action: str
    details: dict[str, Any]
    created_at: datetime


class AutomationCancelResponse(BaseModel):
    success: bool
    cancelled: int


class BulkStartRequest(BaseModel):
    deal_ids: list[UUID] = Field(default_factory=list)
    target_stage_id: UUID


class BulkStartResponse(BaseModel):
    success: bool
    started: int
    failed: int


class SweepStatsRead(BaseModel):
    replies_detected: int = 0
    flows_retried: int = 0
    flows_triggered: int = 0
    timeouts_processed: int = 0
    deals_moved: int = 0
    no_target: int = 0
    cancelled: int = 0
    errors: int = 0
