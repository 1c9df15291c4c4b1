from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


StageType = Literal["Open", "ClosedWon", "ClosedLost"]


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1)
    organization_id: UUID | None = None
    is_default: bool = False


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    stage_type: StageType = "Open"
    is_active: bool = True


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    funnel_id: UUID
    name: str
    position: int
    stage_type: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class FunnelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    organization_id: UUID | None
    is_default: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int
    stages: list[StageRead] = Field(default_factory=list)


class ContactCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str | None = None
    email: str | None = None
    organization_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID | None
    name: str
    phone: str | None
    email: str | None
    created_at: datetime
    updated_at: datetime


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    funnel_id: UUID
    stage_id: UUID | None = None
    value: Decimal | None = Field(default=None, ge=0)
    company_name: str | None = None
    primary_contact_id: UUID | None = None
    organization_id: UUID | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID | None
    funnel_id: UUID
    stage_id: UUID
    title: str
    value: Decimal | None
    company_name: str | None
    primary_contact_id: UUID | None
    last_activity_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class DealChangeStageRequest(BaseModel):
    stage_id: UUID
    row_version: int = Field(ge=1)
    notes: str | None = None


class DealHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    action: str
    from_value: str | None
    to_value: str | None
    notes: str | None
    actor_user_id: str | None
    created_at: datetime
