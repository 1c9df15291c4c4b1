from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class FlowCreate(BaseModel):
    name: str = Field(min_length=1)
    is_active: bool = True
    organization_id: UUID | None = None


class FlowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID | None
    name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
