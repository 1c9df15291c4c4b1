from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InboxMessageCreate(BaseModel):
    phone: str = Field(min_length=1)
    body: str | None = None
    direction: Literal["inbound", "outbound"] = "inbound"
    external_id: str | None = None
    received_at: datetime | None = None
    organization_id: UUID | None = None


class InboxMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID | None
    phone: str
    direction: str
    body: str | None
    external_id: str | None
    received_at: datetime
    created_at: datetime
