from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import events
from app.crm.service import ActorUser, normalize_phone, utcnow
from app.inbox.models import InboxMessage
from app.inbox.schemas import InboxMessageCreate, InboxMessageRead


logger = logging.getLogger("app.inbox")

MESSAGE_RECEIVED_EVENT = "inbox.message.received"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InboxService:
    def record_message(self, session: Session, actor_user: ActorUser, dto: InboxMessageCreate) -> InboxMessageRead:
        phone = normalize_phone(dto.phone)
        if phone is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="phone must contain digits")

        if dto.external_id:
            existing = session.scalar(select(InboxMessage).where(InboxMessage.external_id == dto.external_id))
            if existing is not None:
                return InboxMessageRead.model_validate(existing)

        message = InboxMessage(
            organization_id=dto.organization_id or actor_user.current_organization_id,
            phone=phone,
            direction=dto.direction,
            body=dto.body,
            external_id=dto.external_id,
            received_at=_to_utc(dto.received_at) if dto.received_at is not None else utcnow(),
        )
        session.add(message)
        session.flush()
        stored = InboxMessageRead.model_validate(message)
        session.commit()
        logger.info("inbox_message_recorded", extra={"action": stored.direction})

        if stored.direction == "inbound":
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": MESSAGE_RECEIVED_EVENT,
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": actor_user.user_id,
                    "organization_id": str(stored.organization_id) if stored.organization_id else None,
                    "version": 1,
                    "correlation_id": actor_user.correlation_id,
                    "payload": {
                        "message_id": str(stored.id),
                        "phone": stored.phone,
                        "received_at": stored.received_at.isoformat(),
                    },
                }
            )
        return stored
