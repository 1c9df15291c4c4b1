from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser
from app.inbox.schemas import InboxMessageCreate, InboxMessageRead
from app.inbox.service import InboxService

router = APIRouter(prefix="/api/inbox", tags=["inbox"])
inbox_service = InboxService()


@router.post("/messages", response_model=InboxMessageRead, status_code=status.HTTP_201_CREATED)
def receive_message(
    request: Request,
    dto: InboxMessageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InboxMessageRead | JSONResponse:
    try:
        require_permission(user, "inbox.messages.write")
        return inbox_service.record_message(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="inbox_message_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
