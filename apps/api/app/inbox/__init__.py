from app.inbox.models import InboxMessage
from app.inbox.service import MESSAGE_RECEIVED_EVENT, InboxService

__all__ = ["InboxMessage", "InboxService", "MESSAGE_RECEIVED_EVENT"]
