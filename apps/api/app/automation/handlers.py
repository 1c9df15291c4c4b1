from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.automation.engine import AutomationEngine, automation_engine
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core import database
from app.core.events import InProcessEventBus, InternalEvent, event_bus
from app.crm.service import DEAL_CREATED_EVENT, DEAL_STAGE_CHANGED_EVENT
from app.inbox.service import MESSAGE_RECEIVED_EVENT


logger = logging.getLogger("app.automation.events")

SessionScope = Callable[[], AbstractContextManager[Session]]


@contextmanager
def default_session_scope() -> Iterator[Session]:
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str) and value:
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class AutomationEventHandlers:
    """Feeds deal and inbox events into the automation engine.

    Handlers swallow and log every failure so the publisher's own operation
    (a user moving a deal, a webhook storing a message) never fails because
    of automation.
    """

    def __init__(self, engine: AutomationEngine | None = None, session_scope: SessionScope | None = None) -> None:
        self._engine = engine
        self.session_scope: SessionScope = session_scope or default_session_scope

    @property
    def engine(self) -> AutomationEngine:
        return self._engine or automation_engine

    def register(self, bus: InProcessEventBus = event_bus) -> None:
        bus.subscribe(DEAL_CREATED_EVENT, self.on_deal_stage_event)
        bus.subscribe(DEAL_STAGE_CHANGED_EVENT, self.on_deal_stage_event)
        bus.subscribe(MESSAGE_RECEIVED_EVENT, self.on_inbound_message_event)

    def unregister(self, bus: InProcessEventBus = event_bus) -> None:
        bus.unsubscribe(DEAL_CREATED_EVENT, self.on_deal_stage_event)
        bus.unsubscribe(DEAL_STAGE_CHANGED_EVENT, self.on_deal_stage_event)
        bus.unsubscribe(MESSAGE_RECEIVED_EVENT, self.on_inbound_message_event)

    def on_deal_stage_event(self, event: InternalEvent) -> None:
        if not get_settings().automation_enabled or not isinstance(event.payload, dict):
            return
        envelope: dict[str, Any] = event.payload
        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        deal_id = _parse_uuid(payload.get("deal_id"))
        stage_id = _parse_uuid(payload.get("stage_id"))
        if deal_id is None or stage_id is None:
            return

        token = self._bind_correlation_id(envelope)
        try:
            with self.session_scope() as session:
                self.engine.on_stage_entered(
                    session,
                    deal_id,
                    stage_id,
                    _parse_uuid(payload.get("previous_stage_id")),
                    trigger=str(payload.get("trigger") or event.name),
                )
        except Exception as exc:
            logger.exception(
                "automation_stage_entry_failed",
                extra={"event_name": event.name, "deal_id": str(deal_id), "error": str(exc)[:500]},
            )
        finally:
            if token is not None:
                reset_correlation_id(token)

    def on_inbound_message_event(self, event: InternalEvent) -> None:
        if not get_settings().automation_enabled or not isinstance(event.payload, dict):
            return
        envelope: dict[str, Any] = event.payload
        payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
        phone = payload.get("phone")
        if not isinstance(phone, str) or not phone:
            return

        token = self._bind_correlation_id(envelope)
        try:
            with self.session_scope() as session:
                self.engine.on_inbound_message(session, phone, _parse_datetime(payload.get("received_at")))
        except Exception as exc:
            logger.exception("automation_reply_failed", extra={"event_name": event.name, "error": str(exc)[:500]})
        finally:
            if token is not None:
                reset_correlation_id(token)

    def _bind_correlation_id(self, envelope: dict[str, Any]):  # type: ignore[no-untyped-def]
        correlation_id = envelope.get("correlation_id")
        if get_correlation_id() is None and isinstance(correlation_id, str) and correlation_id:
            return set_correlation_id(correlation_id)
        return None
