from __future__ import annotations

import uuid
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.flows.models import Flow, FlowSession, utcnow


tracer = trace.get_tracer("app.flows.runner")


class FlowRunnerError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class FlowRunner(Protocol):
    def start_flow(self, flow_id: uuid.UUID, contact_phone: str, variables: dict[str, Any]) -> uuid.UUID: ...

    def cancel_session(self, session_id: uuid.UUID) -> bool: ...


class LocalFlowRunner:
    """Records flow sessions for the external executor that delivers messages.

    Starting a flow for a phone replaces any session still active for it.
    Writes are flushed, never committed.
    """

    def __init__(self, session: Session):
        self.session = session

    def start_flow(self, flow_id: uuid.UUID, contact_phone: str, variables: dict[str, Any]) -> uuid.UUID:
        with tracer.start_as_current_span("flows.start_flow") as span:
            span.set_attribute("flow_id", str(flow_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            if not contact_phone:
                raise FlowRunnerError("missing_phone", "contact phone is required to start a flow")

            flow = self.session.scalar(select(Flow).where(Flow.id == flow_id))
            if flow is None:
                raise FlowRunnerError("flow_not_found", "flow not found")
            if not flow.is_active:
                raise FlowRunnerError("flow_inactive", "flow is inactive")

            replaced = self.session.execute(
                update(FlowSession)
                .where(and_(FlowSession.contact_phone == contact_phone, FlowSession.status == "active"))
                .values(status="replaced", updated_at=utcnow())
            )
            flow_session = FlowSession(
                flow_id=flow.id,
                contact_phone=contact_phone,
                status="active",
                variables=dict(variables),
            )
            self.session.add(flow_session)
            self.session.flush()
            span.set_attribute("flow_session_id", str(flow_session.id))
            span.set_attribute("replaced_sessions", int(replaced.rowcount or 0))
            return flow_session.id

    def cancel_session(self, session_id: uuid.UUID) -> bool:
        with tracer.start_as_current_span("flows.cancel_session") as span:
            span.set_attribute("flow_session_id", str(session_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            result = self.session.execute(
                update(FlowSession)
                .where(and_(FlowSession.id == session_id, FlowSession.status == "active"))
                .values(status="cancelled", updated_at=utcnow())
            )
            self.session.flush()
            return bool(result.rowcount)
