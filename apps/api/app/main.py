from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.engine import automation_engine
from app.automation.handlers import AutomationEventHandlers
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


automation_event_handlers = AutomationEventHandlers(automation_engine, session_scope=_automation_session_scope)


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    automation_event_handlers.register(event_bus)
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        automation_event_handlers.unregister(event_bus)
        event_bus.unsubscribe("system.started", _on_system_started)


app = FastAPI(title=get_settings().app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("funnel-automation-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
