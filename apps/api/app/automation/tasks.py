from __future__ import annotations

import logging
import uuid
from typing import Any

from app.automation.engine import automation_engine
from app.automation.handlers import AutomationEventHandlers, default_session_scope
from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.config import get_settings


logger = logging.getLogger("app.automation.tasks")


@celery_app.task(name="app.tasks.automation_sweep")
def automation_sweep_task() -> dict[str, Any]:
    if not get_settings().automation_enabled:
        logger.info("automation_sweep_disabled")
        return {"skipped": True}

    token = set_correlation_id(f"sweep-{uuid.uuid4()}")
    handlers = AutomationEventHandlers(automation_engine, session_scope=default_session_scope)
    handlers.register()
    try:
        with default_session_scope() as session:
            return automation_engine.run_sweep(session)
    finally:
        handlers.unregister()
        reset_correlation_id(token)
