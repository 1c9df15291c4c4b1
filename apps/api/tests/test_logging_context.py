from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


ALL_PERMISSIONS = {
    "crm.funnels.manage",
    "crm.funnels.read",
    "crm.contacts.write",
    "crm.deals.write",
    "crm.deals.read",
    "crm.automations.manage",
    "flows.manage",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, organization_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            allowed_organization_ids=[organization_id],
            current_organization_id=organization_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    deal_id = uuid.uuid4()
    response = client.get(
        f"/api/crm/deals/{deal_id}",
        headers={"X-Correlation-Id": "abc-123", "X-Organization": "acme"},
    )
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "organization", None) == "acme"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_health_checks_are_logged_at_debug(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    assert client.get("/health").status_code == 200

    assert not [
        record
        for record in caplog.records
        if record.name == "app.request" and getattr(record, "path", None) == "/health"
    ]


def test_automation_logs_carry_run_and_correlation_context(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    flow = client.post("/api/flows", json={"name": "Welcome"})
    funnel = client.post("/api/crm/funnels", json={"name": "Inbound"})
    funnel_id = funnel.json()["id"]
    lead = client.post(f"/api/crm/funnels/{funnel_id}/stages", json={"name": "Lead", "position": 1})
    client.put(
        f"/api/crm/stages/{lead.json()['id']}/automation",
        json={"flow_id": flow.json()["id"], "wait_hours": 24},
    )

    deal = client.post(
        "/api/crm/deals",
        json={"title": "Log Deal", "funnel_id": funnel_id},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert deal.status_code == 201

    started = [
        record
        for record in caplog.records
        if record.name == "app.automation" and record.getMessage() == "automation_started"
    ]
    assert started
    assert getattr(started[0], "deal_id", None) == deal.json()["id"]
    assert getattr(started[0], "run_id", None)
    assert getattr(started[0], "correlation_id", None) == "abc-123"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.automation",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "automation_moved",
            "correlation_id": "corr-1",
            "deal_id": "deal-1",
            "run_id": "run-1",
            "contact_phone": "5511987654321",
            "error": "x" * 600,
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation_moved"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"]["deal_id"] == "deal-1"
    assert payload["fields"]["run_id"] == "run-1"
    assert "contact_phone" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
