from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.funnels.manage",
    "crm.funnels.read",
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/funnels",
        json={"name": "Traced"},
        headers={"X-Correlation-Id": "otel-corr-1", "X-Organization": "acme"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("organization") == "acme" for span in spans)


def test_stage_entry_span_records_deal_and_trigger(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    flow = client.post("/api/flows", json={"name": "Welcome"})
    funnel = client.post("/api/crm/funnels", json={"name": "Inbound"})
    funnel_id = funnel.json()["id"]
    lead = client.post(f"/api/crm/funnels/{funnel_id}/stages", json={"name": "Lead", "position": 1})
    client.put(
        f"/api/crm/stages/{lead.json()['id']}/automation",
        json={"flow_id": flow.json()["id"], "wait_hours": 24},
    )

    deal = client.post("/api/crm/deals", json={"title": "Traced deal", "funnel_id": funnel_id})
    assert deal.status_code == 201

    entry_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.on_stage_entered"]
    assert entry_spans
    assert any(
        span.attributes.get("deal_id") == deal.json()["id"]
        and span.attributes.get("stage_id") == lead.json()["id"]
        and span.attributes.get("trigger") == "deal_created"
        and span.attributes.get("run_id")
        for span in entry_spans
    )


def test_sweep_span_records_stats(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/crm/automations/sweep")
    assert response.status_code == 200

    sweep_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.sweep"]
    assert sweep_spans
    assert sweep_spans[-1].attributes.get("sweep.deals_moved") == 0
