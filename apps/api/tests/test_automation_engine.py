from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.engine import TIMEOUT_MOVE_NOTE, AutomationEngine
from app.automation.models import CRMAutomationLog, CRMDealAutomation, CRMStageAutomation
from app.core.config import get_settings
from app.core.database import Base
from app.crm.models import CRMContact, CRMDeal, CRMDealHistory, CRMFunnel, CRMStage
from app.crm.service import DealService
from app.flows.models import Flow
from app.flows.runner import FlowRunnerError


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeFlowRunner:
    def __init__(self) -> None:
        self.started: list[dict[str, Any]] = []
        self.cancelled: list[uuid.UUID] = []
        self.error: Exception | None = None

    def __call__(self, session: Session) -> FakeFlowRunner:
        return self

    def start_flow(self, flow_id: uuid.UUID, contact_phone: str, variables: dict[str, Any]) -> uuid.UUID:
        if self.error is not None:
            raise self.error
        session_id = uuid.uuid4()
        self.started.append(
            {"flow_id": flow_id, "contact_phone": contact_phone, "variables": variables, "session_id": session_id}
        )
        return session_id

    def cancel_session(self, session_id: uuid.UUID) -> bool:
        self.cancelled.append(session_id)
        return True


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def runner() -> FakeFlowRunner:
    return FakeFlowRunner()


@pytest.fixture()
def engine(runner: FakeFlowRunner) -> AutomationEngine:
    return AutomationEngine(flow_runner_factory=runner)


@pytest.fixture()
def seed(db_session: Session) -> dict[str, uuid.UUID]:
    inbound = CRMFunnel(name="Inbound", is_default=True)
    nurture = CRMFunnel(name="Nurture")
    db_session.add_all([inbound, nurture])
    db_session.flush()

    lead = CRMStage(funnel_id=inbound.id, name="Lead", position=1)
    contacted = CRMStage(funnel_id=inbound.id, name="Contacted", position=2)
    proposal = CRMStage(funnel_id=inbound.id, name="Proposal", position=3)
    won = CRMStage(funnel_id=inbound.id, name="Won", position=90, stage_type="ClosedWon")
    reengage = CRMStage(funnel_id=nurture.id, name="Re-engage", position=1)
    flow = Flow(name="Welcome")
    contact = CRMContact(name="Maria Souza", phone="5511987654321", email="maria@example.com")
    db_session.add_all([lead, contacted, proposal, won, reengage, flow, contact])
    db_session.flush()

    deal = CRMDeal(
        funnel_id=inbound.id,
        stage_id=lead.id,
        title="Website redesign",
        value=Decimal("1500.00"),
        company_name="Acme",
        primary_contact_id=contact.id,
    )
    db_session.add(deal)
    db_session.commit()
    return {
        "funnel": inbound.id,
        "nurture": nurture.id,
        "lead": lead.id,
        "contacted": contacted.id,
        "proposal": proposal.id,
        "won": won.id,
        "reengage": reengage.id,
        "flow": flow.id,
        "contact": contact.id,
        "deal": deal.id,
    }


def _configure(db_session: Session, stage_id: uuid.UUID, **values: Any) -> CRMStageAutomation:
    config = CRMStageAutomation(stage_id=stage_id, wait_hours=values.pop("wait_hours", 24), **values)
    db_session.add(config)
    db_session.commit()
    return config


def _utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _actions(db_session: Session, deal_id: uuid.UUID) -> list[str]:
    rows = db_session.scalars(
        select(CRMAutomationLog).where(CRMAutomationLog.deal_id == deal_id).order_by(CRMAutomationLog.created_at)
    ).all()
    return [row.action for row in rows]


def _runs(db_session: Session, deal_id: uuid.UUID) -> list[CRMDealAutomation]:
    return list(
        db_session.scalars(
            select(CRMDealAutomation)
            .where(CRMDealAutomation.deal_id == deal_id)
            .order_by(CRMDealAutomation.created_at)
        ).all()
    )


def test_stage_entry_sends_flow_and_arms_wait(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])

    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)

    assert run is not None
    assert run.status == "waiting"
    assert run.flow_attempts == 1
    assert _utc(run.flow_sent_at) == NOW
    assert _utc(run.wait_until) == NOW + timedelta(hours=24)
    assert run.contact_phone == "5511987654321"
    assert run.next_stage_id == seed["contacted"]

    assert len(runner.started) == 1
    started = runner.started[0]
    assert started["flow_id"] == seed["flow"]
    assert started["contact_phone"] == "5511987654321"
    assert started["variables"]["nome"] == "Maria Souza"
    assert started["variables"]["deal_title"] == "Website redesign"
    assert started["variables"]["deal_value"] == 1500.0
    assert started["variables"]["deal_id"] == str(seed["deal"])
    assert run.flow_session_id == started["session_id"]

    assert _actions(db_session, seed["deal"]) == ["automation_started", "flow_triggered", "wait_armed"]


def test_repeated_stage_entry_keeps_single_active_run(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])

    first = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    second = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW + timedelta(minutes=5))

    assert first is not None and second is not None
    assert first.id == second.id
    assert len(_runs(db_session, seed["deal"])) == 1
    assert len(runner.started) == 1
    assert _actions(db_session, seed["deal"])[-1] == "already_active"


def test_timeout_moves_deal_only_after_wait_expires(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    early = engine.run_sweep(db_session, now=NOW + timedelta(hours=23))
    assert early["deals_moved"] == 0
    assert db_session.get(CRMDealAutomation, run_id).status == "waiting"

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))
    assert stats["timeouts_processed"] == 1
    assert stats["deals_moved"] == 1
    assert stats["errors"] == 0

    deal = db_session.get(CRMDeal, seed["deal"])
    assert deal.stage_id == seed["contacted"]
    moved_run = db_session.get(CRMDealAutomation, run_id)
    assert moved_run.status == "moved"
    assert _utc(moved_run.moved_at) == NOW + timedelta(hours=25)
    assert "timeout_move" in _actions(db_session, seed["deal"])

    history = db_session.scalars(
        select(CRMDealHistory).where(CRMDealHistory.deal_id == seed["deal"], CRMDealHistory.notes == TIMEOUT_MOVE_NOTE)
    ).all()
    assert len(history) == 1
    assert history[0].actor_user_id == "system:automation"

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.deal.stage_changed"]
    assert len(stage_events) == 1
    assert stage_events[0]["payload"]["trigger"] == "automation_timeout"
    assert stage_events[0]["payload"]["previous_stage_id"] == str(seed["lead"])

    again = engine.run_sweep(db_session, now=NOW + timedelta(hours=26))
    assert again["deals_moved"] == 0
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["contacted"]


def test_inbound_reply_stops_timeout_move(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    assert engine.on_inbound_message(db_session, "+1 555 000 0000", NOW + timedelta(hours=1)) == 0
    handled_at = NOW + timedelta(hours=2, minutes=3)
    assert engine.on_inbound_message(db_session, "+55 (11) 98765-4321", NOW + timedelta(hours=2), now=handled_at) == 1

    responded = db_session.get(CRMDealAutomation, run_id)
    assert responded.status == "responded"
    assert _utc(responded.responded_at) == handled_at
    assert _utc(db_session.get(CRMDeal, seed["deal"]).last_activity_at) == NOW + timedelta(hours=2)

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))
    assert stats["deals_moved"] == 0
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]
    assert "message_received" in _actions(db_session, seed["deal"])


def test_flow_failure_leaves_run_pending_and_sweep_retries(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    runner.error = FlowRunnerError("flow_unavailable", "executor unreachable")

    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    assert run.status == "pending"
    assert run.flow_attempts == 1

    failed_logs = db_session.scalars(
        select(CRMAutomationLog).where(CRMAutomationLog.deal_automation_id == run_id, CRMAutomationLog.action == "flow_failed")
    ).all()
    assert len(failed_logs) == 1
    assert failed_logs[0].details["error"] == "executor unreachable"

    runner.error = None
    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=1))
    assert stats["flows_retried"] == 1
    assert stats["flows_triggered"] == 1

    retried = db_session.get(CRMDealAutomation, run_id)
    assert retried.status == "waiting"
    assert retried.flow_attempts == 2
    assert _utc(retried.flow_sent_at) == NOW + timedelta(hours=1)
    assert len(runner.started) == 1


def test_pending_run_past_its_wait_is_promoted_and_moved(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    runner.error = FlowRunnerError("flow_unavailable", "executor unreachable")
    engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))

    assert stats["flows_retried"] == 0
    assert stats["deals_moved"] == 1
    actions = _actions(db_session, seed["deal"])
    assert "flow_retry_expired" in actions
    assert "timeout_move" in actions
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["contacted"]


def test_missing_target_is_logged_once(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    first = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))
    second = engine.run_sweep(db_session, now=NOW + timedelta(hours=30))

    assert first["no_target"] == 1
    assert second["no_target"] == 0
    assert _actions(db_session, seed["deal"]).count("no_target") == 1
    assert db_session.get(CRMDealAutomation, run_id).status == "waiting"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]


def test_fallback_target_moves_deal_into_other_funnel(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(
        db_session,
        seed["lead"],
        flow_id=seed["flow"],
        fallback_funnel_id=seed["nurture"],
        fallback_stage_id=seed["reengage"],
    )
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    assert run.next_stage_id == seed["reengage"]
    assert run.next_funnel_id == seed["nurture"]

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))

    assert stats["deals_moved"] == 1
    deal = db_session.get(CRMDeal, seed["deal"])
    assert deal.stage_id == seed["reengage"]
    assert deal.funnel_id == seed["nurture"]


def test_stage_change_supersedes_previous_run_and_cancels_flow(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    flow_session_id = run.flow_session_id

    DealService().move_to_stage(db_session, seed["deal"], seed["contacted"], actor_user_id="user-1")
    db_session.commit()

    result = engine.on_stage_entered(db_session, seed["deal"], seed["contacted"], seed["lead"], now=NOW + timedelta(hours=1))

    assert result is None
    superseded = db_session.get(CRMDealAutomation, run_id)
    assert superseded.status == "cancelled"
    assert _utc(superseded.cancelled_at) == NOW + timedelta(hours=1)
    assert runner.cancelled == [flow_session_id]
    actions = _actions(db_session, seed["deal"])
    assert "superseded" in actions
    assert actions[-1] == "automation_skipped"


def test_stale_stage_event_does_not_touch_current_run(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    _configure(db_session, seed["contacted"], flow_id=seed["flow"], next_stage_id=seed["proposal"])
    DealService().move_to_stage(db_session, seed["deal"], seed["contacted"], actor_user_id="user-1")
    db_session.commit()

    current = engine.on_stage_entered(db_session, seed["deal"], seed["contacted"], seed["lead"], now=NOW)
    assert current is not None
    current_id = current.id

    stale = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW + timedelta(minutes=1))

    assert stale is None
    assert db_session.get(CRMDealAutomation, current_id).status == "waiting"
    assert len(_runs(db_session, seed["deal"])) == 1
    skipped = db_session.scalars(
        select(CRMAutomationLog).where(
            CRMAutomationLog.deal_id == seed["deal"],
            CRMAutomationLog.action == "automation_skipped",
        )
    ).all()
    assert [row.details["reason"] for row in skipped] == ["deal_not_in_stage"]


def test_terminal_and_unconfigured_stages_are_skipped(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    assert engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW) is None

    DealService().move_to_stage(db_session, seed["deal"], seed["won"], actor_user_id="user-1")
    db_session.commit()
    assert engine.on_stage_entered(db_session, seed["deal"], seed["won"], now=NOW) is None

    skipped = db_session.scalars(
        select(CRMAutomationLog)
        .where(CRMAutomationLog.deal_id == seed["deal"], CRMAutomationLog.action == "automation_skipped")
        .order_by(CRMAutomationLog.created_at)
    ).all()
    assert [row.details["reason"] for row in skipped] == ["no_config", "terminal_stage"]
    assert _runs(db_session, seed["deal"]) == []


def test_inactive_config_does_not_start(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], is_active=False)

    assert engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW) is None
    assert runner.started == []


def test_deferred_flow_is_sent_by_manual_start(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(
        db_session,
        seed["lead"],
        flow_id=seed["flow"],
        next_stage_id=seed["contacted"],
        execute_immediately=False,
    )

    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    assert run.status == "waiting"
    assert run.flow_sent_at is None
    assert runner.started == []

    started = engine.start_for_deal(db_session, seed["deal"], actor_user_id="user-1", now=NOW + timedelta(hours=2))

    assert started.id == run_id
    assert started.status == "waiting"
    assert _utc(started.flow_sent_at) == NOW + timedelta(hours=2)
    assert _utc(started.wait_until) == NOW + timedelta(hours=26)
    assert len(runner.started) == 1


def test_manual_start_requires_active_config(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    with pytest.raises(HTTPException) as exc_info:
        engine.start_for_deal(db_session, seed["deal"], actor_user_id="user-1", now=NOW)
    assert exc_info.value.status_code == 422

    with pytest.raises(HTTPException) as missing:
        engine.start_for_deal(db_session, uuid.uuid4(), actor_user_id="user-1", now=NOW)
    assert missing.value.status_code == 404


def test_cancel_for_deal_cancels_active_runs(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    flow_session_id = run.flow_session_id

    result = engine.cancel_for_deal(db_session, seed["deal"], actor_user_id="user-1", now=NOW + timedelta(hours=1))

    assert result == {"success": True, "cancelled": 1}
    assert db_session.get(CRMDealAutomation, run_id).status == "cancelled"
    assert runner.cancelled == [flow_session_id]
    assert "manual_cancel" in _actions(db_session, seed["deal"])

    assert engine.cancel_for_deal(db_session, seed["deal"], actor_user_id="user-1") == {"success": True, "cancelled": 0}
    assert engine.run_sweep(db_session, now=NOW + timedelta(hours=25))["deals_moved"] == 0


def test_bulk_start_moves_deals_and_counts_failures(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    other = CRMDeal(
        funnel_id=seed["funnel"],
        stage_id=seed["contacted"],
        title="Annual support plan",
        primary_contact_id=seed["contact"],
    )
    db_session.add(other)
    db_session.commit()
    other_id = other.id

    result = engine.bulk_start(
        db_session,
        [seed["deal"], other_id, seed["deal"], uuid.uuid4()],
        seed["lead"],
        actor_user_id="user-1",
        now=NOW,
    )

    assert result == {"success": True, "started": 2, "failed": 1}
    assert db_session.get(CRMDeal, other_id).stage_id == seed["lead"]
    assert len(runner.started) == 2
    bulk_events = [item for item in events.published_events if item["payload"].get("trigger") == "bulk_start"]
    assert [item["payload"]["deal_id"] for item in bulk_events] == [str(other_id)]


def test_bulk_start_rejects_stage_without_automation(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    with pytest.raises(HTTPException) as exc_info:
        engine.bulk_start(db_session, [seed["deal"]], seed["contacted"], actor_user_id="user-1", now=NOW)
    assert exc_info.value.status_code == 422

    with pytest.raises(HTTPException) as empty:
        engine.bulk_start(db_session, [], seed["lead"], actor_user_id="user-1", now=NOW)
    assert empty.value.status_code == 422


def test_sweep_cancels_run_when_deal_was_deleted(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    deal = db_session.get(CRMDeal, seed["deal"])
    deal.deleted_at = NOW + timedelta(hours=1)
    db_session.commit()

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))

    assert stats["cancelled"] == 1
    assert stats["deals_moved"] == 0
    assert db_session.get(CRMDealAutomation, run_id).status == "cancelled"
    assert "deal_missing" in _actions(db_session, seed["deal"])


def test_sweep_cancels_run_left_behind_by_direct_move(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    DealService().move_to_stage(db_session, seed["deal"], seed["proposal"], actor_user_id="user-1")
    db_session.commit()

    stats = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))

    assert stats["cancelled"] == 1
    assert stats["deals_moved"] == 0
    assert db_session.get(CRMDealAutomation, run_id).status == "cancelled"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["proposal"]
    assert len(runner.cancelled) == 1


def test_failed_move_backs_off_then_retries(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    target = db_session.get(CRMStage, seed["contacted"])
    target.deleted_at = NOW
    db_session.commit()

    failed_at = NOW + timedelta(hours=25)
    stats = engine.run_sweep(db_session, now=failed_at)

    assert stats["errors"] == 1
    assert stats["deals_moved"] == 0
    failed = db_session.get(CRMDealAutomation, run_id)
    assert failed.status == "waiting"
    assert _utc(failed.next_attempt_at) == failed_at + timedelta(seconds=300)
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]
    logs = db_session.scalars(
        select(CRMAutomationLog).where(CRMAutomationLog.deal_automation_id == run_id, CRMAutomationLog.action == "move_failed")
    ).all()
    assert len(logs) == 1
    assert logs[0].details["error"] == "stage not found"

    held = engine.run_sweep(db_session, now=failed_at + timedelta(minutes=1))
    assert held["timeouts_processed"] == 0

    target = db_session.get(CRMStage, seed["contacted"])
    target.deleted_at = None
    db_session.commit()

    retried = engine.run_sweep(db_session, now=failed_at + timedelta(minutes=5))

    assert retried["deals_moved"] == 1
    assert db_session.get(CRMDealAutomation, run_id).status == "moved"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["contacted"]


def test_failing_run_does_not_starve_later_expiries(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOMATION_SWEEP_BATCH_SIZE", "1")
    get_settings.cache_clear()
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    retired = CRMStage(funnel_id=seed["funnel"], name="Retired", position=4, deleted_at=NOW)
    other = CRMDeal(funnel_id=seed["funnel"], stage_id=seed["lead"], title="Annual support plan")
    db_session.add_all([retired, other])
    db_session.commit()
    retired_id = retired.id
    other_id = other.id

    broken = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    healthy = engine.on_stage_entered(db_session, other_id, seed["lead"], now=NOW + timedelta(minutes=1))
    assert broken is not None and healthy is not None
    broken_id = broken.id
    healthy_id = healthy.id
    db_session.execute(
        update(CRMDealAutomation).where(CRMDealAutomation.id == broken_id).values(next_stage_id=retired_id)
    )
    db_session.commit()

    first = engine.run_sweep(db_session, now=NOW + timedelta(hours=25))
    second = engine.run_sweep(db_session, now=NOW + timedelta(hours=25, minutes=1))

    assert first["errors"] == 1
    assert second["deals_moved"] == 1
    assert db_session.get(CRMDealAutomation, healthy_id).status == "moved"
    assert db_session.get(CRMDeal, other_id).stage_id == seed["contacted"]
    assert db_session.get(CRMDealAutomation, broken_id).status == "waiting"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]


def test_reply_landing_before_the_move_wins(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id

    transition = engine._transition

    def reply_first(session: Session, target_id: uuid.UUID, expected: tuple[str, ...], values: dict[str, Any]) -> bool:
        if values.get("status") == "moved":
            session.execute(
                update(CRMDealAutomation).where(CRMDealAutomation.id == target_id).values(status="responded")
            )
            session.commit()
        return transition(session, target_id, expected, values)

    monkeypatch.setattr(engine, "_transition", reply_first)

    assert engine.process_timeout(db_session, run_id, now=NOW + timedelta(hours=25)) == "skipped"
    assert db_session.get(CRMDealAutomation, run_id).status == "responded"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]
    assert "timeout_move" not in _actions(db_session, seed["deal"])
    history = db_session.scalars(select(CRMDealHistory).where(CRMDealHistory.notes == TIMEOUT_MOVE_NOTE)).all()
    assert history == []


def test_timeout_skips_run_that_already_responded(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    db_session.execute(update(CRMDealAutomation).where(CRMDealAutomation.id == run_id).values(status="responded"))
    db_session.commit()

    assert engine.process_timeout(db_session, run_id, now=NOW + timedelta(hours=25)) == "skipped"
    assert db_session.get(CRMDeal, seed["deal"]).stage_id == seed["lead"]


@pytest.mark.parametrize("resolved_status", ["moved", "responded"])
def test_cancel_for_deal_leaves_resolved_runs_alone(
    db_session: Session,
    engine: AutomationEngine,
    runner: FakeFlowRunner,
    seed: dict[str, uuid.UUID],
    resolved_status: str,
) -> None:
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])
    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)
    assert run is not None
    run_id = run.id
    db_session.execute(update(CRMDealAutomation).where(CRMDealAutomation.id == run_id).values(status=resolved_status))
    db_session.commit()

    result = engine.cancel_for_deal(db_session, seed["deal"], actor_user_id="user-1", now=NOW + timedelta(hours=1))

    assert result == {"success": True, "cancelled": 0}
    resolved = db_session.get(CRMDealAutomation, run_id)
    assert resolved.status == resolved_status
    assert resolved.cancelled_at is None
    assert runner.cancelled == []
    assert "manual_cancel" not in _actions(db_session, seed["deal"])


def test_slow_flow_runner_is_reported_without_failing_the_run(
    db_session: Session,
    engine: AutomationEngine,
    seed: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("FLOW_RUNNER_TIMEOUT_SECONDS", "0")
    get_settings.cache_clear()
    caplog.set_level(logging.WARNING, logger="app.automation")
    _configure(db_session, seed["lead"], flow_id=seed["flow"], next_stage_id=seed["contacted"])

    run = engine.on_stage_entered(db_session, seed["deal"], seed["lead"], now=NOW)

    assert run is not None
    assert run.status == "waiting"
    assert any(record.getMessage() == "flow_runner_slow" for record in caplog.records)
