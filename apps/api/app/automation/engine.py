from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.automation.models import (
    ACTIVE_RUN_STATUSES,
    REPLY_RUN_STATUSES,
    RUN_STATUS_CANCELLED,
    RUN_STATUS_FLOW_SENT,
    RUN_STATUS_MOVED,
    RUN_STATUS_PENDING,
    RUN_STATUS_RESPONDED,
    RUN_STATUS_WAITING,
    CRMAutomationLog,
    CRMDealAutomation,
    CRMStageAutomation,
)
from app.context import get_correlation_id, reset_automation_run_id, set_automation_run_id
from app.core.config import get_settings
from app.crm.models import CRMDeal, CRMStage
from app.crm.service import DealService, deal_snapshot, normalize_phone
from app.flows.models import Flow
from app.flows.runner import FlowRunner, LocalFlowRunner
from app.inbox.models import InboxMessage
from app.metrics import (
    observe_automation_skip,
    observe_automation_transition,
    observe_flow_failure,
    observe_job,
    observe_sweep_outcome,
)


logger = logging.getLogger("app.automation")
tracer = trace.get_tracer("app.automation.engine")

FlowRunnerFactory = Callable[[Session], FlowRunner]

AUTOMATION_ACTOR = "system:automation"
TIMEOUT_MOVE_NOTE = "Moved automatically: no reply before the wait expired"
BULK_START_NOTE = "Moved by bulk automation start"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _error_detail(exc: Exception) -> str:
    detail = getattr(exc, "detail", None) or getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    return str(detail)[:500]


def empty_sweep_stats() -> dict[str, int]:
    return {
        "replies_detected": 0,
        "flows_retried": 0,
        "flows_triggered": 0,
        "timeouts_processed": 0,
        "deals_moved": 0,
        "no_target": 0,
        "cancelled": 0,
        "errors": 0,
    }


class AutomationEngine:
    """Drives deal automation runs through pending, flow_sent and waiting.

    Every status change is a compare-and-set on the run's current status; a
    zero rowcount means another actor already moved the run and is not an
    error. Flow runner and stage-move failures are logged on the run and
    never propagate to the caller that changed the deal's stage.
    """

    def __init__(
        self,
        flow_runner_factory: FlowRunnerFactory | None = None,
        deal_service: DealService | None = None,
    ) -> None:
        self.flow_runner_factory: FlowRunnerFactory = flow_runner_factory or LocalFlowRunner
        self.deal_service = deal_service or DealService()

    def on_stage_entered(
        self,
        session: Session,
        deal_id: uuid.UUID,
        new_stage_id: uuid.UUID,
        previous_stage_id: uuid.UUID | None = None,
        *,
        trigger: str = "stage_changed",
        force_flow: bool = False,
        now: datetime | None = None,
    ) -> CRMDealAutomation | None:
        now = _as_utc(now) or utcnow()
        with tracer.start_as_current_span("automation.on_stage_entered") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("stage_id", str(new_stage_id))
            span.set_attribute("trigger", trigger)

            deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
            if deal is not None and get_settings().automation_supersede_on_stage_change:
                self._supersede_other_runs(session, deal.id, deal.stage_id, now)

            stage = session.scalar(
                select(CRMStage).where(and_(CRMStage.id == new_stage_id, CRMStage.deleted_at.is_(None)))
            )
            config: CRMStageAutomation | None = None
            reason: str | None = None
            if stage is None:
                reason = "stage_not_found"
            elif deal is None:
                reason = "deal_not_found"
            elif deal.stage_id != stage.id:
                reason = "deal_not_in_stage"
            elif stage.is_terminal:
                reason = "terminal_stage"
            else:
                config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == stage.id))
                if config is None:
                    reason = "no_config"
                elif not config.is_active:
                    reason = "inactive"

            if reason is not None or config is None or deal is None or stage is None:
                skip_reason = reason or "no_config"
                self._log(
                    session,
                    deal_id,
                    "automation_skipped",
                    {
                        "stage_id": str(new_stage_id),
                        "previous_stage_id": str(previous_stage_id) if previous_stage_id else None,
                        "reason": skip_reason,
                        "trigger": trigger,
                    },
                )
                session.commit()
                observe_automation_skip(skip_reason)
                span.set_attribute("skipped", skip_reason)
                return None

            existing = self._active_run(session, deal.id, stage.id)
            if existing is not None:
                return self._handle_existing_run(session, existing, force_flow=force_flow, trigger=trigger, now=now)

            run = self._create_run(session, deal, stage, config, now)
            if run is None:
                existing = self._active_run(session, deal.id, stage.id)
                if existing is None:
                    return None
                return self._handle_existing_run(session, existing, force_flow=force_flow, trigger=trigger, now=now)

            run_id = run.id
            span.set_attribute("run_id", str(run_id))
            self._log(
                session,
                deal.id,
                "automation_started",
                {
                    "stage_id": str(stage.id),
                    "automation_id": str(config.id),
                    "flow_id": str(config.flow_id) if config.flow_id else None,
                    "wait_hours": config.wait_hours,
                    "wait_until": (now + timedelta(hours=config.wait_hours)).isoformat(),
                    "next_stage_id": str(run.next_stage_id) if run.next_stage_id else None,
                    "next_funnel_id": str(run.next_funnel_id) if run.next_funnel_id else None,
                    "trigger": trigger,
                },
                run_id,
            )
            session.commit()
            observe_automation_transition(RUN_STATUS_PENDING)

            token = set_automation_run_id(str(run_id))
            try:
                send_ok = True
                if run.flow_id is not None and (config.execute_immediately or force_flow):
                    send_ok = self._send_flow(session, run, now)
                if send_ok:
                    self._arm_wait(session, run)
            finally:
                reset_automation_run_id(token)
            return run

    def on_inbound_message(
        self,
        session: Session,
        phone: str | None,
        received_at: datetime | None = None,
        now: datetime | None = None,
    ) -> int:
        normalized = normalize_phone(phone)
        if normalized is None:
            return 0
        now = _as_utc(now) or utcnow()
        received_at = _as_utc(received_at) or now
        with tracer.start_as_current_span("automation.on_inbound_message") as span:
            runs = session.scalars(
                select(CRMDealAutomation)
                .where(
                    and_(
                        CRMDealAutomation.contact_phone == normalized,
                        CRMDealAutomation.status.in_(REPLY_RUN_STATUSES),
                    )
                )
                .order_by(CRMDealAutomation.created_at.desc(), CRMDealAutomation.id)
            ).all()
            responded = 0
            for run in self._pick_runs_per_deal(session, runs):
                if self._mark_responded(session, run, received_at, source="incoming_message", now=now):
                    responded += 1
            span.set_attribute("responded", responded)
            return responded

    def scan_for_replies(self, session: Session, now: datetime | None = None) -> int:
        """Catch replies whose inbound event was missed by polling the inbox."""
        now = _as_utc(now) or utcnow()
        runs = session.scalars(
            select(CRMDealAutomation)
            .where(
                and_(
                    CRMDealAutomation.status.in_(REPLY_RUN_STATUSES),
                    CRMDealAutomation.contact_phone.is_not(None),
                )
            )
            .order_by(CRMDealAutomation.created_at.desc(), CRMDealAutomation.id)
        ).all()

        replied: list[tuple[CRMDealAutomation, datetime]] = []
        for run in runs:
            since = _as_utc(run.flow_sent_at or run.created_at)
            received_at = session.scalar(
                select(InboxMessage.received_at)
                .where(
                    and_(
                        InboxMessage.phone == run.contact_phone,
                        InboxMessage.direction == "inbound",
                        InboxMessage.received_at > since,
                    )
                )
                .order_by(InboxMessage.received_at)
                .limit(1)
            )
            if received_at is not None:
                replied.append((run, _as_utc(received_at) or utcnow()))

        received_by_run = {run.id: received_at for run, received_at in replied}
        detected = 0
        for run in self._pick_runs_per_deal(session, [run for run, _ in replied]):
            if self._mark_responded(session, run, received_by_run[run.id], source="inbox_scan", now=now):
                detected += 1
        return detected

    def run_sweep(self, session: Session, now: datetime | None = None) -> dict[str, int]:
        now = _as_utc(now) or utcnow()
        settings = get_settings()
        stats = empty_sweep_stats()
        started = time.perf_counter()
        with tracer.start_as_current_span("automation.sweep") as span:
            if settings.automation_reply_scan_enabled:
                try:
                    stats["replies_detected"] = self.scan_for_replies(session, now=now)
                except Exception as exc:
                    session.rollback()
                    stats["errors"] += 1
                    logger.exception("automation_reply_scan_failed", extra={"error": str(exc)[:500]})

            retried, triggered, retry_errors = self._retry_pending_flows(session, now)
            stats["flows_retried"] = retried
            stats["flows_triggered"] = triggered
            stats["errors"] += retry_errors

            no_target_logged = exists().where(
                and_(
                    CRMAutomationLog.deal_automation_id == CRMDealAutomation.id,
                    CRMAutomationLog.action == "no_target",
                )
            )
            candidate_ids = session.scalars(
                select(CRMDealAutomation.id)
                .where(
                    and_(
                        CRMDealAutomation.status == RUN_STATUS_WAITING,
                        CRMDealAutomation.wait_until <= now,
                        or_(CRMDealAutomation.next_attempt_at.is_(None), CRMDealAutomation.next_attempt_at <= now),
                        ~and_(CRMDealAutomation.next_stage_id.is_(None), no_target_logged),
                    )
                )
                .order_by(CRMDealAutomation.wait_until, CRMDealAutomation.id)
                .limit(settings.automation_sweep_batch_size)
            ).all()

            for run_id in candidate_ids:
                token = set_automation_run_id(str(run_id))
                try:
                    outcome = self.process_timeout(session, run_id, now=now)
                except Exception as exc:
                    session.rollback()
                    stats["errors"] += 1
                    observe_sweep_outcome("error")
                    logger.exception("automation_timeout_failed", extra={"run_id": str(run_id), "error": str(exc)[:500]})
                    continue
                finally:
                    reset_automation_run_id(token)

                observe_sweep_outcome(outcome)
                if outcome == "skipped":
                    continue
                stats["timeouts_processed"] += 1
                if outcome == "moved":
                    stats["deals_moved"] += 1
                elif outcome == "no_target":
                    stats["no_target"] += 1
                elif outcome == "cancelled":
                    stats["cancelled"] += 1
                elif outcome == "move_failed":
                    stats["errors"] += 1

            for key, value in stats.items():
                span.set_attribute(f"sweep.{key}", value)

        duration = time.perf_counter() - started
        observe_job("automation_sweep", "failed" if stats["errors"] else "succeeded", duration)
        logger.info("automation_sweep_completed", extra={"stats": stats, "duration_ms": round(duration * 1000, 2)})
        return stats

    def process_timeout(self, session: Session, run_id: uuid.UUID, now: datetime | None = None) -> str:
        """Handle one expired wait. Returns the outcome label."""
        now = _as_utc(now) or utcnow()
        run = session.scalar(
            select(CRMDealAutomation)
            .where(CRMDealAutomation.id == run_id)
            .execution_options(populate_existing=True)
        )
        if run is None or run.status != RUN_STATUS_WAITING:
            return "skipped"
        wait_until = _as_utc(run.wait_until)
        if wait_until is None or wait_until > now:
            return "skipped"

        deal_id = run.deal_id
        run_stage_id = run.stage_id
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
        if deal is None:
            if self._transition(session, run_id, (RUN_STATUS_WAITING,), {"status": RUN_STATUS_CANCELLED, "cancelled_at": now}):
                self._log(session, deal_id, "deal_missing", {"stage_id": str(run_stage_id)}, run_id)
                observe_automation_transition(RUN_STATUS_CANCELLED)
            session.commit()
            return "cancelled"

        if get_settings().automation_supersede_on_stage_change and deal.stage_id != run_stage_id:
            current_stage_id = deal.stage_id
            flow_session_id = run.flow_session_id
            if self._transition(session, run_id, (RUN_STATUS_WAITING,), {"status": RUN_STATUS_CANCELLED, "cancelled_at": now}):
                self._log(
                    session,
                    deal_id,
                    "superseded",
                    {"stage_id": str(run_stage_id), "current_stage_id": str(current_stage_id), "source": "sweep"},
                    run_id,
                )
                session.commit()
                observe_automation_transition(RUN_STATUS_CANCELLED)
                self._cancel_flow_session(session, run_id, deal_id, flow_session_id)
            else:
                session.commit()
            return "cancelled"

        target_stage_id = run.next_stage_id
        if target_stage_id is None:
            already_logged = session.scalar(
                select(CRMAutomationLog.id)
                .where(and_(CRMAutomationLog.deal_automation_id == run_id, CRMAutomationLog.action == "no_target"))
                .limit(1)
            )
            if already_logged is None:
                self._log(session, deal_id, "no_target", {"stage_id": str(run_stage_id)}, run_id)
                session.commit()
                logger.warning("automation_no_target", extra={"deal_id": str(deal_id), "stage_id": str(run_stage_id)})
            return "no_target"

        previous_stage_id = deal.stage_id
        try:
            if not self._transition(session, run_id, (RUN_STATUS_WAITING,), {"status": RUN_STATUS_MOVED, "moved_at": now}):
                session.rollback()
                return "skipped"
            moved = self.deal_service.move_to_stage(
                session,
                deal_id,
                target_stage_id,
                actor_user_id=AUTOMATION_ACTOR,
                notes=TIMEOUT_MOVE_NOTE,
                correlation_id=get_correlation_id(),
            )
            organization_id = moved.organization_id
            self._log(
                session,
                deal_id,
                "timeout_move",
                {
                    "from_stage_id": str(run_stage_id),
                    "to_stage_id": str(target_stage_id),
                    "to_funnel_id": str(moved.funnel_id),
                },
                run_id,
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            retry_at = now + timedelta(seconds=get_settings().automation_retry_backoff_seconds)
            session.execute(
                update(CRMDealAutomation)
                .where(CRMDealAutomation.id == run_id)
                .values(next_attempt_at=retry_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self._log(
                session,
                deal_id,
                "move_failed",
                {"to_stage_id": str(target_stage_id), "error": _error_detail(exc), "retry_at": retry_at.isoformat()},
                run_id,
            )
            session.commit()
            logger.warning(
                "automation_move_failed",
                extra={"deal_id": str(deal_id), "stage_id": str(target_stage_id), "error": _error_detail(exc)},
            )
            return "move_failed"

        observe_automation_transition(RUN_STATUS_MOVED)
        logger.info(
            "automation_timeout_move",
            extra={"deal_id": str(deal_id), "stage_id": str(target_stage_id), "outcome": "moved"},
        )
        self.deal_service.publish_stage_changed(
            deal_id=deal_id,
            stage_id=target_stage_id,
            previous_stage_id=previous_stage_id,
            actor_user_id=AUTOMATION_ACTOR,
            organization_id=organization_id,
            trigger="automation_timeout",
            correlation_id=get_correlation_id(),
        )
        return "moved"

    def cancel_for_deal(
        self,
        session: Session,
        deal_id: uuid.UUID,
        *,
        actor_user_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = _as_utc(now) or utcnow()
        runs = session.scalars(
            select(CRMDealAutomation).where(
                and_(CRMDealAutomation.deal_id == deal_id, CRMDealAutomation.status.in_(ACTIVE_RUN_STATUSES))
            )
        ).all()
        cancelled: list[tuple[uuid.UUID, uuid.UUID | None]] = []
        for run in runs:
            run_id, flow_session_id, previous_status = run.id, run.flow_session_id, run.status
            if self._transition(session, run_id, ACTIVE_RUN_STATUSES, {"status": RUN_STATUS_CANCELLED, "cancelled_at": now}):
                self._log(
                    session,
                    deal_id,
                    "manual_cancel",
                    {"actor_user_id": actor_user_id, "previous_status": previous_status},
                    run_id,
                )
                cancelled.append((run_id, flow_session_id))
        session.commit()

        for run_id, flow_session_id in cancelled:
            observe_automation_transition(RUN_STATUS_CANCELLED)
            self._cancel_flow_session(session, run_id, deal_id, flow_session_id)
        return {"success": True, "cancelled": len(cancelled)}

    def start_for_deal(
        self,
        session: Session,
        deal_id: uuid.UUID,
        *,
        actor_user_id: str,
        now: datetime | None = None,
    ) -> CRMDealAutomation:
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == deal.stage_id))
        if config is None or not config.is_active:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="no active automation configured for the deal's current stage",
            )

        logger.info(
            "automation_manual_start",
            extra={"deal_id": str(deal_id), "stage_id": str(deal.stage_id), "reason": f"actor:{actor_user_id}"},
        )
        run = self.on_stage_entered(
            session,
            deal.id,
            deal.stage_id,
            trigger="manual_start",
            force_flow=True,
            now=now,
        )
        if run is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="automation could not be started")
        session.refresh(run)
        return run

    def bulk_start(
        self,
        session: Session,
        deal_ids: list[uuid.UUID],
        target_stage_id: uuid.UUID,
        *,
        actor_user_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if not deal_ids:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="deal_ids must not be empty")
        self.require_active_config(session, target_stage_id)

        started = 0
        failed = 0
        for deal_id in dict.fromkeys(deal_ids):
            try:
                deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.deleted_at.is_(None))))
                if deal is None:
                    failed += 1
                    continue
                if deal.stage_id != target_stage_id:
                    previous_stage_id = deal.stage_id
                    moved = self.deal_service.move_to_stage(
                        session,
                        deal_id,
                        target_stage_id,
                        actor_user_id=actor_user_id,
                        notes=BULK_START_NOTE,
                        correlation_id=get_correlation_id(),
                    )
                    organization_id = moved.organization_id
                    session.commit()
                    self.deal_service.publish_stage_changed(
                        deal_id=deal_id,
                        stage_id=target_stage_id,
                        previous_stage_id=previous_stage_id,
                        actor_user_id=actor_user_id,
                        organization_id=organization_id,
                        trigger="bulk_start",
                        correlation_id=get_correlation_id(),
                    )
                run = self.on_stage_entered(
                    session,
                    deal_id,
                    target_stage_id,
                    trigger="bulk_start",
                    force_flow=True,
                    now=now,
                )
                if run is None:
                    failed += 1
                else:
                    started += 1
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.warning(
                    "automation_bulk_start_failed",
                    extra={"deal_id": str(deal_id), "stage_id": str(target_stage_id), "error": _error_detail(exc)},
                )

        logger.info(
            "automation_bulk_start_completed",
            extra={"stage_id": str(target_stage_id), "stats": {"started": started, "failed": failed}},
        )
        return {"success": True, "started": started, "failed": failed}

    def require_active_config(self, session: Session, stage_id: uuid.UUID) -> CRMStageAutomation:
        stage = session.scalar(select(CRMStage).where(and_(CRMStage.id == stage_id, CRMStage.deleted_at.is_(None))))
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        config = session.scalar(select(CRMStageAutomation).where(CRMStageAutomation.stage_id == stage.id))
        if config is None or not config.is_active:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="target stage has no active automation",
            )
        return config

    def _handle_existing_run(
        self,
        session: Session,
        run: CRMDealAutomation,
        *,
        force_flow: bool,
        trigger: str,
        now: datetime,
    ) -> CRMDealAutomation:
        if force_flow and run.flow_id is not None and run.flow_sent_at is None:
            token = set_automation_run_id(str(run.id))
            try:
                rearm_until = now + timedelta(hours=run.wait_hours)
                if self._send_flow(session, run, now):
                    self._arm_wait(session, run, wait_until=rearm_until)
            finally:
                reset_automation_run_id(token)
            return run

        self._log(
            session,
            run.deal_id,
            "already_active",
            {"stage_id": str(run.stage_id), "status": run.status, "trigger": trigger},
            run.id,
        )
        session.commit()
        return run

    def _create_run(
        self,
        session: Session,
        deal: CRMDeal,
        stage: CRMStage,
        config: CRMStageAutomation,
        now: datetime,
    ) -> CRMDealAutomation | None:
        next_stage_id = config.next_stage_id
        next_funnel_id = None
        if next_stage_id is None and config.fallback_stage_id is not None:
            next_stage_id = config.fallback_stage_id
            next_funnel_id = config.fallback_funnel_id

        snapshot = deal_snapshot(session, deal)
        run = CRMDealAutomation(
            deal_id=deal.id,
            stage_id=stage.id,
            automation_id=config.id,
            status=RUN_STATUS_PENDING,
            flow_id=config.flow_id,
            flow_attempts=0,
            wait_hours=config.wait_hours,
            next_stage_id=next_stage_id,
            next_funnel_id=next_funnel_id,
            contact_phone=snapshot["contact_phone"],
            wait_until=now + timedelta(hours=config.wait_hours),
        )
        session.add(run)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            logger.info("automation_run_exists", extra={"deal_id": str(deal.id), "stage_id": str(stage.id)})
            return None
        return run

    def _send_flow(self, session: Session, run: CRMDealAutomation, now: datetime) -> bool:
        """Start the run's flow and mark it flow_sent.

        The runner call is synchronous and in-process, so it is never interrupted.
        `flow_runner_timeout_seconds` is the threshold above which the call is
        reported as `flow_runner_slow`. A failed start leaves the run pending and
        holds it back until `next_attempt_at`.
        """
        run_id, deal_id, flow_id = run.id, run.deal_id, run.flow_id
        if flow_id is None:
            return True
        contact_phone = run.contact_phone or ""
        attempts = run.flow_attempts + 1
        variables = self._flow_variables(session, run)
        runner = self.flow_runner_factory(session)
        settings = get_settings()

        started = time.perf_counter()
        try:
            with tracer.start_as_current_span("automation.flow_runner.start") as span:
                span.set_attribute("run_id", str(run_id))
                span.set_attribute("flow_id", str(flow_id))
                span.set_attribute("attempt", attempts)
                flow_session_id = runner.start_flow(flow_id, contact_phone, variables)
        except Exception as exc:
            session.rollback()
            session.execute(
                update(CRMDealAutomation)
                .where(CRMDealAutomation.id == run_id)
                .values(
                    flow_attempts=CRMDealAutomation.flow_attempts + 1,
                    next_attempt_at=now + timedelta(seconds=settings.automation_retry_backoff_seconds),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self._log(
                session,
                deal_id,
                "flow_failed",
                {"flow_id": str(flow_id), "attempt": attempts, "error": _error_detail(exc)},
                run_id,
            )
            session.commit()
            observe_flow_failure("start")
            logger.warning(
                "automation_flow_failed",
                extra={"deal_id": str(deal_id), "flow_id": str(flow_id), "error": _error_detail(exc)},
            )
            return False

        elapsed = time.perf_counter() - started
        if elapsed > settings.flow_runner_timeout_seconds:
            logger.warning(
                "flow_runner_slow",
                extra={"flow_id": str(flow_id), "duration_ms": round(elapsed * 1000, 2)},
            )

        claimed = self._transition(
            session,
            run_id,
            (RUN_STATUS_PENDING, RUN_STATUS_WAITING),
            {
                "status": RUN_STATUS_FLOW_SENT,
                "flow_sent_at": now,
                "flow_session_id": flow_session_id,
                "flow_attempts": attempts,
            },
        )
        if not claimed:
            session.commit()
            self._cancel_flow_session(session, run_id, deal_id, flow_session_id)
            return False

        flow_name = session.scalar(select(Flow.name).where(Flow.id == flow_id))
        self._log(
            session,
            deal_id,
            "flow_triggered",
            {
                "flow_id": str(flow_id),
                "flow_name": flow_name,
                "flow_session_id": str(flow_session_id),
                "contact_phone": contact_phone,
            },
            run_id,
        )
        session.commit()
        observe_automation_transition(RUN_STATUS_FLOW_SENT)
        return True

    def _arm_wait(self, session: Session, run: CRMDealAutomation, wait_until: datetime | None = None) -> bool:
        run_id, deal_id = run.id, run.deal_id
        values: dict[str, Any] = {"status": RUN_STATUS_WAITING, "next_attempt_at": None}
        if wait_until is not None:
            values["wait_until"] = wait_until
        if not self._transition(session, run_id, (RUN_STATUS_PENDING, RUN_STATUS_FLOW_SENT), values):
            session.commit()
            return False
        armed_until = wait_until or _as_utc(run.wait_until)
        self._log(
            session,
            deal_id,
            "wait_armed",
            {"wait_until": armed_until.isoformat() if armed_until else None},
            run_id,
        )
        session.commit()
        observe_automation_transition(RUN_STATUS_WAITING)
        return True

    def _retry_pending_flows(self, session: Session, now: datetime) -> tuple[int, int, int]:
        run_ids = session.scalars(
            select(CRMDealAutomation.id)
            .where(
                and_(
                    CRMDealAutomation.status == RUN_STATUS_PENDING,
                    or_(
                        CRMDealAutomation.next_attempt_at.is_(None),
                        CRMDealAutomation.next_attempt_at <= now,
                        CRMDealAutomation.wait_until <= now,
                    ),
                )
            )
            .order_by(CRMDealAutomation.created_at, CRMDealAutomation.id)
            .limit(get_settings().automation_sweep_batch_size)
        ).all()

        retried = 0
        triggered = 0
        errors = 0
        for run_id in run_ids:
            token = set_automation_run_id(str(run_id))
            try:
                run = session.scalar(
                    select(CRMDealAutomation)
                    .where(CRMDealAutomation.id == run_id)
                    .execution_options(populate_existing=True)
                )
                if run is None or run.status != RUN_STATUS_PENDING:
                    continue
                wait_until = _as_utc(run.wait_until)
                if wait_until is not None and wait_until <= now:
                    deal_id, flow_id = run.deal_id, run.flow_id
                    if self._transition(
                        session, run_id, (RUN_STATUS_PENDING,), {"status": RUN_STATUS_WAITING, "next_attempt_at": None}
                    ):
                        self._log(
                            session,
                            deal_id,
                            "flow_retry_expired" if flow_id is not None else "wait_armed",
                            {"wait_until": wait_until.isoformat(), "flow_attempts": run.flow_attempts},
                            run_id,
                        )
                        observe_automation_transition(RUN_STATUS_WAITING)
                    session.commit()
                    continue
                if run.flow_id is None:
                    self._arm_wait(session, run)
                    continue

                retried += 1
                if self._send_flow(session, run, now):
                    triggered += 1
                    self._arm_wait(session, run)
            except Exception as exc:
                session.rollback()
                errors += 1
                logger.exception("automation_flow_retry_failed", extra={"run_id": str(run_id), "error": str(exc)[:500]})
            finally:
                reset_automation_run_id(token)
        return retried, triggered, errors

    def _supersede_other_runs(self, session: Session, deal_id: uuid.UUID, stage_id: uuid.UUID, now: datetime) -> int:
        runs = session.scalars(
            select(CRMDealAutomation).where(
                and_(
                    CRMDealAutomation.deal_id == deal_id,
                    CRMDealAutomation.stage_id != stage_id,
                    CRMDealAutomation.status.in_(ACTIVE_RUN_STATUSES),
                )
            )
        ).all()
        if not runs:
            return 0

        superseded: list[tuple[uuid.UUID, uuid.UUID | None]] = []
        for run in runs:
            run_id, run_stage_id, flow_session_id = run.id, run.stage_id, run.flow_session_id
            if self._transition(session, run_id, ACTIVE_RUN_STATUSES, {"status": RUN_STATUS_CANCELLED, "cancelled_at": now}):
                self._log(
                    session,
                    deal_id,
                    "superseded",
                    {"stage_id": str(run_stage_id), "new_stage_id": str(stage_id), "source": "stage_entry"},
                    run_id,
                )
                superseded.append((run_id, flow_session_id))
        session.commit()

        for run_id, flow_session_id in superseded:
            observe_automation_transition(RUN_STATUS_CANCELLED)
            self._cancel_flow_session(session, run_id, deal_id, flow_session_id)
        return len(superseded)

    def _mark_responded(
        self,
        session: Session,
        run: CRMDealAutomation,
        received_at: datetime,
        *,
        source: str,
        now: datetime,
    ) -> bool:
        """Resolve the run as responded at `now`; `received_at` stays in the log and deal activity."""
        run_id, deal_id = run.id, run.deal_id
        if not self._transition(
            session,
            run_id,
            REPLY_RUN_STATUSES,
            {"status": RUN_STATUS_RESPONDED, "responded_at": now},
        ):
            session.commit()
            return False
        self._log(
            session,
            deal_id,
            "message_received",
            {"source": source, "received_at": received_at.isoformat()},
            run_id,
        )
        self.deal_service.touch_activity(session, deal_id, received_at)
        session.commit()
        observe_automation_transition(RUN_STATUS_RESPONDED)
        logger.info("automation_responded", extra={"deal_id": str(deal_id), "run_id": str(run_id), "outcome": source})
        return True

    def _pick_runs_per_deal(self, session: Session, runs: list[CRMDealAutomation]) -> list[CRMDealAutomation]:
        # Runs arrive newest first; the run on the deal's current stage wins.
        by_deal: dict[uuid.UUID, list[CRMDealAutomation]] = {}
        for run in runs:
            by_deal.setdefault(run.deal_id, []).append(run)

        picked: list[CRMDealAutomation] = []
        for deal_id, deal_runs in by_deal.items():
            current_stage_id = session.scalar(select(CRMDeal.stage_id).where(CRMDeal.id == deal_id))
            on_stage = [run for run in deal_runs if run.stage_id == current_stage_id]
            picked.append(on_stage[0] if on_stage else deal_runs[0])
        return picked

    def _cancel_flow_session(
        self,
        session: Session,
        run_id: uuid.UUID,
        deal_id: uuid.UUID,
        flow_session_id: uuid.UUID | None,
    ) -> None:
        if flow_session_id is None:
            return
        runner = self.flow_runner_factory(session)
        try:
            with tracer.start_as_current_span("automation.flow_runner.cancel") as span:
                span.set_attribute("run_id", str(run_id))
                span.set_attribute("flow_session_id", str(flow_session_id))
                runner.cancel_session(flow_session_id)
            session.commit()
        except Exception as exc:
            session.rollback()
            self._log(
                session,
                deal_id,
                "flow_cancel_failed",
                {"flow_session_id": str(flow_session_id), "error": _error_detail(exc)},
                run_id,
            )
            session.commit()
            observe_flow_failure("cancel")
            logger.warning(
                "automation_flow_cancel_failed",
                extra={"deal_id": str(deal_id), "run_id": str(run_id), "error": _error_detail(exc)},
            )

    def _flow_variables(self, session: Session, run: CRMDealAutomation) -> dict[str, Any]:
        deal = session.get(CRMDeal, run.deal_id)
        snapshot = deal_snapshot(session, deal) if deal is not None else {}
        return {
            "nome": snapshot.get("contact_name") or "",
            "telefone": snapshot.get("contact_phone") or run.contact_phone or "",
            "email": snapshot.get("contact_email") or "",
            "deal_title": snapshot.get("title") or "",
            "deal_value": snapshot.get("value") or 0,
            "company_name": snapshot.get("company_name") or "",
            "deal_id": str(run.deal_id),
            "automation_id": str(run.id),
        }

    def _active_run(self, session: Session, deal_id: uuid.UUID, stage_id: uuid.UUID) -> CRMDealAutomation | None:
        return session.scalar(
            select(CRMDealAutomation)
            .where(
                and_(
                    CRMDealAutomation.deal_id == deal_id,
                    CRMDealAutomation.stage_id == stage_id,
                    CRMDealAutomation.status.in_(ACTIVE_RUN_STATUSES),
                )
            )
            .order_by(CRMDealAutomation.created_at.desc())
            .limit(1)
        )

    def _transition(
        self,
        session: Session,
        run_id: uuid.UUID,
        expected: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        result = session.execute(
            update(CRMDealAutomation)
            .where(and_(CRMDealAutomation.id == run_id, CRMDealAutomation.status.in_(expected)))
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def _log(
        self,
        session: Session,
        deal_id: uuid.UUID,
        action: str,
        details: dict[str, Any] | None = None,
        run_id: uuid.UUID | None = None,
    ) -> None:
        session.add(
            CRMAutomationLog(
                deal_automation_id=run_id,
                deal_id=deal_id,
                action=action,
                details=details or {},
            )
        )
        session.flush()
        logger.info(
            action,
            extra={
                "deal_id": str(deal_id),
                "run_id": str(run_id) if run_id else None,
                "action": action,
                "reason": (details or {}).get("reason"),
            },
        )


automation_engine = AutomationEngine()
