"""
Caseflow — Lifecycle Runtime

One object that owns the store and every lifecycle component, wired from
a LifecycleConfig. The CLI, the HTTP API and the background worker all
go through it.

    CaseLifecycle
      ├── LifecycleStore          (infra.db backend)
      ├── FootprintStore          (reservation TTL)
      ├── StageTransitionEngine   (catalog, templates, calendar, notifications)
      ├── WorkflowStepTracker
      └── EscalationEvaluator     (default rules)

Usage:
    from lifecycle.runtime import CaseLifecycle

    lc = CaseLifecycle()
    inst = lc.start_case(Case.create("t1", "Assessment", owner_id="emp_1"))
    lc.transition(inst.case_id, "Adjudication", actor="emp_1")
"""

from __future__ import annotations

import time
from typing import Any, Callable

from infra.db import DatabaseBackend
from infra.logging import LifecycleLogger
from lifecycle.config import LifecycleConfig, load_lifecycle_config
from lifecycle.errors import RecordNotFoundError
from lifecycle.escalation import EscalationEvaluator
from lifecycle.footprints import FootprintStore
from lifecycle.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
)
from lifecycle.retry import call_with_retry
from lifecycle.store import LifecycleStore
from lifecycle.templates import TaskTemplateResolver
from lifecycle.transitions import StageTransitionEngine
from lifecycle.types import (
    Case,
    EscalationEvent,
    EscalationStatus,
    Footprint,
    Hearing,
    Notice,
    NoticeStatus,
    Reply,
    ReplyFilingStatus,
    StageInstance,
    TransitionResult,
    new_id,
)
from lifecycle.workflow import StepOutcome, WorkflowState, WorkflowStepTracker


class CaseLifecycle:
    """Facade over the lifecycle components sharing one store."""

    def __init__(
        self,
        config: LifecycleConfig | None = None,
        db: DatabaseBackend | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.config = config or load_lifecycle_config()
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.store = LifecycleStore(db)

        if dispatcher is None:
            if self.config.webhooks:
                dispatcher = WebhookDispatcher(list(self.config.webhooks))
            else:
                dispatcher = LoggingDispatcher()
        self.dispatcher = dispatcher

        self.footprints = FootprintStore(
            self.store, reservation_ttl=self.config.reservation_ttl, clock=clock,
        )
        self.engine = StageTransitionEngine(
            self.store,
            self.config.catalog,
            TaskTemplateResolver(self.config.templates),
            self.footprints,
            calendar=self.config.calendar,
            dispatcher=dispatcher,
            notification_policy=self.config.notification_policy,
            clock=clock,
        )
        self.tracker = WorkflowStepTracker(self.store, self.engine, clock=clock)
        self.escalations = EscalationEvaluator(
            self.store,
            dispatcher=dispatcher,
            default_rules=self.config.escalation_rules,
            clock=clock,
        )

    # ─── Cases & transitions ───────────────────────────────────────

    def start_case(self, case: Case, actor: str = "system") -> StageInstance:
        return self.engine.start_case(case, actor=actor)

    def get_case(self, case_id: str) -> Case:
        case = self.store.get_case(case_id)
        if case is None:
            raise RecordNotFoundError("case", case_id)
        return case

    def transition(
        self,
        case_id: str,
        to_stage: str,
        *,
        from_stage: str | None = None,
        actor: str = "system",
        comments: str = "",
        idempotency_key: str = "",
    ) -> TransitionResult:
        """
        Move a case, retrying retryable failures per the configured policy.
        ``from_stage`` defaults to the case's current stage.
        """
        case = self.get_case(case_id)
        return call_with_retry(
            self.engine.process_transition,
            case,
            from_stage or case.current_stage,
            to_stage,
            policy=self.config.retry_policy,
            sleep_fn=self.sleep_fn,
            actor=actor,
            comments=comments,
            idempotency_key=idempotency_key,
        )

    def lifecycle_state(self, case_id: str) -> dict[str, Any]:
        return self.engine.lifecycle_state(case_id)

    def footprints_for(self, case_id: str) -> list[Footprint]:
        return self.footprints.lookup(case_id)

    def reap_expired_reservations(self) -> int:
        removed = self.engine.reap_expired_reservations()
        if removed:
            LifecycleLogger("runtime").info("reservations_reaped", removed=removed)
        return removed

    # ─── Workflow ──────────────────────────────────────────────────

    def active_instance(self, case_id: str) -> StageInstance:
        instance = self.store.get_active_stage_instance(case_id)
        if instance is None:
            raise RecordNotFoundError("active stage instance", case_id)
        return instance

    def complete_step(
        self, stage_instance_id: str, step_key: str, actor: str = "system", notes: str = "",
    ) -> StepOutcome:
        return self.tracker.complete_step(stage_instance_id, step_key, actor=actor, notes=notes)

    def skip_step(
        self, stage_instance_id: str, step_key: str, reason: str, actor: str = "system",
    ) -> StepOutcome:
        return self.tracker.skip_step(stage_instance_id, step_key, reason, actor=actor)

    def workflow_state(self, stage_instance_id: str) -> WorkflowState:
        instance = self.store.get_stage_instance(stage_instance_id)
        if instance is None:
            raise RecordNotFoundError("stage instance", stage_instance_id)
        return self.tracker.get_workflow_state(
            instance.stage_instance_id, instance.case_id, instance.stage_key,
        )

    def record_notice(self, case_id: str, reference: str = "") -> Notice:
        """Record a notice against the case's active stage instance."""
        instance = self.active_instance(case_id)
        notice = Notice(
            notice_id=new_id("ntc"),
            tenant_id=instance.tenant_id,
            case_id=case_id,
            stage_instance_id=instance.stage_instance_id,
            status=NoticeStatus.RECEIVED,
            reference=reference,
            received_at=self.clock(),
        )
        self.store.save_notice(notice)
        return notice

    def record_reply(
        self,
        case_id: str,
        notice_id: str,
        filing_status: ReplyFilingStatus = ReplyFilingStatus.FILED,
    ) -> Reply:
        case = self.get_case(case_id)
        filed = filing_status in (ReplyFilingStatus.FILED, ReplyFilingStatus.ACKNOWLEDGED)
        reply = Reply(
            reply_id=new_id("rpl"),
            tenant_id=case.tenant_id,
            case_id=case_id,
            notice_id=notice_id,
            filing_status=filing_status,
            filed_at=self.clock() if filed else None,
        )
        self.store.save_reply(reply)
        return reply

    def schedule_hearing(
        self, case_id: str, hearing_at: float, stage_instance_id: str | None = None,
    ) -> Hearing:
        case = self.get_case(case_id)
        hearing = Hearing(
            hearing_id=new_id("hrg"),
            tenant_id=case.tenant_id,
            case_id=case_id,
            stage_instance_id=stage_instance_id,
            hearing_at=hearing_at,
        )
        self.store.save_hearing(hearing)
        return hearing

    # ─── Escalation ────────────────────────────────────────────────

    def check_and_escalate(self, tenant_id: str | None = None) -> int:
        return self.escalations.check_and_escalate(tenant_id)

    def list_escalations(
        self, tenant_id: str | None = None, status: str | None = None, limit: int = 100,
    ) -> list[EscalationEvent]:
        return self.escalations.list_events(
            tenant_id=tenant_id,
            status=EscalationStatus(status) if status else None,
            limit=limit,
        )

    def mark_contacted(self, event_id: str, notes: str = "") -> EscalationEvent:
        return self.escalations.mark_contacted(event_id, notes)

    def resolve_escalation(self, event_id: str, resolved_by: str, notes: str = "") -> EscalationEvent:
        return self.escalations.resolve(event_id, resolved_by, notes)

    def escalate(self, event_id: str, notes: str = "") -> EscalationEvent:
        return self.escalations.escalate(event_id, notes)

    # ─── Housekeeping ──────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return self.store.stats()

    def close(self) -> None:
        self.store.close()
