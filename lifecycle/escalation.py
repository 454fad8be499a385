"""
Caseflow — Escalation Evaluator

Periodic sweep over overdue tasks:

  for each non-terminal task past its due date (oldest first):
      skip if the task already has a pending escalation event
      first active task_overdue rule (configured order) that matches
      → one pending EscalationEvent at the rule's level
      → target = reporting-chain walk for the rule's role,
                 else any active employee with that role in the tenant,
                 else empty (logged for manual triage)
      → notification requested; a failure never drops the event

Event lifecycle: pending → contacted → resolved, or escalated, which
opens a new pending event at the next rule level.
"""

from __future__ import annotations

import time
from typing import Callable

from infra.logging import LifecycleLogger
from lifecycle.errors import (
    EscalationError,
    EscalationTargetNotFoundError,
    RecordNotFoundError,
)
from lifecycle.notifications import NotificationDispatcher
from lifecycle.store import LifecycleStore
from lifecycle.types import (
    EscalationEvent,
    EscalationRule,
    EscalationStatus,
    EscalationTrigger,
    Task,
)

DEFAULT_TEMPLATE = "escalation_alert"

# Reporting chains deeper than this are treated as cyclic data
MAX_CHAIN_DEPTH = 20


class EscalationEvaluator:
    """Creates and manages escalation events for overdue tasks."""

    def __init__(
        self,
        store: LifecycleStore,
        dispatcher: NotificationDispatcher | None = None,
        default_rules: tuple[EscalationRule, ...] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.default_rules = default_rules
        self.clock = clock

    # ─── Rules ─────────────────────────────────────────────────────

    def rules_for(self, tenant_id: str) -> list[EscalationRule]:
        """Tenant rules in configured order, seeding the defaults on first use."""
        with self.store.transaction():
            rules = self.store.list_rules(tenant_id)
            if rules or not self.default_rules:
                return rules
            seeded = sum(
                self.store.save_rule(template.for_tenant(tenant_id, position), replace=False)
                for position, template in enumerate(self.default_rules)
            )
        if seeded:
            LifecycleLogger("escalation", tenant_id=tenant_id).info(
                "default_rules_seeded", rules=seeded,
            )
        return self.store.list_rules(tenant_id)

    # ─── Sweep ─────────────────────────────────────────────────────

    def check_and_escalate(self, tenant_id: str | None = None) -> int:
        """Run one sweep. Returns the number of events created."""
        now = self.clock()
        log = LifecycleLogger("escalation", tenant_id=tenant_id or "*")
        overdue = self.store.list_overdue_tasks(now, tenant_id)
        log.info("sweep_started", overdue_tasks=len(overdue))

        rules_by_tenant: dict[str, list[EscalationRule]] = {}
        created = 0
        for task in overdue:
            if self.store.has_pending_event(task.task_id):
                continue
            if task.tenant_id not in rules_by_tenant:
                rules_by_tenant[task.tenant_id] = [
                    r for r in self.rules_for(task.tenant_id)
                    if r.is_active and r.trigger == EscalationTrigger.TASK_OVERDUE
                ]
            hours = task.hours_overdue(now)
            rule = next(
                (r for r in rules_by_tenant[task.tenant_id] if r.matches(task, hours)),
                None,
            )
            if rule is None:
                continue
            if self.create_event(rule, task, log=log) is not None:
                created += 1

        log.info("sweep_finished", events_created=created)
        return created

    def create_event(
        self,
        rule: EscalationRule,
        task: Task,
        level: int | None = None,
        notes: str = "",
        log: LifecycleLogger | None = None,
    ) -> EscalationEvent | None:
        """
        Record one pending event for ``task``. Returns None if the task
        already has a pending event.
        """
        log = (log or LifecycleLogger("escalation", tenant_id=task.tenant_id)).child(
            task_id=task.task_id, rule_id=rule.rule_id,
        )
        target = ""
        if rule.escalate_to_role:
            try:
                target = self.resolve_target(task, rule.escalate_to_role)
            except EscalationTargetNotFoundError as e:
                log.warning("escalation_target_not_found", role=e.role)

        event = EscalationEvent.create(
            tenant_id=task.tenant_id,
            rule_id=rule.rule_id,
            task_id=task.task_id,
            escalated_to=target,
            level=level if level is not None else rule.level,
            notes=notes or f"{rule.name}: {task.title}",
            now=self.clock(),
        )
        if not self.store.insert_event(event):
            log.debug("escalation_already_pending")
            return None

        log.info(
            "escalation_created",
            event_id=event.event_id,
            escalated_to=target,
            level=event.current_level,
        )
        self._notify(rule, task, event, log)
        return event

    def resolve_target(self, task: Task, role: str) -> str:
        """
        Walk up from the assignee's manager looking for ``role``; fall back
        to any active employee with the role in the task's tenant.
        """
        seen: set[str] = set()
        assignee = self.store.get_employee(task.assignee_id) if task.assignee_id else None
        manager_id = assignee.reporting_to if assignee else ""
        while manager_id and manager_id not in seen and len(seen) < MAX_CHAIN_DEPTH:
            seen.add(manager_id)
            manager = self.store.get_employee(manager_id)
            if manager is None:
                break
            if manager.is_active and manager.holds_role(role):
                return manager.employee_id
            manager_id = manager.reporting_to

        fallback = self.store.find_active_employee_by_role(task.tenant_id, role)
        if fallback is not None:
            return fallback.employee_id
        raise EscalationTargetNotFoundError(role, task.tenant_id)

    def _notify(
        self,
        rule: EscalationRule,
        task: Task,
        event: EscalationEvent,
        log: LifecycleLogger,
    ) -> None:
        if self.dispatcher is None:
            return
        recipients = list(rule.notify_roles)
        if event.escalated_to:
            recipients.append(event.escalated_to)
        try:
            self.dispatcher.dispatch(
                "escalation",
                recipients,
                rule.email_template or DEFAULT_TEMPLATE,
                {
                    "event_id": event.event_id,
                    "rule": rule.name,
                    "task_id": task.task_id,
                    "task_title": task.title,
                    "case_id": task.case_id,
                    "priority": task.priority.value,
                    "hours_overdue": round(task.hours_overdue(event.triggered_at), 1),
                    "level": event.current_level,
                },
            )
        except Exception as e:
            log.warning("notification_failed", event_id=event.event_id, error=str(e))

    # ─── Event lifecycle ───────────────────────────────────────────

    def _event(self, event_id: str) -> EscalationEvent:
        event = self.store.get_event(event_id)
        if event is None:
            raise RecordNotFoundError("escalation event", event_id)
        return event

    def mark_contacted(self, event_id: str, notes: str = "") -> EscalationEvent:
        event = self._event(event_id)
        if event.status != EscalationStatus.PENDING:
            raise EscalationError(
                f"Cannot mark {event.status.value} event {event_id} as contacted",
                event_id=event_id, status=event.status.value,
            )
        event.status = EscalationStatus.CONTACTED
        if notes:
            event.notes = notes
        self.store.update_event(event)
        return event

    def resolve(self, event_id: str, resolved_by: str, notes: str = "") -> EscalationEvent:
        event = self._event(event_id)
        if event.status in (EscalationStatus.RESOLVED, EscalationStatus.ESCALATED):
            raise EscalationError(
                f"Cannot resolve {event.status.value} event {event_id}",
                event_id=event_id, status=event.status.value,
            )
        event.status = EscalationStatus.RESOLVED
        event.resolved_at = self.clock()
        event.resolved_by = resolved_by
        if notes:
            event.notes = notes
        self.store.update_event(event)
        return event

    def escalate(self, event_id: str, notes: str = "") -> EscalationEvent:
        """
        Move an open event to ``escalated`` and open a pending event at
        the next level, using the tenant rule for that level if one exists.
        Returns the new event.
        """
        event = self._event(event_id)
        if event.status in (EscalationStatus.RESOLVED, EscalationStatus.ESCALATED):
            raise EscalationError(
                f"Cannot escalate {event.status.value} event {event_id}",
                event_id=event_id, status=event.status.value,
            )
        task = self.store.get_task(event.task_id)
        if task is None:
            raise RecordNotFoundError("task", event.task_id)

        rules = self.rules_for(event.tenant_id)
        current = next((r for r in rules if r.rule_id == event.rule_id), None)
        next_level = event.current_level + 1
        rule = next(
            (r for r in rules if r.is_active and r.level == next_level),
            current,
        )
        if rule is None:
            raise EscalationError(
                f"Rule {event.rule_id} for event {event_id} no longer exists",
                event_id=event_id,
            )

        with self.store.transaction():
            event.status = EscalationStatus.ESCALATED
            if notes:
                event.notes = notes
            self.store.update_event(event)
            new_event = self.create_event(
                rule, task, level=next_level,
                notes=notes or f"Escalated from level {event.current_level}",
            )
            if new_event is None:
                raise EscalationError(
                    f"Task {task.task_id} already has a pending escalation",
                    task_id=task.task_id,
                )
        return new_event

    def list_events(
        self,
        tenant_id: str | None = None,
        status: EscalationStatus | None = None,
        limit: int = 100,
    ) -> list[EscalationEvent]:
        return self.store.list_events(tenant_id=tenant_id, status=status, limit=limit)
