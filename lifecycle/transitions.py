"""
Caseflow — Stage Transition Engine

Moves a case between catalog stages and provisions the stage's task
checklist exactly once per transition signature.

process_transition(case, from, to):
  1. canonicalize both labels               UnknownStageError (terminal)
  2. classify Forward / Remand              InvalidTransitionError (terminal)
  3. signature = sha256(case, from, to, type, latest cycle of from-stage)
  4. footprints.try_acquire(signature)
       ALREADY_EXISTS → replay the recorded result, touch nothing
  5. ACQUIRED → resolve templates           TemplateResolutionError (retryable)
     one transaction:
       tasks, close current instance, open next cycle of target,
       workflow steps, timeline entry, commit footprint, move case
     any failure → rollback, release reservation  PersistenceError (retryable)
  6. after commit: request stakeholder notification (errors logged only)

Usage:
    engine = StageTransitionEngine(store, catalog, resolver, footprints)
    engine.start_case(case)
    result = engine.process_transition(case, "Assessment", "Adjudication")
"""

from __future__ import annotations

import time
from typing import Any, Callable

from infra.logging import LifecycleLogger
from lifecycle.business_days import BusinessCalendar, HolidayCalendar, due_timestamp
from lifecycle.catalog import StageCatalog
from lifecycle.errors import (
    InvalidTransitionError,
    LifecycleError,
    PersistenceError,
    RecordNotFoundError,
)
from lifecycle.footprints import FootprintStore
from lifecycle.notifications import NotificationDispatcher, NotificationPolicy
from lifecycle.store import LifecycleStore
from lifecycle.templates import TaskTemplate, TaskTemplateResolver
from lifecycle.types import (
    Case,
    Footprint,
    StageInstance,
    StageInstanceStatus,
    Task,
    TaskOrigin,
    TransitionResult,
    TransitionSignature,
    TransitionType,
    initial_workflow_steps,
)


class StageTransitionEngine:
    """Validates, provisions and records stage transitions for cases."""

    def __init__(
        self,
        store: LifecycleStore,
        catalog: StageCatalog,
        resolver: TaskTemplateResolver,
        footprints: FootprintStore,
        calendar: BusinessCalendar | None = None,
        dispatcher: NotificationDispatcher | None = None,
        notification_policy: NotificationPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.catalog = catalog
        self.resolver = resolver
        self.footprints = footprints
        self.calendar = calendar or HolidayCalendar()
        self.dispatcher = dispatcher
        self.notification_policy = notification_policy or NotificationPolicy()
        self.clock = clock

    # ═══════════════════════════════════════════════════════════════
    # Case registration
    # ═══════════════════════════════════════════════════════════════

    def start_case(self, case: Case, actor: str = "system") -> StageInstance:
        """
        Register a case and open cycle 1 of its current stage.
        Calling it again for a case that already has an active stage
        instance returns that instance.
        """
        case.current_stage = self.catalog.canonicalize(case.current_stage)
        existing = self.store.get_active_stage_instance(case.case_id)
        if existing is not None:
            return existing

        now = self.clock()
        case.created_at = case.created_at or now
        case.updated_at = now
        with self.store.transaction():
            self.store.save_case(case)
            instance = StageInstance.create(
                case.tenant_id, case.case_id, case.current_stage,
                cycle_no=self.store.max_cycle(case.case_id, case.current_stage) + 1,
                created_by=actor, now=now,
            )
            self.store.insert_stage_instance(instance)
            self.store.insert_steps(initial_workflow_steps(instance.stage_instance_id, now))
            self.store.append_timeline(
                case.tenant_id, case.case_id, "case_created",
                f"Case opened at {case.current_stage}",
                metadata={"stage": case.current_stage, "stage_instance_id": instance.stage_instance_id},
                created_by=actor, now=now,
            )
        LifecycleLogger("transitions", case_id=case.case_id, tenant_id=case.tenant_id).info(
            "case_started", stage=case.current_stage,
            stage_instance_id=instance.stage_instance_id,
        )
        return instance

    # ═══════════════════════════════════════════════════════════════
    # Transitions
    # ═══════════════════════════════════════════════════════════════

    def process_transition(
        self,
        case: Case,
        from_stage: str,
        to_stage: str,
        *,
        actor: str = "system",
        comments: str = "",
        idempotency_key: str = "",
        cycle_no: int | None = None,
    ) -> TransitionResult:
        """
        Run one transition. ``cycle_no`` pins the from-stage cycle in the
        signature; by default the latest cycle of the from-stage is used.
        """
        from_key = self.catalog.canonicalize(from_stage)
        to_key = self.catalog.canonicalize(to_stage)
        ttype = self.catalog.classify(from_key, to_key)

        log = LifecycleLogger(
            "transitions", case_id=case.case_id, tenant_id=case.tenant_id,
            from_stage=from_key, to_stage=to_key, transition_type=ttype.value,
        )
        signature = TransitionSignature(
            case_id=case.case_id,
            from_stage=from_key,
            to_stage=to_key,
            transition_type=ttype,
            cycle_no=(cycle_no if cycle_no is not None
                      else self.store.max_cycle(case.case_id, from_key)),
            idempotency_key=idempotency_key,
        )
        log = log.child(signature=signature.digest[:16])
        log.info("transition_requested", actor=actor)

        acquired = self.footprints.try_acquire(signature, case.tenant_id)
        if not acquired.acquired:
            return self._replay(acquired.footprint, log)

        footprint = acquired.footprint
        log.info("footprint_acquired", reclaimed=acquired.reclaimed)
        try:
            current = self.store.get_case(case.case_id)
            if current is None:
                raise RecordNotFoundError("case", case.case_id)
            if current.current_stage != from_key:
                raise InvalidTransitionError(
                    f"Case {case.case_id} is at {current.current_stage}, not {from_key}",
                    case_id=case.case_id,
                    current_stage=current.current_stage,
                    from_stage=from_key,
                    to_stage=to_key,
                )
            templates = self.resolver.resolve(
                from_key, to_key, ttype, current.template_attributes()
            )
            result = self._apply(current, footprint, templates, ttype, actor, comments)
        except LifecycleError as e:
            self._release(footprint, log)
            log.warning("transition_rejected", error=str(e), error_type=type(e).__name__)
            raise
        except Exception as e:
            self._release(footprint, log)
            log.exception("transition_rolled_back", error=str(e))
            raise PersistenceError(
                f"Transition {from_key} -> {to_key} for case {case.case_id} rolled back: {e}",
                case_id=case.case_id, from_stage=from_key, to_stage=to_key,
            ) from e

        case.current_stage = to_key
        log.info(
            "transition_committed",
            tasks_created=len(result.tasks_created),
            stage_instance_id=result.stage_instance_id,
        )
        self._notify(current, result, log)
        return result

    def recorded_transition(
        self,
        case: Case,
        from_stage: str,
        to_stage: str,
        cycle_no: int,
    ) -> TransitionResult | None:
        """Replay of a committed transition out of one from-stage cycle, without acquiring."""
        from_key = self.catalog.canonicalize(from_stage)
        to_key = self.catalog.canonicalize(to_stage)
        signature = TransitionSignature(
            case_id=case.case_id,
            from_stage=from_key,
            to_stage=to_key,
            transition_type=self.catalog.classify(from_key, to_key),
            cycle_no=cycle_no,
        )
        footprint = self.footprints.get(signature.digest)
        if footprint is None or not footprint.is_committed:
            return None
        log = LifecycleLogger(
            "transitions", case_id=case.case_id, tenant_id=case.tenant_id,
            from_stage=from_key, to_stage=to_key, signature=signature.digest[:16],
        )
        return self._replay(footprint, log)

    def _apply(
        self,
        case: Case,
        footprint: Footprint,
        templates: list[TaskTemplate],
        ttype: TransitionType,
        actor: str,
        comments: str,
    ) -> TransitionResult:
        """The atomic unit: everything here commits together or not at all."""
        now = self.clock()
        from_key, to_key = footprint.from_stage, footprint.to_stage

        with self.store.transaction():
            active = self.store.get_active_stage_instance(case.case_id)
            if active is not None:
                self.store.close_stage_instance(active.stage_instance_id, now)

            cycle_no = self.store.max_cycle(case.case_id, to_key) + 1
            instance = StageInstance.create(
                case.tenant_id, case.case_id, to_key, cycle_no,
                created_by=actor, now=now,
            )
            self.store.insert_stage_instance(instance)
            self.store.insert_steps(initial_workflow_steps(instance.stage_instance_id, now))

            task_ids = []
            for template in templates:
                task = Task.create(
                    tenant_id=case.tenant_id,
                    case_id=case.case_id,
                    title=f"{template.title} (C{cycle_no})",
                    description=template.description,
                    priority=template.priority,
                    due_at=due_timestamp(self.calendar, now, template.due_days, case.region),
                    assignee_id=case.owner_id,
                    origin=TaskOrigin.AUTO,
                    template_id=template.template_id,
                    stage_instance_id=instance.stage_instance_id,
                    stage_key=to_key,
                    now=now,
                )
                self.store.save_task(task)
                task_ids.append(task.task_id)

            entry = self.store.append_timeline(
                case.tenant_id, case.case_id, "stage_change",
                f"Stage {ttype.value}: {from_key} → {to_key}",
                description=comments or f"{ttype.value} transition to {to_key} (cycle {cycle_no})",
                metadata={
                    "from_stage": from_key,
                    "to_stage": to_key,
                    "transition_type": ttype.value,
                    "cycle_no": cycle_no,
                    "stage_instance_id": instance.stage_instance_id,
                    "task_ids": task_ids,
                    "signature": footprint.signature,
                    "template_version": self.resolver.version,
                },
                created_by=actor, now=now,
            )

            if not self.footprints.commit(
                footprint, task_ids, self.resolver.version,
                instance.stage_instance_id, entry.entry_id,
            ):
                raise PersistenceError(
                    f"Reservation {footprint.signature[:16]} expired before commit",
                    case_id=case.case_id, from_stage=from_key, to_stage=to_key,
                )
            if not self.store.advance_case_stage(case.case_id, from_key, to_key, now):
                raise InvalidTransitionError(
                    f"Case {case.case_id} left {from_key} during the transition",
                    case_id=case.case_id, from_stage=from_key, to_stage=to_key,
                )

        return TransitionResult(
            case_id=case.case_id,
            from_stage=from_key,
            to_stage=to_key,
            transition_type=ttype,
            signature=footprint.signature,
            tasks_created=task_ids,
            stage_instance_id=instance.stage_instance_id,
            timeline_entry_id=entry.entry_id,
        )

    def _replay(self, footprint: Footprint, log: LifecycleLogger) -> TransitionResult:
        log.info(
            "transition_replayed",
            footprint_status=footprint.status.value,
            tasks=len(footprint.task_ids),
        )
        return TransitionResult(
            case_id=footprint.case_id,
            from_stage=footprint.from_stage,
            to_stage=footprint.to_stage,
            transition_type=footprint.transition_type,
            signature=footprint.signature,
            tasks_created=list(footprint.task_ids),
            stage_instance_id=footprint.stage_instance_id,
            timeline_entry_id=footprint.timeline_entry_id,
            replayed=True,
            in_flight=not footprint.is_committed,
        )

    def _release(self, footprint: Footprint, log: LifecycleLogger) -> None:
        try:
            self.footprints.release(footprint)
        except Exception as e:
            log.warning("reservation_release_failed", error=str(e),
                        expires_at=footprint.expires_at)

    def _notify(self, case: Case, result: TransitionResult, log: LifecycleLogger) -> None:
        if self.dispatcher is None or not self.notification_policy.applies_to(case):
            return
        policy = self.notification_policy
        try:
            self.dispatcher.dispatch(
                "stage_transition",
                list(policy.recipients),
                policy.template,
                {
                    "case_id": case.case_id,
                    "case_number": case.case_number,
                    "owner_id": case.owner_id,
                    "from_stage": result.from_stage,
                    "to_stage": result.to_stage,
                    "transition_type": result.transition_type.value,
                    "tasks_created": len(result.tasks_created),
                    "amount_in_dispute": case.amount_in_dispute,
                },
            )
        except Exception as e:
            log.warning("notification_failed", error=str(e))

    # ═══════════════════════════════════════════════════════════════
    # Diagnostics
    # ═══════════════════════════════════════════════════════════════

    def lifecycle_state(self, case_id: str) -> dict[str, Any]:
        case = self.store.get_case(case_id)
        if case is None:
            raise RecordNotFoundError("case", case_id)
        instances = self.store.list_stage_instances(case_id)
        active = next((i for i in reversed(instances) if i.status == StageInstanceStatus.ACTIVE), None)
        return {
            "case_id": case.case_id,
            "tenant_id": case.tenant_id,
            "current_stage": case.current_stage,
            "current_instance": active.stage_instance_id if active else None,
            "instances": [
                {
                    "stage_instance_id": i.stage_instance_id,
                    "stage_key": i.stage_key,
                    "cycle_no": i.cycle_no,
                    "status": i.status.value,
                    "started_at": i.started_at,
                    "ended_at": i.ended_at,
                }
                for i in instances
            ],
            "forward_targets": self.catalog.available_targets(case.current_stage, TransitionType.FORWARD),
            "remand_targets": self.catalog.available_targets(case.current_stage, TransitionType.REMAND),
            "footprints": [fp.to_dict() for fp in self.footprints.lookup(case_id)],
        }

    def reap_expired_reservations(self) -> int:
        return self.footprints.reap_expired()
