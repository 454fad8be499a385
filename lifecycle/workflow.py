"""
Caseflow — Workflow Step Tracker

Four ordered steps inside every stage instance:

  notices → reply → hearings → closure

Each step runs Pending → InProgress → Completed | Skipped. A new stage
instance starts with notices InProgress. Finishing a step activates the
next Pending step unless another step is already InProgress, so at most
one step is ever InProgress. Completing closure hands off to the
transition engine for the forward move to the next catalog stage.

Ordering rules:
  - complete_step on reply/hearings needs every earlier step terminal
  - complete_step on closure needs only notices terminal (fast path)
  - skip_step is allowed on any non-terminal step and needs a reason
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from lifecycle.errors import RecordNotFoundError, StepOrderError
from lifecycle.store import LifecycleStore
from lifecycle.transitions import StageTransitionEngine
from lifecycle.types import (
    NOTICE_NEEDS_REPLY,
    STEP_LABELS,
    WORKFLOW_STEPS,
    StageInstance,
    StageInstanceStatus,
    StepKey,
    StepStatus,
    TransitionResult,
    WorkflowStep,
    initial_workflow_steps,
)

logger = logging.getLogger("caseflow.workflow")

NO_NOTICES = "At least one notice must be recorded"
STEPS_INCOMPLETE = "Complete or skip preceding workflow steps first"


@dataclass
class StepOutcome:
    steps: list[WorkflowStep]
    transition: TransitionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "current_step": current_step(self.steps).value,
            "transition": self.transition.to_dict() if self.transition else None,
        }


@dataclass
class ClosureCheck:
    can_close: bool
    blocking_reasons: list[str] = field(default_factory=list)


@dataclass
class WorkflowState:
    """Aggregated view of one stage instance's workflow."""
    stage_instance_id: str
    case_id: str
    stage_key: str
    steps: list[WorkflowStep]
    current_step: StepKey
    notices_count: int
    pending_replies: int
    replies_count: int
    hearings_count: int
    progress: int
    can_close: bool
    blocking_reasons: list[str]

    def rows(self) -> list[dict[str, Any]]:
        """Per-step display rows: label, status, count, subtitle."""
        counts = {
            StepKey.NOTICES: self.notices_count,
            StepKey.REPLY: self.replies_count,
            StepKey.HEARINGS: self.hearings_count,
            StepKey.CLOSURE: 0,
        }
        subtitles = {
            StepKey.NOTICES: f"{self.notices_count} notice(s) recorded",
            StepKey.REPLY: (f"{self.pending_replies} awaiting reply"
                            if self.pending_replies else f"{self.replies_count} reply(ies) filed"),
            StepKey.HEARINGS: f"{self.hearings_count} hearing(s)",
            StepKey.CLOSURE: "Ready to close" if self.can_close else "; ".join(self.blocking_reasons),
        }
        return [
            {
                "step_key": s.step_key.value,
                "label": STEP_LABELS[s.step_key],
                "status": s.status.value,
                "count": counts[s.step_key],
                "subtitle": subtitles[s.step_key],
                "is_current": s.step_key == self.current_step,
            }
            for s in self.steps
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_instance_id": self.stage_instance_id,
            "case_id": self.case_id,
            "stage_key": self.stage_key,
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step.value,
            "notices_count": self.notices_count,
            "pending_replies": self.pending_replies,
            "replies_count": self.replies_count,
            "hearings_count": self.hearings_count,
            "progress": self.progress,
            "can_close": self.can_close,
            "blocking_reasons": list(self.blocking_reasons),
            "rows": self.rows(),
        }


def current_step(steps: list[WorkflowStep]) -> StepKey:
    """First InProgress step, else first Pending step, else closure."""
    for status in (StepStatus.IN_PROGRESS, StepStatus.PENDING):
        for step in steps:
            if step.status == status:
                return step.step_key
    return StepKey.CLOSURE


def progress(steps: list[WorkflowStep]) -> int:
    if not steps:
        return 0
    return round(100 * sum(1 for s in steps if s.is_terminal) / len(steps))


def _log_ids(instance: StageInstance, key: StepKey) -> dict[str, str]:
    return {
        "tenant_id": instance.tenant_id,
        "case_id": instance.case_id,
        "stage_instance_id": instance.stage_instance_id,
        "step_key": key.value,
    }


def _parse_step_key(step_key: str | StepKey) -> StepKey:
    try:
        return StepKey(step_key)
    except ValueError:
        raise StepOrderError(
            f"Unknown workflow step: {step_key!r}", step_key=str(step_key),
        ) from None


class WorkflowStepTracker:
    """Drives the four-step workflow of stage instances."""

    def __init__(
        self,
        store: LifecycleStore,
        engine: StageTransitionEngine,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.engine = engine
        self.clock = clock

    def _instance(self, stage_instance_id: str) -> StageInstance:
        instance = self.store.get_stage_instance(stage_instance_id)
        if instance is None:
            raise RecordNotFoundError("stage instance", stage_instance_id)
        return instance

    def get_steps(self, stage_instance_id: str) -> list[WorkflowStep]:
        """Steps of an instance, created on first read for instances that predate them."""
        steps = self.store.get_steps(stage_instance_id)
        if steps:
            return steps
        self._instance(stage_instance_id)
        self.store.insert_steps(initial_workflow_steps(stage_instance_id, self.clock()))
        return self.store.get_steps(stage_instance_id)

    # ─── Step actions ──────────────────────────────────────────────

    def complete_step(
        self,
        stage_instance_id: str,
        step_key: str | StepKey,
        actor: str = "system",
        notes: str = "",
    ) -> StepOutcome:
        key = _parse_step_key(step_key)
        instance = self._instance(stage_instance_id)
        steps, changed = self._finish(instance, key, StepStatus.COMPLETED, actor, notes)

        transition = None
        closure = next(s for s in steps if s.step_key == StepKey.CLOSURE)
        if key == StepKey.CLOSURE and closure.status == StepStatus.COMPLETED:
            # Re-running on an already completed closure replays the same transition
            transition = self._advance_stage(instance, actor)
        if changed:
            logger.info(
                "Step %s completed on %s by %s", key.value, stage_instance_id, actor,
                extra=_log_ids(instance, key),
            )
        return StepOutcome(steps=steps, transition=transition)

    def skip_step(
        self,
        stage_instance_id: str,
        step_key: str | StepKey,
        reason: str,
        actor: str = "system",
    ) -> StepOutcome:
        key = _parse_step_key(step_key)
        if not reason or not reason.strip():
            raise StepOrderError("A reason is required to skip a step", step_key=key.value)
        instance = self._instance(stage_instance_id)
        steps, changed = self._finish(
            instance, key, StepStatus.SKIPPED, actor, f"Skipped: {reason.strip()}",
        )
        if changed:
            logger.info(
                "Step %s skipped on %s by %s: %s", key.value, stage_instance_id, actor, reason,
                extra=_log_ids(instance, key),
            )
        return StepOutcome(steps=steps)

    def _finish(
        self,
        instance: StageInstance,
        key: StepKey,
        status: StepStatus,
        actor: str,
        notes: str,
    ) -> tuple[list[WorkflowStep], bool]:
        """Mark one step terminal and move the pointer. Terminal steps are left as-is."""
        with self.store.transaction():
            steps = self.get_steps(instance.stage_instance_id)
            by_key = {s.step_key: s for s in steps}
            step = by_key[key]
            if step.is_terminal:
                return steps, False
            if instance.status == StageInstanceStatus.CLOSED:
                raise StepOrderError(
                    f"Stage instance {instance.stage_instance_id} is closed",
                    stage_instance_id=instance.stage_instance_id, step_key=key.value,
                )
            if status == StepStatus.COMPLETED:
                self._check_order(by_key, key)

            now = self.clock()
            step.status = status
            step.completed_at = now
            step.completed_by = actor
            step.notes = notes
            step.updated_at = now
            self.store.update_step(step)

            if not any(s.status == StepStatus.IN_PROGRESS for s in steps):
                idx = WORKFLOW_STEPS.index(key)
                nxt = next(
                    (by_key[k] for k in WORKFLOW_STEPS[idx + 1:]
                     if by_key[k].status == StepStatus.PENDING),
                    None,
                )
                if nxt is not None:
                    nxt.status = StepStatus.IN_PROGRESS
                    nxt.updated_at = now
                    self.store.update_step(nxt)
            return steps, True

    @staticmethod
    def _check_order(by_key: dict[StepKey, WorkflowStep], key: StepKey) -> None:
        if key == StepKey.CLOSURE:
            required = [StepKey.NOTICES]
        else:
            required = list(WORKFLOW_STEPS[:WORKFLOW_STEPS.index(key)])
        blocking = [k.value for k in required if not by_key[k].is_terminal]
        if blocking:
            raise StepOrderError(
                f"{STEPS_INCOMPLETE}: {', '.join(blocking)}",
                step_key=key.value, blocking=blocking,
            )

    def _advance_stage(self, instance: StageInstance, actor: str) -> TransitionResult | None:
        catalog = self.engine.catalog
        target = catalog.next_forward(instance.stage_key)
        if target is None:
            logger.info(
                "Closure of final stage %s on case %s; no forward transition",
                instance.stage_key, instance.case_id,
            )
            return None
        case = self.store.get_case(instance.case_id)
        if case is None:
            raise RecordNotFoundError("case", instance.case_id)
        if instance.status == StageInstanceStatus.CLOSED:
            # Archived cycles only ever replay what their closure produced
            recorded = self.engine.recorded_transition(
                case, instance.stage_key, target, instance.cycle_no,
            )
            if recorded is None:
                logger.info(
                    "Closure on archived instance %s (cycle %d) has no recorded transition",
                    instance.stage_instance_id, instance.cycle_no,
                )
            return recorded
        return self.engine.process_transition(
            case, instance.stage_key, target,
            actor=actor,
            comments=f"{instance.stage_key} workflow closed (cycle {instance.cycle_no})",
            cycle_no=instance.cycle_no,
        )

    # ─── Read side ─────────────────────────────────────────────────

    def can_close(self, stage_instance_id: str) -> ClosureCheck:
        reasons: list[str] = []
        notices = self.store.list_notices(stage_instance_id)
        if not notices:
            reasons.append(NO_NOTICES)
        awaiting = sum(1 for n in notices if n.status in NOTICE_NEEDS_REPLY)
        if awaiting:
            reasons.append(f"{awaiting} notice(s) require a reply")

        by_key = {s.step_key: s for s in self.get_steps(stage_instance_id)}
        prior_incomplete = any(
            not by_key[k].is_terminal for k in WORKFLOW_STEPS if k != StepKey.CLOSURE
        )
        if (prior_incomplete
                and by_key[StepKey.CLOSURE].status == StepStatus.PENDING
                and not by_key[StepKey.NOTICES].is_terminal):
            reasons.append(STEPS_INCOMPLETE)

        return ClosureCheck(can_close=not reasons, blocking_reasons=reasons)

    def get_workflow_state(
        self,
        stage_instance_id: str,
        case_id: str,
        stage_key: str,
    ) -> WorkflowState:
        steps = self.get_steps(stage_instance_id)
        notices = self.store.list_notices(stage_instance_id)
        closure = self.can_close(stage_instance_id)
        return WorkflowState(
            stage_instance_id=stage_instance_id,
            case_id=case_id,
            stage_key=stage_key,
            steps=steps,
            current_step=current_step(steps),
            notices_count=len(notices),
            pending_replies=sum(1 for n in notices if n.status in NOTICE_NEEDS_REPLY),
            replies_count=self.store.count_replies(case_id) if notices else 0,
            hearings_count=self.store.count_hearings(stage_instance_id, case_id),
            progress=progress(steps),
            can_close=closure.can_close,
            blocking_reasons=closure.blocking_reasons,
        )

    def workflow_summary(self, stage_instance_id: str) -> dict[str, Any]:
        """Condensed counts for list views: steps by status plus notice, reply and hearing totals."""
        instance = self._instance(stage_instance_id)
        steps = self.get_steps(stage_instance_id)
        counts = {status.value: 0 for status in StepStatus}
        for step in steps:
            counts[step.status.value] += 1
        notices = self.store.list_notices(stage_instance_id)
        finished = [s.completed_at for s in steps if s.completed_at]
        return {
            "stage_instance_id": stage_instance_id,
            "case_id": instance.case_id,
            "current_step": current_step(steps).value,
            "progress": progress(steps),
            "counts": counts,
            "steps_completed": sum(1 for s in steps if s.is_terminal),
            "steps_total": len(WORKFLOW_STEPS),
            "notices_count": len(notices),
            "replies_count": self.store.count_replies(instance.case_id) if notices else 0,
            "hearings_count": self.store.count_hearings(stage_instance_id, instance.case_id),
            "last_activity": max(finished) if finished else None,
        }
