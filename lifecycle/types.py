"""
Caseflow — Lifecycle Type Definitions

Canonical records for cases, stage instances, tasks, workflow steps,
footprints, timeline entries, the notice/reply/hearing read models,
employees and escalation rules/events. One typed record per entity;
row mapping lives in lifecycle.store.
"""

from __future__ import annotations

import enum
import hashlib
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ─── Stage transitions ─────────────────────────────────────────────

class TransitionType(str, enum.Enum):
    FORWARD = "Forward"
    REMAND = "Remand"


class StageInstanceStatus(str, enum.Enum):
    ACTIVE = "Active"
    CLOSED = "Closed"


@dataclass
class Case:
    """
    A legal matter. The lifecycle engine owns ``current_stage``;
    every other field belongs to ordinary case editing.
    """
    case_id: str
    tenant_id: str
    current_stage: str
    owner_id: str
    amount_in_dispute: float = 0.0
    owner_seniority: str = ""
    region: str = ""
    case_number: str = ""
    title: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    @staticmethod
    def create(
        tenant_id: str,
        current_stage: str,
        owner_id: str,
        amount_in_dispute: float = 0.0,
        owner_seniority: str = "",
        region: str = "",
        case_number: str = "",
        title: str = "",
        case_id: str = "",
    ) -> Case:
        now = time.time()
        return Case(
            case_id=case_id or new_id("case"),
            tenant_id=tenant_id,
            current_stage=current_stage,
            owner_id=owner_id,
            amount_in_dispute=amount_in_dispute,
            owner_seniority=owner_seniority,
            region=region,
            case_number=case_number,
            title=title,
            created_at=now,
            updated_at=now,
        )

    def template_attributes(self) -> dict[str, Any]:
        """Attributes visible to template modifiers."""
        return {
            "amount_in_dispute": self.amount_in_dispute,
            "owner_seniority": self.owner_seniority,
            "region": self.region,
        }


@dataclass
class StageInstance:
    """One activation of a stage for a case. Remand re-entry bumps cycle_no."""
    stage_instance_id: str
    tenant_id: str
    case_id: str
    stage_key: str
    cycle_no: int
    status: StageInstanceStatus
    started_at: float
    created_by: str = "system"
    ended_at: float | None = None

    @staticmethod
    def create(
        tenant_id: str,
        case_id: str,
        stage_key: str,
        cycle_no: int,
        created_by: str = "system",
        now: float | None = None,
    ) -> StageInstance:
        return StageInstance(
            stage_instance_id=new_id("si"),
            tenant_id=tenant_id,
            case_id=case_id,
            stage_key=stage_key,
            cycle_no=cycle_no,
            status=StageInstanceStatus.ACTIVE,
            started_at=now if now is not None else time.time(),
            created_by=created_by,
        )


@dataclass(frozen=True)
class TransitionSignature:
    """
    Deterministic identity of one transition attempt.

    ``idempotency_key`` is an optional caller-supplied discriminator
    (for example an attempt epoch) for callers that deliberately want
    to repeat a transition within the same cycle.
    """
    case_id: str
    from_stage: str
    to_stage: str
    transition_type: TransitionType
    cycle_no: int
    idempotency_key: str = ""

    @property
    def digest(self) -> str:
        raw = "|".join([
            self.case_id,
            self.from_stage,
            self.to_stage,
            self.transition_type.value,
            str(self.cycle_no),
            self.idempotency_key,
        ])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class TransitionResult:
    """What process_transition returns, fresh or replayed."""
    case_id: str
    from_stage: str
    to_stage: str
    transition_type: TransitionType
    signature: str
    tasks_created: list[str] = field(default_factory=list)
    stage_instance_id: str = ""
    timeline_entry_id: str = ""
    replayed: bool = False
    in_flight: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "transition_type": self.transition_type.value,
            "signature": self.signature,
            "tasks_created": list(self.tasks_created),
            "stage_instance_id": self.stage_instance_id,
            "timeline_entry_id": self.timeline_entry_id,
            "replayed": self.replayed,
            "in_flight": self.in_flight,
        }


# ─── Footprints ────────────────────────────────────────────────────

class FootprintStatus(str, enum.Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"


class AcquireStatus(str, enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_EXISTS = "already_exists"


@dataclass
class Footprint:
    """
    Durable marker that a signature has produced (or is producing) tasks.

    A ``reserved`` footprint belongs to the attempt named by ``attempt_id``
    until ``expires_at``; after that any caller may take it over.
    """
    signature: str
    tenant_id: str
    case_id: str
    from_stage: str
    to_stage: str
    transition_type: TransitionType
    cycle_no: int
    status: FootprintStatus
    attempt_id: str
    reserved_at: float
    expires_at: float
    committed_at: float | None = None
    task_ids: list[str] = field(default_factory=list)
    template_version: str = ""
    stage_instance_id: str = ""
    timeline_entry_id: str = ""

    @property
    def is_committed(self) -> bool:
        return self.status == FootprintStatus.COMMITTED

    def is_expired(self, now: float) -> bool:
        return self.status == FootprintStatus.RESERVED and self.expires_at < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "case_id": self.case_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "transition_type": self.transition_type.value,
            "cycle_no": self.cycle_no,
            "status": self.status.value,
            "reserved_at": self.reserved_at,
            "expires_at": self.expires_at,
            "committed_at": self.committed_at,
            "task_ids": list(self.task_ids),
            "template_version": self.template_version,
            "stage_instance_id": self.stage_instance_id,
            "timeline_entry_id": self.timeline_entry_id,
        }


@dataclass
class AcquireResult:
    """Outcome of FootprintStore.try_acquire. Never raised, always returned."""
    status: AcquireStatus
    footprint: Footprint
    reclaimed: bool = False

    @property
    def acquired(self) -> bool:
        return self.status == AcquireStatus.ACQUIRED


# ─── Tasks ─────────────────────────────────────────────────────────

class TaskStatus(str, enum.Enum):
    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


TERMINAL_TASK_STATUSES = {TaskStatus.COMPLETED, TaskStatus.CANCELLED}


class TaskPriority(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class TaskOrigin(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"


@dataclass
class Task:
    task_id: str
    tenant_id: str
    case_id: str
    title: str
    description: str
    priority: TaskPriority
    due_at: float
    assignee_id: str
    status: TaskStatus = TaskStatus.OPEN
    origin: TaskOrigin = TaskOrigin.MANUAL
    template_id: str = ""
    stage_instance_id: str = ""
    stage_key: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    @staticmethod
    def create(
        tenant_id: str,
        case_id: str,
        title: str,
        due_at: float,
        assignee_id: str,
        priority: TaskPriority = TaskPriority.MEDIUM,
        description: str = "",
        origin: TaskOrigin = TaskOrigin.MANUAL,
        template_id: str = "",
        stage_instance_id: str = "",
        stage_key: str = "",
        now: float | None = None,
    ) -> Task:
        now = now if now is not None else time.time()
        return Task(
            task_id=new_id("task"),
            tenant_id=tenant_id,
            case_id=case_id,
            title=title,
            description=description,
            priority=priority,
            due_at=due_at,
            assignee_id=assignee_id,
            origin=origin,
            template_id=template_id,
            stage_instance_id=stage_instance_id,
            stage_key=stage_key,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def hours_overdue(self, now: float) -> float:
        return max(0.0, (now - self.due_at) / 3600.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "case_id": self.case_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "due_at": self.due_at,
            "assignee_id": self.assignee_id,
            "origin": self.origin.value,
            "template_id": self.template_id,
            "stage_instance_id": self.stage_instance_id,
            "stage_key": self.stage_key,
        }


# ─── Workflow steps ────────────────────────────────────────────────

class StepKey(str, enum.Enum):
    NOTICES = "notices"
    REPLY = "reply"
    HEARINGS = "hearings"
    CLOSURE = "closure"


WORKFLOW_STEPS: tuple[StepKey, ...] = (
    StepKey.NOTICES, StepKey.REPLY, StepKey.HEARINGS, StepKey.CLOSURE,
)

STEP_LABELS = {
    StepKey.NOTICES: "Notices",
    StepKey.REPLY: "Reply",
    StepKey.HEARINGS: "Hearings",
    StepKey.CLOSURE: "Stage Closure",
}


class StepStatus(str, enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"


TERMINAL_STEP_STATUSES = {StepStatus.COMPLETED, StepStatus.SKIPPED}


@dataclass
class WorkflowStep:
    stage_instance_id: str
    step_key: StepKey
    status: StepStatus
    completed_at: float | None = None
    completed_by: str = ""
    notes: str = ""
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_key": self.step_key.value,
            "status": self.status.value,
            "completed_at": self.completed_at,
            "completed_by": self.completed_by,
            "notes": self.notes,
        }


def initial_workflow_steps(stage_instance_id: str, now: float) -> list[WorkflowStep]:
    """Fresh step set: notices InProgress, the rest Pending."""
    return [
        WorkflowStep(
            stage_instance_id=stage_instance_id,
            step_key=key,
            status=StepStatus.IN_PROGRESS if key == StepKey.NOTICES else StepStatus.PENDING,
            updated_at=now,
        )
        for key in WORKFLOW_STEPS
    ]


# ─── Timeline ──────────────────────────────────────────────────────

@dataclass
class TimelineEntry:
    entry_id: str
    tenant_id: str
    case_id: str
    entry_type: str
    title: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = "system"
    created_at: float = 0.0


# ─── Notice / reply / hearing read models ──────────────────────────

class NoticeStatus(str, enum.Enum):
    RECEIVED = "Received"
    REPLY_PENDING = "Reply Pending"
    REPLIED = "Replied"
    CLOSED = "Closed"


NOTICE_NEEDS_REPLY = {NoticeStatus.RECEIVED, NoticeStatus.REPLY_PENDING}


class ReplyFilingStatus(str, enum.Enum):
    DRAFT = "Draft"
    FILED = "Filed"
    ACKNOWLEDGED = "Acknowledged"


@dataclass
class Notice:
    notice_id: str
    tenant_id: str
    case_id: str
    stage_instance_id: str
    status: NoticeStatus = NoticeStatus.RECEIVED
    reference: str = ""
    received_at: float = 0.0


@dataclass
class Reply:
    reply_id: str
    tenant_id: str
    case_id: str
    notice_id: str
    filing_status: ReplyFilingStatus = ReplyFilingStatus.DRAFT
    filed_at: float | None = None


@dataclass
class Hearing:
    hearing_id: str
    tenant_id: str
    case_id: str
    stage_instance_id: str | None
    hearing_at: float
    status: str = "Scheduled"


# ─── People ────────────────────────────────────────────────────────

class EmployeeStatus(str, enum.Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


@dataclass
class Employee:
    employee_id: str
    tenant_id: str
    name: str
    role: str
    reporting_to: str = ""
    status: EmployeeStatus = EmployeeStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == EmployeeStatus.ACTIVE

    def holds_role(self, role: str) -> bool:
        return role.lower() in self.role.lower()


# ─── Escalation ────────────────────────────────────────────────────

class EscalationTrigger(str, enum.Enum):
    TASK_OVERDUE = "task_overdue"
    CRITICAL_SLA = "critical_sla"
    CLIENT_DEADLINE = "client_deadline"
    MANUAL = "manual"


class EscalationStatus(str, enum.Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


@dataclass
class EscalationRule:
    """
    Trigger conditions plus actions. Conditions left empty match
    everything; ``hours_overdue`` of None matches any overdue task.
    """
    rule_id: str
    tenant_id: str
    name: str
    trigger: EscalationTrigger
    description: str = ""
    hours_overdue: float | None = None
    priorities: list[TaskPriority] = field(default_factory=list)
    stages: list[str] = field(default_factory=list)
    notify_roles: list[str] = field(default_factory=list)
    escalate_to_role: str = ""
    email_template: str = ""
    level: int = 1
    position: int = 0
    is_active: bool = True

    def matches(self, task: Task, hours_overdue: float) -> bool:
        if self.hours_overdue is not None and hours_overdue < self.hours_overdue:
            return False
        if self.priorities and task.priority not in self.priorities:
            return False
        if self.stages and task.stage_key not in self.stages:
            return False
        return True

    def for_tenant(self, tenant_id: str, position: int) -> EscalationRule:
        """
        Copy of a default rule bound to one tenant. The id is derived from
        tenant and position so concurrent seeding writes the same rows.
        """
        return EscalationRule(
            rule_id=f"rule_{tenant_id}_default_{position}",
            tenant_id=tenant_id,
            name=self.name,
            trigger=self.trigger,
            description=self.description,
            hours_overdue=self.hours_overdue,
            priorities=list(self.priorities),
            stages=list(self.stages),
            notify_roles=list(self.notify_roles),
            escalate_to_role=self.escalate_to_role,
            email_template=self.email_template,
            level=self.level,
            position=position,
            is_active=self.is_active,
        )


@dataclass
class EscalationEvent:
    event_id: str
    tenant_id: str
    rule_id: str
    task_id: str
    status: EscalationStatus
    triggered_at: float
    escalated_to: str = ""
    current_level: int = 1
    notes: str = ""
    resolved_at: float | None = None
    resolved_by: str = ""

    @staticmethod
    def create(
        tenant_id: str,
        rule_id: str,
        task_id: str,
        escalated_to: str = "",
        level: int = 1,
        notes: str = "",
        now: float | None = None,
    ) -> EscalationEvent:
        return EscalationEvent(
            event_id=new_id("esc"),
            tenant_id=tenant_id,
            rule_id=rule_id,
            task_id=task_id,
            status=EscalationStatus.PENDING,
            triggered_at=now if now is not None else time.time(),
            escalated_to=escalated_to,
            current_level=level,
            notes=notes,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "rule_id": self.rule_id,
            "task_id": self.task_id,
            "status": self.status.value,
            "triggered_at": self.triggered_at,
            "escalated_to": self.escalated_to,
            "current_level": self.current_level,
            "notes": self.notes,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }
