"""
Caseflow — Case Stage Lifecycle

Moves litigation cases through an ordered stage catalog, provisions each
stage's task checklist exactly once per transition, tracks the four-step
workflow inside every stage instance, and escalates overdue tasks.

State is persisted through infra.db (SQLite by default, PostgreSQL in
production) so concurrent workers share one source of truth.

Usage:
    from lifecycle.runtime import CaseLifecycle

    lc = CaseLifecycle()
    instance = lc.start_case(Case.create("t1", "Assessment", owner_id="emp_1"))
    result = lc.transition(instance.case_id, "Adjudication")
"""

from lifecycle.errors import (
    LifecycleError,
    UnknownStageError,
    InvalidTransitionError,
    RecordNotFoundError,
    StepOrderError,
    EscalationError,
    TemplateResolutionError,
    PersistenceError,
    EscalationTargetNotFoundError,
)
from lifecycle.types import (
    Case,
    StageInstance,
    Task,
    TransitionType,
    TransitionResult,
    StepKey,
    StepStatus,
)
from lifecycle.runtime import CaseLifecycle
